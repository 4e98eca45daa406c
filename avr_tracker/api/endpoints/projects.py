import asyncio
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from avr_tracker.api.deps import get_current_identity, get_resolver, get_session, get_store, identity_from_token, require_role
from avr_tracker.core.errors import PermissionDenied
from avr_tracker.schemas.project import (
    DepartmentSummary, DepartmentsUpdate, Project, ProjectCreate, ProjectSnapshot, ProjectStatus, ProjectUpdate,
    TempApprover, TempApproverAssign, TempApproverReject,
)
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole
from avr_tracker.services.document_store import DocumentStore
from avr_tracker.services.expenses import ExpenseAggregator
from avr_tracker.services.identity import IdentityResolver
from avr_tracker.services.project_admin import ProjectService
from avr_tracker.services.projects import ProjectSynchronizer, can_view_project, list_visible_projects
from avr_tracker.services.session import SessionStore
from avr_tracker.services.temp_approvers import TempApproverService

logger = logging.getLogger(__name__)

router = APIRouter()


def load_visible_project(project_id: str, identity: AuthenticatedIdentity, store: DocumentStore) -> Project:
    project = ProjectService(store).get(project_id)
    if not can_view_project(identity, project):
        raise PermissionDenied("You do not have access to this project")
    return project


@router.get("/", response_model=ProjectSnapshot)
def list_projects(
    status_filter: Optional[ProjectStatus] = Query(None, alias="status", description="Admin only: narrow by status"),
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: LIST PROJECTS

    WHO CAN USE: Anyone authenticated. Admin sees everything, users see the
    active projects they are on, approvers the active projects they approve.
    """
    return list_visible_projects(store, identity, status_filter)


@router.post("/", response_model=Project, status_code=status.HTTP_201_CREATED)
def create_project(
    form: ProjectCreate,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: CREATE PROJECT

    WHO CAN USE: Admin ONLY
    """
    return ProjectService(store).create(form, identity)


@router.get("/{project_id}", response_model=Project)
def get_project(
    project_id: str,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    store: DocumentStore = Depends(get_store)
):
    return load_visible_project(project_id, identity, store)


@router.patch("/{project_id}", response_model=Project)
def update_project(
    project_id: str,
    changes: ProjectUpdate,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: EDIT PROJECT

    WHO CAN USE: Admin ONLY
    """
    return ProjectService(store).update(project_id, changes, identity)


@router.put("/{project_id}/departments", response_model=Project)
def update_departments(
    project_id: str,
    body: DepartmentsUpdate,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: REPLACE DEPARTMENT BUDGETS

    WHO CAN USE: Admin ONLY
    Expenses of a removed department move to the anonymous department.
    """
    return ProjectService(store).update_departments(project_id, body.departments, identity)


@router.get("/{project_id}/departments", response_model=List[DepartmentSummary])
async def department_summary(
    project_id: str,
    session: SessionStore = Depends(get_session),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: DEPARTMENT ROLLUP

    Allocated, approved, remaining and spent fraction per department.
    """
    project = await asyncio.to_thread(load_visible_project, project_id, session.identity, store)
    return await ExpenseAggregator(store, session).department_summary(project)


# Temporary approvers

@router.get("/{project_id}/temp-approver", response_model=Optional[TempApprover])
def get_temp_approver(
    project_id: str,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    store: DocumentStore = Depends(get_store)
):
    project = load_visible_project(project_id, identity, store)
    if not project.temp_approver_id:
        return None
    return TempApproverService(store).get(project_id, project.temp_approver_id)


@router.post("/{project_id}/temp-approver", response_model=TempApprover, status_code=status.HTTP_201_CREATED)
def assign_temp_approver(
    project_id: str,
    form: TempApproverAssign,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: INVITE A TEMPORARY APPROVER

    WHO CAN USE: Admin ONLY
    """
    return TempApproverService(store).assign(project_id, form, identity)


@router.post("/{project_id}/temp-approver/accept", response_model=TempApprover)
def accept_temp_approver(
    project_id: str,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    return TempApproverService(store).accept(project_id, identity)


@router.post("/{project_id}/temp-approver/reject", response_model=TempApprover)
def reject_temp_approver(
    project_id: str,
    body: TempApproverReject,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    return TempApproverService(store).reject(project_id, identity, body.reason)


@router.post("/{project_id}/temp-approver/refresh", response_model=Optional[TempApprover])
def refresh_temp_approver(
    project_id: str,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    store: DocumentStore = Depends(get_store)
):
    """Expire the invitation if its window is over."""
    load_visible_project(project_id, identity, store)
    return TempApproverService(store).refresh_status(project_id)


@router.delete("/{project_id}/temp-approver", status_code=status.HTTP_204_NO_CONTENT)
def remove_temp_approver(
    project_id: str,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    TempApproverService(store).remove(project_id, identity)


# Live view

def _projects_message(synchronizer: ProjectSynchronizer) -> dict:
    return {
        "type": "projects",
        "status_filter": synchronizer.status_filter.value if synchronizer.status_filter else None,
        "skipped": synchronizer.skipped,
        "projects": [p.model_dump(mode="json", by_alias=True) for p in synchronizer.visible_projects],
    }


def _pending_message(expenses) -> dict:
    return {"type": "pending", "expenses": [e.model_dump(mode="json", by_alias=True) for e in expenses]}


@router.websocket("/live")
async def live_projects(
    websocket: WebSocket,
    token: str = Query(...),
    store: DocumentStore = Depends(get_store),
    resolver: IdentityResolver = Depends(get_resolver)
):
    """
    ENDPOINT: LIVE PROJECTS (WebSocket)

    Sends {"type": "projects"} after every change to the visible projects and
    {"type": "pending"} whenever the pending-approval queue is recomputed.
    The client may send {"status": "ACTIVE"|"COMPLETED"|"CANCELLED"|null}
    (admin only) or {"action": "refresh"}.
    """
    try:
        identity = await asyncio.to_thread(identity_from_token, token, resolver)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    session = SessionStore(loop=asyncio.get_running_loop())
    session.publish(identity)
    outbox: asyncio.Queue = asyncio.Queue()

    aggregator = ExpenseAggregator(store, session)
    aggregator.add_listener(lambda expenses: outbox.put_nowait(_pending_message(expenses)))
    synchronizer = ProjectSynchronizer(store, session, aggregator)

    async def forward(subscription):
        async for _ in subscription:
            outbox.put_nowait(_projects_message(synchronizer))

    async def send():
        while True:
            await websocket.send_json(await outbox.get())

    tasks = set()

    def spawn(coro):
        # a refresh ends the previous forward task, so forget finished ones
        task = asyncio.create_task(coro)
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    spawn(send())
    try:
        spawn(forward(await synchronizer.subscribe()))
        while True:
            message = await websocket.receive_json()
            if message.get("action") == "refresh":
                spawn(forward(await synchronizer.refresh()))
            elif "status" in message:
                value = message["status"]
                synchronizer.set_status_filter(ProjectStatus(value) if value else None)
                outbox.put_nowait(_projects_message(synchronizer))
    except WebSocketDisconnect:
        logger.info("Live view closed for %s", identity.identifier)
    except ValueError as e:
        logger.warning("Bad live view message from %s: %s", identity.identifier, e)
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        synchronizer.close()
        session.logout()
        for task in list(tasks):
            task.cancel()
