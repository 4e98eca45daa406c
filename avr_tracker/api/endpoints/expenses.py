import asyncio
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from avr_tracker.api.deps import get_resolver, get_session, get_store, identity_from_token, require_role
from avr_tracker.api.endpoints.projects import load_visible_project
from avr_tracker.core.errors import AppError
from avr_tracker.schemas.chat import ChatMessageIn, ExpenseChat
from avr_tracker.schemas.expense import Expense, ExpenseCreate, ExpenseDecision, ExpenseStatus
from avr_tracker.schemas.user import UserRole
from avr_tracker.services.chat import ExpenseChatService
from avr_tracker.services.document_store import DocumentStore
from avr_tracker.services.expenses import ExpenseAggregator, ExpenseService
from avr_tracker.services.identity import IdentityResolver
from avr_tracker.services.projects import list_visible_projects
from avr_tracker.services.session import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/projects/{project_id}/expenses", response_model=Expense, status_code=status.HTTP_201_CREATED)
def submit_expense(
    project_id: str,
    form: ExpenseCreate,
    session: SessionStore = Depends(get_session),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: SUBMIT EXPENSE

    WHO CAN USE: Team members of the project (and its approvers, and the admin)
    """
    # STEP 1: Project must exist and be visible to the caller
    project = load_visible_project(project_id, session.identity, store)

    # STEP 2: Validate and write as PENDING
    return ExpenseService(store, session).submit(project, form)


@router.get("/projects/{project_id}/expenses", response_model=List[Expense])
def list_expenses(
    project_id: str,
    session: SessionStore = Depends(get_session),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: LIST EXPENSES OF A PROJECT (newest first)
    """
    load_visible_project(project_id, session.identity, store)
    return ExpenseService(store, session).list_expenses(project_id)


@router.get("/expenses/pending", response_model=List[Expense])
async def pending_expenses(
    session: SessionStore = Depends(get_session),
    approver=Depends(require_role(UserRole.ADMIN, UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: PENDING APPROVAL QUEUE

    WHO CAN USE: Admin & Approvers
    Pending expenses of every project the caller can see, newest first.
    """
    snapshot = await asyncio.to_thread(list_visible_projects, store, session.identity)
    return await ExpenseAggregator(store, session).refresh_pending(snapshot.projects)


async def _decide(project_id: str, expense_id: str, new_status: ExpenseStatus, remark, session, store):
    project = await asyncio.to_thread(load_visible_project, project_id, session.identity, store)
    service = ExpenseService(store, session)
    expense = await asyncio.to_thread(service.get, project_id, expense_id)

    await ExpenseAggregator(store, session).set_expense_status(project, expense, new_status, remark)
    return await asyncio.to_thread(service.get, project_id, expense_id)


@router.post("/projects/{project_id}/expenses/{expense_id}/approve", response_model=Expense)
async def approve_expense(
    project_id: str,
    expense_id: str,
    body: ExpenseDecision = ExpenseDecision(),
    session: SessionStore = Depends(get_session),
    approver=Depends(require_role(UserRole.ADMIN, UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: APPROVE EXPENSE

    WHO CAN USE: the project's manager or temporary approver, and the admin
    """
    return await _decide(project_id, expense_id, ExpenseStatus.APPROVED, body.remark, session, store)


@router.post("/projects/{project_id}/expenses/{expense_id}/reject", response_model=Expense)
async def reject_expense(
    project_id: str,
    expense_id: str,
    body: ExpenseDecision = ExpenseDecision(),
    session: SessionStore = Depends(get_session),
    approver=Depends(require_role(UserRole.ADMIN, UserRole.APPROVER)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: REJECT EXPENSE

    WHO CAN USE: the project's manager or temporary approver, and the admin
    """
    return await _decide(project_id, expense_id, ExpenseStatus.REJECTED, body.remark, session, store)


# Expense chat

@router.get("/projects/{project_id}/expenses/{expense_id}/chat", response_model=List[ExpenseChat])
def list_chat(
    project_id: str,
    expense_id: str,
    session: SessionStore = Depends(get_session),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: CHAT OF AN EXPENSE (oldest first)
    """
    project = load_visible_project(project_id, session.identity, store)
    ExpenseService(store, session).get(project_id, expense_id)
    return ExpenseChatService(store, session).list_messages(project, expense_id)


@router.post(
    "/projects/{project_id}/expenses/{expense_id}/chat",
    response_model=ExpenseChat,
    status_code=status.HTTP_201_CREATED,
)
def post_chat(
    project_id: str,
    expense_id: str,
    body: ChatMessageIn,
    session: SessionStore = Depends(get_session),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: WRITE IN THE CHAT OF AN EXPENSE

    WHO CAN USE: anyone who can see the project
    """
    project = load_visible_project(project_id, session.identity, store)
    return ExpenseChatService(store, session).post_message(project, expense_id, body.text_message, body.mention)


@router.websocket("/projects/{project_id}/expenses/{expense_id}/chat/live")
async def live_chat(
    websocket: WebSocket,
    project_id: str,
    expense_id: str,
    token: str = Query(...),
    store: DocumentStore = Depends(get_store),
    resolver: IdentityResolver = Depends(get_resolver)
):
    """
    ENDPOINT: LIVE CHAT (WebSocket)

    Sends {"type": "messages"} with the whole thread after every new message.
    The client may send {"text_message": "...", "mention": [...]}.
    """
    try:
        identity = await asyncio.to_thread(identity_from_token, token, resolver)
        session = SessionStore()
        session.publish(identity)
        project = await asyncio.to_thread(load_visible_project, project_id, identity, store)
        service = ExpenseChatService(store, session)
        thread = await service.listen(project, expense_id)
    except (HTTPException, AppError):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()

    async def forward():
        async for messages in thread:
            await websocket.send_json({
                "type": "messages",
                "messages": [m.model_dump(mode="json", by_alias=True) for m in messages],
            })

    sender = asyncio.create_task(forward())
    try:
        while True:
            body = ChatMessageIn.model_validate(await websocket.receive_json())
            try:
                await asyncio.to_thread(service.post_message, project, expense_id, body.text_message, body.mention)
            except AppError as e:
                await websocket.send_json({"type": "error", "detail": e.message})
    except WebSocketDisconnect:
        logger.info("Chat of expense %s closed for %s", expense_id, identity.identifier)
    except ValueError as e:
        logger.warning("Bad chat message from %s: %s", identity.identifier, e)
        await websocket.close(code=status.WS_1003_UNSUPPORTED_DATA)
    finally:
        thread.cancel()
        sender.cancel()
