"""Project Synchronizer: the live, role-scoped list of projects.

A subscription is a standing query on the projects collection. Every
committed write re-delivers the full match set, which is decoded, sorted
newest first and published as a ProjectSnapshot. Each delivery also
triggers a refresh of the pending-approval queue.
"""
import asyncio
import logging
from typing import List, Optional, Set, Tuple

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import AppError, PermissionDenied
from avr_tracker.core.phone import normalize_phone
from avr_tracker.schemas.project import Project, ProjectSnapshot, ProjectStatus
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole
from avr_tracker.services.document_store import DocumentStore, FieldFilter, Or, Query

logger = logging.getLogger(__name__)

_CLOSED = object()


def is_admin_view(identifier: Optional[str], role: Optional[UserRole]) -> bool:
    settings = get_settings()
    if identifier and identifier.strip().lower() == settings.ADMIN_EMAIL.lower():
        return True
    return role is UserRole.ADMIN


def ensure_admin(actor: Optional[AuthenticatedIdentity]):
    if actor is None or not is_admin_view(actor.identifier, actor.role):
        raise PermissionDenied("Only the admin can do this")


def can_view_project(identity: AuthenticatedIdentity, project: Project) -> bool:
    """Same rule as build_project_query, for one already loaded project."""
    if is_admin_view(identity.identifier, identity.role):
        return True
    me = normalize_phone(identity.identifier)
    if project.status is not ProjectStatus.ACTIVE:
        return False
    if identity.role is UserRole.USER:
        return me in project.team_members
    if identity.role is UserRole.APPROVER:
        return me in (project.manager_id, project.temp_approver_id)
    return get_settings().UNKNOWN_ROLE_SEES_ALL


def build_project_query(identifier: str, role: UserRole) -> Optional[Query]:
    """The projects query for one viewer. ``None`` means nothing is visible."""
    settings = get_settings()
    projects = Query(settings.PROJECTS_COLLECTION)

    if is_admin_view(identifier, role):
        return projects

    canonical = normalize_phone(identifier)
    if role is UserRole.USER:
        return (
            projects
            .where("teamMembers", "array_contains", canonical)
            .where("status", "==", ProjectStatus.ACTIVE)
        )
    if role is UserRole.APPROVER:
        return (
            projects
            .where_filter(Or(
                FieldFilter("managerId", "==", canonical),
                FieldFilter("tempApproverID", "==", canonical),
            ))
            .where("status", "==", ProjectStatus.ACTIVE)
        )

    if settings.UNKNOWN_ROLE_SEES_ALL:
        return projects
    return None


def decode_projects(documents) -> Tuple[List[Project], int]:
    """Decode and sort newest first. Malformed documents are skipped and counted."""
    projects, skipped = [], 0
    for document in documents:
        try:
            project = Project.model_validate(document.data)
        except PydanticValidationError as e:
            skipped += 1
            logger.warning("Skipping malformed project %s: %s", document.path, e.errors()[0].get("msg"))
            continue
        project.id = document.id
        projects.append(project)
    projects.sort(key=lambda p: p.created_at, reverse=True)
    return projects, skipped


def filter_visible(projects: List[Project], identity, status: Optional[ProjectStatus]):
    """Apply the admin status filter. Everyone else sees the query result as is."""
    if status is None or not is_admin_view(identity.identifier, identity.role):
        return list(projects)
    return [p for p in projects if p.status is status]


def list_visible_projects(store: DocumentStore, identity, status: Optional[ProjectStatus] = None) -> ProjectSnapshot:
    """One-shot version of the live subscription."""
    query = build_project_query(identity.identifier, identity.role)
    if query is None:
        return ProjectSnapshot(projects=[], skipped=0)
    projects, skipped = decode_projects(store.query(query))
    return ProjectSnapshot(projects=filter_visible(projects, identity, status), skipped=skipped)


class ProjectSubscription:
    """Async iterator over the snapshots of one live query.

    ``cancel`` drops anything not yet consumed and ends the iteration.
    """

    def __init__(self, query: Optional[Query]):
        self.query = query
        self.registration = None
        self.latest: Optional[ProjectSnapshot] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def _put(self, snapshot: ProjectSnapshot):
        if self._cancelled:
            return
        self.latest = snapshot
        self._queue.put_nowait(snapshot)

    def cancel(self):
        if self._cancelled:
            return
        self._cancelled = True
        if self.registration is not None:
            self.registration.remove()
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        logger.info("Project subscription cancelled")

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProjectSnapshot:
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any other consumer
            self._queue.put_nowait(_CLOSED)
            raise StopAsyncIteration
        return item


class ProjectSynchronizer:
    def __init__(self, store: DocumentStore, session, aggregator=None):
        self.store = store
        self.session = session
        self.aggregator = aggregator
        self.settings = get_settings()

        self.identity: Optional[AuthenticatedIdentity] = None
        self.projects: List[Project] = []
        self.skipped = 0
        self.last_error: Optional[AppError] = None
        self.status_filter: Optional[ProjectStatus] = None

        self._subscription: Optional[ProjectSubscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def subscription(self) -> Optional[ProjectSubscription]:
        return self._subscription

    @property
    def is_admin(self) -> bool:
        if self.identity is None:
            return False
        return is_admin_view(self.identity.identifier, self.identity.role)

    async def subscribe(self, identity: Optional[AuthenticatedIdentity] = None) -> ProjectSubscription:
        if self._closed:
            raise RuntimeError("ProjectSynchronizer is closed")
        identity = identity or self.session.identity
        if identity is None:
            raise PermissionDenied("User not logged in.")

        # at most one live query per synchronizer
        self._cancel_current()
        self._loop = asyncio.get_running_loop()
        self.identity = identity

        query = build_project_query(identity.identifier, identity.role)
        subscription = ProjectSubscription(query)
        self._subscription = subscription

        if query is None:
            logger.warning("No projects visible to %s: role %s", identity.identifier, identity.role.value)
            self._publish(subscription, [], 0)
            return subscription

        logger.info("Opening project subscription for %s (%s)", identity.identifier, identity.role.value)

        def on_delivery(documents, error):
            self._on_delivery(subscription, documents, error)

        registration = await asyncio.to_thread(self.store.listen, query, on_delivery)
        if subscription.cancelled:
            # cancelled while the listener was being registered
            registration.remove()
        else:
            subscription.registration = registration
        return subscription

    def _on_delivery(self, subscription: ProjectSubscription, documents, error):
        """Runs on the thread that wrote to the store."""
        if subscription.cancelled or self._loop is None:
            return
        projects, skipped = decode_projects(documents) if documents is not None else ([], 0)
        try:
            self._loop.call_soon_threadsafe(self._handle_delivery, subscription, projects, skipped, error)
        except RuntimeError:
            logger.debug("Event loop closed, dropping project delivery")

    def _handle_delivery(self, subscription: ProjectSubscription, projects, skipped, error):
        if subscription.cancelled or subscription is not self._subscription:
            logger.debug("Dropping delivery for a cancelled subscription")
            return
        if error is not None:
            self.last_error = error
            logger.error("Project subscription failed: %s", error)
            return

        self.last_error = None
        self._publish(subscription, projects, skipped)

    def _publish(self, subscription: ProjectSubscription, projects: List[Project], skipped: int):
        self.projects = projects
        self.skipped = skipped
        logger.info("Project snapshot: %d projects, %d skipped", len(projects), skipped)
        subscription._put(ProjectSnapshot(projects=projects, skipped=skipped))
        self._schedule(self._refresh_dependents(subscription, projects))

    def _schedule(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _refresh_dependents(self, subscription: ProjectSubscription, projects: List[Project]):
        if self.aggregator is None or self._closed or subscription is not self._subscription:
            return
        try:
            await self.aggregator.refresh_pending(projects)
        except AppError as e:
            logger.error("Refreshing pending expenses failed: %s", e.message)

    async def refresh(self) -> ProjectSubscription:
        """Manual refresh: re-subscribe with the current identity."""
        return await self.subscribe(self.identity)

    def set_status_filter(self, status: Optional[ProjectStatus]):
        """Narrow the admin's view without re-querying. Ignored for everyone else."""
        if not self.is_admin:
            logger.debug("Status filter ignored for non-admin %s", self.identity and self.identity.identifier)
            return
        self.status_filter = status

    @property
    def visible_projects(self) -> List[Project]:
        if self.identity is None:
            return []
        return filter_visible(self.projects, self.identity, self.status_filter)

    def _cancel_current(self):
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def close(self):
        """Cancel the live query and stop dependent refreshes. Idempotent."""
        self._closed = True
        self._cancel_current()
        for task in list(self._tasks):
            task.cancel()
        if self.aggregator is not None:
            self.aggregator.close()
