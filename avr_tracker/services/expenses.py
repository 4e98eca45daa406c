"""Expense Aggregator and expense submission.

Both aggregations are recomputed from scratch on every call. There is no
incremental state to drift away from what the backend holds.
"""
import asyncio
import enum
import logging
from collections import defaultdict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import (
    AppError, InvalidTransition, NotFound, PermissionDenied, PreconditionFailed, ValidationError,
)
from avr_tracker.core.phone import normalize_phone
from avr_tracker.schemas.expense import Expense, ExpenseCreate, ExpenseStatus
from avr_tracker.schemas.project import DATE_FORMAT, DepartmentSummary, Project, ProjectStatus
from avr_tracker.services.document_store import DocumentStore, Query, collection_path, server_timestamp

logger = logging.getLogger(__name__)


class Feedback(str, enum.Enum):
    SUCCESS = "success"
    ERROR = "error"


def expenses_collection(project_id: str) -> str:
    settings = get_settings()
    return collection_path(settings.PROJECTS_COLLECTION, project_id, settings.EXPENSES_COLLECTION)


def decode_expenses(documents) -> Tuple[List[Expense], int]:
    """Decode what we can; malformed documents are skipped and counted."""
    expenses, skipped = [], 0
    for document in documents:
        try:
            expense = Expense.model_validate(document.data)
        except PydanticValidationError as e:
            skipped += 1
            logger.warning("Skipping malformed expense %s: %s", document.path, e.errors()[0].get("msg"))
            continue
        expense.id = document.id
        expenses.append(expense)
    return expenses, skipped


def fold_approved(expenses: Iterable[Expense], other_bucket: Optional[str] = None) -> Dict[str, float]:
    """Sum approved amounts per department.

    Anonymous expenses (their department was removed from the project) are
    shown under a single "Other Expenses" bucket instead of their department.
    """
    bucket = other_bucket or get_settings().OTHER_EXPENSES_BUCKET
    totals: Dict[str, float] = defaultdict(float)
    for expense in expenses:
        if expense.status is not ExpenseStatus.APPROVED:
            continue
        key = bucket if expense.is_anonymous else expense.department
        totals[key] += expense.amount
    return dict(totals)


def remaining_budget(allocated: float, approved: float) -> float:
    return allocated - approved


def spent_fraction(allocated: float, approved: float) -> float:
    if allocated <= 0:
        return 0.0
    return approved / allocated


def summarize_departments(project: Project, approved: Dict[str, float]) -> List[DepartmentSummary]:
    summaries = []
    for department, allocated in sorted(project.departments.items()):
        spent = approved.get(department, 0.0)
        summaries.append(DepartmentSummary(
            department=department,
            allocated=allocated,
            approved=spent,
            remaining=remaining_budget(allocated, spent),
            spent_fraction=spent_fraction(allocated, spent),
        ))
    return summaries


def can_decide(identifier: str, is_admin: bool, project: Project) -> bool:
    if is_admin:
        return True
    return identifier in (project.manager_id, project.temp_approver_id)


class ExpenseAggregator:
    """Pending-approval queue, department rollups and status transitions.

    ``refresh_pending`` and ``set_expense_status`` are coroutines meant to run
    on the session's event loop; the store is called from worker threads.
    """

    def __init__(self, store: DocumentStore, session, feedback: Optional[Callable[[Feedback], None]] = None):
        self.store = store
        self.session = session
        self.feedback = feedback
        self.settings = get_settings()
        self.pending_expenses: List[Expense] = []
        self.skipped = 0
        self._projects: List[Project] = []
        self._listeners: List[Callable[[List[Expense]], None]] = []
        self._generation = 0
        self._closed = False

    def add_listener(self, listener: Callable[[List[Expense]], None]) -> Callable[[], None]:
        """Called with the new pending queue after every refresh."""
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def close(self):
        self._closed = True
        self._listeners.clear()

    async def refresh_pending(self, projects: Optional[List[Project]] = None) -> List[Expense]:
        if projects is not None:
            self._projects = list(projects)
        self._generation += 1
        generation = self._generation
        project_ids = [p.id for p in self._projects if p.id]

        expenses, skipped = await asyncio.to_thread(self._fetch_pending, project_ids)

        if self._closed or generation != self._generation:
            # a newer refresh started or we were torn down while fetching
            return self.pending_expenses
        self.pending_expenses = expenses
        self.skipped = skipped
        logger.debug("Pending queue refreshed: %d expenses over %d projects", len(expenses), len(project_ids))
        for listener in list(self._listeners):
            listener(expenses)
        return expenses

    def _fetch_pending(self, project_ids: List[str]) -> Tuple[List[Expense], int]:
        collected, skipped = [], 0
        for project_id in project_ids:
            query = (
                Query(expenses_collection(project_id))
                .where("status", "==", ExpenseStatus.PENDING)
                .order("createdAt", descending=True)
            )
            expenses, bad = decode_expenses(self.store.query(query))
            collected.extend(expenses)
            skipped += bad
        collected.sort(key=lambda e: e.created_at, reverse=True)
        return collected, skipped

    def fetch_approved(self, project_id: str, department: Optional[str] = None) -> List[Expense]:
        query = Query(expenses_collection(project_id)).where("status", "==", ExpenseStatus.APPROVED)
        if department:
            query = query.where("department", "==", department)
        expenses, _ = decode_expenses(self.store.query(query))
        return expenses

    async def approved_by_department(self, project: Project) -> Dict[str, float]:
        expenses = await asyncio.to_thread(self.fetch_approved, project.id)
        return fold_approved(expenses, self.settings.OTHER_EXPENSES_BUCKET)

    async def department_summary(self, project: Project) -> List[DepartmentSummary]:
        return summarize_departments(project, await self.approved_by_department(project))

    async def set_expense_status(
        self,
        project: Project,
        expense: Expense,
        new_status: ExpenseStatus,
        remark: Optional[str] = None,
    ):
        try:
            if new_status not in (ExpenseStatus.APPROVED, ExpenseStatus.REJECTED):
                raise InvalidTransition(f"Cannot move an expense to {new_status.value}")
            if expense.status is not ExpenseStatus.PENDING:
                raise InvalidTransition()

            identity = self.session.identity
            if identity is None or not can_decide(identity.identifier, identity.is_admin, project):
                raise PermissionDenied("Only the project's approver can approve or reject expenses")

            await asyncio.to_thread(
                self._write_status, project, expense.id, new_status, normalize_phone(identity.identifier), remark
            )
        except AppError as e:
            logger.warning("Status change for expense %s refused: %s", expense.id, e.message)
            self._signal(Feedback.ERROR)
            raise

        logger.info("Expense %s of project %s is now %s", expense.id, project.id, new_status.value)
        self._signal(Feedback.SUCCESS)
        if not self._closed:
            await self.refresh_pending()

    def _write_status(self, project: Project, expense_id: str, new_status: ExpenseStatus, approver: str, remark):
        collection = expenses_collection(project.id)
        now = server_timestamp()
        update = {
            "status": new_status,
            "approvedAt": now,
            "approvedBy": approver,
            "updatedAt": now,
        }
        if remark:
            update["remark"] = remark
        # the stored status is what counts, not the caller's copy
        try:
            self.store.update_document(
                collection, expense_id, update, precondition={"status": ExpenseStatus.PENDING}
            )
        except NotFound as e:
            raise NotFound("Expense not found") from e
        except PreconditionFailed as e:
            raise InvalidTransition() from e

        if new_status is ExpenseStatus.APPROVED and project.temp_approver_id and approver == project.temp_approver_id:
            self._record_temp_approval(project.id, approver, expense_id)

    def _record_temp_approval(self, project_id: str, approver: str, expense_id: str):
        settings = self.settings
        collection = collection_path(settings.PROJECTS_COLLECTION, project_id, settings.TEMP_APPROVER_COLLECTION)
        document = self.store.get_document(collection, approver)
        if document is None:
            return
        approved = list(document.data.get("approvedExpense") or [])
        if expense_id not in approved:
            approved.append(expense_id)
            self.store.update_document(collection, approver, {"approvedExpense": approved})

    def _signal(self, outcome: Feedback):
        if self.feedback is not None:
            self.feedback(outcome)


class ExpenseService:
    """Expense submission and per-project listing."""

    def __init__(self, store: DocumentStore, session):
        self.store = store
        self.session = session

    def validate(self, project: Project, form: ExpenseCreate) -> List[str]:
        categories = [c.strip() for c in form.categories if c and c.strip()]
        if form.amount is None or form.amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not form.department or form.department not in project.departments:
            raise ValidationError(f"Unknown department: {form.department}")
        if not categories:
            raise ValidationError("Add at least one category")
        if not form.description or not form.description.strip():
            raise ValidationError("Description is required")
        if project.status is not ProjectStatus.ACTIVE:
            raise ValidationError("Expenses can only be added to active projects")
        return categories

    def submit(self, project: Project, form: ExpenseCreate) -> Expense:
        identity = self.session.identity
        if identity is None:
            raise PermissionDenied("User not logged in.")
        submitter = normalize_phone(identity.identifier)
        members = set(project.team_members) | {project.manager_id, project.temp_approver_id}
        if not identity.is_admin and submitter not in members:
            raise PermissionDenied("You are not a member of this project")

        categories = self.validate(project, form)

        now = server_timestamp()
        expense = Expense(
            project_id=project.id,
            date=form.date.strftime(DATE_FORMAT),
            amount=form.amount,
            department=form.department,
            categories=categories,
            description=form.description.strip(),
            mode_of_payment=form.mode_of_payment,
            attachment_url=form.attachment_url,
            attachment_name=form.attachment_name,
            submitted_by=submitter,
            status=ExpenseStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        data = expense.model_dump(by_alias=True, exclude={"id"}, exclude_none=True)
        expense.id = self.store.add_document(expenses_collection(project.id), data)
        logger.info("Expense %s submitted to project %s by %s", expense.id, project.id, submitter)
        return expense

    def get(self, project_id: str, expense_id: str) -> Expense:
        document = self.store.get_document(expenses_collection(project_id), expense_id)
        if document is None:
            raise NotFound("Expense not found")
        expenses, _ = decode_expenses([document])
        if not expenses:
            raise NotFound("Expense could not be read")
        return expenses[0]

    def list_expenses(self, project_id: str) -> List[Expense]:
        query = Query(expenses_collection(project_id)).order("createdAt", descending=True)
        expenses, _ = decode_expenses(self.store.query(query))
        return expenses
