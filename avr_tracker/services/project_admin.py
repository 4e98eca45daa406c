"""Project creation and editing. Admin only."""
import logging
from datetime import datetime
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import NotFound, ValidationError
from avr_tracker.core.phone import normalize_phone
from avr_tracker.schemas.project import (
    DATE_FORMAT, DepartmentIn, Project, ProjectCreate, ProjectStatus, ProjectUpdate,
)
from avr_tracker.services.document_store import DocumentStore, Query, server_timestamp
from avr_tracker.services.expenses import expenses_collection
from avr_tracker.services.projects import ensure_admin

logger = logging.getLogger(__name__)


def clean_departments(departments: List[DepartmentIn]) -> Dict[str, float]:
    if not departments:
        raise ValidationError("Add at least one department")
    result: Dict[str, float] = {}
    for department in departments:
        name = (department.name or "").strip()
        if not name:
            raise ValidationError("Department name cannot be empty")
        if name in result:
            raise ValidationError(f"Duplicate department: {name}")
        if department.amount is None or department.amount <= 0:
            raise ValidationError(f"Budget for {name} must be greater than zero")
        result[name] = float(department.amount)
    return result


def clean_members(members: List[str]) -> List[str]:
    seen = []
    for member in members or []:
        canonical = normalize_phone(member)
        if canonical and canonical not in seen:
            seen.append(canonical)
    return seen


def _parse_date(value: Optional[str]):
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT).date()
    except ValueError:
        return None


def check_dates(start, end):
    if start and end and end <= start:
        raise ValidationError("End date must be after the start date")


class ProjectService:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.settings = get_settings()

    @property
    def collection(self) -> str:
        return self.settings.PROJECTS_COLLECTION

    def get(self, project_id: str) -> Project:
        document = self.store.get_document(self.collection, project_id)
        if document is None:
            raise NotFound("Project not found")
        try:
            project = Project.model_validate(document.data)
        except PydanticValidationError as e:
            logger.warning("Project %s could not be decoded: %s", document.path, e)
            raise NotFound("Project could not be read") from e
        project.id = document.id
        return project

    def create(self, form: ProjectCreate, actor) -> Project:
        ensure_admin(actor)

        name = (form.name or "").strip()
        description = (form.description or "").strip()
        manager = normalize_phone(form.manager_id or "")
        if not name or not description or not manager:
            raise ValidationError("Please fill in all required fields")
        departments = clean_departments(form.departments)
        check_dates(form.start_date, form.end_date)

        now = server_timestamp()
        project = Project(
            name=name,
            description=description,
            status=ProjectStatus.ACTIVE,
            start_date=form.start_date.strftime(DATE_FORMAT) if form.start_date else None,
            end_date=form.end_date.strftime(DATE_FORMAT) if form.end_date else None,
            team_members=clean_members(form.team_members),
            manager_id=manager,
            departments=departments,
            created_at=now,
            updated_at=now,
        )
        data = project.to_document()
        data.pop("tempApproverID", None)
        project.id = self.store.add_document(self.collection, data)
        logger.info("Project %s (%s) created with budget %.2f", project.id, name, project.budget)
        return project

    def update(self, project_id: str, changes: ProjectUpdate, actor) -> Project:
        ensure_admin(actor)
        project = self.get(project_id)
        fields = changes.model_dump(exclude_unset=True)

        update = {}
        if "name" in fields:
            name = (changes.name or "").strip()
            if not name:
                raise ValidationError("Project name cannot be empty")
            update["name"] = name
        if "description" in fields:
            description = (changes.description or "").strip()
            if not description:
                raise ValidationError("Description cannot be empty")
            update["description"] = description
        if changes.status is not None:
            update["status"] = changes.status
        if "manager_id" in fields:
            manager = normalize_phone(changes.manager_id or "")
            if not manager:
                raise ValidationError("A project needs a manager")
            update["managerId"] = manager
        if changes.team_members is not None:
            update["teamMembers"] = clean_members(changes.team_members)

        start = changes.start_date if "start_date" in fields else _parse_date(project.start_date)
        end = changes.end_date if "end_date" in fields else _parse_date(project.end_date)
        check_dates(start, end)
        if "start_date" in fields:
            update["startDate"] = start.strftime(DATE_FORMAT) if start else None
        if "end_date" in fields:
            update["endDate"] = end.strftime(DATE_FORMAT) if end else None

        if not update:
            return project
        update["updatedAt"] = server_timestamp()
        self.store.update_document(self.collection, project_id, update)
        logger.info("Project %s updated: %s", project_id, ", ".join(sorted(update)))
        return self.get(project_id)

    def update_departments(self, project_id: str, departments: List[DepartmentIn], actor) -> Project:
        """Replace the department budgets.

        Expenses booked against a department that is dropped here are moved to
        the anonymous department, keeping the old name in originalDepartment.
        """
        ensure_admin(actor)
        project = self.get(project_id)
        cleaned = clean_departments(departments)
        removed = [name for name in project.departments if name not in cleaned]

        now = server_timestamp()
        self.store.update_document(self.collection, project_id, {
            "departments": cleaned,
            "budget": sum(cleaned.values()),
            "updatedAt": now,
        })

        for department in removed:
            moved = self._move_to_anonymous(project_id, department, now)
            logger.info("Moved %d expenses of removed department %r in project %s", moved, department, project_id)

        return self.get(project_id)

    def _move_to_anonymous(self, project_id: str, department: str, now) -> int:
        collection = expenses_collection(project_id)
        documents = self.store.query(Query(collection).where("department", "==", department))
        for document in documents:
            self.store.update_document(collection, document.id, {
                "department": self.settings.ANONYMOUS_DEPARTMENT,
                "isAnonymous": True,
                "originalDepartment": department,
                "departmentDeletedAt": now,
                "updatedAt": now,
            })
        return len(documents)
