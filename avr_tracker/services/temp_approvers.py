"""Temporary approvers: an approver standing in for a project manager for a
fixed window. The invitation lives at projects/{id}/tempApprover/{phone}."""
import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import NotFound, PermissionDenied, UserNotRegistered, ValidationError
from avr_tracker.core.phone import is_valid_local_phone, normalize_phone
from avr_tracker.schemas.project import TempApprover, TempApproverAssign, TempApproverStatus, as_utc
from avr_tracker.services.document_store import DELETE_FIELD, DocumentStore, collection_path, server_timestamp
from avr_tracker.services.project_admin import ProjectService
from avr_tracker.services.projects import ensure_admin

logger = logging.getLogger(__name__)


class TempApproverService:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.settings = get_settings()
        self.projects = ProjectService(store)

    def _collection(self, project_id: str) -> str:
        return collection_path(self.settings.PROJECTS_COLLECTION, project_id, self.settings.TEMP_APPROVER_COLLECTION)

    def get(self, project_id: str, approver_id: str) -> Optional[TempApprover]:
        document = self.store.get_document(self._collection(project_id), normalize_phone(approver_id))
        if document is None:
            return None
        try:
            return TempApprover.model_validate(document.data)
        except PydanticValidationError as e:
            logger.warning("Temp approver %s could not be decoded: %s", document.path, e)
            return None

    def _require(self, project_id: str, approver_id: str) -> TempApprover:
        invitation = self.get(project_id, approver_id)
        if invitation is None:
            raise NotFound("No temporary approver invitation for this project")
        return invitation

    def _clear_project_field(self, project_id: str):
        self.store.update_document(self.settings.PROJECTS_COLLECTION, project_id, {
            "tempApproverID": DELETE_FIELD,
            "updatedAt": server_timestamp(),
        })

    def assign(self, project_id: str, form: TempApproverAssign, actor) -> TempApprover:
        ensure_admin(actor)
        approver_id = normalize_phone(form.approver_id)
        if not is_valid_local_phone(approver_id):
            raise ValidationError("Please enter a valid 10-digit phone number")
        start, end = as_utc(form.start_date), as_utc(form.end_date)
        if end <= start:
            raise ValidationError("End date must be after the start date")

        project = self.projects.get(project_id)
        if self.store.get_document(self.settings.USERS_COLLECTION, approver_id) is None:
            raise UserNotRegistered("Mobile Number not registered, please contact admin")
        if approver_id == project.manager_id:
            raise ValidationError("The project manager cannot be their own temporary approver")

        invitation = TempApprover(
            approver_id=approver_id,
            start_date=start,
            end_date=end,
            status=TempApproverStatus.PENDING,
            updated_at=server_timestamp(),
        )
        self.store.set_document(
            self._collection(project_id), approver_id, invitation.model_dump(by_alias=True, exclude_none=True)
        )
        self.store.update_document(self.settings.PROJECTS_COLLECTION, project_id, {
            "tempApproverID": approver_id,
            "updatedAt": server_timestamp(),
        })
        logger.info("Temporary approver %s invited to project %s", approver_id, project_id)
        return invitation

    def _ensure_invitee(self, project_id: str, actor) -> str:
        me = normalize_phone(actor.identifier)
        project = self.projects.get(project_id)
        if project.temp_approver_id != me:
            raise PermissionDenied("You are not the temporary approver of this project")
        return me

    def accept(self, project_id: str, actor, now: Optional[datetime] = None) -> TempApprover:
        me = self._ensure_invitee(project_id, actor)
        invitation = self._require(project_id, me)
        if invitation.status is not TempApproverStatus.PENDING:
            raise ValidationError(f"This invitation is already {invitation.status.value}")

        now = now or server_timestamp()
        status = TempApproverStatus.EXPIRED if invitation.has_expired(now) else TempApproverStatus.ACCEPTED
        self.store.update_document(self._collection(project_id), me, {"status": status, "updatedAt": now})
        if status is TempApproverStatus.EXPIRED:
            self._clear_project_field(project_id)
        logger.info("Temporary approver %s answered project %s: %s", me, project_id, status.value)
        return self._require(project_id, me)

    def reject(self, project_id: str, actor, reason: str = "") -> TempApprover:
        me = self._ensure_invitee(project_id, actor)
        invitation = self._require(project_id, me)
        if invitation.status is TempApproverStatus.REJECTED:
            return invitation

        update = {"status": TempApproverStatus.REJECTED, "updatedAt": server_timestamp()}
        if reason and reason.strip():
            update["rejectionReason"] = reason.strip()
        self.store.update_document(self._collection(project_id), me, update)
        self._clear_project_field(project_id)
        logger.info("Temporary approver %s rejected project %s", me, project_id)
        return self._require(project_id, me)

    def refresh_status(self, project_id: str, now: Optional[datetime] = None) -> Optional[TempApprover]:
        """Expire an invitation whose window is over."""
        project = self.projects.get(project_id)
        if not project.temp_approver_id:
            return None
        invitation = self.get(project_id, project.temp_approver_id)
        if invitation is None:
            return None

        now = now or server_timestamp()
        live = (TempApproverStatus.PENDING, TempApproverStatus.ACCEPTED)
        if invitation.status in live and invitation.has_expired(now):
            self.store.update_document(self._collection(project_id), invitation.approver_id, {
                "status": TempApproverStatus.EXPIRED,
                "updatedAt": now,
            })
            self._clear_project_field(project_id)
            logger.info("Temporary approver %s on project %s expired", invitation.approver_id, project_id)
            return self.get(project_id, invitation.approver_id)
        return invitation

    def remove(self, project_id: str, actor):
        ensure_admin(actor)
        project = self.projects.get(project_id)
        if not project.temp_approver_id:
            return
        self._clear_project_field(project_id)
        logger.info("Temporary approver %s removed from project %s", project.temp_approver_id, project_id)
