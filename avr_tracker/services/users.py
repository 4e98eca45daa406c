"""User directory: the users/{phone} documents that grant access."""
import logging
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import NotFound, PermissionDenied, ProfileDecodeError, ValidationError
from avr_tracker.core.phone import is_valid_local_phone, normalize_phone
from avr_tracker.schemas.user import UserProfile, UserRole
from avr_tracker.services.document_store import DocumentStore, Query, server_timestamp
from avr_tracker.services.projects import ensure_admin

logger = logging.getLogger(__name__)


class UserDirectory:
    def __init__(self, store: DocumentStore):
        self.store = store
        self.settings = get_settings()

    @property
    def collection(self) -> str:
        return self.settings.USERS_COLLECTION

    def create_user(self, phone_number: str, name: str, role: UserRole, actor, overwrite: bool = False) -> UserProfile:
        ensure_admin(actor)
        canonical = normalize_phone(phone_number)
        name = (name or "").strip()
        if not is_valid_local_phone(canonical) or not name:
            raise ValidationError("Please fill all fields correctly")
        if role is UserRole.UNKNOWN:
            raise ValidationError("Pick a role for the user")

        if not overwrite and self.store.get_document(self.collection, canonical) is not None:
            raise ValidationError("A user with this phone number already exists")

        profile = UserProfile(
            phone_number=canonical,
            name=name,
            role=role,
            is_active=True,
            created_at=server_timestamp(),
        )
        self.store.set_document(self.collection, canonical, profile.model_dump(by_alias=True, exclude_none=True))
        logger.info("User %s created as %s%s", canonical, role.value, " (overwrite)" if overwrite else "")
        return profile

    def get_user(self, phone_number: str) -> UserProfile:
        canonical = normalize_phone(phone_number)
        document = self.store.get_document(self.collection, canonical)
        if document is None:
            raise NotFound("User not found")
        try:
            return UserProfile.model_validate(document.data)
        except PydanticValidationError as e:
            logger.warning("User document %s could not be decoded: %s", document.path, e)
            raise ProfileDecodeError() from e

    def list_users(self, role: Optional[UserRole] = None) -> List[UserProfile]:
        query = Query(self.collection).where("isActive", "==", True)
        if role is not None:
            query = query.where("role", "==", role)

        users = []
        for document in self.store.query(query):
            try:
                users.append(UserProfile.model_validate(document.data))
            except PydanticValidationError:
                logger.warning("Skipping malformed user %s", document.path)
        users.sort(key=lambda u: u.name.lower())
        return users

    def register_push_token(self, identity, token: str):
        """Store the device token so notifications can be sent later."""
        if identity is None or "@" in identity.identifier:
            raise PermissionDenied("Push tokens are only kept for phone users")
        token = (token or "").strip()
        if not token:
            raise ValidationError("Push token is empty")
        canonical = normalize_phone(identity.identifier)
        self.store.update_document(self.collection, canonical, {"fcmToken": token})
        logger.info("Push token registered for %s", canonical)
