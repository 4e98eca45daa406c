"""Identity Resolver: turns a verified credential into an AuthenticatedIdentity.

Phone verification alone does not grant access. The users/{phone} document
is the source of truth for who may use the app and in which role.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import ProfileDecodeError, UserNotRegistered, ValidationError
from avr_tracker.core.phone import is_valid_local_phone, normalize_phone, to_e164
from avr_tracker.schemas.user import AuthenticatedIdentity, UserProfile, UserRole
from avr_tracker.services.identity_provider import IdentityProvider, VerificationHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EmailCredential:
    email: str
    password: str


@dataclass(frozen=True)
class PhoneCredential:
    verification_id: str
    code: str


Credential = Union[EmailCredential, PhoneCredential]


class IdentityResolver:
    def __init__(self, provider: IdentityProvider, store, session=None):
        self.provider = provider
        self.store = store
        self.session = session
        self.settings = get_settings()

    def request_otp(self, phone_number: str) -> VerificationHandle:
        canonical = normalize_phone(phone_number)
        if not is_valid_local_phone(canonical):
            raise ValidationError("Please enter a valid 10-digit phone number")

        # only registered numbers get a code
        if self.store.get_document(self.settings.USERS_COLLECTION, canonical) is None:
            raise UserNotRegistered("Mobile Number not registered, please contact admin")

        return self.provider.verify_phone_number(to_e164(canonical))

    def authenticate(self, credential: Credential) -> AuthenticatedIdentity:
        if isinstance(credential, EmailCredential):
            provider_identity = self.provider.sign_in_with_email(credential.email, credential.password)
            identity = self.admin_identity(provider_identity.email, provider_identity.display_name)
        elif isinstance(credential, PhoneCredential):
            provider_identity = self.provider.sign_in(credential.verification_id, credential.code)
            identity = self.resolve_identifier(provider_identity.phone_number)
        else:
            raise TypeError(f"Unsupported credential {type(credential).__name__}")

        if not identity.is_recognized:
            logger.warning("User %s has an unrecognised role", identity.identifier)

        if self.session is not None:
            self.session.publish(identity)
        return identity

    def admin_identity(self, email: str, display_name: Optional[str] = None) -> AuthenticatedIdentity:
        """Admins have no users/ document; the identity is built from the email."""
        return AuthenticatedIdentity(
            identifier=email,
            display_name=display_name or self.settings.ADMIN_NAME,
            role=UserRole.ADMIN,
            email=email,
        )

    def resolve_identifier(self, identifier: str) -> AuthenticatedIdentity:
        """Classify an identifier that has already been verified."""
        if "@" in identifier:
            email = identifier.strip().lower()
            return self.admin_identity(email, self.provider.admin_display_name(email))

        profile = self.load_profile(identifier)
        return AuthenticatedIdentity(
            identifier=normalize_phone(profile.phone_number) or normalize_phone(identifier),
            display_name=profile.name,
            role=profile.role,
            email=profile.email,
            profile=profile,
        )

    def load_profile(self, phone_number: str) -> UserProfile:
        canonical = normalize_phone(phone_number)
        document = self.store.get_document(self.settings.USERS_COLLECTION, canonical)
        if document is None:
            raise UserNotRegistered()
        try:
            return UserProfile.model_validate(document.data)
        except PydanticValidationError as e:
            logger.warning("User document %s could not be decoded: %s", document.path, e)
            raise ProfileDecodeError() from e
