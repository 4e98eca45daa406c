"""Identity provider: proves who someone is, nothing more.

Admins sign in with email and password. Everyone else proves ownership of a
phone number with a one-time code. Whether that person may use the app is
decided afterwards by the IdentityResolver against the users collection.
"""
import logging
import secrets
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from avr_tracker.core.config import get_settings
from avr_tracker.core.errors import InvalidCredentials, ProviderError
from avr_tracker.core.security import get_password_hash, verify_password
from avr_tracker.models.user import AdminAccount
from avr_tracker.models.verification import PhoneVerification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderIdentity:
    uid: str
    email: Optional[str] = None
    phone_number: Optional[str] = None
    display_name: Optional[str] = None


@dataclass(frozen=True)
class VerificationHandle:
    verification_id: str
    phone_number: str


SmsSender = Callable[[str, str], None]
StateListener = Callable[[Optional[ProviderIdentity]], None]


def log_sms_sender(phone_number: str, code: str):
    """Development sender: writes the code to the log instead of texting it."""
    logger.info("OTP for %s is %s", phone_number, code)


class IdentityProvider(ABC):
    def __init__(self):
        self._current: Optional[ProviderIdentity] = None
        self._listeners: List[StateListener] = []

    @property
    def current_identity(self) -> Optional[ProviderIdentity]:
        return self._current

    def add_state_listener(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return remove

    def _set_current(self, identity: Optional[ProviderIdentity]):
        self._current = identity
        for listener in list(self._listeners):
            listener(identity)

    @abstractmethod
    def sign_in_with_email(self, email: str, password: str) -> ProviderIdentity:
        ...

    @abstractmethod
    def verify_phone_number(self, e164_phone: str) -> VerificationHandle:
        ...

    @abstractmethod
    def sign_in(self, verification_id: str, code: str) -> ProviderIdentity:
        ...

    def sign_out(self):
        self._set_current(None)

    def admin_display_name(self, email: str) -> Optional[str]:
        """Display name of an email account, for re-resolving it without a password."""
        return None


class LocalIdentityProvider(IdentityProvider):
    """Provider backed by the admin_accounts and phone_verifications tables."""

    def __init__(self, session_factory, sms_sender: SmsSender = log_sms_sender):
        super().__init__()
        self._session_factory = session_factory
        self._send_sms = sms_sender
        self.settings = get_settings()

    def create_admin_account(self, email: str, password: str, full_name: str = "Admin"):
        email = email.strip().lower()
        db = self._session_factory()
        try:
            account = db.query(AdminAccount).filter(AdminAccount.email == email).first()
            if account is None:
                account = AdminAccount(email=email, full_name=full_name)
                db.add(account)
            account.hashed_password = get_password_hash(password)
            account.full_name = full_name
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise ProviderError(f"Failed to save admin account: {e}") from e
        finally:
            db.close()

    def sign_in_with_email(self, email: str, password: str) -> ProviderIdentity:
        email = (email or "").strip().lower()
        db = self._session_factory()
        try:
            account = db.query(AdminAccount).filter(AdminAccount.email == email).first()
        except SQLAlchemyError as e:
            raise ProviderError(f"Sign-in failed: {e}") from e
        finally:
            db.close()

        # Don't reveal whether the email or the password was wrong
        if not account or not account.is_active or not verify_password(password, account.hashed_password):
            raise InvalidCredentials()

        identity = ProviderIdentity(uid=f"email:{email}", email=email, display_name=account.full_name)
        self._set_current(identity)
        return identity

    def admin_display_name(self, email: str) -> Optional[str]:
        email = (email or "").strip().lower()
        db = self._session_factory()
        try:
            account = db.query(AdminAccount).filter(AdminAccount.email == email).first()
            return account.full_name if account is not None else None
        except SQLAlchemyError as e:
            raise ProviderError(f"Could not load admin account: {e}") from e
        finally:
            db.close()

    def verify_phone_number(self, e164_phone: str) -> VerificationHandle:
        code = "".join(secrets.choice("0123456789") for _ in range(self.settings.OTP_LENGTH))
        # the row is expired by the commit and detached by close(), so keep the id here
        verification_id = uuid.uuid4().hex
        verification = PhoneVerification(
            id=verification_id,
            phone_number=e164_phone,
            code_hash=get_password_hash(code),
            expires_at=datetime.utcnow() + timedelta(seconds=self.settings.OTP_TTL_SECONDS),
        )
        db = self._session_factory()
        try:
            db.add(verification)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            raise ProviderError(f"Failed to send OTP: {e}") from e
        finally:
            db.close()

        try:
            self._send_sms(e164_phone, code)
        except Exception as e:
            raise ProviderError(f"Failed to send OTP: {e}") from e

        logger.info("OTP issued for %s", e164_phone)
        return VerificationHandle(verification_id=verification_id, phone_number=e164_phone)

    def sign_in(self, verification_id: str, code: str) -> ProviderIdentity:
        db = self._session_factory()
        try:
            verification = db.get(PhoneVerification, verification_id) if verification_id else None
            if verification is None or verification.consumed:
                raise ProviderError("Verification ID not found. Please request a new OTP.")
            if verification.expires_at < datetime.utcnow():
                raise ProviderError("The code has expired. Please request a new OTP.")
            if verification.attempts >= self.settings.OTP_MAX_ATTEMPTS:
                raise ProviderError("Too many attempts. Please request a new OTP.")

            if not verify_password((code or "").strip(), verification.code_hash):
                verification.attempts += 1
                db.commit()
                raise ProviderError("Invalid verification code")

            verification.consumed = True
            db.commit()
            phone_number = verification.phone_number
        except SQLAlchemyError as e:
            db.rollback()
            raise ProviderError(f"Verification failed: {e}") from e
        finally:
            db.close()

        identity = ProviderIdentity(uid=f"phone:{phone_number}", phone_number=phone_number)
        self._set_current(identity)
        return identity
