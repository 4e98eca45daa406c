from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError

from avr_tracker.core.database import SessionLocal
from avr_tracker.core.errors import ProfileDecodeError, UserNotRegistered
from avr_tracker.core.security import decode_access_token
from avr_tracker.schemas.user import AuthenticatedIdentity, UserRole
from avr_tracker.services.document_store import DocumentStore
from avr_tracker.services.identity import IdentityResolver
from avr_tracker.services.identity_provider import LocalIdentityProvider
from avr_tracker.services.session import SessionStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


@lru_cache()
def get_store() -> DocumentStore:
    return DocumentStore(SessionLocal)


@lru_cache()
def get_provider() -> LocalIdentityProvider:
    return LocalIdentityProvider(SessionLocal)


def get_resolver(
    store: DocumentStore = Depends(get_store),
    provider: LocalIdentityProvider = Depends(get_provider),
) -> IdentityResolver:
    return IdentityResolver(provider, store)


def identity_from_token(token: str, resolver: IdentityResolver) -> AuthenticatedIdentity:
    """Re-resolve the identity behind a token, so role changes and removed
    users take effect without waiting for the token to expire."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise credentials_exception
    identifier = payload.get("sub")
    if identifier is None:
        raise credentials_exception

    try:
        identity = resolver.resolve_identifier(identifier)
    except (UserNotRegistered, ProfileDecodeError):
        raise credentials_exception

    if not identity.is_recognized:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Your account has no usable role")
    if identity.profile is not None and not identity.profile.is_active:
        raise HTTPException(status_code=400, detail="Inactive user")
    return identity


def get_current_identity(
    token: str = Depends(oauth2_scheme),
    resolver: IdentityResolver = Depends(get_resolver),
) -> AuthenticatedIdentity:
    return identity_from_token(token, resolver)


def get_session(identity: AuthenticatedIdentity = Depends(get_current_identity)) -> SessionStore:
    """A session holding just the caller, for services that read identity from one."""
    session = SessionStore()
    session.publish(identity)
    return session


def require_role(*allowed_roles):
    """Dependency factory that accepts one or more allowed roles.
    """
    allowed = set()
    for r in allowed_roles:
        if isinstance(r, UserRole):
            allowed.add(r.value)
        else:
            allowed.add(str(r))

    def role_checker(identity: AuthenticatedIdentity = Depends(get_current_identity)) -> AuthenticatedIdentity:
        if identity.role.value not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions"
            )
        return identity

    return role_checker
