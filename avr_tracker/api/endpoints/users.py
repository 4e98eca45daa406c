from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from avr_tracker.api.deps import get_current_identity, get_store, require_role
from avr_tracker.schemas.user import AuthenticatedIdentity, PushTokenIn, UserCreate, UserList, UserOut, UserRole
from avr_tracker.services.document_store import DocumentStore
from avr_tracker.services.users import UserDirectory

router = APIRouter()


def _out(profile) -> dict:
    return {
        "phone_number": profile.phone_number,
        "name": profile.name,
        "role": profile.role,
        "is_active": profile.is_active,
        "created_at": profile.created_at,
    }


@router.post("/", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def create_user(
    form: UserCreate,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: CREATE USER

    WHO CAN USE: Admin ONLY
    Send overwrite=true to replace an existing user with the same number.
    """
    profile = UserDirectory(store).create_user(form.phone_number, form.name, form.role, identity, form.overwrite)
    return _out(profile)


@router.get("/", response_model=UserList)
def list_users(
    role: Optional[UserRole] = Query(None, description="Only users with this role"),
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    """
    ENDPOINT: LIST ACTIVE USERS

    WHO CAN USE: Admin ONLY
    """
    return {"items": [_out(p) for p in UserDirectory(store).list_users(role)]}


@router.post("/me/push-token", status_code=status.HTTP_204_NO_CONTENT)
def register_push_token(
    body: PushTokenIn,
    identity: AuthenticatedIdentity = Depends(get_current_identity),
    store: DocumentStore = Depends(get_store)
):
    UserDirectory(store).register_push_token(identity, body.token)


@router.get("/{phone_number}", response_model=UserOut)
def get_user(
    phone_number: str,
    identity: AuthenticatedIdentity = Depends(require_role(UserRole.ADMIN)),
    store: DocumentStore = Depends(get_store)
):
    return _out(UserDirectory(store).get_user(phone_number))
