from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import List, Optional
import enum


class UserRole(str, enum.Enum):
    ADMIN = "ADMIN"
    APPROVER = "APPROVER"
    USER = "USER"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def _missing_(cls, value):
        # anything the backend stores that we don't recognise
        return cls.UNKNOWN

    @property
    def display_name(self) -> str:
        return self.value.title()


class UserProfile(BaseModel):
    """The users/{phone} document."""
    phone_number: str = Field(alias="phoneNumber")
    name: str
    role: UserRole
    is_active: bool = Field(True, alias="isActive")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    email: Optional[str] = None
    fcm_token: Optional[str] = Field(None, alias="fcmToken")

    class Config:
        populate_by_name = True

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value):
        if isinstance(value, str):
            return UserRole(value.strip().upper())
        return value


class AuthenticatedIdentity(BaseModel):
    """Who is signed in. ``identifier`` is the canonical phone or the admin email."""
    identifier: str
    display_name: str
    role: UserRole
    email: Optional[str] = None
    profile: Optional[UserProfile] = None

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN

    @property
    def is_approver(self) -> bool:
        return self.role is UserRole.APPROVER

    @property
    def is_user(self) -> bool:
        return self.role is UserRole.USER

    @property
    def is_recognized(self) -> bool:
        return self.role is not UserRole.UNKNOWN


class UserCreate(BaseModel):
    phone_number: str
    name: str
    role: UserRole = UserRole.USER
    overwrite: bool = False


class UserOut(BaseModel):
    phone_number: str
    name: str
    role: UserRole
    is_active: bool = True
    created_at: Optional[datetime] = None


class PushTokenIn(BaseModel):
    token: str = Field(..., min_length=1)


class OtpRequest(BaseModel):
    phone_number: str


class OtpSent(BaseModel):
    verification_id: str


class OtpVerify(BaseModel):
    verification_id: str
    code: str


class Token(BaseModel):
    access_token: str
    token_type: str
    role: UserRole
    identifier: str


class TokenData(BaseModel):
    identifier: Optional[str] = None


class Me(BaseModel):
    identifier: str
    display_name: str
    role: UserRole
    is_admin: bool
    is_approver: bool
    is_user: bool


class UserList(BaseModel):
    items: List[UserOut]
