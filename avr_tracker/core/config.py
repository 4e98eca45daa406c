from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./avr_tracker.db"
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24

    # Admin logs in with email; this address is also the "see everything" sentinel
    ADMIN_EMAIL: str = "admin@avr.com"
    ADMIN_PASSWORD: Optional[str] = None
    ADMIN_NAME: str = "Admin"

    COUNTRY_CODE: str = "+91"

    PROJECTS_COLLECTION: str = "projects"
    USERS_COLLECTION: str = "users"
    EXPENSES_COLLECTION: str = "expenses"
    TEMP_APPROVER_COLLECTION: str = "tempApprover"
    EXPENSE_CHATS_COLLECTION: str = "expenseChats"

    OTP_LENGTH: int = 6
    OTP_TTL_SECONDS: int = 300
    OTP_MAX_ATTEMPTS: int = 5

    SESSION_FILE: str = ".avr_session.json"

    # Users whose role is not ADMIN/APPROVER/USER see nothing unless this is set
    UNKNOWN_ROLE_SEES_ALL: bool = False

    OTHER_EXPENSES_BUCKET: str = "Other Expenses"
    ANONYMOUS_DEPARTMENT: str = "Anonymous Department"
    FORECAST_GROWTH: float = 1.05

    class Config:
        env_file = ".env"


@lru_cache()
def get_settings():
    return Settings()
