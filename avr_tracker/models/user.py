from sqlalchemy import Column, Integer, String, Boolean, DateTime
from avr_tracker.models.base import Base
from datetime import datetime


class AdminAccount(Base):
    """Email/password account used by the admin sign-in."""
    __tablename__ = "admin_accounts"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    full_name = Column(String, nullable=False, default="Admin")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
