from sqlalchemy import Column, Integer, String, Boolean, DateTime
from avr_tracker.models.base import Base
from datetime import datetime


class PhoneVerification(Base):
    """An OTP sent to a phone number. Only the hash of the code is kept."""
    __tablename__ = "phone_verifications"

    id = Column(String(64), primary_key=True)
    phone_number = Column(String(20), index=True, nullable=False)
    code_hash = Column(String, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    consumed = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
