from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import List, Optional

from avr_tracker.schemas.project import as_utc
from avr_tracker.schemas.user import UserRole


class ExpenseChat(BaseModel):
    """projects/{projectId}/expenses/{expenseId}/expenseChats/{id}"""
    id: Optional[str] = None
    text_message: str = Field(alias="textMessage")
    media_url: List[str] = Field(default_factory=list, alias="mediaURL")
    time_stamp: datetime = Field(alias="timeStamp")
    mention: List[str] = Field(default_factory=list)
    sender_id: str = Field("", alias="senderId")
    sender_role: UserRole = Field(alias="senderRole")

    class Config:
        populate_by_name = True

    @field_validator("time_stamp")
    @classmethod
    def _zoned(cls, value):
        return as_utc(value)


class ChatMessageIn(BaseModel):
    text_message: str
    mention: List[str] = []
