from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime
from typing import List, Optional
import enum

from avr_tracker.schemas.project import as_utc


class PaymentMode(str, enum.Enum):
    CASH = "By cash"
    UPI = "By UPI"
    CHECK = "By check"


class ExpenseStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class Expense(BaseModel):
    """A projects/{projectId}/expenses/{id} document."""
    id: Optional[str] = None
    project_id: str = Field(alias="projectId")
    date: str
    amount: float
    department: str
    categories: List[str] = Field(default_factory=list)
    description: str = ""
    mode_of_payment: PaymentMode = Field(alias="modeOfPayment")
    attachment_url: Optional[str] = Field(None, alias="attachmentURL")
    attachment_name: Optional[str] = Field(None, alias="attachmentName")
    submitted_by: str = Field(alias="submittedBy")
    status: ExpenseStatus
    is_anonymous: Optional[bool] = Field(None, alias="isAnonymous")
    original_department: Optional[str] = Field(None, alias="originalDepartment")
    approved_by: Optional[str] = Field(None, alias="approvedBy")
    approved_at: Optional[datetime] = Field(None, alias="approvedAt")
    remark: Optional[str] = None
    created_at: datetime = Field(alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    class Config:
        populate_by_name = True

    @field_validator("approved_at", "created_at", "updated_at")
    @classmethod
    def _zoned(cls, value):
        return as_utc(value)


class ExpenseCreate(BaseModel):
    """Form fields of a new expense. Checked by ExpenseService, not here."""
    date: date
    amount: float
    department: str
    categories: List[str] = []
    description: str = ""
    mode_of_payment: PaymentMode = PaymentMode.CASH
    attachment_url: Optional[str] = None
    attachment_name: Optional[str] = None


class ExpenseDecision(BaseModel):
    remark: Optional[str] = None
