from pydantic import BaseModel, Field, field_validator
from datetime import date, datetime, timezone
from typing import Dict, List, Optional
import enum

# startDate/endDate/expense dates are stored as strings in this format
DATE_FORMAT = "%d/%m/%Y"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps without a zone were written as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ProjectStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Project(BaseModel):
    """A projects/{id} document."""
    id: Optional[str] = None
    name: str
    description: str = ""
    status: ProjectStatus
    start_date: Optional[str] = Field(None, alias="startDate")
    end_date: Optional[str] = Field(None, alias="endDate")
    team_members: List[str] = Field(default_factory=list, alias="teamMembers")
    manager_id: str = Field(alias="managerId")
    temp_approver_id: Optional[str] = Field(None, alias="tempApproverID")
    departments: Dict[str, float] = Field(default_factory=dict)
    created_at: datetime = Field(alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    class Config:
        populate_by_name = True

    @field_validator("created_at", "updated_at")
    @classmethod
    def _zoned(cls, value):
        return as_utc(value)

    @property
    def budget(self) -> float:
        """Nominal budget: the sum of the department allocations."""
        return sum(self.departments.values())

    def to_document(self) -> dict:
        data = self.model_dump(by_alias=True, exclude={"id"})
        data["budget"] = self.budget
        return data


class DepartmentIn(BaseModel):
    name: str
    amount: float


class ProjectCreate(BaseModel):
    name: str
    description: str
    manager_id: Optional[str] = None
    team_members: List[str] = []
    departments: List[DepartmentIn] = []
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class ProjectUpdate(BaseModel):
    """All fields optional; only the ones sent are written."""
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[ProjectStatus] = None
    manager_id: Optional[str] = None
    team_members: Optional[List[str]] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class DepartmentsUpdate(BaseModel):
    departments: List[DepartmentIn]


class ProjectSnapshot(BaseModel):
    """One delivery of the live project subscription, newest project first."""
    projects: List[Project] = []
    skipped: int = 0


class DepartmentSummary(BaseModel):
    department: str
    allocated: float
    approved: float
    remaining: float
    spent_fraction: float


class TempApproverStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class TempApprover(BaseModel):
    """projects/{id}/tempApprover/{approverId}"""
    approver_id: str = Field(alias="approverId")
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    status: TempApproverStatus = TempApproverStatus.PENDING
    approved_expense: List[str] = Field(default_factory=list, alias="approvedExpense")
    rejection_reason: Optional[str] = Field(None, alias="rejectionReason")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")

    class Config:
        populate_by_name = True

    @field_validator("start_date", "end_date", "updated_at")
    @classmethod
    def _zoned(cls, value):
        return as_utc(value)

    def has_expired(self, now: datetime) -> bool:
        return now > self.end_date


class TempApproverAssign(BaseModel):
    approver_id: str
    start_date: datetime
    end_date: datetime


class TempApproverReject(BaseModel):
    reason: str = ""
