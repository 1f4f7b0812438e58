# app/schemas/leave.py

from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID
from datetime import datetime

from app.models.enums import LeaveType
from app.schemas.dispatch import DispatchResult


# ------------------------------------------------------------
# CREATE (student submits leave or late arrival)
# ------------------------------------------------------------
class LeaveCreate(BaseModel):
    type: LeaveType
    reason: str

    # Student lookup: register number first, phone as fallback
    reg_number: Optional[str] = None
    phone_number: Optional[str] = None

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    expected_arrival_time: Optional[datetime] = None

    @model_validator(mode="after")
    def check_type_fields(self):
        if not (self.reg_number or self.phone_number):
            raise ValueError("reg_number or phone_number is required")

        if not self.reason or not self.reason.strip():
            raise ValueError("reason is required")

        if self.type == LeaveType.Leave:
            if not self.start_date or not self.end_date:
                raise ValueError("start_date and end_date are required for leave")
            if self.end_date < self.start_date:
                raise ValueError("end_date cannot be before start_date")
        else:
            if not self.expected_arrival_time:
                raise ValueError("expected_arrival_time is required for late arrival")
        return self


# ------------------------------------------------------------
# TRANSITION
# ------------------------------------------------------------
class LeaveAction(BaseModel):
    action: Literal["approve", "reject", "acknowledge", "confirm-arrival"]

    # HOD (approve/reject) or staff (acknowledge). Absent for confirm-arrival.
    actor_id: Optional[UUID] = None

    # Set by the student confirming their own arrival
    student_id: Optional[UUID] = None

    rejection_reason: Optional[str] = None


# ------------------------------------------------------------
# READ
# ------------------------------------------------------------
class LeaveRead(BaseModel):
    id: UUID
    type: str
    student_id: UUID
    student_snapshot: Dict[str, Any]
    department: str
    reason: str
    status: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    expected_arrival_time: Optional[datetime] = None
    staff_id: Optional[UUID] = None
    staff_name: Optional[str] = None
    recorded_at: Optional[datetime] = None
    arrival_confirmed_at: Optional[datetime] = None
    hod_id: Optional[UUID] = None
    hod_name: Optional[str] = None
    approved_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LeaveTransitionResponse(BaseModel):
    request: LeaveRead
    whatsapp_result: Optional[DispatchResult] = None
    notification_errors: List[str] = Field(default_factory=list)


class LeaveDeleteResponse(BaseModel):
    message: str
    id: UUID
