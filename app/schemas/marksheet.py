# app/schemas/marksheet.py

from pydantic import BaseModel, Field, model_validator
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID
from datetime import datetime

from app.schemas.dispatch import DispatchResult


class SubjectGrade(BaseModel):
    code: str
    name: str
    grade: Optional[str] = None
    result: Optional[str] = None


# ------------------------------------------------------------
# CREATE (staff verified a marksheet)
# ------------------------------------------------------------
class MarksheetCreate(BaseModel):
    staff_id: UUID
    student_id: Optional[UUID] = None
    reg_number: Optional[str] = None

    examination_name: str
    examination_date: Optional[datetime] = None
    semester: Optional[str] = None
    overall_result: Optional[str] = None
    subjects: List[SubjectGrade] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_student(self):
        if not (self.student_id or self.reg_number):
            raise ValueError("student_id or reg_number is required")
        return self


# ------------------------------------------------------------
# TRANSITION
# ------------------------------------------------------------
MarksheetActionName = Literal[
    "request-dispatch",
    "approve",
    "reject",
    "reschedule",
    "send",
    "mark-dispatched",
]


class MarksheetAction(BaseModel):
    action: MarksheetActionName
    actor_id: UUID
    remarks: Optional[str] = None

    # send: optional overrides; the PDF link defaults to the documents route
    pdf_url: Optional[str] = None
    image_url: Optional[str] = None

    # mark-dispatched: how it went out ("manual", "post", ...)
    dispatch_method: Optional[str] = None


class BulkSendRequest(BaseModel):
    actor_id: UUID
    marksheet_ids: List[UUID]

    @model_validator(mode="after")
    def check_ids(self):
        if not self.marksheet_ids:
            raise ValueError("marksheet_ids must not be empty")
        return self


class BulkSendResponse(BaseModel):
    successful: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)


# ------------------------------------------------------------
# READ
# ------------------------------------------------------------
class MarksheetRead(BaseModel):
    id: UUID
    student_id: UUID
    student_snapshot: Dict[str, Any]
    department: str
    staff_id: UUID
    examination_name: str
    examination_date: Optional[datetime] = None
    semester: Optional[str] = None
    overall_result: Optional[str] = None
    subjects: List[Dict[str, Any]] = Field(default_factory=list)
    status: str
    requested_by: Optional[UUID] = None
    requested_at: Optional[datetime] = None
    hod_id: Optional[UUID] = None
    hod_response: Optional[str] = None
    hod_remarks: Optional[str] = None
    responded_at: Optional[datetime] = None
    dispatched_at: Optional[datetime] = None
    dispatch_method: Optional[str] = None
    whatsapp_status: Optional[str] = None
    whatsapp_error: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class MarksheetTransitionResponse(BaseModel):
    marksheet: MarksheetRead
    whatsapp_result: Optional[DispatchResult] = None
    notification_errors: List[str] = Field(default_factory=list)
