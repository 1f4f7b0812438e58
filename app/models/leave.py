# app/models/leave.py

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON, DateTime, String, Text, Uuid
from datetime import datetime
from typing import Any, Dict, Optional
import uuid

from app.core.timeutils import utcnow
from app.models.enums import LeaveStatus


class LeaveRequest(SQLModel, table=True):
    __tablename__ = "leave_requests"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True)
    )

    # "leave" or "late"
    type: str = Field(sa_column=Column(String(8), nullable=False, index=True))

    student_id: uuid.UUID = Field(sa_column=Column(Uuid, nullable=False, index=True))

    # Frozen copy of the student at creation time:
    # {"name", "reg_number", "year", "section", "department", "parent_phone_number"}
    student_snapshot: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False)
    )

    # Denormalized for the HOD/staff list filters
    department: str = Field(sa_column=Column(String(32), nullable=False, index=True))

    reason: str = Field(sa_column=Column(Text, nullable=False))

    status: str = Field(
        default=LeaveStatus.Requested.value,
        sa_column=Column(String(40), nullable=False, index=True)
    )

    # leave
    start_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    end_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    # late
    expected_arrival_time: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    staff_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(Uuid, nullable=True))
    staff_name: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    recorded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    arrival_confirmed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True), nullable=True)
    )

    hod_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(Uuid, nullable=True))
    hod_name: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    hod_signature: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    approved_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    rejection_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
