# app/models/marksheet.py

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import JSON, DateTime, String, Text, Uuid
from datetime import datetime
from typing import Any, Dict, List, Optional
import uuid

from app.core.timeutils import utcnow
from app.models.enums import MarksheetStatus


class Marksheet(SQLModel, table=True):
    __tablename__ = "marksheets"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True)
    )

    student_id: uuid.UUID = Field(sa_column=Column(Uuid, nullable=False, index=True))
    student_snapshot: Dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False)
    )
    department: str = Field(sa_column=Column(String(32), nullable=False, index=True))

    # Verifying staff; owner of the dispatch request
    staff_id: uuid.UUID = Field(sa_column=Column(Uuid, nullable=False, index=True))

    examination_name: str = Field(sa_column=Column(String, nullable=False))
    examination_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    semester: Optional[str] = Field(default=None, sa_column=Column(String(8), nullable=True))
    overall_result: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))

    # [{"code", "name", "grade", "result"}]
    subjects: List[Dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False)
    )

    status: str = Field(
        default=MarksheetStatus.VerifiedByStaff.value,
        sa_column=Column(String(32), nullable=False, index=True)
    )

    # --- dispatch request / HOD decision ---
    requested_by: Optional[uuid.UUID] = Field(default=None, sa_column=Column(Uuid, nullable=True))
    requested_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    hod_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(Uuid, nullable=True))
    hod_response: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    hod_remarks: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    responded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    # --- delivery ---
    dispatched_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))
    dispatch_method: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    whatsapp_status: Optional[str] = Field(default=None, sa_column=Column(String(16), nullable=True))
    whatsapp_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
