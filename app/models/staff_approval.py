# app/models/staff_approval.py

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import DateTime, String, Text, Uuid
from datetime import datetime
import uuid
from typing import Optional

from app.core.timeutils import utcnow
from app.models.enums import StaffApprovalStatus


class StaffApprovalRequest(SQLModel, table=True):
    """
    A staff signup waiting for its HOD. The approver is resolved once, when the
    request is created, and never changes afterwards.
    """
    __tablename__ = "staff_approval_requests"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True)
    )

    email: str = Field(sa_column=Column(String, nullable=False, index=True))
    name: str = Field(sa_column=Column(String, nullable=False))

    # Already hashed; copied verbatim onto the User created on approval
    password_hash: str = Field(sa_column=Column(String, nullable=False))

    department: str = Field(sa_column=Column(String(32), nullable=False))
    year: str = Field(sa_column=Column(String(8), nullable=False))
    section: str = Field(sa_column=Column(String(8), nullable=False))
    phone_number: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))

    status: str = Field(
        default=StaffApprovalStatus.Pending.value,
        sa_column=Column(String(16), nullable=False, index=True)
    )

    approver_id: uuid.UUID = Field(sa_column=Column(Uuid, nullable=False, index=True))
    approver_name: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))
    approver_email: Optional[str] = Field(default=None, sa_column=Column(String, nullable=True))

    approved_by: Optional[uuid.UUID] = Field(default=None, sa_column=Column(Uuid, nullable=True))
    created_user_id: Optional[uuid.UUID] = Field(default=None, sa_column=Column(Uuid, nullable=True))
    rejection_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    decided_at: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True)
    )
