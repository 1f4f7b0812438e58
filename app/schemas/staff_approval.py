from pydantic import BaseModel, EmailStr, field_validator
from typing import Literal, Optional
from uuid import UUID
from datetime import datetime

from app.core.constants import VALID_DEPARTMENTS


# ---------------------------------------------------------
# STAFF SIGNUP (Public)
# ---------------------------------------------------------
class StaffSignupRequest(BaseModel):
    name: str
    email: EmailStr
    password: str
    department: str
    year: str
    section: str
    phone_number: Optional[str] = None

    @field_validator("department")
    def known_department(cls, v):
        v = v.strip().upper()
        if v not in VALID_DEPARTMENTS:
            raise ValueError(f"Invalid department '{v}'. Allowed: {sorted(VALID_DEPARTMENTS)}")
        return v

    @field_validator("year", "section")
    def strip_upper(cls, v):
        return v.strip().upper()

    @field_validator("password")
    def password_length(cls, v):
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


# ---------------------------------------------------------
# HOD DECISION
# ---------------------------------------------------------
class StaffApprovalDecision(BaseModel):
    approver_id: UUID
    action: Literal["approve", "reject"]
    rejection_reason: Optional[str] = None


class StaffApprovalDecisionResponse(BaseModel):
    status: str
    message: str
    created_user_id: Optional[UUID] = None


# ---------------------------------------------------------
# READ (never exposes the password hash)
# ---------------------------------------------------------
class StaffApprovalRead(BaseModel):
    id: UUID
    email: str
    name: str
    department: str
    year: str
    section: str
    phone_number: Optional[str] = None
    status: str
    approver_id: UUID
    approver_name: Optional[str] = None
    approved_by: Optional[UUID] = None
    created_user_id: Optional[UUID] = None
    rejection_reason: Optional[str] = None
    created_at: datetime
    decided_at: Optional[datetime] = None

    class Config:
        from_attributes = True
