# app/models/user.py

from sqlmodel import SQLModel, Field, Column
from sqlalchemy import DateTime, String, Text, Uuid
from datetime import datetime
import uuid
from enum import Enum
from typing import Optional

from app.core.timeutils import utcnow


class UserRole(str, Enum):
    Admin = "admin"
    HOD = "hod"
    Staff = "staff"   # class advisor for one department/year/section


class User(SQLModel, table=True):
    __tablename__ = "users"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        sa_column=Column(Uuid, primary_key=True)
    )

    name: str = Field(nullable=False)
    email: str = Field(nullable=False, index=True, unique=True)
    password_hash: str = Field(nullable=False)

    # stored as plain text so the dialect never maps enum names
    role: str = Field(
        sa_column=Column(String(16), nullable=False, index=True)
    )

    department: Optional[str] = Field(
        default=None,
        sa_column=Column(String(32), nullable=True, index=True)
    )
    year: Optional[str] = Field(default=None, sa_column=Column(String(8), nullable=True))
    section: Optional[str] = Field(default=None, sa_column=Column(String(8), nullable=True))
    phone_number: Optional[str] = Field(default=None, sa_column=Column(String(20), nullable=True))

    # Rendered on approval letters
    e_signature: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
