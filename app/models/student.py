from sqlmodel import SQLModel, Field, Column
from sqlalchemy import DateTime, String, Uuid
from uuid import uuid4
from datetime import datetime
from typing import Optional
import uuid

from app.core.timeutils import utcnow


class Student(SQLModel, table=True):
    __tablename__ = "students"

    id: uuid.UUID = Field(
        default_factory=uuid4,
        sa_column=Column(Uuid, primary_key=True)
    )

    name: str = Field(
        sa_column=Column(String, nullable=False)
    )

    reg_number: str = Field(
        sa_column=Column(String, nullable=False, unique=True, index=True)
    )

    year: str = Field(sa_column=Column(String(8), nullable=False))
    section: str = Field(sa_column=Column(String(8), nullable=False))
    department: str = Field(sa_column=Column(String(32), nullable=False, index=True))

    # Used as the student's notification recipient key
    email: Optional[str] = Field(
        default=None, sa_column=Column(String, nullable=True, index=True)
    )

    parent_phone_number: Optional[str] = Field(
        default=None, sa_column=Column(String(20), nullable=True)
    )
    student_phone_number: Optional[str] = Field(
        default=None, sa_column=Column(String(20), nullable=True)
    )

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
