#app/models/notification.py

from sqlmodel import SQLModel, Field
from sqlalchemy import Boolean, Column, DateTime, JSON, String, Text, Uuid
from typing import Optional, Dict, Any
from uuid import UUID, uuid4
from datetime import datetime

from app.core.timeutils import utcnow


class Notification(SQLModel, table=True):
    """Append-only in-app notification. Only `read` ever changes."""
    __tablename__ = "notifications"

    id: UUID = Field(default_factory=uuid4, sa_column=Column(Uuid, primary_key=True))

    recipient_email: str = Field(sa_column=Column(String, nullable=False, index=True))
    type: str = Field(sa_column=Column(String(40), nullable=False))
    title: str = Field(sa_column=Column(String, nullable=False))
    body: str = Field(sa_column=Column(Text, nullable=False))

    # Stores {"leave_id": "...", "errors": [...]}
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    read: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False, index=True))
    read_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True), nullable=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )
