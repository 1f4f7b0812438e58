from sqlmodel import SQLModel, Field
from sqlalchemy import Boolean, Column, DateTime, JSON, String, Uuid
from typing import Dict
from uuid import UUID, uuid4
from datetime import datetime

from app.core.timeutils import utcnow


class PushSubscription(SQLModel, table=True):
    """
    One browser push endpoint. A browser can move between recipients over
    time, so logout flips `active` off instead of deleting the row.
    """
    __tablename__ = "push_subscriptions"

    id: UUID = Field(default_factory=uuid4, sa_column=Column(Uuid, primary_key=True))

    endpoint: str = Field(sa_column=Column(String, nullable=False, unique=True, index=True))
    recipient_email: str = Field(sa_column=Column(String, nullable=False, index=True))

    # {"p256dh": "...", "auth": "..."}
    keys: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))

    active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True, index=True))

    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )

    def subscription_info(self) -> dict:
        return {"endpoint": self.endpoint, "keys": dict(self.keys or {})}
