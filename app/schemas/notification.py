from pydantic import BaseModel
from typing import Any, Dict, Optional
from uuid import UUID
from datetime import datetime


class NotificationRead(BaseModel):
    id: UUID
    recipient_email: str
    type: str
    title: str
    body: str
    data: Dict[str, Any]
    read: bool
    read_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class UnreadCount(BaseModel):
    count: int


class MarkReadResponse(BaseModel):
    updated: int
