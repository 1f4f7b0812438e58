# app/api/endpoints/notifications.py

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import EmailStr
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, http_error
from app.core.exceptions import WorkflowError
from app.schemas.notification import MarkReadResponse, NotificationRead, UnreadCount
from app.services.notification_service import NotificationSink

router = APIRouter(
    prefix="/api/notifications",
    tags=["Notifications"]
)


@router.get("", response_model=List[NotificationRead])
async def list_notifications(
    recipient_email: EmailStr = Query(...),
    limit: int = Query(50, ge=1, le=200),
    unread_only: bool = Query(False),
    session: AsyncSession = Depends(get_db_session),
):
    return await NotificationSink(session).list_for(recipient_email, limit=limit, unread_only=unread_only)


@router.get("/unread-count", response_model=UnreadCount)
async def unread_count(
    recipient_email: EmailStr = Query(...),
    session: AsyncSession = Depends(get_db_session),
):
    return UnreadCount(count=await NotificationSink(session).count_unread(recipient_email))


# NOTE: must stay above /{notification_id}/read
@router.patch("/read-all", response_model=MarkReadResponse)
async def mark_all_read(
    recipient_email: EmailStr = Query(...),
    session: AsyncSession = Depends(get_db_session),
):
    updated = await NotificationSink(session).mark_all_read(recipient_email)
    return MarkReadResponse(updated=updated)


@router.patch("/{notification_id}/read", response_model=NotificationRead)
async def mark_read(
    notification_id: UUID,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await NotificationSink(session).mark_read(notification_id)
    except WorkflowError as e:
        raise http_error(e)
