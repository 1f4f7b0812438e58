# app/services/notification_service.py

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import select

from app.core.constants import PUSH_BADGE, PUSH_ICON, PUSH_TAG
from app.core.database import AsyncSessionLocal
from app.core.exceptions import NotFoundError
from app.core.timeutils import utcnow
from app.models.notification import Notification
from app.schemas.dispatch import PushReport
from app.services.push_service import PushDispatcher


# ------------------------------------------------------------
# IN-APP STORE
# ------------------------------------------------------------
class NotificationSink:
    """Append-only per-recipient notification store."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(
        self,
        recipient_email: str,
        type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        note = Notification(
            recipient_email=recipient_email.lower(),
            type=type,
            title=title,
            body=body,
            data=data or {},
        )
        self.session.add(note)
        await self.session.commit()
        await self.session.refresh(note)
        return note

    async def count_unread(self, recipient_email: str) -> int:
        result = await self.session.execute(
            select(func.count(Notification.id)).where(
                Notification.recipient_email == recipient_email.lower(),
                Notification.read == False,  # noqa: E712
            )
        )
        return result.scalar_one()

    async def list_for(
        self,
        recipient_email: str,
        limit: int = 50,
        unread_only: bool = False,
    ) -> List[Notification]:
        query = select(Notification).where(Notification.recipient_email == recipient_email.lower())
        if unread_only:
            query = query.where(Notification.read == False)  # noqa: E712
        query = query.order_by(Notification.created_at.desc()).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def mark_read(self, notification_id: UUID) -> Notification:
        note = await self.session.get(Notification, notification_id)
        if not note:
            raise NotFoundError("Notification not found")

        # already read: leave read_at alone
        if not note.read:
            note.read = True
            note.read_at = utcnow()
            self.session.add(note)
            await self.session.commit()
            await self.session.refresh(note)
        return note

    async def mark_all_read(self, recipient_email: str) -> int:
        result = await self.session.execute(
            update(Notification)
            .where(
                Notification.recipient_email == recipient_email.lower(),
                Notification.read == False,  # noqa: E712
            )
            .values(read=True, read_at=utcnow())
        )
        await self.session.commit()
        return result.rowcount or 0


# ------------------------------------------------------------
# STORE + PUSH FOR ONE RECIPIENT
# ------------------------------------------------------------
@dataclass
class NotifyOutcome:
    recipient_email: str
    notification_id: Optional[UUID] = None
    push: Optional[PushReport] = None
    error: Optional[str] = None

    @property
    def stored(self) -> bool:
        return self.notification_id is not None


def build_push_payload(title: str, body: str, type: str, data: Optional[Dict[str, Any]] = None) -> dict:
    return {
        "title": title,
        "body": body,
        "icon": PUSH_ICON,
        "badge": PUSH_BADGE,
        "tag": PUSH_TAG,
        "data": {
            "type": type,
            **(data or {}),
            "timestamp": int(time.time() * 1000),
        },
    }


class Notifier:
    """
    Runs after the state commit, in its own session.
    A storage failure here is logged and handed back in the outcome; it never
    reaches the transition that triggered it.
    """

    def __init__(
        self,
        push: Optional[PushDispatcher] = None,
        session_factory: async_sessionmaker = AsyncSessionLocal,
    ):
        self.push = push or PushDispatcher()
        self.session_factory = session_factory

    async def notify(
        self,
        recipient_email: Optional[str],
        type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> NotifyOutcome:
        if not recipient_email:
            return NotifyOutcome(recipient_email="", error="No recipient email")

        outcome = NotifyOutcome(recipient_email=recipient_email)

        async with self.session_factory() as session:
            try:
                note = await NotificationSink(session).record(recipient_email, type, title, body, data)
                outcome.notification_id = note.id
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Failed to store notification for {recipient_email}: {e}")
                outcome.error = f"notification store failed: {e.__class__.__name__}"
                return outcome

            try:
                outcome.push = await self.push.deliver(
                    session, recipient_email, build_push_payload(title, body, type, data)
                )
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Push lookup failed for {recipient_email}: {e}")

        return outcome

    async def notify_many(
        self,
        recipient_emails: Iterable[str],
        type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> List[NotifyOutcome]:
        outcomes = []
        for email in dict.fromkeys(e for e in recipient_emails if e):
            outcomes.append(await self.notify(email, type, title, body, data))
        return outcomes


def collect_errors(outcomes: Iterable[NotifyOutcome]) -> List[str]:
    return [f"{o.recipient_email}: {o.error}" for o in outcomes if o.error]
