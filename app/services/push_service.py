# app/services/push_service.py

import asyncio
import json
from typing import Dict, Optional, Protocol, Tuple

from loguru import logger
from pywebpush import WebPushException, webpush
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import settings
from app.core.exceptions import DependencyError
from app.core.timeutils import utcnow
from app.models.push_subscription import PushSubscription
from app.schemas.dispatch import PushReport

# Push services answer these for subscriptions that will never work again
GONE_STATUSES = {404, 410}


class SubscriptionGone(DependencyError):
    pass


class PushTransport(Protocol):
    configured: bool

    async def send(self, subscription_info: dict, payload: str) -> None:
        ...


# ----------------------------------------------------------------
# VAPID TRANSPORT
# ----------------------------------------------------------------
class WebPushTransport:
    def __init__(
        self,
        private_key: Optional[str] = None,
        subject: Optional[str] = None,
        ttl: int = 24 * 60 * 60,
    ):
        self.private_key = private_key if private_key is not None else settings.VAPID_PRIVATE_KEY
        self.subject = subject or settings.VAPID_SUBJECT
        self.ttl = ttl

    @property
    def configured(self) -> bool:
        return bool(self.private_key)

    def _send_sync(self, subscription_info: dict, payload: str) -> None:
        webpush(
            subscription_info=subscription_info,
            data=payload,
            vapid_private_key=self.private_key,
            vapid_claims={"sub": self.subject},
            ttl=self.ttl,
        )

    async def send(self, subscription_info: dict, payload: str) -> None:
        # pywebpush is blocking (requests underneath)
        try:
            await asyncio.to_thread(self._send_sync, subscription_info, payload)
        except WebPushException as e:
            status = e.response.status_code if e.response is not None else None
            if status in GONE_STATUSES:
                raise SubscriptionGone(str(e), service="webpush", status=status)
            raise DependencyError(str(e), service="webpush", status=status)


# ----------------------------------------------------------------
# DISPATCHER
# ----------------------------------------------------------------
class PushDispatcher:
    def __init__(self, transport: Optional[PushTransport] = None):
        self.transport = transport or WebPushTransport()

    async def _send_one(self, sub: PushSubscription, body: str) -> Tuple[PushSubscription, Optional[Exception]]:
        try:
            await self.transport.send(sub.subscription_info(), body)
            return sub, None
        except Exception as e:
            # per-endpoint failures never abort the batch
            return sub, e

    async def deliver(self, session: AsyncSession, recipient_email: str, payload: Dict) -> PushReport:
        if not self.transport.configured:
            logger.debug("Push transport not configured; skipping browser push")
            return PushReport()

        result = await session.execute(
            select(PushSubscription).where(
                PushSubscription.recipient_email == recipient_email.lower(),
                PushSubscription.active == True,  # noqa: E712
            )
        )
        subs = list(result.scalars().all())
        if not subs:
            return PushReport()

        body = json.dumps(payload, default=str)
        outcomes = await asyncio.gather(*(self._send_one(sub, body) for sub in subs))

        report = PushReport(attempted=len(subs))
        gone = []
        for sub, error in outcomes:
            if error is None:
                report.delivered += 1
                continue
            report.failed_endpoints.append(sub.endpoint)
            logger.warning(f"Push to {sub.endpoint[:60]}... failed: {error}")
            if isinstance(error, SubscriptionGone):
                gone.append(sub.id)

        if gone:
            await session.execute(
                update(PushSubscription)
                .where(PushSubscription.id.in_(gone))
                .values(active=False, updated_at=utcnow())
            )
            await session.commit()
            logger.info(f"Deactivated {len(gone)} expired push subscription(s) for {recipient_email}")

        logger.info(f"Push to {recipient_email}: {report.delivered}/{report.attempted} delivered")
        return report

    # ------------------------------------------------------------
    # SUBSCRIPTION LIFECYCLE
    # ------------------------------------------------------------
    async def subscribe(
        self,
        session: AsyncSession,
        recipient_email: str,
        endpoint: str,
        keys: Dict[str, str],
    ) -> Tuple[PushSubscription, bool]:
        """Upsert by endpoint. Returns (subscription, reassigned_from_other_recipient)."""
        recipient_email = recipient_email.lower()
        result = await session.execute(
            select(PushSubscription).where(PushSubscription.endpoint == endpoint)
        )
        sub = result.scalar_one_or_none()
        reassigned = False

        if sub:
            reassigned = sub.recipient_email != recipient_email
            sub.recipient_email = recipient_email
            sub.keys = dict(keys)
            sub.active = True
            sub.updated_at = utcnow()
        else:
            sub = PushSubscription(endpoint=endpoint, recipient_email=recipient_email, keys=dict(keys))

        session.add(sub)
        await session.commit()
        await session.refresh(sub)
        return sub, reassigned

    async def deactivate(
        self,
        session: AsyncSession,
        recipient_email: str,
        endpoint: Optional[str] = None,
    ) -> int:
        stmt = update(PushSubscription).where(
            PushSubscription.recipient_email == recipient_email.lower(),
            PushSubscription.active == True,  # noqa: E712
        )
        if endpoint:
            stmt = stmt.where(PushSubscription.endpoint == endpoint)

        result = await session.execute(stmt.values(active=False, updated_at=utcnow()))
        await session.commit()
        return result.rowcount or 0
