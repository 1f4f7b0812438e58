# app/api/endpoints/push.py

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, get_push_dispatcher
from app.core.config import settings
from app.schemas.notification import MarkReadResponse
from app.schemas.push import (
    PublicKeyResponse,
    PushDeactivateRequest,
    PushSubscribeRequest,
    PushSubscribeResponse,
)
from app.services.push_service import PushDispatcher

router = APIRouter(
    prefix="/api/push",
    tags=["Push"]
)


@router.get("/public-key", response_model=PublicKeyResponse)
async def public_key():
    return PublicKeyResponse(
        public_key=settings.VAPID_PUBLIC_KEY,
        configured=bool(settings.VAPID_PUBLIC_KEY and settings.VAPID_PRIVATE_KEY),
    )


@router.post("/subscribe", response_model=PushSubscribeResponse)
async def subscribe(
    data: PushSubscribeRequest,
    session: AsyncSession = Depends(get_db_session),
    push: PushDispatcher = Depends(get_push_dispatcher),
):
    sub, reassigned = await push.subscribe(
        session,
        data.recipient_email,
        data.subscription.endpoint,
        data.subscription.keys.model_dump(),
    )
    return PushSubscribeResponse(endpoint=sub.endpoint, active=sub.active, reassigned=reassigned)


@router.post("/deactivate", response_model=MarkReadResponse)
async def deactivate(
    data: PushDeactivateRequest,
    session: AsyncSession = Depends(get_db_session),
    push: PushDispatcher = Depends(get_push_dispatcher),
):
    updated = await push.deactivate(session, data.recipient_email, data.endpoint)
    return MarkReadResponse(updated=updated)
