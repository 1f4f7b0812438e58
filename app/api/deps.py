# app/api/deps.py

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import get_session
from app.core.exceptions import WorkflowError
from app.services.notification_service import Notifier
from app.services.pdf_service import DocumentRenderer
from app.services.push_service import PushDispatcher
from app.services.whatsapp_client import EvolutionClient
from app.services.whatsapp_dispatcher import WhatsAppDispatcher


# ------------------------------------------------------------
# DB Session
# ------------------------------------------------------------
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    async for session in get_session():
        yield session


# ------------------------------------------------------------
# Outbound channels (overridden in tests)
# ------------------------------------------------------------
@lru_cache
def get_push_dispatcher() -> PushDispatcher:
    return PushDispatcher()


@lru_cache
def get_evolution_client() -> EvolutionClient:
    return EvolutionClient()


@lru_cache
def get_whatsapp_dispatcher() -> WhatsAppDispatcher:
    return WhatsAppDispatcher(gateway=get_evolution_client())


@lru_cache
def get_document_renderer() -> DocumentRenderer:
    return DocumentRenderer()


def get_notifier() -> Notifier:
    return Notifier(push=get_push_dispatcher())


# ------------------------------------------------------------
# Error translation
# ------------------------------------------------------------
def http_error(e: WorkflowError) -> HTTPException:
    """Workflow errors keep their status; the message becomes the detail."""
    return HTTPException(status_code=e.status_code, detail=e.message)
