# app/api/endpoints/marksheets.py

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import (
    get_db_session,
    get_document_renderer,
    get_notifier,
    get_whatsapp_dispatcher,
    http_error,
)
from app.core.exceptions import WorkflowError
from app.core.rate_limiter import BULK_SEND_LIMIT, limiter
from app.models.enums import MarksheetStatus
from app.schemas.marksheet import (
    BulkSendRequest,
    BulkSendResponse,
    MarksheetAction,
    MarksheetCreate,
    MarksheetRead,
    MarksheetTransitionResponse,
)
from app.services import marksheet_service
from app.services.notification_service import Notifier
from app.services.pdf_service import DocumentRenderer
from app.services.whatsapp_dispatcher import WhatsAppDispatcher

router = APIRouter(
    prefix="/api/marksheets",
    tags=["Marksheets"]
)


@router.post("", response_model=MarksheetRead, status_code=status.HTTP_201_CREATED)
async def create_marksheet(
    data: MarksheetCreate,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        marksheet = await marksheet_service.create_marksheet(session, data)
    except WorkflowError as e:
        raise http_error(e)
    return marksheet_service.to_read(marksheet)


@router.get("", response_model=List[MarksheetRead])
async def list_marksheets(
    department: Optional[str] = Query(None),
    status: Optional[MarksheetStatus] = Query(None),
    staff_id: Optional[UUID] = Query(None),
    student_id: Optional[UUID] = Query(None),
    session: AsyncSession = Depends(get_db_session),
):
    return await marksheet_service.list_marksheets(
        session,
        department=department,
        status=status.value if status else None,
        staff_id=staff_id,
        student_id=student_id,
    )


# ------------------------------------------------------------
# BULK SEND (declared before /{id} routes)
# ------------------------------------------------------------
@router.post("/bulk-send", response_model=BulkSendResponse)
@limiter.limit(BULK_SEND_LIMIT)
async def bulk_send_marksheets(
    request: Request,
    data: BulkSendRequest,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: WhatsAppDispatcher = Depends(get_whatsapp_dispatcher),
    renderer: DocumentRenderer = Depends(get_document_renderer),
):
    return await marksheet_service.bulk_send(session, notifier, dispatcher, renderer, data)


@router.get("/{marksheet_id}", response_model=MarksheetRead)
async def get_marksheet(marksheet_id: UUID, session: AsyncSession = Depends(get_db_session)):
    try:
        marksheet = await marksheet_service.get_marksheet(session, marksheet_id)
    except WorkflowError as e:
        raise http_error(e)
    return marksheet_service.to_read(marksheet)


@router.patch("/{marksheet_id}", response_model=MarksheetTransitionResponse)
async def transition_marksheet(
    marksheet_id: UUID,
    data: MarksheetAction,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: WhatsAppDispatcher = Depends(get_whatsapp_dispatcher),
    renderer: DocumentRenderer = Depends(get_document_renderer),
):
    try:
        return await marksheet_service.transition_marksheet(
            session, notifier, dispatcher, renderer, marksheet_id, data
        )
    except WorkflowError as e:
        raise http_error(e)
