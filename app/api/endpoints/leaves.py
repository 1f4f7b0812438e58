# app/api/endpoints/leaves.py

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
from app.core.rate_limiter import REQUEST_CREATE_LIMIT, limiter
from app.models.enums import LeaveStatus, LeaveType
from app.schemas.leave import (
    LeaveAction,
    LeaveCreate,
    LeaveDeleteResponse,
    LeaveRead,
    LeaveTransitionResponse,
)
from app.services import leave_service
from app.services.notification_service import Notifier
from app.services.pdf_service import DocumentRenderer
from app.services.whatsapp_dispatcher import WhatsAppDispatcher

router = APIRouter(
    prefix="/api/leaves",
    tags=["Leave & Late Arrival"]
)


@router.post("", response_model=LeaveRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(REQUEST_CREATE_LIMIT)
async def create_leave(
    request: Request,
    data: LeaveCreate,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        leave, _ = await leave_service.create_leave(session, notifier, data)
    except WorkflowError as e:
        raise http_error(e)
    return leave


@router.get("", response_model=List[LeaveRead])
async def list_leaves(
    student_id: Optional[UUID] = Query(None),
    department: Optional[str] = Query(None),
    type: Optional[LeaveType] = Query(None),
    status: Optional[LeaveStatus] = Query(None),
    session: AsyncSession = Depends(get_db_session),
):
    return await leave_service.list_leaves(
        session,
        student_id=student_id,
        department=department,
        type=type.value if type else None,
        status=status.value if status else None,
    )


@router.get("/{leave_id}", response_model=LeaveRead)
async def get_leave(leave_id: UUID, session: AsyncSession = Depends(get_db_session)):
    try:
        return await leave_service.get_leave(session, leave_id)
    except WorkflowError as e:
        raise http_error(e)


# ------------------------------------------------------------
# approve / reject / acknowledge / confirm-arrival
# ------------------------------------------------------------
@router.patch("/{leave_id}", response_model=LeaveTransitionResponse)
async def transition_leave(
    leave_id: UUID,
    data: LeaveAction,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
    dispatcher: WhatsAppDispatcher = Depends(get_whatsapp_dispatcher),
    renderer: DocumentRenderer = Depends(get_document_renderer),
):
    try:
        return await leave_service.transition_leave(session, notifier, dispatcher, renderer, leave_id, data)
    except WorkflowError as e:
        raise http_error(e)


@router.delete("/{leave_id}", response_model=LeaveDeleteResponse)
async def delete_leave(
    leave_id: UUID,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        await leave_service.delete_leave(session, notifier, leave_id)
    except WorkflowError as e:
        raise http_error(e)
    return LeaveDeleteResponse(message="Request deleted successfully", id=leave_id)
