# app/api/endpoints/staff_approval.py

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_db_session, get_notifier, http_error
from app.core.exceptions import WorkflowError
from app.core.rate_limiter import STAFF_SIGNUP_LIMIT, limiter
from app.schemas.staff_approval import (
    StaffApprovalDecision,
    StaffApprovalDecisionResponse,
    StaffApprovalRead,
    StaffSignupRequest,
)
from app.services import staff_approval_service
from app.services.notification_service import Notifier

router = APIRouter(
    prefix="/api/staff-approval",
    tags=["Staff Approval"]
)


# ------------------------------------------------------------
# STAFF SIGNUP (PUBLIC)
# ------------------------------------------------------------
@router.post("/requests", response_model=StaffApprovalRead, status_code=status.HTTP_201_CREATED)
@limiter.limit(STAFF_SIGNUP_LIMIT)
async def create_staff_request(
    request: Request,
    data: StaffSignupRequest,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        approval, _ = await staff_approval_service.create_request(session, notifier, data)
    except WorkflowError as e:
        raise http_error(e)
    return approval


# ------------------------------------------------------------
# HOD QUEUE
# ------------------------------------------------------------
@router.get("/pending", response_model=List[StaffApprovalRead])
async def list_pending_requests(
    approver_id: UUID = Query(..., description="HOD user id"),
    session: AsyncSession = Depends(get_db_session),
):
    return await staff_approval_service.list_pending(session, approver_id)


@router.get("/requests/{request_id}", response_model=StaffApprovalRead)
async def get_staff_request(
    request_id: UUID,
    session: AsyncSession = Depends(get_db_session),
):
    try:
        return await staff_approval_service.get_request(session, request_id)
    except WorkflowError as e:
        raise http_error(e)


# ------------------------------------------------------------
# APPROVE / REJECT
# ------------------------------------------------------------
@router.post("/requests/{request_id}/decide", response_model=StaffApprovalDecisionResponse)
async def decide_staff_request(
    request_id: UUID,
    data: StaffApprovalDecision,
    session: AsyncSession = Depends(get_db_session),
    notifier: Notifier = Depends(get_notifier),
):
    try:
        return await staff_approval_service.decide(session, notifier, request_id, data)
    except WorkflowError as e:
        raise http_error(e)
