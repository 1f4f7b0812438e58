# app/services/staff_approval_service.py

from typing import List, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.constants import approving_department_for
from app.core.exceptions import ConflictError, AuthorizationError, ValidationError
from app.core.security import hash_password
from app.core.timeutils import utcnow
from app.models.enums import NotificationType, StaffApprovalStatus
from app.models.staff_approval import StaffApprovalRequest
from app.models.user import User, UserRole
from app.schemas.staff_approval import (
    StaffApprovalDecision,
    StaffApprovalDecisionResponse,
    StaffSignupRequest,
)
from app.services.notification_service import Notifier, collect_errors
from app.services.request_store import (
    compare_and_set_status,
    find_hod,
    get_or_404,
    get_user,
    get_user_by_email,
)
from app.services.state_machine import STAFF_APPROVAL_TABLE, SideEffect

LABEL = "Staff approval request"


# ============================================================================
# SIGNUP
# ============================================================================
async def create_request(
    session: AsyncSession,
    notifier: Notifier,
    data: StaffSignupRequest,
) -> Tuple[StaffApprovalRequest, List[str]]:
    email = data.email.lower()

    if await get_user_by_email(session, email):
        raise ConflictError("An account with this email already exists")

    pending = await session.execute(
        select(StaffApprovalRequest).where(
            StaffApprovalRequest.email == email,
            StaffApprovalRequest.status == StaffApprovalStatus.Pending.value,
        )
    )
    if pending.scalars().first():
        raise ConflictError("A pending approval request already exists for this email")

    # ---- resolve the one approver, once ----
    approving_dept = approving_department_for(data.department, data.year)
    hod = await find_hod(session, approving_dept)
    if not hod:
        raise ValidationError(f"No HOD found for department {approving_dept}")

    request = StaffApprovalRequest(
        email=email,
        name=data.name.strip(),
        password_hash=hash_password(data.password),
        department=data.department,
        year=data.year,
        section=data.section,
        phone_number=data.phone_number,
        approver_id=hod.id,
        approver_name=hod.name,
        approver_email=hod.email,
    )
    session.add(request)
    await session.commit()
    await session.refresh(request)

    logger.info(f"Staff signup {email} routed to HOD {hod.email} ({approving_dept})")

    outcomes = [
        await notifier.notify(
            hod.email,
            NotificationType.StaffAccountApproval.value,
            "👤 New Staff Account Request",
            f"{request.name} ({request.department} {request.year}-{request.section}) is waiting for your approval.",
            {"request_id": str(request.id), "url": "/staff-approvals"},
        ),
        await notifier.notify(
            email,
            NotificationType.StaffAccountStatus.value,
            "📝 Registration Submitted",
            f"Your staff account request has been sent to {hod.name} for approval.",
            {"request_id": str(request.id)},
        ),
    ]
    return request, collect_errors(outcomes)


# ============================================================================
# READS
# ============================================================================
async def list_pending(session: AsyncSession, approver_id: UUID) -> List[StaffApprovalRequest]:
    result = await session.execute(
        select(StaffApprovalRequest)
        .where(
            StaffApprovalRequest.approver_id == approver_id,
            StaffApprovalRequest.status == StaffApprovalStatus.Pending.value,
        )
        .order_by(StaffApprovalRequest.created_at)
    )
    return list(result.scalars().all())


async def get_request(session: AsyncSession, request_id: UUID) -> StaffApprovalRequest:
    return await get_or_404(session, StaffApprovalRequest, request_id, LABEL)


# ============================================================================
# DECIDE
# ============================================================================
async def decide(
    session: AsyncSession,
    notifier: Notifier,
    request_id: UUID,
    decision: StaffApprovalDecision,
) -> StaffApprovalDecisionResponse:
    request = await get_or_404(session, StaffApprovalRequest, request_id, LABEL)

    if request.approver_id != decision.approver_id:
        raise AuthorizationError("Only the assigned approver can decide this request")

    outcome = STAFF_APPROVAL_TABLE.apply(
        request.status, decision.action, {"approver_id": decision.approver_id}
    )

    approver: Optional[User] = await get_user(session, decision.approver_id)
    approver_name = approver.name if approver else (request.approver_name or "HOD")

    values = {"approved_by": decision.approver_id, "decided_at": utcnow()}
    created_user = None

    if outcome.has(SideEffect.CreateStaffAccount):
        created_user = User(
            name=request.name,
            email=request.email,
            password_hash=request.password_hash,
            role=UserRole.Staff.value,
            department=request.department,
            year=request.year,
            section=request.section,
            phone_number=request.phone_number,
        )
        session.add(created_user)
        values["created_user_id"] = created_user.id
    else:
        values["rejection_reason"] = (decision.rejection_reason or "").strip() or "No reason provided"

    # account insert and status flip land in one commit
    request_email, request_status = request.email, request.status
    try:
        updated = await compare_and_set_status(
            session,
            StaffApprovalRequest,
            request.id,
            outcome.expected,
            outcome.next_state,
            LABEL,
            **values,
        )
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.warning(f"Duplicate email on staff approval {request_id}: {request_email}")
        raise ConflictError("Email already exists", current_status=request_status)
    except ConflictError:
        await session.rollback()
        raise

    # ---- effects, after the commit ----
    if outcome.next_state == StaffApprovalStatus.Approved.value:
        note = await notifier.notify(
            updated.email,
            NotificationType.StaffAccountApproved.value,
            "✅ Account Approved!",
            f"Your staff account has been approved by {approver_name}. You can now log in with your credentials.",
            {"request_id": str(updated.id)},
        )
        message = f"Staff account for {updated.name} has been approved"
    else:
        note = await notifier.notify(
            updated.email,
            NotificationType.StaffAccountRejected.value,
            "❌ Account Request Rejected",
            f"Your staff account request has been rejected by {approver_name}. Reason: {updated.rejection_reason}",
            {"request_id": str(updated.id)},
        )
        message = f"Staff account request for {updated.name} has been rejected"

    if note.error:
        logger.error(f"Decision on {updated.id} committed but requester notification failed: {note.error}")

    return StaffApprovalDecisionResponse(
        status=updated.status,
        message=message,
        created_user_id=created_user.id if created_user else None,
    )
