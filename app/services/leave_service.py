# app/services/leave_service.py

from typing import List, Optional, Tuple
from uuid import UUID

from loguru import logger
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import settings
from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError
from app.core.timeutils import to_local, utcnow
from app.models.enums import DELETABLE_LEAVE_STATUSES, LeaveType, NotificationType
from app.models.leave import LeaveRequest
from app.models.student import Student
from app.models.user import User, UserRole
from app.schemas.dispatch import DispatchResult
from app.schemas.leave import LeaveAction, LeaveCreate, LeaveRead, LeaveTransitionResponse
from app.services.notification_service import Notifier, NotifyOutcome, collect_errors
from app.services.pdf_service import DocumentRenderer
from app.services.request_store import (
    compare_and_set_status,
    find_class_staff,
    find_hod,
    find_student,
    get_or_404,
    get_user,
    student_snapshot,
)
from app.services.state_machine import LATE_ARRIVAL_TABLE, LEAVE_TABLE, SideEffect, StateTable
from app.services.whatsapp_dispatcher import WhatsAppDispatcher

LABEL = "Leave request"


def table_for(leave: LeaveRequest) -> StateTable:
    return LATE_ARRIVAL_TABLE if leave.type == LeaveType.Late.value else LEAVE_TABLE


# ---------------------------------------------------------
# WHATSAPP TEXTS
# ---------------------------------------------------------
def leave_approval_text(leave: LeaveRequest) -> str:
    s = leave.student_snapshot
    start = to_local(leave.start_date)
    end = to_local(leave.end_date)
    return (
        "Hello! 📋\n\n"
        f"Your leave request for {s.get('name')} (Reg: {s.get('reg_number')}) has been approved.\n\n"
        f"📅 Leave Period: {start:%d %b %Y} to {end:%d %b %Y}\n"
        f"📝 Reason: {leave.reason}\n"
        "✅ Status: Approved by HOD\n\n"
        "The leave approval letter is attached to this message.\n\n"
        "Best regards,\n"
        f"{settings.SENDER_SIGNATURE}"
    )


def arrival_text(leave: LeaveRequest) -> str:
    s = leave.student_snapshot
    arrived = to_local(leave.arrival_confirmed_at or utcnow())
    return (
        "Hello! 🏫\n\n"
        f"This is to inform you that your ward *{s.get('name')}* (Reg: {s.get('reg_number')}) "
        "has safely reached college.\n\n"
        f"🕐 Arrival Time: {arrived:%I:%M:%S %p}\n"
        f"📅 Date: {arrived:%d %b %Y}\n"
        f"📝 Late Arrival Reason: {leave.reason}\n\n"
        "The student has been marked present for today.\n\n"
        "Thank you,\n"
        f"{settings.SENDER_SIGNATURE}"
    )


def leave_pdf_path(leave_id: UUID) -> str:
    return f"/api/documents/leaves/{leave_id}.pdf"


# ============================================================================
# CREATE
# ============================================================================
async def create_leave(
    session: AsyncSession,
    notifier: Notifier,
    data: LeaveCreate,
) -> Tuple[LeaveRequest, List[str]]:
    student = await find_student(session, data.reg_number, data.phone_number)
    if not student:
        raise NotFoundError("Student not found")

    leave = LeaveRequest(
        type=data.type.value,
        student_id=student.id,
        student_snapshot=student_snapshot(student),
        department=student.department,
        reason=data.reason.strip(),
    )
    if data.type == LeaveType.Leave:
        leave.start_date = data.start_date
        leave.end_date = data.end_date
    else:
        leave.expected_arrival_time = data.expected_arrival_time

    session.add(leave)
    await session.commit()
    await session.refresh(leave)

    # ---- route to HOD (leave) or the class staff (late) ----
    outcomes: List[NotifyOutcome] = []
    if data.type == LeaveType.Leave:
        hod = await find_hod(session, student.department)
        if hod:
            outcomes.append(await notifier.notify(
                hod.email,
                NotificationType.LeaveRequest.value,
                "📋 New Leave Request",
                f"{student.name} ({student.reg_number}) requested leave",
                {"leave_id": str(leave.id), "request_type": leave.type},
            ))
        else:
            logger.warning(f"No HOD for {student.department}; leave {leave.id} has no reviewer yet")
    else:
        staff = await find_class_staff(session, student.department, student.year, student.section)
        outcomes.extend(await notifier.notify_many(
            [s.email for s in staff],
            NotificationType.LateArrival.value,
            "⏰ Late Arrival Notification",
            f"{student.name} ({student.reg_number}) expects to arrive late",
            {"leave_id": str(leave.id), "request_type": leave.type},
        ))

    return leave, collect_errors(outcomes)


# ============================================================================
# READS
# ============================================================================
async def list_leaves(
    session: AsyncSession,
    student_id: Optional[UUID] = None,
    department: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
) -> List[LeaveRequest]:
    query = select(LeaveRequest)
    if student_id:
        query = query.where(LeaveRequest.student_id == student_id)
    if department:
        query = query.where(LeaveRequest.department == department.upper())
    if type:
        query = query.where(LeaveRequest.type == type)
    if status:
        query = query.where(LeaveRequest.status == status)

    result = await session.execute(query.order_by(LeaveRequest.created_at.desc()))
    return list(result.scalars().all())


async def get_leave(session: AsyncSession, leave_id: UUID) -> LeaveRequest:
    return await get_or_404(session, LeaveRequest, leave_id, LABEL)


# ============================================================================
# TRANSITIONS
# ============================================================================
async def _require_actor(
    session: AsyncSession,
    actor_id: Optional[UUID],
    leave: LeaveRequest,
    roles: Tuple[UserRole, ...],
) -> User:
    actor = await get_user(session, actor_id)
    if not actor or actor.role not in {r.value for r in roles}:
        raise AuthorizationError(
            f"Only {' or '.join(r.value.upper() for r in roles)} can perform this action"
        )
    if actor.role == UserRole.HOD.value and actor.department != leave.department:
        raise AuthorizationError(f"HOD of {actor.department} cannot act on {leave.department} requests")
    return actor


async def _student_email(session: AsyncSession, leave: LeaveRequest) -> Optional[str]:
    student = await session.get(Student, leave.student_id)
    return student.email if student else None


async def transition_leave(
    session: AsyncSession,
    notifier: Notifier,
    dispatcher: WhatsAppDispatcher,
    renderer: DocumentRenderer,
    leave_id: UUID,
    action: LeaveAction,
) -> LeaveTransitionResponse:
    leave = await get_or_404(session, LeaveRequest, leave_id, LABEL)
    table = table_for(leave)

    outcome = table.apply(leave.status, action.action, {"actor_id": action.actor_id})

    values = {}
    actor: Optional[User] = None

    if action.action in ("approve", "reject"):
        actor = await _require_actor(session, action.actor_id, leave, (UserRole.HOD,))
        values.update(hod_id=actor.id, hod_name=actor.name)
        if action.action == "approve":
            values.update(hod_signature=actor.e_signature, approved_at=utcnow())
        else:
            values["rejection_reason"] = (action.rejection_reason or "").strip() or None

    elif action.action == "acknowledge":
        actor = await _require_actor(session, action.actor_id, leave, (UserRole.Staff, UserRole.HOD))
        values.update(staff_id=actor.id, staff_name=actor.name, recorded_at=utcnow())

    elif action.action == "confirm-arrival":
        if action.student_id and action.student_id != leave.student_id:
            raise AuthorizationError("Only the student on this request can confirm arrival")
        values["arrival_confirmed_at"] = utcnow()

    try:
        leave = await compare_and_set_status(
            session, LeaveRequest, leave.id, outcome.expected, outcome.next_state, LABEL, **values
        )
        await session.commit()
    except ConflictError:
        await session.rollback()
        raise

    logger.info(f"Leave {leave.id}: {outcome.previous} -> {outcome.next_state} ({action.action})")

    # ---- effects, after the commit ----
    name = leave.student_snapshot.get("name")
    parent_phone = leave.student_snapshot.get("parent_phone_number")
    whatsapp_result: Optional[DispatchResult] = None
    outcomes: List[NotifyOutcome] = []

    if outcome.has(SideEffect.WhatsAppLeaveLetter):
        pdf_bytes = await renderer.render_leave_letter(leave)
        whatsapp_result = await dispatcher.deliver_bundle(
            parent_phone,
            leave_approval_text(leave),
            pdf_bytes=pdf_bytes,
            pdf_url=leave_pdf_path(leave.id),
            filename=f"leave_{leave.student_snapshot.get('reg_number')}.pdf",
        )

    if outcome.has(SideEffect.WhatsAppArrivalText):
        whatsapp_result = await dispatcher.deliver_bundle(parent_phone, arrival_text(leave))

    if outcome.has(SideEffect.NotifyActorDispatchOutcome):
        data = {
            "leave_id": str(leave.id),
            "sent_pdf": whatsapp_result.sent_pdf,
            "sent_text": whatsapp_result.sent_text,
            "errors": whatsapp_result.errors,
        }
        if action.action == "approve":
            outcomes.append(await notifier.notify(
                actor.email,
                NotificationType.LeaveApproval.value,
                "✅ Leave Approved",
                f"Leave request for {name} has been approved. {whatsapp_result.summary()}",
                data,
            ))
        else:
            # confirm-arrival: the staff member who recorded it hears the outcome
            staff = await get_user(session, leave.staff_id)
            if staff:
                outcomes.append(await notifier.notify(
                    staff.email,
                    NotificationType.LateArrival.value,
                    "🔔 Late Arrival Update",
                    f"{name} has confirmed their arrival. {whatsapp_result.summary()}",
                    data,
                ))

    if outcome.has(SideEffect.NotifyStudentChannel):
        email = await _student_email(session, leave)
        if action.action == "reject":
            title, body, kind = (
                "❌ Leave Rejected",
                f"Leave request for {name} has been rejected",
                NotificationType.LeaveApproval.value,
            )
        else:
            title, body, kind = (
                "🔔 Late Arrival Recorded",
                f"{actor.name} has recorded your late arrival. Please confirm in your dashboard.",
                NotificationType.LateArrival.value,
            )
        if email:
            outcomes.append(await notifier.notify(email, kind, title, body, {"leave_id": str(leave.id)}))

    return LeaveTransitionResponse(
        request=LeaveRead.model_validate(leave),
        whatsapp_result=whatsapp_result,
        notification_errors=collect_errors(outcomes),
    )


# ============================================================================
# DELETE
# ============================================================================
async def delete_leave(session: AsyncSession, notifier: Notifier, leave_id: UUID) -> LeaveRequest:
    leave = await get_or_404(session, LeaveRequest, leave_id, LABEL)

    result = await session.execute(
        delete(LeaveRequest).where(
            LeaveRequest.id == leave.id,
            LeaveRequest.status.in_(list(DELETABLE_LEAVE_STATUSES)),
        )
    )
    if result.rowcount == 0:
        fresh = await session.get(LeaveRequest, leave_id, populate_existing=True)
        status = fresh.status if fresh else leave.status
        await session.rollback()
        raise ConflictError(f"Cannot delete request with status: {status}", current_status=status)

    await session.commit()
    logger.info(f"Leave {leave_id} ({leave.type}) deleted")

    email = await _student_email(session, leave)
    if email:
        await notifier.notify(
            email,
            NotificationType.LeaveDeleted.value,
            "Leave Request Deleted",
            f"Your {leave.type} request has been deleted",
            {"leave_id": str(leave_id)},
        )
    return leave
