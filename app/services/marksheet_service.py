# app/services/marksheet_service.py

import asyncio
from typing import Awaitable, Callable, List, Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from app.core.config import settings
from app.core.exceptions import AuthorizationError, ConflictError, NotFoundError, WorkflowError
from app.core.timeutils import to_local, utcnow
from app.models.enums import MarksheetStatus, NotificationType, WhatsAppDeliveryStatus
from app.models.marksheet import Marksheet
from app.models.student import Student
from app.models.user import User, UserRole
from app.schemas.dispatch import DispatchResult
from app.schemas.marksheet import (
    BulkSendRequest,
    BulkSendResponse,
    MarksheetAction,
    MarksheetCreate,
    MarksheetRead,
    MarksheetTransitionResponse,
)
from app.services.notification_service import Notifier, NotifyOutcome, collect_errors
from app.services.pdf_service import DocumentRenderer
from app.services.request_store import (
    compare_and_set_status,
    find_hod,
    find_student,
    get_or_404,
    get_user,
    student_snapshot,
)
from app.services.state_machine import MARKSHEET_TABLE, SideEffect
from app.services.whatsapp_dispatcher import WhatsAppDispatcher

LABEL = "Marksheet"
BULK_SEND_PAUSE_SECONDS = 1.0

HOD_RESPONSES = {
    "approve": "approved",
    "reject": "rejected",
    "reschedule": "rescheduled",
}


# ---------------------------------------------------------
# READ NORMALIZATION
# ---------------------------------------------------------
def to_read(marksheet: Marksheet) -> MarksheetRead:
    """`rescheduled_by_hod` always reads as a fresh `dispatch_requested`."""
    read = MarksheetRead.model_validate(marksheet)
    if read.status == MarksheetStatus.RescheduledByHOD.value:
        read = read.model_copy(update={
            "status": MarksheetStatus.DispatchRequested.value,
            "hod_id": None,
            "hod_response": None,
            "hod_remarks": None,
            "responded_at": None,
        })
    return read


def marksheet_pdf_path(marksheet_id: UUID) -> str:
    return f"/api/documents/marksheets/{marksheet_id}.pdf"


def marksheet_text(marksheet: Marksheet, pdf_link: Optional[str]) -> str:
    s = marksheet.student_snapshot
    exam_date = to_local(marksheet.examination_date)
    period = f"{exam_date:%B %Y}" if exam_date else "-"
    download = (
        f"📥 *Download PDF*: {pdf_link}"
        if pdf_link
        else "📥 The PDF copy is available from the academic department."
    )
    return (
        "🎓 *MSEC Academics - Marksheet Available*\n\n"
        "Dear Parent/Guardian,\n\n"
        "The marksheet for your ward has been published:\n\n"
        f"👤 *Student Name:* {s.get('name')}\n"
        f"🆔 *Register Number:* {s.get('reg_number')}\n"
        f"📅 *Period:* {period}\n"
        f"📝 *Examination:* {marksheet.examination_name or 'Semester Examination'}\n"
        f"📊 *Result:* {marksheet.overall_result or 'Pending'}\n\n"
        f"{download}\n\n"
        "For any queries, please contact the academic department.\n\n"
        f"*{settings.COLLEGE_NAME}*\n"
        "_This is an automated message_"
    )


# ============================================================================
# CREATE / READ
# ============================================================================
async def create_marksheet(session: AsyncSession, data: MarksheetCreate) -> Marksheet:
    staff = await get_user(session, data.staff_id)
    if not staff or staff.role not in (UserRole.Staff.value, UserRole.HOD.value):
        raise AuthorizationError("Only staff can verify marksheets")

    if data.student_id:
        student = await session.get(Student, data.student_id)
    else:
        student = await find_student(session, reg_number=data.reg_number)
    if not student:
        raise NotFoundError("Student not found")

    marksheet = Marksheet(
        student_id=student.id,
        student_snapshot=student_snapshot(student),
        department=student.department,
        staff_id=staff.id,
        examination_name=data.examination_name,
        examination_date=data.examination_date,
        semester=data.semester,
        overall_result=data.overall_result,
        subjects=[s.model_dump() for s in data.subjects],
    )
    session.add(marksheet)
    await session.commit()
    await session.refresh(marksheet)
    return marksheet


async def list_marksheets(
    session: AsyncSession,
    department: Optional[str] = None,
    status: Optional[str] = None,
    staff_id: Optional[UUID] = None,
    student_id: Optional[UUID] = None,
) -> List[MarksheetRead]:
    query = select(Marksheet)
    if department:
        query = query.where(Marksheet.department == department.upper())
    if status:
        # a rescheduled row is still waiting for a decision
        if status == MarksheetStatus.DispatchRequested.value:
            query = query.where(Marksheet.status.in_([
                MarksheetStatus.DispatchRequested.value,
                MarksheetStatus.RescheduledByHOD.value,
            ]))
        else:
            query = query.where(Marksheet.status == status)
    if staff_id:
        query = query.where(Marksheet.staff_id == staff_id)
    if student_id:
        query = query.where(Marksheet.student_id == student_id)

    result = await session.execute(query.order_by(Marksheet.created_at.desc()))
    return [to_read(m) for m in result.scalars().all()]


async def get_marksheet(session: AsyncSession, marksheet_id: UUID) -> Marksheet:
    return await get_or_404(session, Marksheet, marksheet_id, LABEL)


# ============================================================================
# TRANSITIONS
# ============================================================================
async def _resolve_actor(session: AsyncSession, marksheet: Marksheet, actor_id: UUID, hod_only: bool) -> User:
    actor = await get_user(session, actor_id)
    if not actor:
        raise AuthorizationError("Unknown actor")

    if actor.role == UserRole.HOD.value:
        if actor.department != marksheet.department:
            raise AuthorizationError(f"HOD of {actor.department} cannot act on {marksheet.department} marksheets")
        return actor

    if hod_only:
        raise AuthorizationError("Only the HOD can decide dispatch requests")
    if actor.id != marksheet.staff_id:
        raise AuthorizationError("Only the verifying staff can act on this marksheet")
    return actor


async def _notify_staff(
    session: AsyncSession,
    notifier: Notifier,
    marksheet: Marksheet,
    title: str,
    body: str,
    kind: NotificationType,
    extra: Optional[dict] = None,
) -> Optional[NotifyOutcome]:
    staff = await get_user(session, marksheet.staff_id)
    if not staff:
        return None
    data = {"marksheet_id": str(marksheet.id), **(extra or {})}
    return await notifier.notify(staff.email, kind.value, title, body, data)


async def _send(
    session: AsyncSession,
    dispatcher: WhatsAppDispatcher,
    renderer: DocumentRenderer,
    marksheet: Marksheet,
    expected,
    pdf_url: Optional[str] = None,
    image_url: Optional[str] = None,
) -> tuple[Marksheet, DispatchResult]:
    """
    Deliver first, then move the row. Nothing sent on any channel leaves it
    at approved_by_hod with the failure recorded, so it can be sent again.
    """
    marksheet_id = marksheet.id
    pdf_link = dispatcher.resolve_url(pdf_url or marksheet_pdf_path(marksheet_id))
    pdf_bytes = await renderer.render_marksheet(marksheet)

    result = await dispatcher.deliver_bundle(
        marksheet.student_snapshot.get("parent_phone_number"),
        marksheet_text(marksheet, pdf_link),
        pdf_bytes=pdf_bytes,
        pdf_url=pdf_link,
        image_url=image_url,
        filename=f"marksheet_{marksheet.student_snapshot.get('reg_number')}.pdf",
        image_caption=f"Marksheet - {marksheet.student_snapshot.get('name')}",
    )

    error_text = "; ".join(result.errors) or None
    if result.any_sent:
        delivery = (
            WhatsAppDeliveryStatus.Sent
            if result.media_sent and result.sent_text
            else WhatsAppDeliveryStatus.Partial
        )
        next_state = MarksheetStatus.Dispatched.value
        values = dict(
            dispatched_at=utcnow(),
            dispatch_method="whatsapp",
            whatsapp_status=delivery.value,
            whatsapp_error=error_text,
        )
    else:
        next_state = MarksheetStatus.ApprovedByHOD.value
        values = dict(whatsapp_status=WhatsAppDeliveryStatus.Failed.value, whatsapp_error=error_text)

    try:
        marksheet = await compare_and_set_status(
            session, Marksheet, marksheet_id, expected, next_state, LABEL,
            normalize=MARKSHEET_TABLE.normalize, **values,
        )
        await session.commit()
    except ConflictError as e:
        await session.rollback()
        # the parent may now hold two copies; the winning call owns the row
        logger.warning(
            f"Marksheet {marksheet_id} send lost to a concurrent change "
            f"(now '{e.current_status}') after delivery; discarded result: {result.summary()}"
        )
        raise

    return marksheet, result


async def transition_marksheet(
    session: AsyncSession,
    notifier: Notifier,
    dispatcher: WhatsAppDispatcher,
    renderer: DocumentRenderer,
    marksheet_id: UUID,
    action: MarksheetAction,
    notify_actor: bool = True,
) -> MarksheetTransitionResponse:
    marksheet = await get_or_404(session, Marksheet, marksheet_id, LABEL)
    outcome = MARKSHEET_TABLE.apply(marksheet.status, action.action, {"actor_id": action.actor_id})

    hod_only = action.action in HOD_RESPONSES
    actor = await _resolve_actor(session, marksheet, action.actor_id, hod_only=hod_only)
    name = marksheet.student_snapshot.get("name")
    outcomes: List[Optional[NotifyOutcome]] = []
    whatsapp_result: Optional[DispatchResult] = None

    # ---------------- send: deliver, then move ----------------
    if outcome.has(SideEffect.WhatsAppMarksheet):
        marksheet, whatsapp_result = await _send(
            session, dispatcher, renderer, marksheet, outcome.expected,
            pdf_url=action.pdf_url, image_url=action.image_url,
        )
        logger.info(f"Marksheet {marksheet.id} send: {whatsapp_result.summary()} -> {marksheet.status}")

        if notify_actor and outcome.has(SideEffect.NotifyActorDispatchOutcome):
            reg = marksheet.student_snapshot.get("reg_number")
            if whatsapp_result.any_sent:
                title = "✅ Marksheet Dispatched"
                body = f"Marksheet for {name} ({reg}) was sent via WhatsApp. {whatsapp_result.summary()}"
            else:
                title = "❌ Dispatch Failed"
                body = f"Failed to send marksheet for {name} ({reg}). {whatsapp_result.summary()}"
            outcomes.append(await notifier.notify(
                actor.email,
                NotificationType.MarksheetDispatch.value,
                title,
                body,
                {"marksheet_id": str(marksheet.id), "errors": whatsapp_result.errors},
            ))

        return MarksheetTransitionResponse(
            marksheet=to_read(marksheet),
            whatsapp_result=whatsapp_result,
            notification_errors=collect_errors(o for o in outcomes if o),
        )

    # ---------------- everything else: move, then notify ----------------
    values = {}
    if action.action == "request-dispatch":
        values.update(requested_by=actor.id, requested_at=utcnow())
    elif hod_only:
        values.update(
            hod_id=actor.id,
            hod_response=HOD_RESPONSES[action.action],
            hod_remarks=action.remarks,
            responded_at=utcnow(),
        )
    elif action.action == "mark-dispatched":
        values.update(dispatched_at=utcnow(), dispatch_method=action.dispatch_method or "manual")

    try:
        marksheet = await compare_and_set_status(
            session, Marksheet, marksheet.id, outcome.expected, outcome.next_state, LABEL,
            normalize=MARKSHEET_TABLE.normalize, **values,
        )
        await session.commit()
    except ConflictError:
        await session.rollback()
        raise

    logger.info(f"Marksheet {marksheet.id}: {outcome.previous} -> {outcome.next_state} ({action.action})")

    if outcome.has(SideEffect.NotifyHOD):
        hod = await find_hod(session, marksheet.department)
        if hod:
            outcomes.append(await notifier.notify(
                hod.email,
                NotificationType.DispatchRequest.value,
                "📨 New Dispatch Request",
                f"{actor.name} requested dispatch of the marksheet for {name}",
                {"marksheet_id": str(marksheet.id)},
            ))

    if outcome.has(SideEffect.NotifyStaff):
        if action.action == "mark-dispatched":
            outcomes.append(await _notify_staff(
                session, notifier, marksheet,
                "📥 Marksheet Marked Dispatched",
                f"Marksheet for {name} was marked as dispatched ({marksheet.dispatch_method})",
                NotificationType.MarksheetDispatch,
            ))
        else:
            verdict = {"approve": "approved", "reject": "rejected", "reschedule": "sent back for a new decision"}
            body = f"Dispatch request for {name} was {verdict[action.action]} by {actor.name}"
            if action.remarks:
                body += f". Remarks: {action.remarks}"
            outcomes.append(await _notify_staff(
                session, notifier, marksheet,
                "📋 Dispatch Request Update",
                body,
                NotificationType.MarksheetApproval,
                {"hod_response": HOD_RESPONSES[action.action]},
            ))

    return MarksheetTransitionResponse(
        marksheet=to_read(marksheet),
        notification_errors=collect_errors(o for o in outcomes if o),
    )


# ============================================================================
# BULK SEND
# ============================================================================
async def bulk_send(
    session: AsyncSession,
    notifier: Notifier,
    dispatcher: WhatsAppDispatcher,
    renderer: DocumentRenderer,
    data: BulkSendRequest,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> BulkSendResponse:
    report = BulkSendResponse()
    total = len(data.marksheet_ids)

    for index, marksheet_id in enumerate(data.marksheet_ids):
        try:
            response = await transition_marksheet(
                session, notifier, dispatcher, renderer, marksheet_id,
                MarksheetAction(action="send", actor_id=data.actor_id),
                notify_actor=False,
            )
            result = response.whatsapp_result
            if result and result.any_sent:
                report.successful += 1
            else:
                report.failed += 1
                reasons = "; ".join(result.errors) if result else "no channel succeeded"
                report.errors.append(f"Failed to send marksheet {marksheet_id}: {reasons}")
        except WorkflowError as e:
            report.failed += 1
            report.errors.append(f"Marksheet {marksheet_id}: {e.message}")

        # gateway rate limiting
        if index < total - 1:
            await sleep(BULK_SEND_PAUSE_SECONDS)

    actor = await get_user(session, data.actor_id)
    if actor:
        rate = round(report.successful / total * 100) if total else 0
        body = f"Dispatched {report.successful} of {total} marksheets ({rate}% success rate)."
        if report.failed:
            body += f" {report.failed} failed."
        await notifier.notify(
            actor.email,
            NotificationType.DispatchReport.value,
            "📦 Bulk Dispatch Complete",
            body,
            {"successful": report.successful, "failed": report.failed, "errors": report.errors},
        )

    return report
