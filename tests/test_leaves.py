import uuid

import pytest
from sqlalchemy import update

from app.core.database import AsyncSessionLocal
from app.core.exceptions import ConflictError
from app.models.leave import LeaveRequest
from app.models.student import Student
from app.models.user import UserRole
from app.services.request_store import compare_and_set_status


def leave_payload(reg_number, **overrides):
    payload = {
        "type": "leave",
        "reason": "Family function",
        "reg_number": reg_number,
        "start_date": "2026-03-02T00:00:00Z",
        "end_date": "2026-03-04T00:00:00Z",
    }
    payload.update(overrides)
    return payload


def late_payload(reg_number):
    return {
        "type": "late",
        "reason": "Bus breakdown",
        "reg_number": reg_number,
        "expected_arrival_time": "2026-03-02T04:30:00Z",
    }


# ------------------------------------------------------------------
# LEAVE
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_leave_request_notifies_hod(client, make_user, make_student, inbox):
    hod = await make_user(role=UserRole.HOD, department="CSE")
    student = await make_student(department="CSE")

    res = await client.post("/api/leaves", json=leave_payload(student.reg_number.lower()))
    assert res.status_code == 201
    data = res.json()
    assert data["status"] == "requested"
    assert data["student_snapshot"]["reg_number"] == student.reg_number
    assert data["department"] == "CSE"

    notes = await inbox(hod.email)
    assert notes[0]["type"] == "leave_request"
    assert notes[0]["data"]["leave_id"] == data["id"]


@pytest.mark.asyncio
async def test_leave_lookup_by_parent_phone(client, make_student):
    student = await make_student(parent_phone_number="9000011111")
    payload = leave_payload(None, phone_number="9000011111")
    payload.pop("reg_number")

    res = await client.post("/api/leaves", json=payload)
    assert res.status_code == 201
    assert res.json()["student_id"] == str(student.id)


@pytest.mark.asyncio
async def test_leave_create_validation(client, make_student):
    student = await make_student()

    backwards = leave_payload(student.reg_number, start_date="2026-03-04T00:00:00Z", end_date="2026-03-02T00:00:00Z")
    assert (await client.post("/api/leaves", json=backwards)).status_code == 422

    no_dates = {"type": "leave", "reason": "x", "reg_number": student.reg_number}
    assert (await client.post("/api/leaves", json=no_dates)).status_code == 422

    missing = await client.post("/api/leaves", json=leave_payload("NOSUCHREG"))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_hod_approval_sends_letter_then_text(client, make_user, make_student, gateway, sleeps, inbox):
    hod = await make_user(role=UserRole.HOD, department="CSE")
    student = await make_student(department="CSE", parent_phone_number="9876543210")
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()

    res = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve", "actor_id": str(hod.id)})
    assert res.status_code == 200
    body = res.json()

    assert body["request"]["status"] == "approved_by_hod"
    assert body["request"]["hod_id"] == str(hod.id)
    assert body["whatsapp_result"]["sent_pdf"] is True
    assert body["whatsapp_result"]["sent_text"] is True
    assert gateway.kinds == ["document:inline", "text"]
    assert gateway.calls[0]["file_name"] == f"leave_{student.reg_number}.pdf"
    assert "has been approved" in gateway.calls[1]["text"]
    assert sleeps == [1.2]

    notes = await inbox(hod.email)
    approval = next(n for n in notes if n["type"] == "leave_approval")
    assert "WhatsApp sent: PDF, text" in approval["body"]


@pytest.mark.asyncio
async def test_inline_failure_falls_back_to_document_url(client, make_user, make_student, gateway, probe):
    hod = await make_user(role=UserRole.HOD, department="CSE")
    student = await make_student()
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()
    gateway.fail_inline = True

    res = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve", "actor_id": str(hod.id)})
    result = res.json()["whatsapp_result"]

    assert result["sent_pdf"] is True
    assert gateway.kinds == ["document:inline", "document:url", "text"]
    assert gateway.calls[1]["media"] == f"https://academics.msec.edu.in/api/documents/leaves/{leave['id']}.pdf"
    assert probe.checked == [gateway.calls[1]["media"]]
    assert any("inline PDF" in e for e in result["errors"])


@pytest.mark.asyncio
async def test_approval_without_parent_phone_still_commits(client, make_user, make_student, gateway):
    hod = await make_user(role=UserRole.HOD, department="CSE")
    student = await make_student(parent_phone_number=None)
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()

    res = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve", "actor_id": str(hod.id)})
    assert res.status_code == 200
    assert res.json()["request"]["status"] == "approved_by_hod"
    assert res.json()["whatsapp_result"]["errors"] == ["No parent phone number on record"]
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_only_same_department_hod_decides(client, make_user, make_student):
    staff = await make_user(role=UserRole.Staff, department="CSE")
    ece_hod = await make_user(role=UserRole.HOD, department="ECE")
    student = await make_student(department="CSE")
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()

    as_staff = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve", "actor_id": str(staff.id)})
    assert as_staff.status_code == 403

    as_other = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve", "actor_id": str(ece_hod.id)})
    assert as_other.status_code == 403

    no_actor = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve"})
    assert no_actor.status_code == 400

    assert (await client.get(f"/api/leaves/{leave['id']}")).json()["status"] == "requested"


@pytest.mark.asyncio
async def test_reject_notifies_student_and_blocks_second_decision(client, make_user, make_student, inbox, gateway):
    hod = await make_user(role=UserRole.HOD, department="CSE")
    student = await make_student()
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()

    res = await client.patch(
        f"/api/leaves/{leave['id']}",
        json={"action": "reject", "actor_id": str(hod.id), "rejection_reason": "Exams that week"},
    )
    assert res.status_code == 200
    assert res.json()["request"]["status"] == "rejected_by_hod"
    assert res.json()["request"]["rejection_reason"] == "Exams that week"
    assert res.json()["whatsapp_result"] is None
    assert gateway.calls == []

    notes = await inbox(student.email)
    assert notes[0]["title"] == "❌ Leave Rejected"

    late = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "approve", "actor_id": str(hod.id)})
    assert late.status_code == 409
    assert "rejected_by_hod" in late.json()["detail"]


@pytest.mark.asyncio
async def test_late_actions_are_not_valid_on_leave(client, make_user, make_student):
    staff = await make_user(role=UserRole.Staff, department="CSE", year="II", section="A")
    student = await make_student()
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()

    res = await client.patch(f"/api/leaves/{leave['id']}", json={"action": "acknowledge", "actor_id": str(staff.id)})
    assert res.status_code == 400


# ------------------------------------------------------------------
# LATE ARRIVAL
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_late_arrival_full_flow(client, make_user, make_student, gateway, sleeps, inbox):
    advisor = await make_user(role=UserRole.Staff, department="CSE", year="II", section="A")
    other_section = await make_user(role=UserRole.Staff, department="CSE", year="II", section="B")
    student = await make_student(department="CSE", year="II", section="A")

    created = await client.post("/api/leaves", json=late_payload(student.reg_number))
    assert created.status_code == 201
    late = created.json()

    assert (await inbox(advisor.email))[0]["type"] == "late_arrival"
    assert await inbox(other_section.email) == []

    ack = await client.patch(f"/api/leaves/{late['id']}", json={"action": "acknowledge", "actor_id": str(advisor.id)})
    assert ack.status_code == 200
    assert ack.json()["request"]["status"] == "waiting_for_arrival_confirmation"
    assert ack.json()["request"]["staff_id"] == str(advisor.id)
    assert (await inbox(student.email))[0]["title"] == "🔔 Late Arrival Recorded"

    # a staff id on the confirmation means someone else is confirming
    forged = await client.patch(
        f"/api/leaves/{late['id']}",
        json={"action": "confirm-arrival", "actor_id": str(advisor.id)},
    )
    assert forged.status_code == 403

    confirm = await client.patch(
        f"/api/leaves/{late['id']}",
        json={"action": "confirm-arrival", "student_id": str(student.id)},
    )
    assert confirm.status_code == 200
    assert confirm.json()["request"]["status"] == "acknowledged_by_staff"
    assert confirm.json()["request"]["arrival_confirmed_at"]
    assert confirm.json()["whatsapp_result"]["sent_text"] is True
    assert gateway.kinds == ["text"]
    assert "has safely reached college" in gateway.calls[0]["text"]
    assert sleeps == []

    update_note = (await inbox(advisor.email))[0]
    assert update_note["title"] == "🔔 Late Arrival Update"
    assert "WhatsApp sent: text" in update_note["body"]

    again = await client.patch(f"/api/leaves/{late['id']}", json={"action": "confirm-arrival"})
    assert again.status_code == 409
    assert "acknowledged_by_staff" in again.json()["detail"]
    assert gateway.kinds == ["text"]


@pytest.mark.asyncio
async def test_confirm_arrival_by_another_student_is_refused(client, make_user, make_student):
    advisor = await make_user(role=UserRole.Staff, department="CSE", year="II", section="A")
    student = await make_student()
    someone_else = await make_student()
    late = (await client.post("/api/leaves", json=late_payload(student.reg_number))).json()
    await client.patch(f"/api/leaves/{late['id']}", json={"action": "acknowledge", "actor_id": str(advisor.id)})

    res = await client.patch(
        f"/api/leaves/{late['id']}",
        json={"action": "confirm-arrival", "student_id": str(someone_else.id)},
    )
    assert res.status_code == 403


@pytest.mark.asyncio
async def test_confirm_before_acknowledge_conflicts(client, make_student):
    student = await make_student()
    late = (await client.post("/api/leaves", json=late_payload(student.reg_number))).json()

    res = await client.patch(f"/api/leaves/{late['id']}", json={"action": "confirm-arrival"})
    assert res.status_code == 409
    assert "requested" in res.json()["detail"]


# ------------------------------------------------------------------
# SNAPSHOT / DELETE / CAS
# ------------------------------------------------------------------
@pytest.mark.asyncio
async def test_student_snapshot_is_frozen(client, make_student):
    student = await make_student(name="Original Name")
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()

    async with AsyncSessionLocal() as session:
        await session.execute(update(Student).where(Student.id == student.id).values(name="Renamed"))
        await session.commit()

    fresh = (await client.get(f"/api/leaves/{leave['id']}")).json()
    assert fresh["student_snapshot"]["name"] == "Original Name"


@pytest.mark.asyncio
async def test_delete_only_before_decision(client, make_user, make_student, inbox):
    hod = await make_user(role=UserRole.HOD, department="CSE")
    student = await make_student()

    pending = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()
    res = await client.delete(f"/api/leaves/{pending['id']}")
    assert res.status_code == 200
    assert res.json()["id"] == pending["id"]
    assert (await client.get(f"/api/leaves/{pending['id']}")).status_code == 404
    assert (await inbox(student.email))[0]["type"] == "leave_deleted"

    approved = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()
    await client.patch(f"/api/leaves/{approved['id']}", json={"action": "approve", "actor_id": str(hod.id)})
    res = await client.delete(f"/api/leaves/{approved['id']}")
    assert res.status_code == 409
    assert res.json()["detail"] == "Cannot delete request with status: approved_by_hod"

    rejected = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()
    await client.patch(f"/api/leaves/{rejected['id']}", json={"action": "reject", "actor_id": str(hod.id)})
    assert (await client.delete(f"/api/leaves/{rejected['id']}")).status_code == 200


@pytest.mark.asyncio
async def test_stale_conditional_update_reports_winner(client, make_student):
    student = await make_student()
    leave = (await client.post("/api/leaves", json=leave_payload(student.reg_number))).json()
    leave_id = uuid.UUID(leave["id"])

    async with AsyncSessionLocal() as session:
        await session.execute(
            update(LeaveRequest).where(LeaveRequest.id == leave_id).values(status="rejected_by_hod")
        )
        await session.commit()

    async with AsyncSessionLocal() as session:
        with pytest.raises(ConflictError) as exc:
            await compare_and_set_status(
                session, LeaveRequest, leave_id, ["requested"], "approved_by_hod", "Leave request"
            )
        await session.rollback()

    assert exc.value.current_status == "rejected_by_hod"
    assert (await client.get(f"/api/leaves/{leave['id']}")).json()["status"] == "rejected_by_hod"


@pytest.mark.asyncio
async def test_list_filters(client, make_student):
    student = await make_student()
    other = await make_student(department="ECE")
    await client.post("/api/leaves", json=leave_payload(student.reg_number))
    await client.post("/api/leaves", json=late_payload(student.reg_number))
    await client.post("/api/leaves", json=leave_payload(other.reg_number))

    mine = (await client.get("/api/leaves", params={"student_id": str(student.id)})).json()
    assert len(mine) == 2

    lates = (await client.get("/api/leaves", params={"type": "late"})).json()
    assert [r["type"] for r in lates] == ["late"]

    ece = (await client.get("/api/leaves", params={"department": "ece"})).json()
    assert [r["student_id"] for r in ece] == [str(other.id)]
