import pytest

from app.core.exceptions import AuthorizationError, ConflictError, ValidationError
from app.services.state_machine import (
    LATE_ARRIVAL_TABLE,
    LEAVE_TABLE,
    MARKSHEET_TABLE,
    STAFF_APPROVAL_TABLE,
    SideEffect,
    StateTable,
    TABLES,
    Transition,
)


def test_staff_approval_transitions():
    outcome = STAFF_APPROVAL_TABLE.apply("pending", "approve", {"approver_id": "hod-1"})
    assert outcome.next_state == "approved"
    assert outcome.has(SideEffect.CreateStaffAccount)
    assert outcome.expected == {"pending"}

    rejected = STAFF_APPROVAL_TABLE.apply("pending", "reject", {"approver_id": "hod-1"})
    assert rejected.next_state == "rejected"
    assert not rejected.has(SideEffect.CreateStaffAccount)


def test_decided_request_names_current_status():
    with pytest.raises(ConflictError) as exc:
        STAFF_APPROVAL_TABLE.apply("approved", "reject", {"approver_id": "hod-1"})
    assert exc.value.current_status == "approved"
    assert "current status is 'approved'" in exc.value.message


def test_unknown_event_and_missing_payload():
    with pytest.raises(ValidationError):
        LEAVE_TABLE.apply("requested", "acknowledge", {"actor_id": "s-1"})

    with pytest.raises(ValidationError) as exc:
        LEAVE_TABLE.apply("requested", "approve", {})
    assert "actor_id" in exc.value.message


def test_confirm_arrival_refuses_actor():
    with pytest.raises(AuthorizationError):
        LATE_ARRIVAL_TABLE.apply("waiting_for_arrival_confirmation", "confirm-arrival", {"actor_id": "staff-1"})

    outcome = LATE_ARRIVAL_TABLE.apply("waiting_for_arrival_confirmation", "confirm-arrival", {})
    assert outcome.next_state == "acknowledged_by_staff"
    assert outcome.effects == (SideEffect.WhatsAppArrivalText, SideEffect.NotifyActorDispatchOutcome)


def test_late_arrival_cannot_skip_acknowledgement():
    with pytest.raises(ConflictError) as exc:
        LATE_ARRIVAL_TABLE.apply("requested", "confirm-arrival", {})
    assert exc.value.current_status == "requested"


def test_rescheduled_marksheet_is_a_pending_request():
    assert MARKSHEET_TABLE.normalize("rescheduled_by_hod") == "dispatch_requested"

    outcome = MARKSHEET_TABLE.apply("rescheduled_by_hod", "approve", {"actor_id": "hod-1"})
    assert outcome.previous == "dispatch_requested"
    assert outcome.next_state == "approved_by_hod"
    assert outcome.expected == {"dispatch_requested", "rescheduled_by_hod"}

    # verified -> dispatch_requested does not match the alias
    verified = MARKSHEET_TABLE.apply("verified_by_staff", "request-dispatch", {"actor_id": "s-1"})
    assert verified.expected == {"verified_by_staff"}


def test_send_and_manual_dispatch_share_source():
    send = MARKSHEET_TABLE.apply("approved_by_hod", "send", {"actor_id": "s-1"})
    manual = MARKSHEET_TABLE.apply("approved_by_hod", "mark-dispatched", {"actor_id": "s-1"})
    assert send.next_state == manual.next_state == "dispatched"
    assert send.has(SideEffect.WhatsAppMarksheet)
    assert not manual.has(SideEffect.WhatsAppMarksheet)


@pytest.mark.parametrize("kind", sorted(TABLES))
def test_terminal_states_accept_nothing(kind):
    table = TABLES[kind]
    terminal = {
        "staff_approval": ["approved", "rejected"],
        "leave": ["approved_by_hod", "rejected_by_hod"],
        "late": ["acknowledged_by_staff"],
        "marksheet": ["dispatched", "rejected_by_hod"],
    }[kind]

    for state in terminal:
        for event in table.events:
            with pytest.raises(ConflictError):
                table.apply(state, event, {"actor_id": "x", "approver_id": "x"} if event != "confirm-arrival" else {})


def test_duplicate_events_are_refused():
    with pytest.raises(ValueError):
        StateTable("broken", [
            Transition("go", frozenset({"a"}), "b"),
            Transition("go", frozenset({"b"}), "c"),
        ])
