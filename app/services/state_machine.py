# app/services/state_machine.py

"""
Transition tables for every request kind.

Each table is pure: `apply(current_state, event, payload)` either returns the
next state plus the side effects the workflow service must run after the
commit, or raises. Nothing here touches the database.

    unknown event for the kind      -> ValidationError
    missing payload field           -> ValidationError
    forbidden payload field         -> AuthorizationError
    event not allowed from state    -> ConflictError (names current state)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from app.core.exceptions import AuthorizationError, ConflictError, ValidationError
from app.models.enums import (
    LeaveStatus,
    MarksheetStatus,
    StaffApprovalStatus,
)


class SideEffect(str, Enum):
    CreateStaffAccount = "create_staff_account"
    NotifyRequester = "notify_requester"
    NotifyHOD = "notify_hod"
    NotifyStaff = "notify_staff"
    NotifyStudentChannel = "notify_student_channel"
    WhatsAppLeaveLetter = "whatsapp_leave_letter"
    WhatsAppArrivalText = "whatsapp_arrival_text"
    WhatsAppMarksheet = "whatsapp_marksheet"
    NotifyActorDispatchOutcome = "notify_actor_dispatch_outcome"


@dataclass(frozen=True)
class Transition:
    event: str
    sources: FrozenSet[str]
    target: str
    effects: Tuple[SideEffect, ...] = ()
    requires: Tuple[str, ...] = ()
    forbids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class TransitionOutcome:
    event: str
    previous: str
    next_state: str
    effects: Tuple[SideEffect, ...]
    # Raw stored values the conditional UPDATE may match (aliases included)
    expected: FrozenSet[str] = field(default_factory=frozenset)

    def has(self, effect: SideEffect) -> bool:
        return effect in self.effects


class StateTable:
    def __init__(
        self,
        kind: str,
        transitions: Iterable[Transition],
        aliases: Optional[Mapping[str, str]] = None,
    ):
        self.kind = kind
        self._transitions: Dict[str, Transition] = {}
        for t in transitions:
            if t.event in self._transitions:
                raise ValueError(f"Duplicate event '{t.event}' in {kind} table")
            self._transitions[t.event] = t
        self._aliases = dict(aliases or {})

    @property
    def events(self) -> Tuple[str, ...]:
        return tuple(self._transitions)

    def normalize(self, state: str) -> str:
        return self._aliases.get(state, state)

    def transition_for(self, event: str) -> Transition:
        transition = self._transitions.get(event)
        if transition is None:
            raise ValidationError(
                f"Unknown {self.kind} action '{event}'. Allowed: {list(self._transitions)}"
            )
        return transition

    def expected_states(self, transition: Transition) -> FrozenSet[str]:
        raw = set(transition.sources)
        for alias, target in self._aliases.items():
            if target in transition.sources:
                raw.add(alias)
        return frozenset(raw)

    def apply(
        self,
        current_state: str,
        event: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> TransitionOutcome:
        transition = self.transition_for(event)
        payload = payload or {}

        missing = [k for k in transition.requires if payload.get(k) in (None, "")]
        if missing:
            raise ValidationError(f"'{event}' requires: {', '.join(missing)}")

        present = [k for k in transition.forbids if payload.get(k) is not None]
        if present:
            raise AuthorizationError(f"'{event}' may not carry: {', '.join(present)}")

        current = self.normalize(current_state)
        if current not in transition.sources:
            raise ConflictError(
                f"Cannot {event} {self.kind}: current status is '{current}', "
                f"expected one of {sorted(transition.sources)}",
                current_status=current,
            )

        return TransitionOutcome(
            event=event,
            previous=current,
            next_state=transition.target,
            effects=transition.effects,
            expected=self.expected_states(transition),
        )


def _states(*values: Enum) -> FrozenSet[str]:
    return frozenset(v.value for v in values)


# ----------------------------------------------------------------------
# STAFF ACCOUNT APPROVAL
# ----------------------------------------------------------------------
STAFF_APPROVAL_TABLE = StateTable(
    "staff approval",
    [
        Transition(
            event="approve",
            sources=_states(StaffApprovalStatus.Pending),
            target=StaffApprovalStatus.Approved.value,
            effects=(SideEffect.CreateStaffAccount, SideEffect.NotifyRequester),
            requires=("approver_id",),
        ),
        Transition(
            event="reject",
            sources=_states(StaffApprovalStatus.Pending),
            target=StaffApprovalStatus.Rejected.value,
            effects=(SideEffect.NotifyRequester,),
            requires=("approver_id",),
        ),
    ],
)


# ----------------------------------------------------------------------
# LEAVE
# ----------------------------------------------------------------------
LEAVE_TABLE = StateTable(
    "leave",
    [
        Transition(
            event="approve",
            sources=_states(LeaveStatus.Requested),
            target=LeaveStatus.ApprovedByHOD.value,
            effects=(SideEffect.WhatsAppLeaveLetter, SideEffect.NotifyActorDispatchOutcome),
            requires=("actor_id",),
        ),
        Transition(
            event="reject",
            sources=_states(LeaveStatus.Requested),
            target=LeaveStatus.RejectedByHOD.value,
            effects=(SideEffect.NotifyStudentChannel,),
            requires=("actor_id",),
        ),
    ],
)


# ----------------------------------------------------------------------
# LATE ARRIVAL
# ----------------------------------------------------------------------
LATE_ARRIVAL_TABLE = StateTable(
    "late arrival",
    [
        Transition(
            event="acknowledge",
            sources=_states(LeaveStatus.Requested),
            target=LeaveStatus.WaitingForArrival.value,
            effects=(SideEffect.NotifyStudentChannel,),
            requires=("actor_id",),
        ),
        Transition(
            event="confirm-arrival",
            sources=_states(LeaveStatus.WaitingForArrival),
            target=LeaveStatus.AcknowledgedByStaff.value,
            effects=(SideEffect.WhatsAppArrivalText, SideEffect.NotifyActorDispatchOutcome),
            # only the student confirms; a staff id here is someone else acting
            forbids=("actor_id",),
        ),
    ],
)


# ----------------------------------------------------------------------
# MARKSHEET DISPATCH
# ----------------------------------------------------------------------
MARKSHEET_TABLE = StateTable(
    "marksheet",
    [
        Transition(
            event="request-dispatch",
            sources=_states(MarksheetStatus.VerifiedByStaff),
            target=MarksheetStatus.DispatchRequested.value,
            effects=(SideEffect.NotifyHOD,),
            requires=("actor_id",),
        ),
        Transition(
            event="approve",
            sources=_states(MarksheetStatus.DispatchRequested),
            target=MarksheetStatus.ApprovedByHOD.value,
            effects=(SideEffect.NotifyStaff,),
            requires=("actor_id",),
        ),
        Transition(
            event="reject",
            sources=_states(MarksheetStatus.DispatchRequested),
            target=MarksheetStatus.RejectedByHOD.value,
            effects=(SideEffect.NotifyStaff,),
            requires=("actor_id",),
        ),
        Transition(
            event="reschedule",
            sources=_states(MarksheetStatus.DispatchRequested),
            target=MarksheetStatus.RescheduledByHOD.value,
            effects=(SideEffect.NotifyStaff,),
            requires=("actor_id",),
        ),
        Transition(
            event="send",
            sources=_states(MarksheetStatus.ApprovedByHOD),
            target=MarksheetStatus.Dispatched.value,
            effects=(SideEffect.WhatsAppMarksheet, SideEffect.NotifyActorDispatchOutcome),
            requires=("actor_id",),
        ),
        Transition(
            event="mark-dispatched",
            sources=_states(MarksheetStatus.ApprovedByHOD),
            target=MarksheetStatus.Dispatched.value,
            effects=(SideEffect.NotifyStaff,),
            requires=("actor_id",),
        ),
    ],
    aliases={MarksheetStatus.RescheduledByHOD.value: MarksheetStatus.DispatchRequested.value},
)


TABLES = {
    "staff_approval": STAFF_APPROVAL_TABLE,
    "leave": LEAVE_TABLE,
    "late": LATE_ARRIVAL_TABLE,
    "marksheet": MARKSHEET_TABLE,
}
