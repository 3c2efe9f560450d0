"""
Vendor State Machine — pure lifecycle transitions.

    PENDING_REVIEW ──APPROVE──▶ APPROVED ──OUTREACH_SENT──▶ CONTACTED
          │                                                     │
          └──REJECT──▶ REJECTED ◀──REJECT── (any non-terminal)  VENDOR_REPLIED
                                                                ▼
                       CONTRACTED ◀──CONTRACT_SIGNED── NEGOTIATING

No I/O. Identical inputs always give identical outputs, which is what lets
the dispatcher replay a task without double-applying its effects.
"""

from dataclasses import dataclass, field

from vendorflow.errors import InvalidTransitionError, ValidationError
from vendorflow.schemas import TaskType, VendorEvent, VendorStatus


@dataclass(frozen=True)
class FollowUp:
    """A task the caller must enqueue as part of the transition."""

    type: TaskType
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class Transition:
    previous_status: VendorStatus
    event: VendorEvent
    next_status: VendorStatus
    follow_ups: tuple = ()


TERMINAL = frozenset({VendorStatus.REJECTED, VendorStatus.CONTRACTED})

TRANSITIONS = {
    (VendorStatus.PENDING_REVIEW, VendorEvent.APPROVE): (
        VendorStatus.APPROVED,
        (FollowUp(TaskType.GENERATE, {"purpose": "outreach", "sequence": 1}),),
    ),
    (VendorStatus.PENDING_REVIEW, VendorEvent.REJECT): (VendorStatus.REJECTED, ()),
    (VendorStatus.APPROVED, VendorEvent.OUTREACH_SENT): (VendorStatus.CONTACTED, ()),
    (VendorStatus.CONTACTED, VendorEvent.VENDOR_REPLIED): (VendorStatus.NEGOTIATING, ()),
    (VendorStatus.NEGOTIATING, VendorEvent.CONTRACT_SIGNED): (VendorStatus.CONTRACTED, ()),
}


def _coerce(enum_cls, value, label):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(f"Unknown {label}: {value!r}") from None


def transition(current, event) -> Transition:
    """Next status and follow-up tasks for ``event`` applied to ``current``.

    Raises InvalidTransitionError for illegal pairs (terminal statuses accept
    nothing, REJECT is accepted from every other status) and ValidationError
    for strings that are not statuses / events at all.
    """
    status = _coerce(VendorStatus, current, "vendor status")
    evt = _coerce(VendorEvent, event, "vendor event")

    if status in TERMINAL:
        raise InvalidTransitionError(status.value, evt.value)

    if evt is VendorEvent.REJECT:
        return Transition(status, evt, VendorStatus.REJECTED)

    try:
        next_status, follow_ups = TRANSITIONS[(status, evt)]
    except KeyError:
        raise InvalidTransitionError(status.value, evt.value) from None
    return Transition(status, evt, next_status, follow_ups)


def can_transition(current, event) -> bool:
    try:
        transition(current, event)
    except InvalidTransitionError:
        return False
    return True
