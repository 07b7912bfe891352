"""
Transition guard for the booking lifecycle.

Decides whether a requested status change is legal given the booking's
current status, its mirrored payment status and the role of the actor asking.
No I/O happens here: the same inputs always produce the same verdict, so the
rules can be tested without a database.
"""
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Callable, Dict, Optional, Tuple

from .models import BookingStatus, PaymentStatus


class ActorRole(str, PyEnum):
    RENTER = "renter"
    OWNER = "owner"
    # Automated close-out jobs
    SYSTEM = "system"
    # Authenticated, but not a party to this booking
    OTHER = "other"


class DenialKind(str, PyEnum):
    INVALID_TRANSITION = "invalid_transition"
    PAYMENT_NOT_COMPLETED = "payment_not_completed"
    NOT_PERMITTED = "not_permitted"


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: str = ""
    kind: Optional[DenialKind] = None

    def __bool__(self) -> bool:
        return self.allowed


ALLOW = Verdict(allowed=True)


def deny(kind: DenialKind, reason: str) -> Verdict:
    return Verdict(allowed=False, reason=reason, kind=kind)


PARTIES = frozenset({ActorRole.RENTER, ActorRole.OWNER})

Rule = Callable[[PaymentStatus, ActorRole, bool], Verdict]


def _confirm(payment_status: PaymentStatus, role: ActorRole, before_period_start: bool) -> Verdict:
    if role != ActorRole.OWNER:
        return deny(DenialKind.NOT_PERMITTED, "Only the owner can confirm a booking.")
    if payment_status != PaymentStatus.PAID:
        return deny(
            DenialKind.PAYMENT_NOT_COMPLETED,
            f"Payment must be completed before confirming (payment status is {payment_status.value}).",
        )
    return ALLOW


def _cancel_pending(payment_status: PaymentStatus, role: ActorRole, before_period_start: bool) -> Verdict:
    if role not in PARTIES:
        return deny(DenialKind.NOT_PERMITTED, "Only the renter or the owner can cancel a booking.")
    return ALLOW


def _start(payment_status: PaymentStatus, role: ActorRole, before_period_start: bool) -> Verdict:
    if role == ActorRole.OTHER:
        return deny(DenialKind.NOT_PERMITTED, "Only a party to the booking can start the rental.")
    return ALLOW


def _cancel_confirmed(payment_status: PaymentStatus, role: ActorRole, before_period_start: bool) -> Verdict:
    if role not in PARTIES:
        return deny(DenialKind.NOT_PERMITTED, "Only the renter or the owner can cancel a booking.")
    if not before_period_start:
        return deny(
            DenialKind.INVALID_TRANSITION,
            "A confirmed booking can only be cancelled before the rental period starts.",
        )
    return ALLOW


def _complete(payment_status: PaymentStatus, role: ActorRole, before_period_start: bool) -> Verdict:
    if role not in (ActorRole.OWNER, ActorRole.SYSTEM):
        return deny(DenialKind.NOT_PERMITTED, "Only the owner can complete a rental.")
    return ALLOW


# Closed world: any pair not listed here is denied.
TRANSITIONS: Dict[Tuple[BookingStatus, BookingStatus], Rule] = {
    (BookingStatus.PENDING, BookingStatus.CONFIRMED): _confirm,
    (BookingStatus.PENDING, BookingStatus.CANCELLED): _cancel_pending,
    (BookingStatus.CONFIRMED, BookingStatus.ACTIVE): _start,
    (BookingStatus.CONFIRMED, BookingStatus.CANCELLED): _cancel_confirmed,
    (BookingStatus.ACTIVE, BookingStatus.COMPLETED): _complete,
}


def evaluate_transition(
        current_status: BookingStatus,
        payment_status: PaymentStatus,
        requested_status: BookingStatus,
        actor_role: ActorRole,
        *,
        before_period_start: bool = True,
) -> Verdict:
    """
    Returns ALLOW, or a denied Verdict carrying the reason and DenialKind.

    `before_period_start` is computed by the caller from the booking period
    and the clock; it only matters for cancelling a confirmed booking.
    """
    rule = TRANSITIONS.get((BookingStatus(current_status), BookingStatus(requested_status)))
    if rule is None:
        return deny(
            DenialKind.INVALID_TRANSITION,
            f"Cannot move a booking from {BookingStatus(current_status).value} "
            f"to {BookingStatus(requested_status).value}.",
        )
    return rule(PaymentStatus(payment_status), ActorRole(actor_role), before_period_start)


def allowed_transitions(current_status: BookingStatus) -> set:
    """Statuses reachable from `current_status` for some actor and payment state."""
    return {to for (frm, to) in TRANSITIONS if frm == BookingStatus(current_status)}
