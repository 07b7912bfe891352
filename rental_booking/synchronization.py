"""
Payment → booking status synchronization.

`record_payment_status` is the single place where a payment attempt's status
changes after it is created. It calls `synchronize_booking` in the same
transaction, so nobody ever reads a payment that says "paid" next to a
booking that does not (or the other way round).

Both writes are conditional on the row still holding the value the caller
read. A report computed from a stale view (for example a reconciliation pass
that was waiting on the gateway while a webhook recorded the payment) is
dropped rather than applied.

Reaching "paid" never confirms the booking: confirmation stays an explicit
owner action.
"""
import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, events, models
from .errors import InvalidStateError
from .gateway import GatewayStatusReport

logger = logging.getLogger("booking_service")


def synchronize_booking(db: Session, payment: models.Payment) -> bool:
    """
    Mirrors `payment.status` onto its booking's payment_status.

    The booking is left alone when the payment is not its latest attempt, when
    the booking is already cancelled or completed, or when the booking is past
    pending and the status is anything but paid.
    Returns True if the booking was written. Raises InvalidStateError if the
    booking row moved under us; the caller must roll back.
    Note: Does NOT commit.
    """
    latest = crud.get_latest_payment(db, payment.booking_id)
    if latest is None or latest.id != payment.id:
        logger.info(
            f"Payment {payment.gateway_order_id} is not the latest attempt for booking "
            f"{payment.booking_id}; booking left unchanged."
        )
        return False

    booking = crud.get_booking_for_update(db, payment.booking_id)
    status = models.BookingStatus(booking.status)
    seen_payment_status = models.PaymentStatus(booking.payment_status)
    value = models.PaymentStatus(payment.status)

    if status in models.TERMINAL_BOOKING_STATUSES:
        logger.info(
            f"Booking {booking.id} is {status.value}; ignoring payment status {value.value} "
            f"from {payment.gateway_order_id}."
        )
        return False

    if status != models.BookingStatus.PENDING and value != models.PaymentStatus.PAID:
        logger.warning(
            f"Booking {booking.id} is {status.value} but payment {payment.gateway_order_id} "
            f"reports {value.value}; not mirroring."
        )
        return False

    if seen_payment_status == value:
        return False

    if not crud.set_booking_payment_status(
            db, booking.id, value, expected_status=status, expected_payment_status=seen_payment_status
    ):
        raise InvalidStateError(f"Booking {booking.id} changed while synchronizing payment {payment.gateway_order_id}.")

    events.emit_event(db, events.PAYMENT_SYNCHRONIZED, {
        "booking_id": booking.id,
        "renter_id": booking.renter_id,
        "owner_id": booking.owner_id,
        "order_id": payment.gateway_order_id,
        "payment_status": value.value,
    })
    logger.info(f"Booking {booking.id} payment_status -> {value.value} (order {payment.gateway_order_id})")
    return True


def record_payment_status(
        db: Session,
        payment: models.Payment,
        report: GatewayStatusReport,
        now: Optional[datetime.datetime] = None,
) -> bool:
    """
    Applies a gateway report to a payment attempt and synchronizes its booking,
    committing both together.

    Terminal payment statuses are final; a report that would move a payment out
    of one is logged and dropped. So is a report for a payment whose status
    changed in the store since `payment` was loaded. Reports that change
    nothing write nothing.
    Returns True if anything was written.
    """
    current = models.PaymentStatus(payment.status)
    new_status = models.PaymentStatus(report.status)

    if current in models.TERMINAL_PAYMENT_STATUSES:
        if new_status != current:
            logger.warning(
                f"Payment {payment.gateway_order_id} is already {current.value}; "
                f"ignoring gateway report of {new_status.value}."
            )
        return False

    now = now or models.utcnow()
    values = {}

    if report.transaction_id and payment.external_transaction_id != report.transaction_id:
        values["external_transaction_id"] = report.transaction_id
    if report.fraud_status and payment.fraud_status != report.fraud_status:
        values["fraud_status"] = report.fraud_status

    status_changed = new_status != current
    if status_changed:
        values["status"] = new_status
        if new_status == models.PaymentStatus.PAID:
            values["paid_at"] = report.paid_at or now

    if not values:
        return False

    values["updated_at"] = now
    try:
        if not crud.compare_and_set_payment(db, payment.id, current, values):
            db.rollback()
            db.refresh(payment)
            logger.warning(
                f"Payment {payment.gateway_order_id} moved to "
                f"{models.PaymentStatus(payment.status).value} while a {new_status.value} report "
                f"was being recorded; report dropped."
            )
            return False
        db.refresh(payment)
        if status_changed and new_status in models.TERMINAL_PAYMENT_STATUSES:
            synchronize_booking(db, payment)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if status_changed:
        logger.info(f"Payment {payment.gateway_order_id}: {current.value} -> {new_status.value}")
    return True
