import json
from sqlalchemy.orm import Session

from . import models
from .config import settings

BOOKING_CREATED = "BookingCreated"
PAYMENT_SESSION_CREATED = "PaymentSessionCreated"
PAYMENT_SYNCHRONIZED = "PaymentSynchronized"
BOOKING_CONFIRMED = "BookingConfirmed"
RENTAL_STARTED = "RentalStarted"
BOOKING_CANCELLED = "BookingCancelled"
RENTAL_COMPLETED = "RentalCompleted"


def booking_snapshot(booking: models.Booking) -> dict:
    return {
        "booking_id": booking.id,
        "renter_id": booking.renter_id,
        "owner_id": booking.owner_id,
        "product_id": booking.product_id,
        "status": models.BookingStatus(booking.status).value,
        "payment_status": models.PaymentStatus(booking.payment_status).value,
    }


def emit_event(db: Session, event_type: str, payload: dict) -> models.OutboxEvent:
    """
    Adds a domain event to the outbox.
    Note: Does NOT commit. The event is written in the caller's transaction,
    together with the state change it describes.
    """
    db_outbox_event = models.OutboxEvent(
        topic=settings.KAFKA_BOOKING_TOPIC,
        event_type=event_type,
        payload=json.dumps({"type": event_type, **payload}, default=str),
        status="PENDING"
    )
    db.add(db_outbox_event)
    return db_outbox_event
