"""
Booking lifecycle controller.

Every operation takes the acting user explicitly. Status changes are checked
by the transition guard and written with a compare-and-set on
(status, payment_status), so two requests racing on the same booking cannot
both win. This module never writes a booking's payment_status; it only reads
it for the guard. Payment statuses flow in through synchronization.
"""
import datetime
import logging
import math
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import crud, events, models, schemas
from .catalog import CatalogClient
from .config import settings
from .errors import (
    AuthorizationError,
    InvalidStateError,
    NotFoundError,
    PaymentNotCompletedError,
    ValidationError,
)
from .gateway import PaymentGateway
from .guard import ActorRole, DenialKind, Verdict, evaluate_transition
from .reconciliation import reconcile_payment
from .synchronization import synchronize_booking

logger = logging.getLogger("booking_service")


# --- Helpers ---

def role_of(booking: models.Booking, actor: schemas.Actor) -> ActorRole:
    if actor.id == booking.owner_id:
        return ActorRole.OWNER
    if actor.id == booking.renter_id:
        return ActorRole.RENTER
    if actor.is_system:
        return ActorRole.SYSTEM
    return ActorRole.OTHER


def raise_for_verdict(verdict: Verdict) -> None:
    if verdict.allowed:
        return
    if verdict.kind == DenialKind.PAYMENT_NOT_COMPLETED:
        raise PaymentNotCompletedError(verdict.reason)
    if verdict.kind == DenialKind.NOT_PERMITTED:
        raise AuthorizationError(verdict.reason)
    raise InvalidStateError(verdict.reason)


def calculate_delivery_fee(delivery_method: models.DeliveryMethod, distance_km: Optional[float]) -> int:
    """Flat fee per started distance unit (Rp 5.000 per 2 km by default)."""
    if delivery_method != models.DeliveryMethod.DELIVERY or not distance_km or distance_km <= 0:
        return 0
    units = math.ceil(distance_km / settings.DELIVERY_DISTANCE_UNIT_KM)
    return units * settings.DELIVERY_FEE_PER_UNIT


def calculate_total_price(price_per_day: int, start_date: datetime.date, end_date: datetime.date,
                          delivery_fee: int = 0) -> int:
    return (end_date - start_date).days * price_per_day + delivery_fee


def _get_booking(db: Session, booking_id: int) -> models.Booking:
    booking = crud.get_booking(db, booking_id)
    if booking is None:
        raise NotFoundError(f"Booking {booking_id} not found.")
    return booking


def _require_party(booking: models.Booking, actor: schemas.Actor) -> ActorRole:
    role = role_of(booking, actor)
    if role == ActorRole.OTHER:
        raise AuthorizationError("You are not a party to this booking.")
    return role


# --- Create ---

async def create_booking(
        db: Session,
        catalog: CatalogClient,
        actor: schemas.Actor,
        booking: schemas.BookingCreate,
) -> models.Booking:
    if booking.start_date >= booking.end_date:
        raise ValidationError("Booking end date must be after start date.")
    if booking.delivery_method == models.DeliveryMethod.DELIVERY and not booking.renter_address:
        raise ValidationError("A delivery address is required for delivery bookings.")

    product = await catalog.get_product(booking.product_id)
    if product.owner_id == actor.id:
        raise ValidationError("You cannot rent your own product.")
    if not product.is_available:
        raise ValidationError(f"Product {product.id} is not available for rent.")

    if crud.check_booking_conflict(db, booking.product_id, booking.start_date, booking.end_date):
        raise ValidationError("The product is already booked for these dates.")

    delivery_fee = calculate_delivery_fee(booking.delivery_method, booking.distance_km)
    total_price = calculate_total_price(product.price_per_day, booking.start_date, booking.end_date, delivery_fee)

    db_booking = crud.create_booking(
        db,
        booking,
        renter_id=actor.id,
        owner_id=product.owner_id,
        total_price=total_price,
        delivery_fee=delivery_fee,
    )
    logger.info(
        f"Booking {db_booking.id} created by renter {actor.id} for product {product.id}, "
        f"total {total_price}"
    )
    return db_booking


# --- Payment ---

def _session_of(payment: models.Payment) -> schemas.PaymentSession:
    return schemas.PaymentSession(
        order_id=payment.gateway_order_id,
        token=payment.gateway_session_token or "",
        url=payment.payment_url or "",
    )


async def request_payment(
        db: Session,
        gateway: PaymentGateway,
        booking_id: int,
        actor: schemas.Actor,
) -> schemas.PaymentSession:
    """
    Returns a payment session for the booking.

    While the latest attempt is still pending/processing, that attempt's
    session is returned again. Otherwise a new attempt is opened at the
    gateway for the booking's total price.
    """
    booking = _get_booking(db, booking_id)
    if role_of(booking, actor) != ActorRole.RENTER:
        raise AuthorizationError("Only the renter can pay for a booking.")
    if booking.status != models.BookingStatus.PENDING:
        raise InvalidStateError(
            f"Payment can only be requested for a pending booking (booking is "
            f"{models.BookingStatus(booking.status).value})."
        )

    latest = crud.get_latest_payment(db, booking.id)
    if latest is not None and latest.is_active:
        return _session_of(latest)
    if latest is not None and latest.status == models.PaymentStatus.PAID:
        raise InvalidStateError("This booking has already been paid.")

    # No row lock is taken here: the partial unique index on active attempts
    # rejects a second concurrent attempt at commit time.
    session = await gateway.create_session(booking.id, booking.total_price)

    try:
        payment = crud.create_payment(
            db,
            booking,
            session,
            expires_at=models.utcnow() + datetime.timedelta(minutes=settings.PAYMENT_EXPIRY_MINUTES),
        )
        # A fresh attempt resets the booking's mirrored status to pending.
        synchronize_booking(db, payment)
        events.emit_event(db, events.PAYMENT_SESSION_CREATED, {
            "booking_id": booking.id,
            "renter_id": booking.renter_id,
            "order_id": session.order_id,
            "amount": payment.amount,
            "url": session.url,
        })
        db.commit()
    except IntegrityError:
        # Another request opened an attempt first; hand back that one.
        db.rollback()
        logger.info(f"Concurrent payment request for booking {booking_id}; reusing the active attempt.")
        latest = crud.get_latest_payment(db, booking_id)
        if latest is not None and latest.is_active:
            return _session_of(latest)
        raise InvalidStateError("Booking payment changed concurrently; please retry.")
    except InvalidStateError:
        db.rollback()
        raise

    logger.info(f"Payment session {session.order_id} created for booking {booking.id}")
    return session


async def check_payment_status(
        db: Session,
        gateway: PaymentGateway,
        booking_id: int,
        actor: schemas.Actor,
) -> models.Payment:
    """The "check status" action: one reconciliation pass for the latest attempt."""
    booking = _get_booking(db, booking_id)
    _require_party(booking, actor)

    payment = crud.get_latest_payment(db, booking.id)
    if payment is None:
        raise NotFoundError(f"Booking {booking_id} has no payment yet.")

    return await reconcile_payment(db, gateway, payment, raise_ambiguous=True)


# --- Status transitions ---

def _transition(
        db: Session,
        booking: models.Booking,
        actor: schemas.Actor,
        requested: models.BookingStatus,
        event_type: str,
        today: Optional[datetime.date] = None,
) -> models.Booking:
    role = _require_party(booking, actor)

    seen_status = models.BookingStatus(booking.status)
    seen_payment_status = models.PaymentStatus(booking.payment_status)
    today = today or datetime.date.today()

    verdict = evaluate_transition(
        seen_status,
        seen_payment_status,
        requested,
        role,
        before_period_start=today < booking.start_date,
    )
    raise_for_verdict(verdict)

    if not crud.compare_and_set_status(db, booking.id, seen_status, seen_payment_status, requested):
        db.rollback()
        db.refresh(booking)
        raise InvalidStateError(
            f"Booking {booking.id} was changed by another request and is now "
            f"{models.BookingStatus(booking.status).value}."
        )

    events.emit_event(db, event_type, {
        "booking_id": booking.id,
        "renter_id": booking.renter_id,
        "owner_id": booking.owner_id,
        "product_id": booking.product_id,
        "from_status": seen_status.value,
        "status": requested.value,
        "actor_id": actor.id,
    })
    db.commit()
    db.refresh(booking)

    logger.info(f"Booking {booking.id}: {seen_status.value} -> {requested.value} by {role.value} {actor.id}")
    return booking


def confirm_booking(db: Session, booking_id: int, actor: schemas.Actor) -> models.Booking:
    booking = _get_booking(db, booking_id)
    if actor.id != booking.owner_id:
        raise AuthorizationError("Only the owner can confirm a booking.")
    return _transition(db, booking, actor, models.BookingStatus.CONFIRMED, events.BOOKING_CONFIRMED)


def start_rental(db: Session, booking_id: int, actor: schemas.Actor) -> models.Booking:
    booking = _get_booking(db, booking_id)
    return _transition(db, booking, actor, models.BookingStatus.ACTIVE, events.RENTAL_STARTED)


def complete_rental(db: Session, booking_id: int, actor: schemas.Actor) -> models.Booking:
    booking = _get_booking(db, booking_id)
    return _transition(db, booking, actor, models.BookingStatus.COMPLETED, events.RENTAL_COMPLETED)


def cancel_booking(
        db: Session,
        booking_id: int,
        actor: schemas.Actor,
        today: Optional[datetime.date] = None,
) -> models.Booking:
    booking = _get_booking(db, booking_id)
    return _transition(db, booking, actor, models.BookingStatus.CANCELLED, events.BOOKING_CANCELLED, today=today)


# --- Reads ---

def get_booking_for_actor(db: Session, booking_id: int, actor: schemas.Actor) -> models.Booking:
    booking = _get_booking(db, booking_id)
    _require_party(booking, actor)
    return booking


def list_payments(db: Session, booking_id: int, actor: schemas.Actor) -> list[models.Payment]:
    booking = get_booking_for_actor(db, booking_id, actor)
    return crud.get_payments_for_booking(db, booking.id)
