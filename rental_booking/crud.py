import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from . import models, schemas, events

# Bookings in these statuses hold the product for their period
BLOCKING_STATUSES = (
    models.BookingStatus.PENDING,
    models.BookingStatus.CONFIRMED,
    models.BookingStatus.ACTIVE,
)


# --- Bookings ---

def check_booking_conflict(db: Session, product_id: int, start_date: datetime.date, end_date: datetime.date) -> bool:
    """
    Checks if a new booking for a given product and date range conflicts
    with any existing booking that still holds the product.

    Returns True if a conflict exists, False otherwise.
    """
    # The logic for an overlap is:
    # (Existing Start Date < New End Date) AND (Existing End Date > New Start Date)
    existing_booking = db.query(models.Booking).filter(
        models.Booking.product_id == product_id,
        models.Booking.status.in_(BLOCKING_STATUSES),
        models.Booking.start_date < end_date,
        models.Booking.end_date > start_date
    ).first()

    return existing_booking is not None


def create_booking(
        db: Session,
        booking: schemas.BookingCreate,
        renter_id: int,
        owner_id: int,
        total_price: int,
        delivery_fee: int,
) -> models.Booking:
    """
    Atomically creates a new booking and its BookingCreated outbox event.
    """
    db_booking = models.Booking(
        product_id=booking.product_id,
        renter_id=renter_id,
        owner_id=owner_id,
        start_date=booking.start_date,
        end_date=booking.end_date,
        total_price=total_price,
        status=models.BookingStatus.PENDING,
        payment_status=models.PaymentStatus.PENDING,
        delivery_method=booking.delivery_method,
        delivery_fee=delivery_fee,
        distance_km=booking.distance_km,
        renter_address=booking.renter_address,
        notes=booking.notes,
    )
    db.add(db_booking)

    # Flush to get the booking ID for the event payload
    db.flush()
    events.emit_event(db, events.BOOKING_CREATED, {
        **events.booking_snapshot(db_booking),
        "start_date": db_booking.start_date.isoformat(),
        "end_date": db_booking.end_date.isoformat(),
        "total_price": db_booking.total_price,
    })

    db.commit()
    db.refresh(db_booking)
    return db_booking


def get_booking(db: Session, booking_id: int) -> Optional[models.Booking]:
    return db.query(models.Booking).filter(models.Booking.id == booking_id).first()


def get_booking_for_update(db: Session, booking_id: int) -> Optional[models.Booking]:
    """Re-reads the booking row, replacing whatever this session already holds."""
    return db.query(models.Booking).filter(
        models.Booking.id == booking_id
    ).populate_existing().with_for_update().first()


def get_bookings_by_renter(db: Session, renter_id: int, skip: int = 0, limit: int = 100):
    return db.query(models.Booking).filter(
        models.Booking.renter_id == renter_id
    ).order_by(models.Booking.id).offset(skip).limit(limit).all()


def get_bookings_by_owner(db: Session, owner_id: int, skip: int = 0, limit: int = 100):
    return db.query(models.Booking).filter(
        models.Booking.owner_id == owner_id
    ).order_by(models.Booking.id).offset(skip).limit(limit).all()


def compare_and_set_status(
        db: Session,
        booking_id: int,
        expected_status: models.BookingStatus,
        expected_payment_status: models.PaymentStatus,
        new_status: models.BookingStatus,
) -> bool:
    """
    Moves a booking to `new_status` only if its (status, payment_status) pair
    is still the one the caller evaluated. Returns False if another request
    got there first.
    Note: Does NOT commit.
    """
    stmt = (
        update(models.Booking)
        .where(
            models.Booking.id == booking_id,
            models.Booking.status == expected_status,
            models.Booking.payment_status == expected_payment_status,
        )
        .values(status=new_status, updated_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def set_booking_payment_status(
        db: Session,
        booking_id: int,
        payment_status: models.PaymentStatus,
        expected_status: models.BookingStatus,
        expected_payment_status: models.PaymentStatus,
) -> bool:
    """
    Mirrors a payment status onto the booking, provided neither the booking's
    status nor its payment_status has moved since the caller looked at it.
    Only synchronization calls this. Note: Does NOT commit.
    """
    stmt = (
        update(models.Booking)
        .where(
            models.Booking.id == booking_id,
            models.Booking.status == expected_status,
            models.Booking.payment_status == expected_payment_status,
        )
        .values(payment_status=payment_status, updated_at=models.utcnow())
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


# --- Payments ---

def create_payment(
        db: Session,
        booking: models.Booking,
        session: schemas.PaymentSession,
        expires_at: datetime.datetime,
        method: models.PaymentMethod = models.PaymentMethod.QRIS,
) -> models.Payment:
    """
    Adds a new payment attempt for the booking, charging its total price.
    Note: Does NOT commit.
    """
    db_payment = models.Payment(
        booking_id=booking.id,
        gateway_order_id=session.order_id,
        amount=booking.total_price,
        status=models.PaymentStatus.PENDING,
        method=method,
        gateway_session_token=session.token,
        payment_url=session.url,
        expires_at=expires_at,
    )
    db.add(db_payment)
    db.flush()
    return db_payment


def compare_and_set_payment(
        db: Session,
        payment_id: int,
        expected_status: models.PaymentStatus,
        values: dict,
) -> bool:
    """
    Applies `values` to a payment attempt only if its status is still
    `expected_status`. Returns False if another writer got there first.
    Note: Does NOT commit.
    """
    stmt = (
        update(models.Payment)
        .where(
            models.Payment.id == payment_id,
            models.Payment.status == expected_status,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return db.execute(stmt).rowcount == 1


def get_payment_by_order_id(db: Session, order_id: str) -> Optional[models.Payment]:
    return db.query(models.Payment).filter(models.Payment.gateway_order_id == order_id).first()


def get_latest_payment(db: Session, booking_id: int) -> Optional[models.Payment]:
    """The most recent attempt is the only one that drives the booking's payment_status."""
    return db.query(models.Payment).filter(
        models.Payment.booking_id == booking_id
    ).order_by(models.Payment.created_at.desc(), models.Payment.id.desc()).first()


def get_payments_for_booking(db: Session, booking_id: int) -> list[models.Payment]:
    return db.query(models.Payment).filter(
        models.Payment.booking_id == booking_id
    ).order_by(models.Payment.created_at, models.Payment.id).all()


def get_unresolved_payments(db: Session, limit: int = 100) -> list[models.Payment]:
    """Pending/processing attempts, oldest first, for the reconciliation loop."""
    return db.query(models.Payment).filter(
        models.Payment.status.in_(models.ACTIVE_PAYMENT_STATUSES)
    ).order_by(models.Payment.created_at, models.Payment.id).limit(limit).all()
