from datetime import date, timedelta
import json
from unittest.mock import MagicMock

from sqlalchemy.orm import Session

from rental_booking import crud, models, schemas
from rental_booking.models import BookingStatus, PaymentStatus

from conftest import make_booking, PRODUCT_ID, RENTER_ID, OWNER_ID


# --- Helper function to create a mock Booking object ---
def create_mock_booking(start_offset: int, end_offset: int, product_id: int = 1):
    """Creates a mock Booking object with dates relative to today."""
    return models.Booking(
        id=1,
        product_id=product_id,
        renter_id=1,
        owner_id=2,
        start_date=date.today() + timedelta(days=start_offset),
        end_date=date.today() + timedelta(days=end_offset),
        total_price=100000,
    )


# --- Test Cases for check_booking_conflict ---

def test_check_booking_conflict_no_conflict():
    """Test case where there are no existing bookings."""
    mock_db = MagicMock(spec=Session)
    mock_db.query.return_value.filter.return_value.first.return_value = None

    conflict = crud.check_booking_conflict(mock_db, 1, date.today(), date.today() + timedelta(days=5))

    assert conflict is False
    mock_db.query.return_value.filter.return_value.first.assert_called_once()


def test_check_booking_conflict_full_overlap():
    """Test case where the new booking is fully inside an existing booking."""
    mock_db = MagicMock(spec=Session)
    mock_db.query.return_value.filter.return_value.first.return_value = create_mock_booking(2, 10)

    conflict = crud.check_booking_conflict(
        mock_db, 1, date.today() + timedelta(days=3), date.today() + timedelta(days=7)
    )
    assert conflict is True


def test_check_booking_conflict_against_store(db_session: Session):
    """Overlaps block; touching ranges and cancelled bookings do not."""
    existing = make_booking(db_session, start_offset=5, days=5)  # days 5..10

    assert crud.check_booking_conflict(
        db_session, PRODUCT_ID, existing.start_date - timedelta(days=2), existing.start_date + timedelta(days=1)
    ) is True
    # New booking ends exactly when the existing one starts
    assert crud.check_booking_conflict(
        db_session, PRODUCT_ID, existing.start_date - timedelta(days=3), existing.start_date
    ) is False
    # New booking starts exactly when the existing one ends
    assert crud.check_booking_conflict(
        db_session, PRODUCT_ID, existing.end_date, existing.end_date + timedelta(days=3)
    ) is False
    # Different product
    assert crud.check_booking_conflict(
        db_session, PRODUCT_ID + 1, existing.start_date, existing.end_date
    ) is False


def test_cancelled_and_completed_bookings_do_not_block(db_session: Session):
    make_booking(db_session, status=BookingStatus.CANCELLED)
    completed = make_booking(db_session, status=BookingStatus.COMPLETED, payment_status=PaymentStatus.PAID)

    assert crud.check_booking_conflict(
        db_session, PRODUCT_ID, completed.start_date, completed.end_date
    ) is False


def test_create_booking_writes_outbox_event(db_session: Session):
    request = schemas.BookingCreate(
        product_id=PRODUCT_ID,
        start_date=date.today() + timedelta(days=1),
        end_date=date.today() + timedelta(days=3),
    )
    booking = crud.create_booking(
        db_session, request, renter_id=RENTER_ID, owner_id=OWNER_ID, total_price=40000, delivery_fee=0
    )

    assert booking.status == BookingStatus.PENDING
    assert booking.payment_status == PaymentStatus.PENDING

    event = db_session.query(models.OutboxEvent).one()
    assert event.event_type == "BookingCreated"
    payload = json.loads(event.payload)
    assert payload["booking_id"] == booking.id
    assert payload["total_price"] == 40000


def test_compare_and_set_status_succeeds_when_state_unchanged(db_session: Session):
    booking = make_booking(db_session, payment_status=PaymentStatus.PAID)

    assert crud.compare_and_set_status(
        db_session, booking.id, BookingStatus.PENDING, PaymentStatus.PAID, BookingStatus.CONFIRMED
    ) is True
    db_session.commit()
    db_session.refresh(booking)
    assert booking.status == BookingStatus.CONFIRMED


def test_compare_and_set_status_rejects_stale_view(db_session: Session):
    booking = make_booking(db_session, payment_status=PaymentStatus.PAID)

    # Caller evaluated the booking while it was still unpaid
    assert crud.compare_and_set_status(
        db_session, booking.id, BookingStatus.PENDING, PaymentStatus.PENDING, BookingStatus.CONFIRMED
    ) is False
    db_session.commit()
    db_session.refresh(booking)
    assert booking.status == BookingStatus.PENDING


def test_latest_payment_is_most_recent_attempt(db_session: Session):
    booking = make_booking(db_session)
    expires = models.utcnow() + timedelta(minutes=15)
    first = crud.create_payment(
        db_session, booking, schemas.PaymentSession(order_id="RENT-1-a", token="t1", url="u1"), expires
    )
    first.status = PaymentStatus.EXPIRED
    db_session.commit()
    second = crud.create_payment(
        db_session, booking, schemas.PaymentSession(order_id="RENT-1-b", token="t2", url="u2"), expires
    )
    db_session.commit()

    assert crud.get_latest_payment(db_session, booking.id).id == second.id
    assert [p.gateway_order_id for p in crud.get_payments_for_booking(db_session, booking.id)] == [
        "RENT-1-a", "RENT-1-b"
    ]
    assert [p.id for p in crud.get_unresolved_payments(db_session)] == [second.id]
    assert second.amount == booking.total_price


def test_set_booking_payment_status_rejects_stale_payment_status(db_session: Session):
    booking = make_booking(db_session, payment_status=PaymentStatus.PAID)

    # Caller still believes the booking is unpaid
    assert crud.set_booking_payment_status(
        db_session, booking.id, PaymentStatus.EXPIRED, BookingStatus.PENDING, PaymentStatus.PENDING
    ) is False
    assert crud.set_booking_payment_status(
        db_session, booking.id, PaymentStatus.FAILED, BookingStatus.PENDING, PaymentStatus.PAID
    ) is True
    db_session.commit()
    db_session.refresh(booking)
    assert booking.payment_status == PaymentStatus.FAILED


def test_compare_and_set_payment_only_moves_expected_status(db_session: Session):
    booking = make_booking(db_session)
    payment = crud.create_payment(
        db_session, booking, schemas.PaymentSession(order_id="RENT-1-c", token="t", url="u"),
        models.utcnow() + timedelta(minutes=15),
    )
    db_session.commit()

    assert crud.compare_and_set_payment(
        db_session, payment.id, PaymentStatus.PENDING, {"status": PaymentStatus.PAID, "external_transaction_id": "trx"}
    ) is True
    assert crud.compare_and_set_payment(
        db_session, payment.id, PaymentStatus.PENDING, {"status": PaymentStatus.EXPIRED}
    ) is False
    db_session.commit()
    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PAID
    assert payment.external_transaction_id == "trx"


def test_read_schemas_load_from_orm_rows(db_session: Session):
    booking = make_booking(db_session)
    payment = crud.create_payment(
        db_session, booking, schemas.PaymentSession(order_id="RENT-1-d", token="t", url="http://pay/d"),
        models.utcnow() + timedelta(minutes=15),
    )
    db_session.commit()

    read = schemas.BookingRead.model_validate(booking)
    assert read.id == booking.id
    assert read.status == BookingStatus.PENDING
    assert schemas.PaymentRead.model_validate(payment).payment_url == "http://pay/d"
