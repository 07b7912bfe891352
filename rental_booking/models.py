from sqlalchemy import Column, Integer, Date, TIMESTAMP, String, Text, Float, ForeignKey, Index, text
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
from sqlalchemy import Enum as SQLEnum
import datetime

from .database import Base


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns below."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


# --- ENUM for the booking lifecycle ---
class BookingStatus(str, PyEnum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# --- ENUM shared by Payment.status and Booking.payment_status ---
class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class PaymentMethod(str, PyEnum):
    QRIS = "qris"
    GOPAY = "gopay"
    SHOPEEPAY = "shopeepay"
    BANK_TRANSFER = "bank_transfer"


class DeliveryMethod(str, PyEnum):
    PICKUP = "pickup"
    DELIVERY = "delivery"


TERMINAL_BOOKING_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})

# A payment in one of these statuses is the booking's "active" attempt
ACTIVE_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PROCESSING})

# Reaching any of these ends the attempt and is mirrored onto the booking
TERMINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.PAID,
    PaymentStatus.FAILED,
    PaymentStatus.EXPIRED,
    PaymentStatus.CANCELLED,
})


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True, index=True)

    # These are just IDs from the identity and catalog services.
    # No direct DB relationship is enforced.
    renter_id = Column(Integer, index=True, nullable=False)
    owner_id = Column(Integer, index=True, nullable=False)
    product_id = Column(Integer, index=True, nullable=False)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)

    total_price = Column(Integer, nullable=False)

    status = Column(SQLEnum(BookingStatus), default=BookingStatus.PENDING, nullable=False, index=True)

    # Mirrored from the latest payment attempt. Only synchronization writes it.
    payment_status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)

    # Delivery details
    delivery_method = Column(SQLEnum(DeliveryMethod), default=DeliveryMethod.PICKUP, nullable=False)
    delivery_fee = Column(Integer, default=0, nullable=False)
    distance_km = Column(Float, nullable=True)
    renter_address = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    payments = relationship(
        "Payment",
        back_populates="booking",
        order_by="Payment.id",
    )


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)

    gateway_order_id = Column(String(255), unique=True, nullable=False, index=True)
    amount = Column(Integer, nullable=False)

    status = Column(SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    method = Column(SQLEnum(PaymentMethod), default=PaymentMethod.QRIS, nullable=False)

    # Returned by the gateway when the session is created
    gateway_session_token = Column(Text, nullable=True)
    payment_url = Column(Text, nullable=True)

    # Reported by the gateway once the renter pays
    external_transaction_id = Column(String(255), nullable=True, index=True)
    fraud_status = Column(String(50), nullable=True)
    paid_at = Column(TIMESTAMP, nullable=True)

    expires_at = Column(TIMESTAMP, nullable=False)
    created_at = Column(TIMESTAMP, default=utcnow, nullable=False)
    updated_at = Column(TIMESTAMP, default=utcnow, onupdate=utcnow, nullable=False)

    booking = relationship("Booking", back_populates="payments")

    # At most one pending/processing attempt per booking
    __table_args__ = (
        Index(
            "uq_payments_one_active_per_booking",
            "booking_id",
            unique=True,
            sqlite_where=text("status IN ('PENDING', 'PROCESSING')"),
            postgresql_where=text("status IN ('PENDING', 'PROCESSING')"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PAYMENT_STATUSES


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, index=True)

    # Status to track if the event has been sent
    status = Column(String(20), default="PENDING", nullable=False)

    # The Kafka topic to send the message to
    topic = Column(String(255), nullable=False)

    # Domain event name, also sent as the Kafka message key
    event_type = Column(String(64), nullable=False)

    # The full JSON payload to be sent
    payload = Column(Text, nullable=False)

    created_at = Column(TIMESTAMP, default=utcnow)

    # An index on 'status' will make the poller's query much faster
    __table_args__ = (
        Index('ix_outbox_events_status', 'status'),
    )
