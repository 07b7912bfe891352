from pydantic import BaseModel, ConfigDict, Field
from typing import Optional
import datetime

from .models import BookingStatus, PaymentStatus, PaymentMethod, DeliveryMethod


class Actor(BaseModel):
    """Whoever is calling: taken from the identity token, never from global state."""
    id: int
    role: str = "user"

    @property
    def is_system(self) -> bool:
        return self.role == "system"


class ProductInfo(BaseModel):
    id: int
    owner_id: int
    price_per_day: int
    is_available: bool = True


class BookingBase(BaseModel):
    product_id: int
    start_date: datetime.date
    end_date: datetime.date


class BookingCreate(BookingBase):
    # renter_id will come from the JWT token, owner_id and price from the catalog
    delivery_method: DeliveryMethod = DeliveryMethod.PICKUP
    distance_km: Optional[float] = Field(default=None, ge=0)
    renter_address: Optional[str] = None
    notes: Optional[str] = None


class BookingRead(BookingBase):
    id: int
    renter_id: int
    owner_id: int
    total_price: int
    status: BookingStatus
    payment_status: PaymentStatus
    delivery_method: DeliveryMethod
    delivery_fee: int
    distance_km: Optional[float] = None
    renter_address: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentRead(BaseModel):
    id: int
    booking_id: int
    gateway_order_id: str
    amount: int
    status: PaymentStatus
    method: PaymentMethod
    payment_url: Optional[str] = None
    external_transaction_id: Optional[str] = None
    fraud_status: Optional[str] = None
    paid_at: Optional[datetime.datetime] = None
    expires_at: datetime.datetime
    created_at: datetime.datetime
    updated_at: datetime.datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentSession(BaseModel):
    """What the renter needs to pay: the gateway order id, token and checkout URL."""
    order_id: str
    token: str
    url: str
