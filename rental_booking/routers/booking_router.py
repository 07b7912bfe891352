from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Annotated

from fastapi_limiter.depends import RateLimiter

from .. import schemas, crud, lifecycle
from ..auth import get_current_actor, get_key_by_user_id_or_ip
from ..catalog import CatalogClient, get_catalog
from ..database import get_db
from ..gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/bookings", tags=["Bookings"])

write_limiter = RateLimiter(times=30, minutes=1, identifier=get_key_by_user_id_or_ip)
read_limiter = RateLimiter(times=60, minutes=1, identifier=get_key_by_user_id_or_ip)

CurrentActor = Annotated[schemas.Actor, Depends(get_current_actor)]


@router.post("/", response_model=schemas.BookingRead, status_code=status.HTTP_201_CREATED,
             dependencies=[Depends(write_limiter)])
async def create_booking(
        booking: schemas.BookingCreate,
        actor: CurrentActor,
        db: Session = Depends(get_db),
        catalog: CatalogClient = Depends(get_catalog),
):
    """
    Request a product for a date range. The booking starts out pending/pending.
    """
    return await lifecycle.create_booking(db, catalog, actor, booking)


@router.get("/", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def read_renter_bookings(
        actor: CurrentActor,
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
):
    """
    Get all bookings the authenticated user made as a renter.
    """
    return crud.get_bookings_by_renter(db=db, renter_id=actor.id, skip=skip, limit=limit)


@router.get("/owned", response_model=List[schemas.BookingRead], dependencies=[Depends(read_limiter)])
def read_owner_bookings(
        actor: CurrentActor,
        db: Session = Depends(get_db),
        skip: int = 0,
        limit: int = 100,
):
    """
    Get all bookings for products the authenticated user owns.
    """
    return crud.get_bookings_by_owner(db=db, owner_id=actor.id, skip=skip, limit=limit)


@router.get("/{booking_id}", response_model=schemas.BookingRead, dependencies=[Depends(read_limiter)])
def read_booking(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return lifecycle.get_booking_for_actor(db, booking_id, actor)


@router.post("/{booking_id}/payment", response_model=schemas.PaymentSession,
             dependencies=[Depends(write_limiter)])
async def request_payment(
        booking_id: int,
        actor: CurrentActor,
        db: Session = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Get a payment session for the booking. Calling this again while the
    current attempt is unresolved returns the same session.
    """
    return await lifecycle.request_payment(db, gateway, booking_id, actor)


@router.post("/{booking_id}/payment/check", response_model=schemas.PaymentRead,
             dependencies=[Depends(write_limiter)])
async def check_payment_status(
        booking_id: int,
        actor: CurrentActor,
        db: Session = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Ask the gateway for the latest attempt's status right now.
    """
    return await lifecycle.check_payment_status(db, gateway, booking_id, actor)


@router.get("/{booking_id}/payments", response_model=List[schemas.PaymentRead],
            dependencies=[Depends(read_limiter)])
def read_booking_payments(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return lifecycle.list_payments(db, booking_id, actor)


@router.post("/{booking_id}/confirm", response_model=schemas.BookingRead, dependencies=[Depends(write_limiter)])
def confirm_booking(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    """
    Owner accepts the booking. Fails with code "payment_not_completed"
    until the payment has been recorded as paid.
    """
    return lifecycle.confirm_booking(db, booking_id, actor)


@router.post("/{booking_id}/start", response_model=schemas.BookingRead, dependencies=[Depends(write_limiter)])
def start_rental(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return lifecycle.start_rental(db, booking_id, actor)


@router.post("/{booking_id}/complete", response_model=schemas.BookingRead, dependencies=[Depends(write_limiter)])
def complete_rental(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return lifecycle.complete_rental(db, booking_id, actor)


@router.post("/{booking_id}/cancel", response_model=schemas.BookingRead, dependencies=[Depends(write_limiter)])
def cancel_booking(booking_id: int, actor: CurrentActor, db: Session = Depends(get_db)):
    return lifecycle.cancel_booking(db, booking_id, actor)
