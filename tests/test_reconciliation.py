import asyncio
import datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import Session

from rental_booking import lifecycle, models
from rental_booking.errors import GatewayAmbiguousError, GatewayUnavailableError, NotFoundError
from rental_booking.gateway import StubGateway
from rental_booking.models import BookingStatus, PaymentStatus
from rental_booking.reconciliation import (
    apply_gateway_notification,
    reconcile_payment,
    reconcile_pending_payments,
    run_reconciliation_loop,
)

from conftest import assert_invariants, make_booking


async def open_payment(db: Session, gateway, renter, start_offset: int = 10) -> models.Payment:
    booking = make_booking(db, start_offset=start_offset)
    session = await lifecycle.request_payment(db, gateway, booking.id, renter)
    return db.query(models.Payment).filter_by(gateway_order_id=session.order_id).one()


@pytest.mark.asyncio
async def test_pass_resolves_paid_payment_once(db_session: Session, gateway, renter):
    payment = await open_payment(db_session, gateway, renter)
    gateway.set_status(payment.gateway_order_id, PaymentStatus.PAID)

    assert await reconcile_pending_payments(db_session, gateway) == 1
    assert await reconcile_pending_payments(db_session, gateway) == 0

    assert payment.status == PaymentStatus.PAID
    assert payment.booking.payment_status == PaymentStatus.PAID
    synced = db_session.query(models.OutboxEvent).filter_by(event_type="PaymentSynchronized").count()
    assert synced == 1


@pytest.mark.asyncio
async def test_pending_payment_within_window_is_left_alone(db_session: Session, gateway, renter):
    payment = await open_payment(db_session, gateway, renter)

    assert await reconcile_pending_payments(db_session, gateway) == 0
    assert payment.status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_ambiguous_answer_writes_nothing(db_session: Session, gateway, renter):
    payment = await open_payment(db_session, gateway, renter)
    gateway.check_status = AsyncMock(side_effect=GatewayAmbiguousError("unreadable status"))

    assert await reconcile_pending_payments(db_session, gateway) == 0

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING
    assert payment.booking.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_unavailable_gateway_stops_the_pass(db_session: Session, gateway, renter):
    await open_payment(db_session, gateway, renter, start_offset=10)
    await open_payment(db_session, gateway, renter, start_offset=30)

    class DownGateway(StubGateway):
        calls = 0

        async def check_status(self, order_id):
            self.calls += 1
            raise GatewayUnavailableError("down")

    down = DownGateway()
    assert await reconcile_pending_payments(db_session, down) == 0
    assert down.calls == 1


@pytest.mark.asyncio
async def test_unexpected_error_skips_only_that_payment(db_session: Session, gateway, renter):
    broken = await open_payment(db_session, gateway, renter, start_offset=10)
    healthy = await open_payment(db_session, gateway, renter, start_offset=30)
    gateway.set_status(healthy.gateway_order_id, PaymentStatus.FAILED)

    original = gateway.check_status

    async def flaky(order_id):
        if order_id == broken.gateway_order_id:
            raise RuntimeError("boom")
        return await original(order_id)

    gateway.check_status = flaky

    assert await reconcile_pending_payments(db_session, gateway) == 1
    assert broken.status == PaymentStatus.PENDING
    assert healthy.status == PaymentStatus.FAILED


@pytest.mark.asyncio
async def test_late_success_after_local_expiry_is_ignored(db_session: Session, gateway, renter):
    payment = await open_payment(db_session, gateway, renter)
    later = models.utcnow() + datetime.timedelta(minutes=20)
    await reconcile_pending_payments(db_session, gateway, now=later)
    assert payment.status == PaymentStatus.EXPIRED

    apply_gateway_notification(db_session, gateway, {
        "order_id": payment.gateway_order_id, "status": "paid", "transaction_id": "late",
    })

    db_session.refresh(payment)
    assert payment.status == PaymentStatus.EXPIRED
    assert payment.booking.payment_status == PaymentStatus.EXPIRED


@pytest.mark.asyncio
async def test_notification_and_poll_agree(db_session: Session, gateway, renter):
    payment = await open_payment(db_session, gateway, renter)

    apply_gateway_notification(db_session, gateway, {
        "order_id": payment.gateway_order_id, "status": "paid", "transaction_id": "trx-push",
    })
    gateway.set_status(payment.gateway_order_id, PaymentStatus.PAID, transaction_id="trx-push")
    await reconcile_pending_payments(db_session, gateway)

    assert payment.status == PaymentStatus.PAID
    assert payment.external_transaction_id == "trx-push"
    assert payment.booking.payment_status == PaymentStatus.PAID
    synced = db_session.query(models.OutboxEvent).filter_by(event_type="PaymentSynchronized").count()
    assert synced == 1


def test_notification_for_unknown_order(db_session: Session, gateway):
    with pytest.raises(NotFoundError):
        apply_gateway_notification(db_session, gateway, {"order_id": "RENT-9-missing", "status": "paid"})


@pytest.mark.asyncio
async def test_reconciliation_loop_runs_a_pass(mocker, session_factory, gateway, renter):
    setup = session_factory()
    payment_id = (await open_payment(setup, gateway, renter)).id
    order_id = setup.get(models.Payment, payment_id).gateway_order_id
    setup.close()
    gateway.set_status(order_id, PaymentStatus.PAID)

    mocker.patch("rental_booking.reconciliation.SessionLocal", session_factory)
    mocker.patch("rental_booking.reconciliation.asyncio.sleep", new_callable=AsyncMock,
                 side_effect=asyncio.CancelledError)

    with pytest.raises(asyncio.CancelledError):
        await run_reconciliation_loop(gateway=gateway, poll_interval=1)

    check = session_factory()
    try:
        assert check.get(models.Payment, payment_id).status == PaymentStatus.PAID
    finally:
        check.close()


@pytest.mark.asyncio
async def test_webhook_during_reconciliation_pass_wins(db_session: Session, session_factory, gateway, renter, owner):
    payment = await open_payment(db_session, gateway, renter)
    payment_id, booking_id, order_id = payment.id, payment.booking_id, payment.gateway_order_id

    polling, pushed = session_factory(), session_factory()
    try:
        # The reconciliation pass loads the attempt while it is still pending
        stale = polling.get(models.Payment, payment_id)
        assert stale.status == PaymentStatus.PENDING

        # Meanwhile the webhook records the payment and the owner confirms
        apply_gateway_notification(pushed, gateway, {"order_id": order_id, "status": "paid", "transaction_id": "trx"})
        lifecycle.confirm_booking(pushed, booking_id, owner)

        # The pass resumes long after the expiry window
        later = models.utcnow() + datetime.timedelta(hours=1)
        await reconcile_payment(polling, gateway, stale, now=later)
        assert stale.status == PaymentStatus.PAID
    finally:
        polling.close()
        pushed.close()

    check = session_factory()
    try:
        stored = check.get(models.Payment, payment_id)
        assert stored.status == PaymentStatus.PAID
        assert stored.external_transaction_id == "trx"
        assert stored.booking.status == BookingStatus.CONFIRMED
        assert stored.booking.payment_status == PaymentStatus.PAID
        assert_invariants(check)
    finally:
        check.close()
