import asyncio
import datetime
import logging
from typing import Optional

from sqlalchemy.orm import Session

from . import crud, models
from .config import settings
from .database import SessionLocal
from .errors import GatewayAmbiguousError, GatewayUnavailableError, NotFoundError
from .gateway import GatewayStatusReport, PaymentGateway, get_gateway
from .synchronization import record_payment_status

logger = logging.getLogger("reconciliation")


async def reconcile_payment(
        db: Session,
        gateway: PaymentGateway,
        payment: models.Payment,
        now: Optional[datetime.datetime] = None,
        raise_ambiguous: bool = False,
) -> models.Payment:
    """
    Asks the gateway for the current status of one payment attempt and records it.

    An attempt the gateway still reports as pending after its expiry window is
    recorded as expired. An ambiguous answer writes nothing; the payment stays
    as it is for the next pass (or the error is re-raised for interactive
    callers that asked for it).
    """
    if not payment.is_active:
        return payment

    now = now or models.utcnow()
    try:
        report = await gateway.check_status(payment.gateway_order_id)
    except GatewayAmbiguousError as e:
        logger.warning(
            f"Ambiguous gateway response for order {payment.gateway_order_id}: {e}. "
            f"Leaving it {models.PaymentStatus(payment.status).value} for the next reconciliation."
        )
        if raise_ambiguous:
            raise
        return payment

    if report.status in models.ACTIVE_PAYMENT_STATUSES and now >= payment.expires_at:
        logger.info(f"Payment {payment.gateway_order_id} passed its expiry window at {payment.expires_at}.")
        report = GatewayStatusReport(
            order_id=report.order_id,
            status=models.PaymentStatus.EXPIRED,
            transaction_id=report.transaction_id,
            fraud_status=report.fraud_status,
        )

    record_payment_status(db, payment, report, now=now)
    return payment


async def reconcile_pending_payments(
        db: Session,
        gateway: PaymentGateway,
        now: Optional[datetime.datetime] = None,
        batch_size: int = 100,
) -> int:
    """
    One reconciliation pass over every unresolved payment attempt.
    Returns how many attempts left the pending/processing states.
    """
    payments = crud.get_unresolved_payments(db, limit=batch_size)
    if not payments:
        return 0

    logger.info(f"Reconciling {len(payments)} unresolved payments...")
    resolved = 0
    for payment in payments:
        try:
            await reconcile_payment(db, gateway, payment, now=now)
        except GatewayUnavailableError as e:
            # No point hammering a gateway that is down; try again next pass.
            logger.warning(f"Gateway unavailable during reconciliation: {e}")
            break
        except Exception as e:
            logger.error(f"Failed to reconcile payment {payment.gateway_order_id}: {e}")
            db.rollback()
            continue
        if not payment.is_active:
            resolved += 1

    if resolved:
        logger.info(f"Resolved {resolved} payments.")
    return resolved


def apply_gateway_notification(db: Session, gateway: PaymentGateway, payload: dict) -> models.Payment:
    """
    Push path: records a gateway notification (webhook) through the same
    synchronization as polling.
    """
    report = gateway.parse_notification(payload)
    payment = crud.get_payment_by_order_id(db, report.order_id)
    if payment is None:
        raise NotFoundError(f"No payment with order id {report.order_id}.")

    logger.info(f"Gateway notification for order {report.order_id}: {report.status.value}")
    record_payment_status(db, payment, report)
    return payment


async def run_reconciliation_loop(gateway: Optional[PaymentGateway] = None, poll_interval: Optional[int] = None):
    """
    Main background loop for reconciliation.
    """
    gateway = gateway or get_gateway()
    poll_interval = poll_interval or settings.RECONCILE_INTERVAL_SECONDS
    while True:
        logger.info("Reconciliation waking up to check unresolved payments...")
        db: Session = SessionLocal()
        try:
            await reconcile_pending_payments(db, gateway)
        except Exception as e:
            logger.error(f"Error in reconciliation loop: {e}")
            db.rollback()
        finally:
            db.close()

        await asyncio.sleep(poll_interval)
