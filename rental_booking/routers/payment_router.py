from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from .. import schemas, reconciliation
from ..database import get_db
from ..errors import ValidationError
from ..gateway import PaymentGateway, get_gateway

router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("/notifications", response_model=schemas.PaymentRead)
async def receive_gateway_notification(
        request: Request,
        db: Session = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Push delivery of payment status from the gateway (webhook).
    Goes through the same synchronization as the reconciliation loop.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Notification body must be JSON.")
    if not isinstance(payload, dict):
        raise ValidationError("Notification body must be a JSON object.")
    return reconciliation.apply_gateway_notification(db, gateway, payload)
