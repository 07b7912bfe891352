"""
Payment gateway adapters.

`PaymentGateway` is the contract the rest of the service relies on:

* ``create_session`` opens a payment for a booking and returns the order id,
  token and checkout URL the renter needs.
* ``check_status`` asks the gateway for the current status of an order. It
  has no side effect and is safe to call as often as needed; it is used both
  by the reconciliation loop and by the renter's "check status" button.
* ``parse_notification`` turns a pushed gateway notification (webhook) into
  the same report ``check_status`` returns, so poll and push end up in the
  same synchronization code.

`MidtransGateway` talks to Midtrans Snap over HTTP. `StubGateway` is used when
no server key is configured (local development and tests); it returns
predictable sessions and lets callers set order statuses by hand.
"""
import datetime
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional
from uuid import uuid4

import httpx

from .config import settings
from .errors import AuthorizationError, GatewayAmbiguousError, GatewayUnavailableError
from .models import PaymentStatus
from .schemas import PaymentSession

logger = logging.getLogger("payment_gateway")


@dataclass(frozen=True)
class GatewayStatusReport:
    order_id: str
    status: PaymentStatus
    transaction_id: Optional[str] = None
    fraud_status: Optional[str] = None
    # Gateway-reported settlement time, if the gateway sent one
    paid_at: Optional[datetime.datetime] = None


def mint_order_id(booking_id: int) -> str:
    """Globally unique gateway order id for a new payment attempt."""
    return f"RENT-{booking_id}-{uuid4().hex[:12]}"


class PaymentGateway(ABC):

    @abstractmethod
    async def create_session(self, booking_id: int, amount: int) -> PaymentSession:
        ...

    @abstractmethod
    async def check_status(self, order_id: str) -> GatewayStatusReport:
        ...

    @abstractmethod
    def parse_notification(self, payload: dict) -> GatewayStatusReport:
        ...


# --- Midtrans ---

MIDTRANS_SNAP_URL = "https://app.midtrans.com/snap/v1"
MIDTRANS_API_URL = "https://api.midtrans.com/v2"
MIDTRANS_SANDBOX_SNAP_URL = "https://app.sandbox.midtrans.com/snap/v1"
MIDTRANS_SANDBOX_API_URL = "https://api.sandbox.midtrans.com/v2"

MIDTRANS_SETTLEMENT_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def map_midtrans_status(transaction_status: Optional[str], fraud_status: Optional[str] = None) -> PaymentStatus:
    """
    Maps a Midtrans ``transaction_status`` onto our payment status.

    Raises GatewayAmbiguousError for anything we do not recognise; callers must
    not write a status in that case.
    """
    if transaction_status == "settlement":
        return PaymentStatus.PAID
    if transaction_status == "capture":
        # Card captures flagged for review are not money received yet
        if fraud_status == "challenge":
            return PaymentStatus.PROCESSING
        return PaymentStatus.PAID
    if transaction_status in ("pending", "authorize"):
        return PaymentStatus.PENDING
    if transaction_status in ("deny", "failure"):
        return PaymentStatus.FAILED
    if transaction_status == "cancel":
        return PaymentStatus.CANCELLED
    if transaction_status == "expire":
        return PaymentStatus.EXPIRED
    raise GatewayAmbiguousError(f"Unrecognised gateway transaction status: {transaction_status!r}")


def _parse_settlement_time(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    try:
        return datetime.datetime.strptime(value, MIDTRANS_SETTLEMENT_TIME_FORMAT)
    except ValueError:
        logger.warning(f"Ignoring unparseable settlement_time {value!r}")
        return None


class MidtransGateway(PaymentGateway):

    def __init__(
            self,
            server_key: str,
            is_production: bool = False,
            timeout: float = 10.0,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.server_key = server_key
        self.snap_url = MIDTRANS_SNAP_URL if is_production else MIDTRANS_SANDBOX_SNAP_URL
        self.api_url = MIDTRANS_API_URL if is_production else MIDTRANS_SANDBOX_API_URL
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            auth=(self.server_key, ""),
            headers={"Accept": "application/json"},
            timeout=self.timeout,
            transport=self._transport,
        )

    async def create_session(self, booking_id: int, amount: int) -> PaymentSession:
        order_id = mint_order_id(booking_id)
        body = {
            "transaction_details": {
                "order_id": order_id,
                "gross_amount": amount,
            },
            "enabled_payments": ["qris", "gopay", "shopeepay"],
        }
        logger.info(f"Creating Midtrans transaction {order_id} for booking {booking_id}, amount {amount}")
        try:
            async with self._client() as client:
                response = await client.post(f"{self.snap_url}/transactions", json=body)
        except httpx.HTTPError as e:
            raise GatewayUnavailableError(f"Payment gateway unreachable: {e}") from e

        if response.status_code not in (200, 201):
            logger.error(f"Midtrans rejected transaction {order_id}: {response.status_code} {response.text}")
            raise GatewayUnavailableError(
                f"Payment gateway returned HTTP {response.status_code} while creating a session."
            )

        data = response.json()
        token = data.get("token")
        url = data.get("redirect_url")
        if not token or not url:
            raise GatewayUnavailableError("Payment gateway response did not include a token.")
        return PaymentSession(order_id=order_id, token=token, url=url)

    async def check_status(self, order_id: str) -> GatewayStatusReport:
        try:
            async with self._client() as client:
                response = await client.get(f"{self.api_url}/{order_id}/status")
        except httpx.HTTPError as e:
            raise GatewayUnavailableError(f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 500:
            raise GatewayUnavailableError(f"Payment gateway returned HTTP {response.status_code}.")

        try:
            data = response.json()
        except ValueError as e:
            raise GatewayAmbiguousError(f"Unreadable status response for order {order_id}") from e

        # Midtrans answers 404 in the body until the renter picks a payment method
        if str(data.get("status_code")) == "404":
            return GatewayStatusReport(order_id=order_id, status=PaymentStatus.PENDING)

        return self._report_from(order_id, data)

    def parse_notification(self, payload: dict) -> GatewayStatusReport:
        order_id = payload.get("order_id")
        if not order_id:
            raise GatewayAmbiguousError("Notification without an order_id.")

        expected = self.notification_signature(
            order_id,
            str(payload.get("status_code", "")),
            str(payload.get("gross_amount", "")),
        )
        if not hmac.compare_digest(expected, str(payload.get("signature_key", ""))):
            raise AuthorizationError("Invalid payment notification signature.")

        return self._report_from(order_id, payload)

    def notification_signature(self, order_id: str, status_code: str, gross_amount: str) -> str:
        raw = f"{order_id}{status_code}{gross_amount}{self.server_key}"
        return hashlib.sha512(raw.encode("utf-8")).hexdigest()

    @staticmethod
    def _report_from(order_id: str, data: dict) -> GatewayStatusReport:
        fraud_status = data.get("fraud_status")
        status = map_midtrans_status(data.get("transaction_status"), fraud_status)
        return GatewayStatusReport(
            order_id=order_id,
            status=status,
            transaction_id=data.get("transaction_id"),
            fraud_status=fraud_status,
            paid_at=_parse_settlement_time(data.get("settlement_time")) if status == PaymentStatus.PAID else None,
        )


# --- Stub ---

class StubGateway(PaymentGateway):
    """
    In-process stand-in for the real gateway.

    Sessions get predictable preview URLs and every order starts out pending;
    orders it has no record of are reported pending as well.
    Use ``set_status`` to simulate the renter paying, the payment failing, etc.
    """

    def __init__(self, frontend_url: str = "http://localhost:3000"):
        self.frontend_url = frontend_url.rstrip("/")
        self.available = True
        self._reports: dict = {}

    async def create_session(self, booking_id: int, amount: int) -> PaymentSession:
        if not self.available:
            raise GatewayUnavailableError("Stub gateway is marked unavailable.")
        order_id = mint_order_id(booking_id)
        self._reports[order_id] = GatewayStatusReport(order_id=order_id, status=PaymentStatus.PENDING)
        return PaymentSession(
            order_id=order_id,
            token=f"stub_{uuid4().hex}",
            url=f"{self.frontend_url}/payments/preview?order={order_id}&amount={amount}",
        )

    async def check_status(self, order_id: str) -> GatewayStatusReport:
        if not self.available:
            raise GatewayUnavailableError("Stub gateway is marked unavailable.")
        report = self._reports.get(order_id)
        if report is None:
            # Orders opened before a restart are unknown here; like Midtrans before a
            # method is chosen, they stay pending until the expiry window runs out.
            return GatewayStatusReport(order_id=order_id, status=PaymentStatus.PENDING)
        return report

    def parse_notification(self, payload: dict) -> GatewayStatusReport:
        order_id = payload.get("order_id")
        try:
            status = PaymentStatus(payload.get("status"))
        except ValueError as e:
            raise GatewayAmbiguousError(f"Unrecognised notification status: {payload.get('status')!r}") from e
        if not order_id:
            raise GatewayAmbiguousError("Notification without an order_id.")
        return GatewayStatusReport(
            order_id=order_id,
            status=status,
            transaction_id=payload.get("transaction_id"),
        )

    def set_status(
            self,
            order_id: str,
            status: PaymentStatus,
            *,
            transaction_id: Optional[str] = None,
            paid_at: Optional[datetime.datetime] = None,
    ) -> GatewayStatusReport:
        report = GatewayStatusReport(
            order_id=order_id,
            status=status,
            transaction_id=transaction_id,
            paid_at=paid_at,
        )
        self._reports[order_id] = report
        return report


@lru_cache
def get_gateway() -> PaymentGateway:
    """The configured gateway. Falls back to the stub when no server key is set."""
    if not settings.MIDTRANS_SERVER_KEY:
        logger.warning("MIDTRANS_SERVER_KEY is not set; using the stub payment gateway.")
        return StubGateway(frontend_url=settings.PAYMENT_FRONTEND_URL)
    return MidtransGateway(
        server_key=settings.MIDTRANS_SERVER_KEY,
        is_production=settings.MIDTRANS_IS_PRODUCTION,
        timeout=settings.GATEWAY_TIMEOUT_SECONDS,
    )
