import logging

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger("booking_service")


class BookingEngineError(Exception):
    """Base class for every error the booking engine reports to its callers."""

    code = "booking_error"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class ValidationError(BookingEngineError):
    """Malformed input, or a booking request that cannot be satisfied."""

    code = "validation_error"
    status_code = status.HTTP_400_BAD_REQUEST


class AuthorizationError(BookingEngineError):
    code = "not_authorized"
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(BookingEngineError):
    code = "not_found"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStateError(BookingEngineError):
    """The requested transition is not legal from the booking's current state."""

    code = "invalid_state"
    status_code = status.HTTP_409_CONFLICT


class PaymentNotCompletedError(BookingEngineError):
    """Confirmation was attempted before the booking's payment was recorded as paid."""

    code = "payment_not_completed"
    status_code = status.HTTP_409_CONFLICT


class CatalogUnavailableError(BookingEngineError):
    code = "catalog_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class GatewayUnavailableError(BookingEngineError):
    """Transient gateway failure. Safe for the caller to retry."""

    code = "gateway_unavailable"
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class GatewayAmbiguousError(BookingEngineError):
    """
    The gateway answered with a status we cannot interpret.
    Nothing is written; the reconciliation loop will ask again.
    """

    code = "gateway_ambiguous"
    status_code = status.HTTP_202_ACCEPTED


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(BookingEngineError)
    async def booking_engine_error_handler(request: Request, exc: BookingEngineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.message, "code": exc.code},
        )
