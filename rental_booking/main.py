import asyncio
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from . import models
from .database import engine
from .errors import register_error_handlers
from .routers import booking_router, payment_router
from .outbox_poller import run_outbox_poller
from .reconciliation import run_reconciliation_loop

import redis.asyncio as redis
from fastapi_limiter import FastAPILimiter
from .config import settings

# Setup logger
logger = logging.getLogger("booking_service")

# Create database tables on startup
# This will create 'bookings', 'payments' and 'outbox_events' if they don't exist
models.Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manages application startup and shutdown events.
    """
    logger.info("Starting background tasks...")

    redis_client = None
    try:
        redis_client = redis.from_url(settings.REDIS_URL, encoding="utf-8")
        await FastAPILimiter.init(redis_client)
        logger.info("FastAPILimiter initialized with Redis.")
    except Exception as e:
        logger.error(f"Failed to initialize FastAPILimiter: {e}")

    # Publishes domain events written to the outbox
    poller_task = asyncio.create_task(run_outbox_poller())

    # Polls the gateway for unresolved payments and expires stale ones
    reconciliation_task = asyncio.create_task(run_reconciliation_loop())

    yield  # The application is now running

    logger.info("Shutting down background tasks...")

    if redis_client is not None:
        await redis_client.aclose()

    poller_task.cancel()
    reconciliation_task.cancel()

    try:
        await poller_task
    except asyncio.CancelledError:
        logger.info("Outbox poller task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during outbox poller shutdown: {e}")

    try:
        await reconciliation_task
    except asyncio.CancelledError:
        logger.info("Reconciliation task successfully cancelled.")
    except Exception as e:
        logger.error(f"Error during reconciliation shutdown: {e}")


app = FastAPI(
    title="Rental Booking Service API",
    description="Booking lifecycle and payment consistency for peer-to-peer rentals.",
    version="1.0.0",
    lifespan=lifespan
)

register_error_handlers(app)

app.include_router(booking_router.router)
app.include_router(payment_router.router)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Rental Booking Service"}
