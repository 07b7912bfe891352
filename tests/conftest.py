import os

# Settings are read at import time, so point them at test values first.
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rental_booking.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ["MIDTRANS_SERVER_KEY"] = ""

import datetime
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from rental_booking import models
from rental_booking.config import settings
from rental_booking.database import Base
from rental_booking.errors import ValidationError
from rental_booking.gateway import StubGateway
from rental_booking.schemas import Actor, ProductInfo

RENTER_ID = 1
OWNER_ID = 2
STRANGER_ID = 3
PRODUCT_ID = 101
PRICE_PER_DAY = 20000


# --- Test Database Setup ---
@pytest.fixture(scope="function")
def engine(tmp_path):
    """A fresh SQLite database file per test."""
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'test_booking.db'}", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


# --- Actors ---
@pytest.fixture
def renter():
    return Actor(id=RENTER_ID)


@pytest.fixture
def owner():
    return Actor(id=OWNER_ID)


@pytest.fixture
def stranger():
    return Actor(id=STRANGER_ID)


@pytest.fixture
def system_actor():
    return Actor(id=999, role="system")


# --- Collaborators ---
class FakeCatalog:
    """Catalog client double backed by a dict of products."""

    def __init__(self):
        self.products = {
            PRODUCT_ID: ProductInfo(id=PRODUCT_ID, owner_id=OWNER_ID, price_per_day=PRICE_PER_DAY),
        }

    def add(self, product: ProductInfo):
        self.products[product.id] = product

    async def get_product(self, product_id: int) -> ProductInfo:
        if product_id not in self.products:
            raise ValidationError(f"Product {product_id} does not exist.")
        return self.products[product_id]


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def gateway():
    return StubGateway(frontend_url="http://frontend.test")


# --- Data helpers ---
def make_booking(
        db,
        renter_id: int = RENTER_ID,
        owner_id: int = OWNER_ID,
        product_id: int = PRODUCT_ID,
        total_price: int = 100000,
        status: models.BookingStatus = models.BookingStatus.PENDING,
        payment_status: models.PaymentStatus = models.PaymentStatus.PENDING,
        start_offset: int = 10,
        days: int = 5,
) -> models.Booking:
    """Inserts a booking straight into the store, bypassing the controller."""
    start = datetime.date.today() + datetime.timedelta(days=start_offset)
    booking = models.Booking(
        renter_id=renter_id,
        owner_id=owner_id,
        product_id=product_id,
        start_date=start,
        end_date=start + datetime.timedelta(days=days),
        total_price=total_price,
        status=status,
        payment_status=payment_status,
    )
    db.add(booking)
    db.commit()
    db.refresh(booking)
    return booking


def assert_invariants(db):
    """No booking may be confirmed without a paid payment status."""
    for booking in db.query(models.Booking).all():
        if booking.status == models.BookingStatus.CONFIRMED:
            assert booking.payment_status == models.PaymentStatus.PAID, f"booking {booking.id} confirmed unpaid"


def create_test_token(user_id: int = RENTER_ID, role: str = None) -> str:
    """Creates a simple JWT for testing."""
    payload = {"sub": str(user_id)}
    if role:
        payload["role"] = role
    token = jwt.encode(payload, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return f"Bearer {token}"


# --- Mocking External Services ---
@pytest.fixture(scope="function")
def mock_background_tasks(mocker):
    """
    Mocks the background tasks (outbox poller and reconciliation loop) and the
    Redis-backed rate limiter started on app lifespan.
    """
    mocker.patch("rental_booking.main.run_outbox_poller", new_callable=AsyncMock)
    mocker.patch("rental_booking.main.run_reconciliation_loop", new_callable=AsyncMock)
    mocker.patch("rental_booking.main.FastAPILimiter.init", new_callable=AsyncMock)


# --- API Test Client Fixture ---
@pytest.fixture(scope="function")
def client(session_factory, gateway, catalog, mock_background_tasks):
    """Provides a TestClient wired to the test database and fake collaborators."""
    from rental_booking.main import app
    from rental_booking.database import get_db
    from rental_booking.gateway import get_gateway
    from rental_booking.catalog import get_catalog
    from rental_booking.routers import booking_router

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_catalog] = lambda: catalog
    app.dependency_overrides[booking_router.write_limiter] = lambda: None
    app.dependency_overrides[booking_router.read_limiter] = lambda: None

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
