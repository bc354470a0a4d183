# tests/conftest.py
"""
Pytest configuration and fixtures for the flash sale engine.

The engine reads its configuration at import time, so the test database and
flags are exported before anything from ``flashsale`` is imported.
"""

import os
import sys
import tempfile
from datetime import datetime, timezone, timedelta
from decimal import Decimal

import pytest

_TEST_DB_DIR = tempfile.mkdtemp(prefix="flashsale-tests-")
os.environ["DATABASE_URL"] = os.getenv(
    "TEST_DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DB_DIR, 'flashsale_test.db')}"
)
os.environ["FLASK_TESTING"] = "true"
os.environ["FLASH_SALE_SCHEDULER_ENABLED"] = "false"
os.environ.setdefault("STRUCTURED_LOGS_ENABLED", "false")

# Make the repository root importable without installing the package
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from flashsale.clock import ManualClock
from flashsale.database import Base, SessionLocal, engine
from flashsale.events import FlashSaleEventPublisher
from flashsale.models import (
    FlashSale,
    FlashSaleHolderUsage,
    FlashSaleItem,
    FlashSaleReservation,
    FlashSaleStatus,
    Product,
)
from flashsale.observability.metrics import reset_metrics
from flashsale.services.activation_service import FlashSaleActivationService
from flashsale.services.flash_sale_service import FlashSaleService
from flashsale.services.reservation_service import FlashSaleReservationService

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def test_db():
    """Create the schema once for the whole test session"""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(test_db):
    """Create a fresh database session for each test"""
    session = SessionLocal()
    try:
        yield session
    finally:
        # Clean up in dependency order (most dependent first)
        session.rollback()
        session.query(FlashSaleReservation).delete(synchronize_session=False)
        session.query(FlashSaleHolderUsage).delete(synchronize_session=False)
        session.query(FlashSaleItem).delete(synchronize_session=False)
        session.query(FlashSale).delete(synchronize_session=False)
        session.query(Product).delete(synchronize_session=False)
        session.commit()
        session.close()


@pytest.fixture(autouse=True)
def clean_metrics():
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def clock():
    """A clock frozen at T0; tests move it explicitly."""
    return ManualClock(T0)


@pytest.fixture
def publisher():
    publisher = FlashSaleEventPublisher(max_workers=2)
    yield publisher
    publisher.shutdown()


@pytest.fixture
def reservation_service(db_session, clock):
    return FlashSaleReservationService(db_session, clock=clock)


@pytest.fixture
def activation_service(db_session, clock, reservation_service, publisher):
    return FlashSaleActivationService(
        db_session,
        clock=clock,
        reservation_service=reservation_service,
        publisher=publisher,
    )


@pytest.fixture
def flash_sale_service(db_session, clock, activation_service):
    return FlashSaleService(db_session, clock=clock, activation_service=activation_service)


@pytest.fixture
def sample_product(db_session):
    product = Product(name="Pixel 9 Pro", price=Decimal("999.00"))
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def make_flash_sale(db_session, clock):
    """Factory for campaigns positioned relative to the test clock"""

    def _make(
        status=FlashSaleStatus.ACTIVE,
        start_offset=timedelta(hours=-1),
        end_offset=timedelta(hours=1),
        name="Midnight Madness",
    ):
        flash_sale = FlashSale(name=name, status=status)
        flash_sale.start_time = clock.now() + start_offset
        flash_sale.end_time = clock.now() + end_offset
        db_session.add(flash_sale)
        db_session.commit()
        return flash_sale

    return _make


@pytest.fixture
def make_item(db_session):
    """Factory for flash sale items; every item gets its own product"""

    def _make(flash_sale, total_quantity=10, per_user_limit=2, sale_price="699.00", product=None):
        if product is None:
            product = Product(name=f"Phone for sale {flash_sale.flashSaleID}", price=Decimal("999.00"))
            db_session.add(product)
            db_session.flush()
        item = FlashSaleItem(
            flashSaleID=flash_sale.flashSaleID,
            productID=product.productID,
            sale_price=Decimal(sale_price),
            total_quantity=total_quantity,
            reserved_quantity=0,
            sold_quantity=0,
            per_user_limit=per_user_limit,
        )
        db_session.add(item)
        db_session.commit()
        return item

    return _make


@pytest.fixture
def active_flash_sale(make_flash_sale):
    return make_flash_sale()


@pytest.fixture
def sample_item(make_item, active_flash_sale):
    return make_item(active_flash_sale)


@pytest.fixture
def client(test_db, db_session, clock, publisher):
    """Flask test client wired to the manual clock"""
    from flashsale.main import app
    from flashsale.services.scheduler import FlashSaleScheduler

    saved = dict(app.extensions)
    app.extensions["flash_sale_clock"] = clock
    app.extensions["flash_sale_publisher"] = publisher
    app.extensions["flash_sale_scheduler"] = FlashSaleScheduler(clock=clock, publisher=publisher)
    app.config["TESTING"] = True
    with app.test_client() as test_client:
        yield test_client
    app.extensions.clear()
    app.extensions.update(saved)

