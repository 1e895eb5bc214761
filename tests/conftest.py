"""
Shared pytest fixtures for all test modules.

Uses an in-memory SQLite database (StaticPool) so every test
function gets a clean, isolated database - no disk I/O, no state leakage.
The provisioning panel and the Bakong gateway are replaced by AsyncMocks.
"""
import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from typing import Optional

from settlement_engine.config import MerchantConfig, Settings, get_settings
from settlement_engine.database import Base, get_db
from settlement_engine.dependencies import get_gateway, get_provisioner
from settlement_engine.processors.base import GatewayStatus
from settlement_engine.services.provisioning import ProvisioningAck
from settlement_engine import models


# ---------------------------------------------------------------------------
# In-memory database engine shared across all fixtures in a test session.
# StaticPool forces all SQLAlchemy connections to reuse the same underlying
# sqlite3 connection, which is required for in-memory SQLite.
# ---------------------------------------------------------------------------
TEST_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=TEST_ENGINE)

BASE_TIME = datetime(2024, 1, 15, 10, 0, 0)

BAKONG_SECRET = "bakong-test-secret"
IKHODE_SECRET = "ikhode-test-secret"

MERCHANT = MerchantConfig(
    account_id="gamehost@aclb",
    merchant_name="GameHost",
    merchant_city="Phnom Penh",
    settlement_currency="USD",
)


@pytest.fixture(autouse=True)
def reset_db():
    """Drop and recreate all tables before each test for full isolation."""
    Base.metadata.drop_all(bind=TEST_ENGINE)
    Base.metadata.create_all(bind=TEST_ENGINE)
    yield
    Base.metadata.drop_all(bind=TEST_ENGINE)


@pytest.fixture
def db(reset_db):
    """Yield a SQLAlchemy session backed by the in-memory test database."""
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provisioner():
    return mock_provisioner()


@pytest.fixture
def gateway():
    return mock_gateway(settled=False)


@pytest.fixture
def test_settings():
    return Settings(
        MERCHANT_ACCOUNT_ID=MERCHANT.account_id,
        MERCHANT_NAME=MERCHANT.merchant_name,
        MERCHANT_CITY=MERCHANT.merchant_city,
        SETTLEMENT_CURRENCY="USD",
        BAKONG_WEBHOOK_SECRET=BAKONG_SECRET,
        IKHODE_WEBHOOK_SECRET=IKHODE_SECRET,
        BAKONG_TOKEN="bakong-api-token",
    )


@pytest.fixture
def client(db, provisioner, gateway, test_settings):
    """
    FastAPI TestClient with the DB, settings, gateway and provisioning
    dependencies overridden. The TestClient is NOT used as a context
    manager so the lifespan hook (which touches the on-disk DB) is skipped.
    """
    from settlement_engine.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_provisioner] = lambda: provisioner
    app.dependency_overrides[get_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers - not fixtures - so any test file can import and call them directly.
# ---------------------------------------------------------------------------
def mock_provisioner(fail_on: Optional[set] = None, server_id: str = "srv-001"):
    """AsyncMock panel client; actions listed in ``fail_on`` raise ProvisioningFailed."""
    from settlement_engine.errors import ProvisioningFailed

    fail_on = fail_on or set()
    m = AsyncMock()

    def _command(action):
        async def _call(order_id, server_details=None, server_id_arg=None):
            if action in fail_on:
                raise ProvisioningFailed(f"{action} for order {order_id}: HTTP 503")
            return ProvisioningAck(action, order_id, server_id=server_id_arg or server_id)
        return _call

    m.create = AsyncMock(side_effect=_command("create"))
    m.renew = AsyncMock(side_effect=_command("renew"))
    m.suspend = AsyncMock(side_effect=_command("suspend"))
    return m


def mock_gateway(settled: bool = True, evidence: Optional[dict] = None, error: Optional[Exception] = None):
    m = AsyncMock()
    m.gateway_name = "bakong"
    if error is not None:
        m.check_transaction = AsyncMock(side_effect=error)
    else:
        body = evidence or {"responseCode": 0 if settled else 1, "data": {"hash": "abc123", "amount": 5.0}}
        m.check_transaction = AsyncMock(return_value=GatewayStatus(settled=settled, evidence=body))
    return m


def make_order(
    db,
    status: str = models.OrderStatus.PENDING,
    order_id: Optional[str] = None,
    server_id: Optional[str] = None,
    next_due_date: Optional[datetime] = None,
    billing_days: int = 30,
) -> models.Order:
    order = models.Order(
        id=order_id or models.generate_id(),
        user_id="user_001",
        status=status,
        server_details={"plan_id": "mc-basic", "price": 5.00, "billing_days": billing_days},
        server_id=server_id,
        next_due_date=next_due_date,
        created_at=BASE_TIME - timedelta(days=1),
    )
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def make_invoice(
    db,
    order: Optional[models.Order] = None,
    invoice_id: Optional[str] = None,
    total: float = 5.00,
    currency: str = "USD",
    status: str = models.InvoiceStatus.UNPAID,
    due_date: Optional[datetime] = None,
) -> models.Invoice:
    invoice = models.Invoice(
        id=invoice_id or models.generate_id(),
        order_id=order.id if order else None,
        user_id=order.user_id if order else "user_001",
        invoice_number="INV-202401-1001",
        total=total,
        currency=currency,
        due_date=due_date or BASE_TIME + timedelta(days=1),
        status=status,
        created_at=BASE_TIME - timedelta(hours=1),
    )
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    return invoice


def issue(db, invoice: models.Invoice, now: datetime = BASE_TIME, **kwargs):
    """Issue a payment request for ``invoice`` at ``now``; returns the SettlementRecord."""
    from settlement_engine.services.settlement import issue_settlement

    record, _ = issue_settlement(db, invoice.id, MERCHANT, now=now, **kwargs)
    return record
