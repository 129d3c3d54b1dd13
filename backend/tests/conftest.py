"""
Pytest configuration and fixtures.

Settings are read from the environment when config is first imported, so
the test environment is set here before any application module loads.
"""

import os

WEBHOOK_TOKEN = "test-casso-webhook-token"
OPERATOR_KEY = "test-operator-key-0123456789abcdef"

os.environ["ENVIRONMENT"] = "test"
os.environ["CASSO_WEBHOOK_TOKEN"] = WEBHOOK_TOKEN
os.environ["INTERNAL_API_KEY"] = OPERATOR_KEY
os.environ["CASSO_API_KEY"] = "test-casso-api-key"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ["NOTIFICATION_URL"] = ""
os.environ["SENTRY_DSN"] = ""

from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from database.connection import Base, build_session_factory
from database.order_models import OrderDB
from pricing.pricing_engine import PricingEngine, LineItem, Coupon
from reconciliation.casso_models import CassoTransaction
from reconciliation.clients.notification_gateway import NotificationGateway
from reconciliation.services.reconciliation_service import ReconciliationCoordinator
from reconciliation.workers.casso_poller import CassoPoller
from factories import next_order_number


class RecordingNotifier(NotificationGateway):
    """Collects notifications instead of delivering them."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    def notify(self, room: str, event: str, payload: Dict[str, Any]) -> None:
        self.sent.append({"room": room, "event": event, "payload": payload})

    def events(self, event: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["event"] == event]


class FakeCassoGateway:
    """In-memory stand-in for CassoClient."""

    def __init__(self):
        self.transactions: Dict[str, CassoTransaction] = {}
        self.bank_account = {
            "bank_name": "Vietcombank",
            "account_number": "0123456789",
            "account_name": "NHA HANG TEST",
        }
        self.list_calls = 0

    def add(self, transaction: CassoTransaction) -> CassoTransaction:
        self.transactions[transaction.id] = transaction
        return transaction

    async def get_transaction(self, transaction_id: str) -> Optional[CassoTransaction]:
        return self.transactions.get(transaction_id)

    async def list_transactions(self, from_date=None, to_date=None, page=1, page_size=100):
        self.list_calls += 1
        return list(self.transactions.values())

    async def get_bank_account(self):
        return self.bank_account



@pytest_asyncio.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions use separate connections."""
    db_path = tmp_path / "payments.db"
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeCassoGateway()


@pytest.fixture
def coordinator(session_factory, notifier, gateway):
    return ReconciliationCoordinator(
        session_factory,
        pricing_engine=PricingEngine(),
        notifier=notifier,
        gateway=gateway,
    )


@pytest.fixture
def make_order(session_factory):
    """Create an order whose stored pricing matches the pricing engine."""
    engine = PricingEngine()

    async def _make_order(
        order_number: Optional[str] = None,
        items: Optional[List[Dict[str, Any]]] = None,
        delivery_type: str = "delivery",
        customer_tier: str = "bronze",
        coupon: Optional[Dict[str, Any]] = None,
        customer_id: Optional[str] = "cust-001",
        customer_phone: str = "0901234567",
        payment_status: str = "pending",
        status: str = "pending",
        is_table_payment: bool = False,
        original_order_ids: Optional[List[str]] = None,
        total_override: Optional[int] = None,
    ) -> OrderDB:
        items = items if items is not None else [{"name": "Pho bo", "price": 100000, "quantity": 2}]
        created_at = datetime.now(timezone.utc)
        pricing = engine.compute_pricing(
            [LineItem.from_dict(i) for i in items],
            delivery_type,
            customer_tier,
            coupon=Coupon.from_dict(coupon) if coupon else None,
            as_of=created_at,
        )

        order = OrderDB(
            order_number=order_number or next_order_number(),
            customer_id=customer_id,
            customer_name="Nguyen Van A",
            customer_phone=customer_phone,
            customer_tier=customer_tier,
            status=status,
            items=items,
            delivery_type=delivery_type,
            coupon=coupon,
            subtotal=pricing.subtotal,
            tax=pricing.tax,
            delivery_fee=pricing.delivery_fee,
            membership_discount=pricing.membership_discount,
            coupon_discount=pricing.coupon_discount,
            discount=pricing.discount,
            total=total_override if total_override is not None else pricing.total,
            payment_method="banking",
            payment_status=payment_status,
            is_table_payment=is_table_payment,
            original_order_ids=original_order_ids,
            created_at=created_at,
        )

        async with session_factory() as session:
            session.add(order)
            await session.commit()

        return order

    return _make_order


@pytest.fixture
def load_order(session_factory):
    async def _load_order(order_id: str) -> OrderDB:
        async with session_factory() as session:
            return await session.get(OrderDB, order_id)

    return _load_order


@pytest.fixture
def poller(coordinator, gateway):
    async def no_sleep(_seconds):
        return None

    return CassoPoller(coordinator, gateway, retry_delays=(1, 2), sleep=no_sleep)


@pytest_asyncio.fixture
async def api_client(coordinator, poller) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client against the app with reconciliation wired to the test database."""
    from server import app
    from reconciliation.dependencies import get_coordinator, get_poller

    app.dependency_overrides[get_coordinator] = lambda: coordinator
    app.dependency_overrides[get_poller] = lambda: poller

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def operator_headers():
    return {"X-Internal-Api-Key": OPERATOR_KEY, "X-Operator-Id": "cashier-42"}


@pytest.fixture
def webhook_headers():
    return {"secure-token": WEBHOOK_TOKEN}
