"""共有フィクスチャ: 使い捨ての SQLite DB、台本どおりに応答するゲートウェイ、Redis のモック"""

import json
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from marketplace import schema
from marketplace.config import Settings
from marketplace.gateway import PaymentGatewayClient
from marketplace.identity import Caller, Role
from marketplace.inventory import InventoryLedger
from marketplace.notifications import OrderEventPublisher
from marketplace.orchestrator import OrderWorkflow
from marketplace.order_store import OrderStore

KEY_ID = "rzp_test_key"
KEY_SECRET = "test_secret"


class ScriptedGateway:
    """決済ゲートウェイの代わりをする httpx ハンドラ"""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.timeout = False
        self.intent_id = "order_TEST123"
        self.payments: dict[str, dict] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.timeout:
            raise httpx.ConnectTimeout("timed out", request=request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"error": {"description": "boom"}})
        if request.method == "POST" and request.url.path == "/v1/orders":
            body = json.loads(request.content)
            return httpx.Response(200, json={"id": self.intent_id, **body})
        if request.method == "GET" and request.url.path.startswith("/v1/payments/"):
            payment_id = request.url.path.rsplit("/", 1)[-1]
            if payment_id not in self.payments:
                return httpx.Response(404, json={"error": {"description": "not found"}})
            return httpx.Response(200, json=self.payments[payment_id])
        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "marketplace.db"


@pytest.fixture
def settings(db_path):
    return Settings(
        database_url=f"sqlite+aiosqlite:///{db_path}",
        gateway_base_url="https://gateway.test",
        gateway_key_id=KEY_ID,
        gateway_key_secret=KEY_SECRET,
    )


@pytest.fixture
async def engine(settings):
    engine = create_async_engine(settings.database_url, echo=False)
    await schema.create_all(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def seed_product(engine):
    async def seed(product_id="p1", unit_price=10.0, available=5.0, owner_id="farmer-1", name=None):
        async with engine.begin() as conn:
            await conn.execute(
                text("""
                    INSERT INTO products (id, owner_id, name, unit_price, available_quantity)
                    VALUES (:id, :owner_id, :name, :unit_price, :available)
                """),
                {
                    "id": product_id,
                    "owner_id": owner_id,
                    "name": name or f"Product {product_id}",
                    "unit_price": unit_price,
                    "available": available,
                },
            )

    return seed


@pytest.fixture
def set_price(engine):
    async def update(product_id, unit_price):
        async with engine.begin() as conn:
            await conn.execute(
                text("UPDATE products SET unit_price = :price WHERE id = :id"),
                {"price": unit_price, "id": product_id},
            )

    return update


@pytest.fixture
def ledger(session_factory):
    return InventoryLedger(session_factory)


@pytest.fixture
def store(session_factory):
    return OrderStore(session_factory)


@pytest.fixture
def scripted_gateway():
    return ScriptedGateway()


@pytest.fixture
def gateway(scripted_gateway):
    return PaymentGatewayClient(
        "https://gateway.test", KEY_ID, KEY_SECRET, timeout=2.0,
        transport=scripted_gateway.transport,
    )


@pytest.fixture
def mock_redis():
    redis = AsyncMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def make_workflow(ledger, store, gateway, mock_redis):
    def make(**options):
        return OrderWorkflow(
            ledger=ledger,
            store=store,
            gateway=gateway,
            publisher=OrderEventPublisher(mock_redis),
            **options,
        )

    return make


@pytest.fixture
def workflow(make_workflow):
    return make_workflow()


@pytest.fixture
def consumer():
    return Caller(user_id="consumer-1", role=Role.CONSUMER)


@pytest.fixture
def published(mock_redis):
    """指定 event_type で Redis に発行されたペイロード"""

    def by_type(event_type: str) -> list[dict]:
        events = []
        for call in mock_redis.publish.await_args_list:
            message = json.loads(call.args[1])
            if message["event_type"] == event_type:
                events.append(message)
        return events

    return by_type
