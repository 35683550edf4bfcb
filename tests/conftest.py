"""
Pytest configuration and fixtures.

Each test gets its own SQLite database file and an in-process fake of the
gateway REST API mounted on ``httpx.MockTransport``.
"""
import asyncio
import hashlib
import hmac
import itertools
import json
import uuid
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Dict, List, Optional

import fakeredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from settlement.config import Settings
from settlement.core.coordinator import SettlementCoordinator
from settlement.core.idempotency import IdempotencyManager
from settlement.core.payment_ledger import PaymentLedger
from settlement.core.subscription_ledger import SubscriptionLedger
from settlement.database.connection import create_session_factory, init_db
from settlement.database.models import Batch, Enrollment, Sport, User
from settlement.integrations.razorpay_client import RazorpayClient
from settlement.integrations.signature import SignatureVerifier

TEST_KEY_ID = "rzp_test_1DP5mmOlF5G5ag"
TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"
GATEWAY_BASE_URL = "https://api.razorpay.test/v1"


def sign(message: str | bytes, secret: str = TEST_KEY_SECRET) -> str:
    """Reference HMAC-SHA256 hex signature."""
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class FakeRazorpay:
    """
    In-memory stand-in for the gateway REST API.

    Queue a failure for the next call to an endpoint with ``fail`` or
    ``raise_on``; otherwise requests succeed with gateway-shaped bodies.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.delay = 0.0
        self._failures: Dict[str, List[Any]] = {}
        self._ids = itertools.count(1)

    def fail(
        self,
        method: str,
        path: str,
        status_code: int = 400,
        code: str = "BAD_REQUEST_ERROR",
        description: str = "The request is invalid",
        times: int = 1,
    ) -> None:
        body = {"error": {"code": code, "description": description, "source": "business"}}
        for _ in range(times):
            self._failures.setdefault(f"{method} {path}", []).append(
                httpx.Response(status_code, json=body)
            )

    def raise_on(self, method: str, path: str, exc: Exception, times: int = 1) -> None:
        for _ in range(times):
            self._failures.setdefault(f"{method} {path}", []).append(exc)

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and self._path(r) == path
        ]

    def body(self, request: httpx.Request) -> Dict[str, Any]:
        return json.loads(request.content)

    @staticmethod
    def _path(request: httpx.Request) -> str:
        return request.url.path.removeprefix("/v1")

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)

        path = self._path(request)
        queued = self._failures.get(f"{request.method} {path}")
        if queued:
            failure = queued.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure

        if "authorization" not in request.headers:
            return httpx.Response(
                401, json={"error": {"code": "BAD_REQUEST_ERROR", "description": "Authentication failed"}}
            )

        n = next(self._ids)
        if request.method == "POST" and path == "/orders":
            body = self.body(request)
            return httpx.Response(
                200,
                json={
                    "id": f"order_{n:014d}",
                    "entity": "order",
                    "amount": body["amount"],
                    "currency": body["currency"],
                    "receipt": body["receipt"],
                    "status": "created",
                },
            )
        if request.method == "POST" and path == "/plans":
            body = self.body(request)
            return httpx.Response(
                200,
                json={
                    "id": f"plan_{n:014d}",
                    "entity": "plan",
                    "period": body["period"],
                    "interval": body["interval"],
                    "item": body["item"],
                },
            )
        if request.method == "POST" and path == "/subscriptions":
            body = self.body(request)
            subscription = {
                "id": f"sub_{n:014d}",
                "entity": "subscription",
                "plan_id": body["plan_id"],
                "status": "created",
                "total_count": body["total_count"],
                "ended_at": None,
            }
            self.subscriptions[subscription["id"]] = subscription
            return httpx.Response(200, json=subscription)
        if request.method == "GET" and path.startswith("/subscriptions/"):
            subscription = self.subscriptions.get(path.rsplit("/", 1)[-1])
            if subscription is None:
                return httpx.Response(
                    400,
                    json={"error": {"code": "BAD_REQUEST_ERROR", "description": "The id provided does not exist"}},
                )
            return httpx.Response(200, json=subscription)

        return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "description": "Unknown URL"}})


@dataclass
class Catalog:
    """Collaborator read models seeded for a test."""

    user: User
    other_user: User
    sport: Sport
    batch: Batch
    enrollment: Enrollment


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        gateway_key_id=TEST_KEY_ID,
        gateway_key_secret=TEST_KEY_SECRET,
        gateway_webhook_secret=TEST_WEBHOOK_SECRET,
        gateway_base_url=GATEWAY_BASE_URL,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'settlement_test.db'}",
        redis_url=None,
        app_name="settlement-test",
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a fresh schema for each test."""
    engine = create_async_engine(test_settings.database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def catalog(session_factory: async_sessionmaker[AsyncSession]) -> Catalog:
    """
    Seed a user, a second user, a sport, a batch and an enrollment.

    Seeded in a separate session so the returned objects stay loaded when
    a ledger rolls back the test session.
    """
    user = User(id=uuid.uuid4(), name="Asha Rao", email="asha@example.com")
    other_user = User(id=uuid.uuid4(), name="Vikram Shah", email="vikram@example.com")
    sport = Sport(
        id=uuid.uuid4(),
        name="Badminton",
        description="Evening badminton coaching",
        price_per_month=150000,
    )
    batch = Batch(id=uuid.uuid4(), sport_id=sport.id, name="Evening Batch A")
    enrollment = Enrollment(
        id=uuid.uuid4(), user_id=user.id, batch_id=batch.id, sport_id=sport.id
    )
    async with session_factory() as session:
        session.add_all([user, other_user, sport, batch, enrollment])
        await session.commit()
    return Catalog(user, other_user, sport, batch, enrollment)


@pytest.fixture
def fake_gateway() -> FakeRazorpay:
    return FakeRazorpay()


@pytest_asyncio.fixture
async def gateway(
    test_settings: Settings, fake_gateway: FakeRazorpay
) -> AsyncGenerator[RazorpayClient, Any]:
    """Gateway client wired to the fake gateway."""
    http_client = httpx.AsyncClient(
        base_url=test_settings.gateway_base_url,
        transport=httpx.MockTransport(fake_gateway.handler),
    )
    yield RazorpayClient(test_settings, http_client=http_client)
    await http_client.aclose()


@pytest.fixture
def fake_redis() -> fakeredis.aioredis.FakeRedis:
    return fakeredis.aioredis.FakeRedis(decode_responses=True)


@pytest.fixture
def payment_ledger(test_settings: Settings) -> PaymentLedger:
    return PaymentLedger(test_settings.default_currency)


@pytest.fixture
def subscription_ledger(gateway: RazorpayClient, test_settings: Settings) -> SubscriptionLedger:
    return SubscriptionLedger(gateway, test_settings)


@pytest.fixture
def idempotency_manager(test_settings: Settings) -> IdempotencyManager:
    return IdempotencyManager(settings=test_settings)


@pytest.fixture
def verifier() -> SignatureVerifier:
    return SignatureVerifier(TEST_KEY_SECRET, TEST_WEBHOOK_SECRET)


@pytest.fixture
def coordinator(
    gateway: RazorpayClient,
    payment_ledger: PaymentLedger,
    subscription_ledger: SubscriptionLedger,
    idempotency_manager: IdempotencyManager,
    verifier: SignatureVerifier,
    test_settings: Settings,
) -> SettlementCoordinator:
    return SettlementCoordinator(
        gateway=gateway,
        payment_ledger=payment_ledger,
        subscription_ledger=subscription_ledger,
        idempotency_manager=idempotency_manager,
        verifier=verifier,
        settings=test_settings,
    )


def callback_for(order_id: str, payment_id: Optional[str] = None) -> Dict[str, str]:
    """A correctly signed checkout callback for ``order_id``."""
    payment_id = payment_id or f"pay_{uuid.uuid4().hex[:14]}"
    return {
        "razorpay_payment_id": payment_id,
        "razorpay_order_id": order_id,
        "razorpay_signature": sign(f"{order_id}|{payment_id}"),
    }
