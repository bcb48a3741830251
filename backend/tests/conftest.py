"""Shared test configuration and fixtures.

Uses a transactional rollback strategy per test for full isolation:
- Each test gets its own transaction that rolls back after the test.
- TEST_DATABASE_URL selects the database; it defaults to an in-memory
  SQLite database so the suite runs without a PostgreSQL instance.
"""

import json
import os
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pytest_asyncio import is_async_test
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.jwt import create_access_token
from app.billing.dependencies import get_gateway, get_settings
from app.billing.periods import utcnow
from app.billing.razorpay_client import RazorpayClient, compute_signature
from app.config import Settings, settings
from app.database import Base, get_db
from app.main import app
from app.models.subscription import SubscriptionRecord
from app.models.user import User

_test_db_url = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

KEY_SECRET = "test_key_secret"
WEBHOOK_SECRET = "test_webhook_secret"
CRON_SECRET = "test_cron_secret"


def pytest_collection_modifyitems(items):
    """Run every async test on the session event loop shared with the engine."""
    session_loop = pytest.mark.asyncio(loop_scope="session")
    for item in items:
        if is_async_test(item):
            item.add_marker(session_loop, append=False)


def _make_engine():
    if _test_db_url.startswith("sqlite"):
        return create_async_engine(
            _test_db_url,
            echo=False,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    return create_async_engine(_test_db_url, echo=False, pool_pre_ping=True)


# ---------------------------------------------------------------------------
# Session-scoped: create / drop all tables once per test session
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def test_engine():
    """Create a session-scoped engine tied to the session event loop."""
    engine = _make_engine()
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def setup_test_db(test_engine):
    """Create all tables at the start of the session and drop them at the end."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


# ---------------------------------------------------------------------------
# Per-test: transactional rollback for isolation
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(loop_scope="session")
async def db_session(test_engine, setup_test_db) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session wrapped in a transaction that always rolls back."""
    async with test_engine.connect() as connection:
        transaction = await connection.begin()
        session = AsyncSession(bind=connection, expire_on_commit=False)

        try:
            yield session
        finally:
            await session.close()
            await transaction.rollback()


# ---------------------------------------------------------------------------
# Settings and gateway
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Settings with known secrets and the background sweeper disabled."""
    return settings.model_copy(
        update={
            "razorpay_key_id": "rzp_test_key",
            "razorpay_key_secret": KEY_SECRET,
            "razorpay_webhook_secret": WEBHOOK_SECRET,
            "cron_secret": CRON_SECRET,
            "free_access": False,
            "testing_mode": False,
            "sweep_interval_seconds": 0,
        }
    )


class FakeRazorpay:
    """In-memory stand-in for the Razorpay REST API, served via MockTransport."""

    def __init__(self, now: Callable[[], datetime] = utcnow) -> None:
        self.now = now
        self.requests: list[httpx.Request] = []
        self.fail_with: int | None = None
        self.customers = 0
        self.orders: dict[str, dict] = {}
        self.subscriptions: dict[str, dict] = {}

    def _timestamp(self) -> int:
        return int(self.now().replace(tzinfo=timezone.utc).timestamp())

    def add_order(
        self,
        order_id: str,
        user: User,
        plan: str | None = "monthly",
        amount: int = 49900,
        created_at: datetime | None = None,
    ) -> dict:
        """Register an order as if it had been created at the gateway earlier."""
        notes = {"user_id": str(user.id)}
        if plan is not None:
            notes["plan"] = plan
        stamp = (created_at or self.now()).replace(tzinfo=timezone.utc)
        self.orders[order_id] = {
            "id": order_id,
            "amount": amount,
            "currency": "INR",
            "receipt": f"rcpt_{order_id}",
            "status": "paid",
            "notes": notes,
            "created_at": int(stamp.timestamp()),
        }
        return self.orders[order_id]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"error": {"description": "boom"}})

        path = request.url.path
        if request.method == "POST" and path.endswith("/customers"):
            self.customers += 1
            return httpx.Response(200, json={"id": f"cust_test_{self.customers}"})
        if request.method == "POST" and path.endswith("/orders"):
            data = json.loads(request.content)
            order = {
                "id": f"order_test_{len(self.orders) + 1}",
                "amount": data["amount"],
                "currency": data["currency"],
                "receipt": data["receipt"],
                "status": "created",
                "notes": data.get("notes") or {},
                "created_at": self._timestamp(),
            }
            self.orders[order["id"]] = order
            return httpx.Response(200, json=order)
        if request.method == "GET" and "/orders/" in path:
            order_id = path.rsplit("/", 1)[-1]
            if order_id in self.orders:
                return httpx.Response(200, json=self.orders[order_id])
            return httpx.Response(404, json={"error": {"description": "not found"}})
        if request.method == "GET" and "/subscriptions/" in path:
            sub_id = path.rsplit("/", 1)[-1]
            if sub_id in self.subscriptions:
                return httpx.Response(200, json=self.subscriptions[sub_id])
            return httpx.Response(404, json={"error": {"description": "not found"}})
        return httpx.Response(404)

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def fake_razorpay() -> FakeRazorpay:
    return FakeRazorpay()


@pytest.fixture
def gateway(test_settings: Settings, fake_razorpay: FakeRazorpay) -> RazorpayClient:
    """RazorpayClient whose HTTP calls are answered by ``fake_razorpay``."""
    return RazorpayClient(
        key_id=test_settings.razorpay_key_id,
        key_secret=test_settings.razorpay_key_secret,
        webhook_secret=test_settings.razorpay_webhook_secret,
        base_url="https://api.razorpay.test/v1",
        timeout=1.0,
        transport=httpx.MockTransport(fake_razorpay.handler),
    )


@pytest.fixture
def sign_checkout() -> Callable[[str, str], str]:
    """Signature the checkout widget would hand back for a payment."""
    return lambda order_id, payment_id: compute_signature(KEY_SECRET, f"{order_id}|{payment_id}")


@pytest.fixture
def sign_webhook() -> Callable[[bytes], str]:
    return lambda body: compute_signature(WEBHOOK_SECRET, body)


class FixedClock:
    """Controllable clock for time-dependent services."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture(loop_scope="session")
async def client(
    db_session: AsyncSession,
    test_settings: Settings,
    gateway: RazorpayClient,
) -> AsyncGenerator[AsyncClient, None]:
    """Provide an httpx AsyncClient wired to the test DB, settings and gateway."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Convenience fixtures: users and records
# ---------------------------------------------------------------------------


@pytest.fixture
def make_user(db_session: AsyncSession) -> Callable[..., Awaitable[User]]:
    """Factory that inserts a user directly in the DB."""

    async def _make(**overrides) -> User:
        unique = uuid.uuid4().hex[:8]
        fields = {
            "email": f"learner-{unique}@test.com",
            "name": "Test Learner",
            "is_active": True,
            "role": "student",
        }
        fields.update(overrides)
        user = User(**fields)
        db_session.add(user)
        await db_session.flush()
        return user

    return _make


@pytest.fixture
def make_record(db_session: AsyncSession) -> Callable[..., Awaitable[SubscriptionRecord]]:
    """Factory that inserts a subscription record in a given state."""

    async def _make(user: User, updated_at: datetime | None = None, **fields) -> SubscriptionRecord:
        record = SubscriptionRecord(
            user_id=user.id,
            updated_at=updated_at or datetime(2026, 3, 1, 12, 0, 0),
            **fields,
        )
        db_session.add(record)
        await db_session.flush()
        return record

    return _make


@pytest_asyncio.fixture(loop_scope="session")
async def test_user(make_user) -> User:
    """Create and return a test user (no subscription record yet)."""
    return await make_user()


def _token_headers(user: User) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(str(user.id))}"}


@pytest.fixture
def auth_headers(test_user: User) -> dict[str, str]:
    """Return Authorization headers for the test user."""
    return _token_headers(test_user)


@pytest.fixture
def make_headers() -> Callable[[User], dict[str, str]]:
    return _token_headers
