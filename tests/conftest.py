"""
Pytest configuration and fixtures.

Tests run against a throwaway SQLite file through aiosqlite, so the ledger's
conditional updates execute for real; Stripe is always an AsyncMock.
"""
import hashlib
import hmac
import json
import os
import tempfile
import time
import uuid
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, Optional, Tuple
from unittest.mock import AsyncMock

_TEST_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="klipz-tests-"), "klipz_test.db")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
TEST_WEBHOOK_SECRET = "whsec_test_fake_secret"

os.environ["STRIPE_SECRET_KEY"] = "sk_test_fake_key_for_testing"
os.environ["STRIPE_WEBHOOK_SECRET"] = TEST_WEBHOOK_SECRET
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["WEBHOOK_DEDUP_CACHE_ENABLED"] = "false"
os.environ["APP_ENV"] = "test"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool  # noqa: E402

from config import get_settings  # noqa: E402

get_settings.cache_clear()

from api.main import app  # noqa: E402
from api.routes import get_stripe_client  # noqa: E402
from core import ledger  # noqa: E402
from database import connection  # noqa: E402
from database.models import Base, User, UserRole  # noqa: E402
from integrations.stripe_client import StripeClient  # noqa: E402


@pytest_asyncio.fixture
async def test_engine(monkeypatch: pytest.MonkeyPatch) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh schema per test; the app's shared engine and session factory point at it."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )
    monkeypatch.setattr(connection, "_engine", engine)
    monkeypatch.setattr(connection, "_async_session_factory", factory)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return connection.get_session_factory()


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def mock_stripe_client() -> AsyncMock:
    """StripeClient double returning plausible Stripe objects."""
    client = AsyncMock(spec=StripeClient)
    client.create_payment_intent.return_value = SimpleNamespace(
        id="pi_test_123", client_secret="pi_test_123_secret_abc", status="requires_payment_method"
    )
    client.create_checkout_session.return_value = SimpleNamespace(
        id="cs_test_123", url="https://checkout.stripe.com/c/pay/cs_test_123"
    )
    client.create_connect_account.return_value = SimpleNamespace(id="acct_test_123")
    client.create_account_link.return_value = SimpleNamespace(
        url="https://connect.stripe.com/setup/e/acct_test_123"
    )
    client.retrieve_account.return_value = SimpleNamespace(
        id="acct_test_123",
        charges_enabled=True,
        payouts_enabled=True,
        details_submitted=True,
    )
    client.create_transfer.return_value = SimpleNamespace(id="tr_test_123", amount=0)
    client.reverse_transfer.return_value = SimpleNamespace(id="trr_test_123")
    client.list_transfers.return_value = SimpleNamespace(data=[], has_more=False)
    return client


@pytest.fixture
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[uuid.UUID]]:
    """Factory creating a user and wallet, optionally funded through the ledger."""

    async def _make(
        role: UserRole = UserRole.CLIPPER,
        balance_cents: int = 0,
        stripe_account_id: Optional[str] = None,
        email: Optional[str] = None,
    ) -> uuid.UUID:
        async with session_factory() as db:
            user = User(
                email=email or f"{uuid.uuid4().hex[:12]}@klipz.test",
                role=role.value,
                stripe_account_id=stripe_account_id,
            )
            db.add(user)
            await db.flush()
            await ledger.ensure_wallet(db, user.id)
            if balance_cents:
                await ledger.credit(
                    db, user.id, balance_cents, "test_seed", str(uuid.uuid4())
                )
            await db.commit()
            return user.id

    return _make


@pytest.fixture
def balance_of(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[[uuid.UUID], Awaitable[int]]:
    async def _balance(user_id: uuid.UUID) -> int:
        async with session_factory() as db:
            return await ledger.get_balance(db, user_id)

    return _balance


def _signature_header(payload: str, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_event() -> Callable[..., Tuple[bytes, str]]:
    """Build a Stripe event body and a valid Stripe-Signature header for it."""

    def _build(
        event_type: str,
        data_object: Dict[str, Any],
        event_id: Optional[str] = None,
        secret: str = TEST_WEBHOOK_SECRET,
    ) -> Tuple[bytes, str]:
        event = {
            "id": event_id or f"evt_{uuid.uuid4().hex}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
        payload = json.dumps(event)
        return payload.encode("utf-8"), _signature_header(payload, secret, int(time.time()))

    return _build


@pytest_asyncio.fixture
async def client(
    test_engine: AsyncEngine, mock_stripe_client: AsyncMock
) -> AsyncGenerator[AsyncClient, Any]:
    """Create test HTTP client."""
    app.dependency_overrides[get_stripe_client] = lambda: mock_stripe_client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
