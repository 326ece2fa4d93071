"""
Shared test fixtures.

Every test gets a fresh in-memory SQLite ledger (aiosqlite), Redis and
New Relic are patched out, and platform calls go through ``FakeValidator``
or an httpx ``MockTransport``.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional, Union
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from subrecon.core.products import Product, ProductCatalog
from subrecon.core.retry import RetryPolicy
from subrecon.db.base import Base
from subrecon.models import Platform  # noqa: F401  (registers all models)
from subrecon.services.validators.base import PaymentState, PlatformValidator, PurchaseFacts
from subrecon.services.validators.registry import ValidatorRegistry

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
USER_ID = "user-1"
OTHER_USER_ID = "user-2"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

class Clock:
    """Mutable clock for time-travel tests."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def make_facts(
    *,
    state: PaymentState = PaymentState.CONFIRMED,
    expires_at: Optional[datetime] = None,
    product_id: str = "premium_monthly",
    transaction_id: Optional[str] = "GPA.1111-2222-3333-44444",
    original_transaction_id: Optional[str] = "GPA.1111-2222-3333-44444",
    auto_renew: bool = True,
    grace_expires_at: Optional[datetime] = None,
) -> PurchaseFacts:
    return PurchaseFacts(
        payment_state=state,
        expires_at=expires_at or NOW + timedelta(days=30),
        auto_renew=auto_renew,
        transaction_id=transaction_id,
        original_transaction_id=original_transaction_id,
        product_id=product_id,
        purchased_at=NOW,
        grace_expires_at=grace_expires_at,
        acknowledged=True,
        environment="production",
    )


class FakeValidator(PlatformValidator):
    """
    app_store_a validator answering from a dict of reference -> outcome.

    An outcome is facts, an exception to raise, or a list of those consumed
    one per call.
    """

    platform = Platform.APP_STORE_A

    def __init__(self, catalog: ProductCatalog, clock=None):
        super().__init__(catalog, clock=clock or (lambda: NOW))
        self.responses: dict[str, Union[PurchaseFacts, Exception, list]] = {}
        self.calls: list[tuple[str, str]] = []

    async def _fetch(self, platform_ref: str, product_id: str) -> PurchaseFacts:
        self.calls.append((platform_ref, product_id))
        outcome = self.responses[platform_ref]
        if isinstance(outcome, list):
            outcome = outcome.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _no_sleep(delay: float) -> None:
    return None


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _no_external_services():
    """Redis is unavailable and New Relic is a no-op in every test."""
    redis_client = AsyncMock()
    redis_client.get.return_value = None
    redis_client.delete.return_value = 0
    with patch("subrecon.services.cache.get_redis", return_value=redis_client), \
            patch("newrelic.agent.record_custom_metric") as metric:
        yield metric


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def catalog() -> ProductCatalog:
    return ProductCatalog([
        Product("premium_monthly", "premium_monthly", Decimal("9.99"), "USD"),
        Product("premium_annual", "premium_annual", Decimal("99.99"), "USD"),
    ])


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def fake_validator(catalog, clock) -> FakeValidator:
    return FakeValidator(catalog, clock=clock)


@pytest.fixture
def registry(fake_validator) -> ValidatorRegistry:
    return ValidatorRegistry([fake_validator])


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay=0.01, sleep=_no_sleep)


@pytest_asyncio.fixture
async def client(session_factory, registry) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client for the app with the test ledger and validators wired in."""
    from subrecon.db.session import get_db
    from subrecon.dependencies import get_validator_registry
    from subrecon.main import app

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_validator_registry] = lambda: registry
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client
    app.dependency_overrides.clear()


def auth_headers(user_id: str = USER_ID) -> dict[str, str]:
    from subrecon.config import settings

    token = jwt.encode(
        {"sub": user_id, "exp": datetime.now(timezone.utc) + timedelta(hours=1)},
        settings.JWT_SECRET,
        algorithm=settings.JWT_ALGORITHM,
    )
    return {"Authorization": f"Bearer {token}"}
