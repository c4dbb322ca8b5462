"""
Global pytest fixtures for the subscription lifecycle test suite.

Provides:
- Async database session backed by a temporary SQLite file
- Session factory sharing that database (sweeper, API)
- Explicit BillingConfig with test secrets
- Async FastAPI client with billing dependencies overridden
"""
import os
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio

# Set test environment BEFORE any app imports
os.environ["TESTING"] = "true"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DB_SSL_MODE"] = "disable"
os.environ["INTERNAL_JOB_SECRET"] = "test-internal-job-secret-at-least-32-bytes"
os.environ["GATEWAY_SECRET_KEY"] = "test-gateway-secret-key-32-bytes!!"
os.environ["ENVIRONMENT"] = "development"

from app.modules.billing.domain.billing.billing_shared import (  # noqa: E402
    BillingConfig,
    EmailConfig,
    LifecycleConfig,
    NotifierConfig,
    ReconcilerConfig,
    SignatureConfig,
    ThrottleConfig,
)
from tests.utils import TEST_GATEWAY_SECRET  # noqa: E402


# ============================================================================
# Async Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def async_engine(tmp_path):
    """Create async SQLite engine for testing using a temporary file."""
    from sqlalchemy.ext.asyncio import create_async_engine

    from app.shared.db.base import Base
    import app.models  # noqa: F401

    db_file = tmp_path / f"test_{uuid4().hex}.sqlite"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_file}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(async_engine):
    """Session factory on the test database, as handed to the sweeper."""
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator:
    """Provide an async session with proper cleanup."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


# ============================================================================
# Billing Fixtures
# ============================================================================

@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        signature=SignatureConfig(secret=TEST_GATEWAY_SECRET, allow_unsigned=False),
        throttle=ThrottleConfig(ip_limit=10, ip_window_seconds=60, order_limit=5),
        reconciler=ReconcilerConfig(),
        lifecycle=LifecycleConfig(grace_period_days=7),
        notifier=NotifierConfig(bot_token="123:abc", chat_id="-1001"),
        email=EmailConfig(api_key="re_test_key", from_email="billing@example.com"),
        store_timeout_seconds=5.0,
    )


@pytest.fixture
def mock_notifier():
    """Telegram notifier double; records sends without network."""
    from app.modules.notifications.domain.telegram import TelegramNotifier

    notifier = MagicMock(spec=TelegramNotifier)
    notifier.send = AsyncMock(return_value=True)
    notifier.notify = AsyncMock(return_value=True)
    return notifier


@pytest.fixture
def mock_email_service():
    from app.modules.notifications.domain.email_service import EmailService

    service = MagicMock(spec=EmailService)
    service.send = AsyncMock(return_value=True)
    service.send_grace_period_notice = AsyncMock(return_value=True)
    return service


@pytest.fixture
def open_throttle(billing_config):
    """Throttle with no store configured: fail-open admits everything."""
    from app.shared.core.rate_limit import DeliveryThrottle

    return DeliveryThrottle(billing_config.throttle, redis=None)


# ============================================================================
# FastAPI Test Client Fixtures
# ============================================================================

@pytest.fixture
def app():
    from app.main import app as billing_app

    return billing_app


@pytest_asyncio.fixture
async def async_client(
    app,
    session_factory,
    billing_config,
    open_throttle,
    mock_notifier,
    mock_email_service,
) -> AsyncGenerator:
    """Async test client with billing dependencies pointed at the test database."""
    from httpx import ASGITransport, AsyncClient

    from app.modules.billing.api.v1.billing import (
        get_billing_config,
        get_delivery_throttle,
        get_email_service,
        get_notifier,
        get_session_factory,
    )
    from app.shared.db.session import get_db

    async def _get_test_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_test_db
    app.dependency_overrides[get_billing_config] = lambda: billing_config
    app.dependency_overrides[get_delivery_throttle] = lambda: open_throttle
    app.dependency_overrides[get_notifier] = lambda: mock_notifier
    app.dependency_overrides[get_email_service] = lambda: mock_email_service
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = ASGITransport(app=app)
    try:
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()
