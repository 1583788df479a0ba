"""
Pytest configuration and fixtures
Provides an in-memory database, fetcher wiring and an ASGI client for the API
"""
import pytest
import httpx
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from opsportal.database import get_db
from opsportal.models import Base
from opsportal.resilience.circuit_breaker import CircuitBreaker
from opsportal.resilience.rate_limiter import RateLimiter
from opsportal.sync.events import SyncEventBus
from opsportal.sync.fetcher import GlobalOrderFetcher
from tests.test_helpers import FakeClock, FakeDealSource, make_deals


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers"""
    config.addinivalue_line(
        "markers", "unit: Fast unit tests with mocked dependencies"
    )
    config.addinivalue_line(
        "markers", "integration: Tests that exercise several components together"
    )


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
async def session_factory():
    """Session factory bound to a fresh in-memory SQLite database"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ============================================================================
# Sync Fixtures
# ============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_log():
    """Events delivered to an in-process subscriber"""
    return []


@pytest.fixture
def event_bus(event_log) -> SyncEventBus:
    bus = SyncEventBus(redis_enabled=False)
    bus.subscribe(event_log.append)
    return bus


@pytest.fixture
def make_fetcher(session_factory, clock, event_bus):
    """Build a fetcher on the in-memory database with a simulated rate limiter clock"""
    def _make(source, **kwargs) -> GlobalOrderFetcher:
        kwargs.setdefault("rate_limiter", RateLimiter(clock=clock, sleep=clock.sleep))
        kwargs.setdefault("circuit_breaker", CircuitBreaker(clock=clock))
        kwargs.setdefault("event_bus", event_bus)
        kwargs.setdefault("interval_seconds", 60)
        kwargs.setdefault("fetch_timeout_seconds", 1)
        kwargs.setdefault("page_size", 10)
        kwargs.setdefault("max_deals", 50)
        return GlobalOrderFetcher(source=source, session_factory=session_factory, **kwargs)
    return _make


# ============================================================================
# HTTP Client Fixtures
# ============================================================================

@pytest.fixture
def deal_source() -> FakeDealSource:
    return FakeDealSource(deals=make_deals(3))


@pytest.fixture
async def api_client(session_factory, make_fetcher, deal_source) -> AsyncGenerator[httpx.AsyncClient, None]:
    """ASGI client for the app with the fetcher and database swapped for test doubles.

    Startup hooks do not run under ASGITransport, so nothing touches Bitrix24
    or the on-disk database.
    """
    from opsportal.main import app

    async def override_get_db():
        async with session_factory() as session:
            yield session

    fetcher = make_fetcher(deal_source)
    app.state.fetcher = fetcher
    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client

    await fetcher.shutdown(timeout=1)
    app.dependency_overrides.clear()
    app.state.fetcher = None
