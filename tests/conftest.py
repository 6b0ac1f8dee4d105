"""Pytest fixtures for ChefStudio Ads connection tests."""
import asyncio
import os
from datetime import datetime, timedelta, timezone

# Must be set before chefstudio reads its settings
os.environ["ENV_MODE"] = "development"
os.environ["CONNECTION_STORE_BACKEND"] = "memory"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./chefstudio-test.db"
os.environ["MOCK_VERIFIER_FAILURE_RATE"] = "0"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from chefstudio import models  # noqa: F401
from chefstudio.connection import reset_connection_gate
from chefstudio.connection.gate import ConnectionGate
from chefstudio.connection.state import ConnectionRecord
from chefstudio.connection.store.memory import InMemoryConnectionStore
from chefstudio.connection.verifier.base import BaseMetaVerifier, Valid
from chefstudio.database import Base
from chefstudio.models import ConnectionStatus


TENANT = "tenant-42"
TOKEN = "EAAB-test-token"
ACCOUNTS = ("act_111", "act_222")
START = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


# =============================================================================
# Test Doubles
# =============================================================================

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class FakeVerifier(BaseMetaVerifier):
    """Returns scripted outcomes in order, then ``default`` forever."""

    def __init__(self, *outcomes, default=None, delay: float = 0.0):
        self.outcomes = list(outcomes)
        self.default = default or Valid(linked_accounts=ACCOUNTS, primary_account_id=ACCOUNTS[0])
        self.delay = delay
        self.calls = 0
        self.tokens: list[str] = []
        self.healthy = True

    @property
    def provider_name(self) -> str:
        return "fake"

    async def verify(self, access_token: str):
        self.calls += 1
        self.tokens.append(access_token)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.outcomes:
            return self.outcomes.pop(0)
        return self.default

    async def health_check(self) -> bool:
        return self.healthy


class ConflictingStore(InMemoryConnectionStore):
    """Store where every compare-and-swap loses the race."""

    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def compare_and_swap(self, tenant_id, expected_version, record) -> bool:
        self.attempts += 1
        return False


# =============================================================================
# Gate Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_factories():
    """Keep cached factories from leaking between tests."""
    reset_connection_gate()
    yield
    reset_connection_gate()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryConnectionStore:
    return InMemoryConnectionStore()


@pytest.fixture
def verifier() -> FakeVerifier:
    return FakeVerifier()


@pytest.fixture
def gate(store, verifier, clock) -> ConnectionGate:
    return ConnectionGate(
        store=store,
        verifier=verifier,
        ttl=timedelta(seconds=300),
        verify_timeout=1.0,
        clock=clock,
    )


@pytest.fixture
def seed(store, clock):
    """
    Store a record for a tenant through compare-and-swap.

    Defaults describe a connected tenant verified just now.
    """
    async def _seed(tenant_id: str = TENANT, **fields) -> ConnectionRecord:
        fields.setdefault("status", ConnectionStatus.CONNECTED)
        if fields["status"] != ConnectionStatus.DISCONNECTED:
            fields.setdefault("access_token", TOKEN)
            fields.setdefault("linked_accounts", ACCOUNTS)
            fields.setdefault("primary_account_id", ACCOUNTS[0])
            fields.setdefault("last_verified_at", clock.now)

        current = await store.read(tenant_id)
        record = ConnectionRecord(tenant_id=tenant_id, **fields)
        assert await store.compare_and_swap(tenant_id, current.version, record)
        return await store.read(tenant_id)

    return _seed


# =============================================================================
# HTTP Fixtures
# =============================================================================

@pytest.fixture
def scheduled_checks(monkeypatch) -> list:
    """Capture expiry checks instead of sending them to the broker."""
    from chefstudio import main

    scheduled = []
    monkeypatch.setattr(
        main, "schedule_expiry_check", lambda tenant_id, expires_at: scheduled.append((tenant_id, expires_at))
    )
    return scheduled


@pytest.fixture
async def client(gate, scheduled_checks):
    """Async HTTP client wired to the test gate."""
    from chefstudio.main import app, get_gate

    app.dependency_overrides[get_gate] = lambda: gate
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def tenant_headers() -> dict:
    return {"X-Tenant-ID": TENANT}


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def session_factory(tmp_path):
    """Session factory over a throwaway SQLite database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'connections.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
