"""
Pytest configuration and fixtures for the backend tests.

Each test gets its own SQLite file so services, the scheduler and the API
can open as many sessions as they need against one database.
"""
import os
import tempfile

# Settings are read at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "operis-unused.db")
os.environ["LOG_DIR"] = tempfile.mkdtemp(prefix="operis-logs-")
os.environ["LOG_LEVEL"] = "DEBUG"
os.environ["CRON_SCHEDULER_ENABLED"] = "false"

from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
from faker import Faker
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.security import create_access_token, get_password_hash
from db.base import initialize_database
from db.session import get_db_session
from db.stores import users as user_store
from main import app
from services.cron_service import CronScheduler, get_scheduler
from services.gateway_client import GatewayError, GatewayResult

# Initialize Faker for test data generation
fake = Faker()

TEST_PASSWORD = "correct-horse-battery"


class ManualClock:
    """Naive-UTC clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeGateway:
    """Records every hook call; ``errors`` maps a gateway URL to the exception it raises."""

    def __init__(self):
        self.calls = []
        self.stops = []
        self.errors = {}
        self.stop_result = True
        self.usage = None

    async def dispatch(self, target, kind, body, timeout):
        self.calls.append({"target": target, "kind": kind, "body": body, "timeout": timeout})
        error = self.errors.get(target.url)
        if error is not None:
            raise error
        return GatewayResult(status=200, data={"ok": True, "output": f"ran {kind}"}, output=f"ran {kind}", usage=self.usage)

    async def stop(self, target, session_key):
        self.stops.append(session_key)
        return self.stop_result

    def fail(self, url: str, code: str = "http_error", message: str = "Gateway error: 500", status: int = 500):
        self.errors[url] = GatewayError(code, message, status)


@pytest.fixture
async def engine(tmp_path):
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", future=True)
    await initialize_database(test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def scheduler(session_factory, fake_gateway, clock) -> CronScheduler:
    return CronScheduler(
        session_factory=session_factory,
        gateway=fake_gateway,
        clock=clock,
        interval_seconds=60,
        batch_size=10,
        execution_timeout=60,
        max_concurrency=4,
        stale_grace_seconds=60,
    )


@pytest.fixture
def make_user(session_factory):
    """Factory creating users directly in the store, optionally with a gateway."""

    async def _make_user(role: str = "user", gateway: bool = True, balance: int = 0, email: Optional[str] = None):
        async with session_factory() as db:
            user = await user_store.create_user(
                db,
                email or fake.unique.email(),
                get_password_hash(TEST_PASSWORD),
                name=fake.name(),
                role=role,
            )
            values = {}
            if gateway:
                values.update(gateway_url=f"http://gw-{user.id[:8]}.test", gateway_token=fake.sha256())
            if balance:
                values["token_balance"] = balance
            user = await user_store.update_user(db, user.id, values)
            await db.commit()
            return user

    return _make_user


def auth_headers(user) -> dict:
    token = create_access_token(data={"user_id": user.id, "email": user.email, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def async_client(session_factory, scheduler) -> AsyncGenerator[AsyncClient, None]:
    """Async client against the app with the test database and scheduler."""

    async def override_get_db():
        async with session_factory() as db:
            yield db

    app.dependency_overrides[get_db_session] = override_get_db
    app.dependency_overrides[get_scheduler] = lambda: scheduler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
