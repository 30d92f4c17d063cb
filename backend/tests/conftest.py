"""Pytest configuration and fixtures for async testing."""
import os

# Must be set before metering.config builds its settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("NOTIFICATION_MOCK_MODE", "true")
os.environ.setdefault("PROVISIONING_MODE", "fake")
os.environ.setdefault("ADMIN_ALERT_EMAIL", "ops@example.com")

from datetime import datetime
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

import metering.models  # noqa: F401  registers the tables
from metering.database import Base
from metering.integrations.mailbox import InboundMail
from metering.models.pool_resource import PoolResource
from metering.models.user import User, UserSettings
from metering.utils.tasks import BackgroundTaskRunner
from utils.factories import PoolResourceFactory, UserFactory, UserSettingsFactory


@pytest_asyncio.fixture(scope="function")
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Fresh file-backed database per test; each session gets its own connection."""
    test_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/db.sqlite")
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield test_engine

    await test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session for the test body.

    Yields:
        AsyncSession: Database session for testing
    """
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(scope="function")
async def tasks() -> AsyncGenerator[BackgroundTaskRunner, None]:
    runner = BackgroundTaskRunner(max_concurrency=4)
    yield runner
    await runner.drain()


@pytest.fixture(scope="function")
def make_user(db_session: AsyncSession):
    """
    Persist a user (and, for tier 3, its settings row).

    Returns:
        Async callable taking field overrides and ``settings`` overrides
    """

    async def _make_user(settings: dict[str, Any] | None = None, **overrides: Any) -> User:
        user = User(**UserFactory.create(overrides))
        db_session.add(user)
        await db_session.flush()
        if settings is not None:
            db_session.add(UserSettings(**UserSettingsFactory.create({"user_id": user.id, **settings})))
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture(scope="function")
def make_pool_resource(db_session: AsyncSession):
    async def _make(**overrides: Any) -> PoolResource:
        resource = PoolResource(**PoolResourceFactory.create(overrides))
        db_session.add(resource)
        await db_session.commit()
        return resource

    return _make


class FakeChannel:
    """Notification channel failing the first ``failures`` sends."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: list[tuple[Any, str, str | None]] = []
        self.attempts = 0

    async def send(self, user: User, text: str, media_ref: str | None = None) -> str:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise ConnectionError(f"carrier unavailable (attempt {self.attempts})")
        self.sent.append((user, text, media_ref))
        return f"SM{self.attempts:04d}"


class FakeAdminChannel:
    """Admin email channel recording every email."""

    def __init__(self, error: Exception | None = None):
        self.error = error
        self.emails: list[tuple[str, str, str]] = []

    async def send_email(self, to: str, subject: str, body: str) -> str:
        if self.error is not None:
            raise self.error
        self.emails.append((to, subject, body))
        return f"email-{len(self.emails)}"


class FakeMailbox:
    def __init__(self, mails: list[InboundMail] | None = None, error: Exception | None = None):
        self.mails = mails or []
        self.error = error
        self.limits: list[int] = []

    async def recent_inbound(self, limit: int) -> list[InboundMail]:
        self.limits.append(limit)
        if self.error is not None:
            raise self.error
        return self.mails[:limit]


class RecordingAlerts:
    """Stands in for AdminAlertGate."""

    def __init__(self):
        self.alerts: list[tuple[str, str]] = []

    async def send_admin_alert(self, subject: str, body: str) -> bool:
        self.alerts.append((subject, body))
        return True


class FakeClock:
    """Settable clock returning datetimes."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def admin_channel() -> FakeAdminChannel:
    return FakeAdminChannel()


@pytest.fixture
def recording_alerts() -> RecordingAlerts:
    return RecordingAlerts()
