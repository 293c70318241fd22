"""Shared fixtures.

The database URL must be set before anything imports counselbot, since
the engine is created when counselbot.infra.database is first imported.
"""

import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="counselbot-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["APP_ENV"] = "development"
os.environ["SESSION_BACKEND"] = "memory"
os.environ["REMINDER_SWEEP_ENABLED"] = "false"
os.environ["TELEGRAM_WEBHOOK_SECRET"] = ""
os.environ["PAYMENT_API_KEY"] = ""

from datetime import datetime, timezone  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402
from zoneinfo import ZoneInfo  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from counselbot.core.scheduling import (  # noqa: E402
    CodeGenerator,
    ReminderScheduler,
    SlotConflictResolver,
    WorkingHoursPolicy,
)
from counselbot.infra.database import async_session_factory, engine  # noqa: E402
from counselbot.models.database import Base, Provider  # noqa: E402

# A Monday, well in the future
MONDAY = datetime(2030, 1, 7)


def at(hour: int, minute: int = 0, day: datetime = MONDAY) -> datetime:
    """Business-local (naive) datetime on ``day``."""
    return day.replace(hour=hour, minute=minute)


def utc(local: datetime) -> datetime:
    """Business-local naive datetime as aware UTC."""
    return local.replace(tzinfo=ZoneInfo("Africa/Nairobi")).astimezone(timezone.utc)


@pytest_asyncio.fixture
async def database():
    """Fresh schema for one test."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield async_session_factory
    await engine.dispose()


@pytest_asyncio.fixture
async def provider(database):
    async with async_session_factory() as db:
        counselor = Provider(name="Dr. Amina Otieno", email="amina@example.com", specialty="Anxiety")
        db.add(counselor)
        await db.commit()
    return counselor


@pytest.fixture
def policy():
    return WorkingHoursPolicy(
        timezone="Africa/Nairobi",
        start_hour=8,
        end_hour=17,
        weekdays={1, 2, 3, 4, 5},
        lunch_start_hour=12,
        lunch_end_hour=13,
    )


@pytest.fixture
def notifier():
    mock = AsyncMock()
    mock.send = AsyncMock(return_value=1001)
    mock.delete_message = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def reminders(policy, notifier, database):
    return ReminderScheduler(
        notifier=notifier,
        policy=policy,
        session_factory=database,
        batch_size=50,
    )


@pytest.fixture
def resolver(policy, reminders, database):
    return SlotConflictResolver(
        policy=policy,
        codes=CodeGenerator(),
        reminders=reminders,
        session_factory=database,
    )
