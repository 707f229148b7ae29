"""Pytest configuration and fixtures."""
import os
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Set test environment before importing the package
os.environ["APP_ENV"] = "test"
os.environ["VOICE_PROVIDER"] = "mock"
os.environ["BACKGROUND_JOBS_ENABLED"] = "false"

from number_pool.core.database import Base
from number_pool.models import PoolEntry, PoolStatus
from number_pool.services import (
    LeaseService,
    MockVoiceProvider,
    NotificationService,
    NumberPoolService,
    ProvisioningQueueService,
    ProvisioningService,
)
from number_pool.utils.helpers import utc_now


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's writes."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'pool.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def voice_provider():
    """Mock voice provider that records imports."""
    return MockVoiceProvider()


@pytest.fixture
def pool_service(voice_provider):
    return NumberPoolService(voice_provider=voice_provider)


@pytest.fixture
def provisioning_service(pool_service):
    return ProvisioningService(pool=pool_service)


@pytest.fixture
def notifications():
    """Notification service that records alerts instead of calling Telegram."""
    return AsyncMock(spec=NotificationService)


@pytest.fixture
def queue_service(provisioning_service, session_maker, notifications):
    return ProvisioningQueueService(
        provisioning=provisioning_service,
        session_maker=session_maker,
        leases=LeaseService(),
        notifications=notifications,
    )


@pytest.fixture
def add_numbers(session_maker):
    """Insert pool entries with strictly increasing created_at."""

    async def _add(count: int, region: str = "IE", start: int = 0, **fields) -> list[str]:
        base = utc_now() - timedelta(days=30)
        ids = []
        async with session_maker() as session:
            for i in range(start, start + count):
                entry = PoolEntry(
                    phone_number=f"+35312{i:06d}",
                    region=region,
                    status=PoolStatus.available.value,
                    created_at=base + timedelta(minutes=i),
                    updated_at=base + timedelta(minutes=i),
                    **fields,
                )
                session.add(entry)
                await session.flush()
                ids.append(entry.id)
            await session.commit()
        return ids

    return _add


@pytest.fixture
def load_entry(session_maker):
    """Read an entry through a fresh session."""

    async def _load(pool_entry_id: str) -> PoolEntry:
        async with session_maker() as session:
            return await session.get(PoolEntry, pool_entry_id)

    return _load
