from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from oauth_storage.common.config import Settings
from oauth_storage.storage import MemoryStorageAdapter, ORMStorageAdapter, SQLStorageAdapter

START = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Clock the tests move by hand."""

    def __init__(self, start: datetime = START):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """A throwaway SQLite file per test; files allow several connections at once."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'oauth.db'}",
        storage_backend="sql",
        INIT_RETRY_ATTEMPTS=1,
        ARGON2_MEMORY_COST=1024,
        ARGON2_TIME_COST=1,
        ARGON2_PARALLELISM=1,
    )


def build_adapter(backend: str, settings: Settings, clock):
    if backend == "memory":
        return MemoryStorageAdapter(clock=clock)
    if backend == "sql":
        return SQLStorageAdapter(settings=settings, clock=clock)
    return ORMStorageAdapter(settings=settings, clock=clock)


@pytest_asyncio.fixture(params=["memory", "sql", "orm"])
async def storage(request, test_settings, clock):
    """Every backend, initialized against a fresh database."""
    adapter = build_adapter(request.param, test_settings, clock)
    await adapter.initialize()
    yield adapter
    await adapter.close()


@pytest_asyncio.fixture(params=["sql", "orm"])
async def db_storage(request, test_settings, clock):
    """Only the backends that sit on a relational database."""
    adapter = build_adapter(request.param, test_settings, clock)
    await adapter.initialize()
    yield adapter
    await adapter.close()
