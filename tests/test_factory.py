import logging

import pytest
import structlog

from oauth_storage.common.config import Settings
from oauth_storage.common.logging_config import fingerprint, setup_logging
from oauth_storage.storage import (
    MemoryStorageAdapter,
    ORMStorageAdapter,
    SQLStorageAdapter,
    create_storage_adapter,
)

from factories import client_data


@pytest.mark.parametrize(
    "backend,expected",
    [("sql", SQLStorageAdapter), ("orm", ORMStorageAdapter), ("memory", MemoryStorageAdapter), ("ORM", ORMStorageAdapter)],
)
def test_factory_selects_backend(test_settings, backend, expected):
    adapter = create_storage_adapter(test_settings.model_copy(update={"storage_backend": backend}))
    assert isinstance(adapter, expected)


def test_factory_rejects_unknown_backend(test_settings):
    with pytest.raises(ValueError):
        create_storage_adapter(test_settings.model_copy(update={"storage_backend": "redis"}))


def test_factory_passes_database_url(test_settings, tmp_path):
    url = f"sqlite+aiosqlite:///{tmp_path / 'other.db'}"
    adapter = create_storage_adapter(test_settings, database_url=url)
    assert adapter.db.database_url == url


@pytest.mark.asyncio
async def test_adapter_as_context_manager(test_settings, clock):
    async with create_storage_adapter(test_settings, clock=clock) as adapter:
        await adapter.clients.create(client_data())
        assert (await adapter.clients.get("c1")).created_at == clock()


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("STORAGE_BACKEND", "orm")
    monkeypatch.setenv("DATABASE_POOL_SIZE", "5")
    loaded = Settings()
    assert loaded.storage_backend == "orm"
    assert loaded.DATABASE_POOL_SIZE == 5


def test_setup_logging_json(test_settings):
    setup_logging(test_settings.model_copy(update={"LOG_FORMAT": "json", "LOG_LEVEL": "DEBUG"}))
    assert logging.getLogger().level == logging.DEBUG
    assert structlog.is_configured()


def test_fingerprint_hides_value():
    tag = fingerprint("very-secret-token")
    assert len(tag) == 12
    assert "secret" not in tag
    assert fingerprint("very-secret-token") == tag
    assert fingerprint(None) is None
