from typing import Optional

import structlog

from ..common.config import Settings, settings as default_settings
from .base import (
    AuthCodeStore,
    ClientStore,
    Clock,
    ConsentStore,
    RateLimiter,
    StorageAdapter,
    TokenStore,
)
from .memory import MemoryStorageAdapter
from .orm import ORMStorageAdapter
from .sql import SQLStorageAdapter

logger = structlog.get_logger("oauth_storage.storage")

BACKENDS = {
    "sql": SQLStorageAdapter,
    "orm": ORMStorageAdapter,
    "memory": MemoryStorageAdapter,
}


def create_storage_adapter(
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
    database_url: Optional[str] = None,
) -> StorageAdapter:
    """Build the backend named by ``settings.storage_backend``. Call ``initialize()`` before use."""
    settings = settings or default_settings
    backend = settings.storage_backend.lower()
    if backend not in BACKENDS:
        raise ValueError(f"Unknown storage backend '{settings.storage_backend}', expected one of {sorted(BACKENDS)}")

    logger.info("Creating storage adapter", backend=backend, environment=settings.environment)
    if backend == "memory":
        return MemoryStorageAdapter(clock=clock)
    return BACKENDS[backend](database_url=database_url, settings=settings, clock=clock)
