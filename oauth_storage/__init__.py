"""Persistence engine for an OAuth2 authorization server."""
from .common.exceptions import (
    BackendUnavailableError,
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    OAuthStorageError,
    StorageError,
)
from .storage import (
    MemoryStorageAdapter,
    ORMStorageAdapter,
    SQLStorageAdapter,
    StorageAdapter,
    create_storage_adapter,
)

__version__ = "0.1.0"
