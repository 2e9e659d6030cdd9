from .config import Settings, settings
from .exceptions import (
    BackendUnavailableError,
    ConflictError,
    InvariantViolationError,
    NotFoundError,
    OAuthStorageError,
    StorageError,
)
from .logging_config import setup_logging
