import hashlib
import logging
import sys
from typing import Optional

import structlog

from .config import Settings, settings as default_settings


def setup_logging(settings: Optional[Settings] = None):
    """
    Set up structured logging for the storage engine.
    In development, logs are human-readable.
    In production, logs are JSON-formatted.
    """
    settings = settings or default_settings

    shared_processors = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    log_format = settings.LOG_FORMAT or ("json" if settings.environment == "production" else "console")
    if log_format == "json":
        processors = shared_processors + [
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    if not any(getattr(h, "_oauth_storage", False) for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler._oauth_storage = True
        root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    # Silence other noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger = structlog.get_logger("oauth_storage.logging")
    logger.info("Structured logging configured.", environment=settings.environment, format=log_format)


def fingerprint(value: Optional[str]) -> Optional[str]:
    """Short, non-reversible tag for a secret value, safe to put in logs."""
    if value is None:
        return None
    return hashlib.sha256(value.encode()).hexdigest()[:12]
