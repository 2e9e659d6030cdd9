from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

import structlog
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import Settings, settings as default_settings
from .exceptions import (
    BackendUnavailableError,
    ConflictError,
    OAuthStorageError,
    StorageError,
)

logger = structlog.get_logger("oauth_storage.database")


@asynccontextmanager
async def atomic_operation(operation: str) -> AsyncIterator[None]:
    """
    Translate backend failures raised inside the block into storage errors.

    Rollback is owned by the transaction opened inside the block; this only
    decides what the caller sees.
    """
    transaction_id = str(uuid4())[:8]
    operation_logger = logger.bind(operation=operation, transaction_id=transaction_id)

    try:
        yield

    except OAuthStorageError:
        raise

    except IntegrityError as e:
        operation_logger.warning(
            "Database integrity error - rolled back",
            error=str(e.orig),
            error_type="IntegrityError",
        )
        raise ConflictError(f"{operation}: duplicate key") from e

    except (DisconnectionError, OperationalError, InterfaceError) as e:
        operation_logger.error(
            "Database unavailable - rolled back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise BackendUnavailableError(f"{operation}: {e}") from e

    except DBAPIError as e:
        if e.connection_invalidated:
            operation_logger.error("Database connection invalidated", error=str(e))
            raise BackendUnavailableError(f"{operation}: connection lost") from e
        operation_logger.error("DBAPI error - rolled back", error=str(e), error_type=type(e).__name__)
        raise StorageError(f"{operation}: {e}") from e

    except SQLAlchemyError as e:
        operation_logger.error(
            "SQLAlchemy error - rolled back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise StorageError(f"{operation}: {e}") from e

    except OSError as e:
        operation_logger.error("Database connection failed", error=str(e), error_type=type(e).__name__)
        raise BackendUnavailableError(f"{operation}: {e}") from e


class DatabaseManager:
    def __init__(
        self,
        database_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
    ):
        self.settings = settings or default_settings
        self.database_url = str(database_url or self.settings.database_url)
        self._engine = engine
        self._owns_engine = engine is None
        self._session_factory = None
        self._closed = False
        self.logger = structlog.get_logger("oauth_storage.database.manager")

    def _engine_kwargs(self) -> dict:
        engine_kwargs = {
            "echo": self.settings.DATABASE_ECHO,
            "pool_pre_ping": True,
        }
        if self.database_url.startswith("sqlite"):
            # Writers on other connections wait for the lock instead of failing
            engine_kwargs["connect_args"] = {"timeout": self.settings.DATABASE_POOL_TIMEOUT}
        else:
            engine_kwargs.update(
                pool_size=self.settings.DATABASE_POOL_SIZE,
                max_overflow=self.settings.DATABASE_MAX_OVERFLOW,
                pool_timeout=self.settings.DATABASE_POOL_TIMEOUT,
                pool_recycle=self.settings.DATABASE_POOL_RECYCLE,
            )
        return engine_kwargs

    @property
    def engine(self) -> AsyncEngine:
        if self._closed:
            raise BackendUnavailableError("Storage adapter is closed")
        if self._engine is None:
            engine_kwargs = self._engine_kwargs()
            self._engine = create_async_engine(self.database_url, **engine_kwargs)
            self.logger.info(
                "Database engine created",
                dialect=self._engine.dialect.name,
                pool_size=engine_kwargs.get("pool_size"),
                max_overflow=engine_kwargs.get("max_overflow"),
            )
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
        return self._session_factory

    @asynccontextmanager
    async def transaction(self, operation: str) -> AsyncIterator[AsyncConnection]:
        """One connection, one transaction: committed on success, rolled back otherwise."""
        async with atomic_operation(operation):
            async with self.engine.begin() as conn:
                yield conn

    @asynccontextmanager
    async def session(self, operation: str) -> AsyncIterator[AsyncSession]:
        """ORM session bound to a single transaction."""
        async with atomic_operation(operation):
            async with self.session_factory() as session:
                async with session.begin():
                    yield session

    async def run_startup_step(self, description: str, step: Callable[[AsyncConnection], Awaitable[None]]):
        """Run an idempotent startup step, retrying while the backend is unreachable."""

        @retry(
            stop=stop_after_attempt(max(1, self.settings.INIT_RETRY_ATTEMPTS)),
            wait=wait_exponential(multiplier=0.5, min=0.5, max=self.settings.INIT_RETRY_MAX_WAIT),
            retry=retry_if_exception_type(BackendUnavailableError),
            reraise=True,
        )
        async def do_step():
            async with self.transaction(description) as conn:
                await step(conn)

        await do_step()
        self.logger.info("Startup step completed", step=description)

    async def close(self):
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        if not self._closed:
            self._closed = True
            self.logger.info("Database connection closed")
