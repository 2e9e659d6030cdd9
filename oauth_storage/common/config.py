import os
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    database_url: str = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./oauth_storage.db")
    storage_backend: str = os.environ.get("STORAGE_BACKEND", "sql")  # sql, orm, memory
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 30
    DATABASE_POOL_TIMEOUT: int = 30
    DATABASE_POOL_RECYCLE: int = 3600
    DATABASE_ECHO: bool = False

    # initialize() is idempotent, so it is the only operation that retries
    INIT_RETRY_ATTEMPTS: int = 3
    INIT_RETRY_MAX_WAIT: float = 10.0

    # Client secret hashing (Argon2id)
    ARGON2_MEMORY_COST: int = 65536  # KiB
    ARGON2_TIME_COST: int = 3
    ARGON2_PARALLELISM: int = 4

    # Environment
    environment: str = "development"
    debug: bool = False

    # Logging Configuration
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT: Optional[str] = os.environ.get("LOG_FORMAT")  # json, console

    model_config = SettingsConfigDict(env_file=".env", extra="allow")


settings = Settings()
