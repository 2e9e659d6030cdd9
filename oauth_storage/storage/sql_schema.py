"""
DDL for the raw SQL backend.

Written to run unchanged on PostgreSQL and SQLite. Timestamps are epoch
milliseconds, list fields are JSON arrays in TEXT columns. One statement per
entry since neither asyncpg nor sqlite3 accept multi-statement strings.
"""

SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS users (
        id VARCHAR(36) PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE,
        name VARCHAR(255),
        password VARCHAR(255) NOT NULL,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_clients (
        id VARCHAR(36) PRIMARY KEY,
        client_id VARCHAR(255) NOT NULL UNIQUE,
        client_secret_hash VARCHAR(255),
        name VARCHAR(255) NOT NULL,
        description TEXT,
        redirect_uris TEXT NOT NULL DEFAULT '[]',
        grant_types TEXT NOT NULL DEFAULT '[]',
        scopes TEXT NOT NULL DEFAULT '[]',
        is_confidential BOOLEAN NOT NULL DEFAULT TRUE,
        owner_id VARCHAR(255) NOT NULL,
        logo_url TEXT,
        website_url TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_tokens (
        id VARCHAR(36) PRIMARY KEY,
        token VARCHAR(512) NOT NULL UNIQUE,
        type VARCHAR(50) NOT NULL,
        client_id VARCHAR(255) NOT NULL,
        user_id VARCHAR(255),
        scopes TEXT NOT NULL DEFAULT '[]',
        expires_at BIGINT NOT NULL,
        created_at BIGINT NOT NULL,
        is_revoked BOOLEAN NOT NULL DEFAULT FALSE,
        access_token VARCHAR(512)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_auth_codes (
        id VARCHAR(36) PRIMARY KEY,
        code VARCHAR(255) NOT NULL UNIQUE,
        client_id VARCHAR(255) NOT NULL,
        user_id VARCHAR(255) NOT NULL,
        redirect_uri TEXT NOT NULL,
        scopes TEXT NOT NULL DEFAULT '[]',
        code_challenge VARCHAR(255),
        code_challenge_method VARCHAR(50),
        expires_at BIGINT NOT NULL,
        created_at BIGINT NOT NULL,
        consumed BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_rate_limits (
        id VARCHAR(36) PRIMARY KEY,
        key VARCHAR(512) NOT NULL UNIQUE,
        count INTEGER NOT NULL DEFAULT 0,
        reset_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS oauth_consents (
        id VARCHAR(36) PRIMARY KEY,
        user_id VARCHAR(255) NOT NULL,
        client_id VARCHAR(255) NOT NULL,
        scopes TEXT NOT NULL DEFAULT '[]',
        created_at BIGINT NOT NULL,
        CONSTRAINT uq_oauth_consents_user_client UNIQUE (user_id, client_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_oauth_clients_owner_id ON oauth_clients (owner_id)",
    "CREATE INDEX IF NOT EXISTS idx_oauth_tokens_client_id ON oauth_tokens (client_id)",
    "CREATE INDEX IF NOT EXISTS idx_oauth_tokens_user_id ON oauth_tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS idx_oauth_tokens_expires_at ON oauth_tokens (expires_at)",
    "CREATE INDEX IF NOT EXISTS idx_oauth_auth_codes_expires_at ON oauth_auth_codes (expires_at)",
]

INDEX_NAMES = [
    "idx_oauth_clients_owner_id",
    "idx_oauth_tokens_client_id",
    "idx_oauth_tokens_user_id",
    "idx_oauth_tokens_expires_at",
    "idx_oauth_auth_codes_expires_at",
]

TABLE_NAMES = [
    "users",
    "oauth_clients",
    "oauth_tokens",
    "oauth_auth_codes",
    "oauth_rate_limits",
    "oauth_consents",
]
