"""
Raw SQL storage adapter.

Statements are hand-written and executed through ``sqlalchemy.text`` over an
async engine, so the same code runs on PostgreSQL (asyncpg) and SQLite
(aiosqlite). Each operation is one transaction; the atomic ones are a single
statement that decides and writes at once.
"""
from typing import List, Optional, Set
from uuid import uuid4

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from ..common.config import Settings
from ..common.database import DatabaseManager
from ..common.encoding import decode_list, encode_list, from_epoch_ms, to_epoch_ms, unique
from ..common.logging_config import fingerprint
from ..schemas.oauth import AuthCodeRecord, OAuthClient, RateLimitResult, TokenRecord
from .base import (
    AuthCodeStore,
    ClientStore,
    Clock,
    ConsentStore,
    RateLimiter,
    StorageAdapter,
    TokenStore,
    as_auth_code_create,
    as_client_create,
    as_client_update,
    as_token_create,
    rate_limit_result,
    validate_window,
    window_end,
)
from .sql_schema import SCHEMA_STATEMENTS

logger = structlog.get_logger("oauth_storage.storage.sql")

CLIENT_COLUMNS = (
    "client_id, client_secret_hash, name, description, redirect_uris, grant_types, scopes, "
    "is_confidential, owner_id, logo_url, website_url, is_active, created_at, updated_at"
)
TOKEN_COLUMNS = "token, type, client_id, user_id, scopes, expires_at, created_at, is_revoked, access_token"
AUTH_CODE_COLUMNS = (
    "code, client_id, user_id, redirect_uri, scopes, code_challenge, code_challenge_method, "
    "expires_at, created_at, consumed"
)

_CLIENT_LIST_FIELDS = {"redirect_uris", "grant_types", "scopes"}


def _client_from_row(row) -> OAuthClient:
    return OAuthClient(
        client_id=row["client_id"],
        client_secret_hash=row["client_secret_hash"],
        name=row["name"],
        description=row["description"],
        redirect_uris=decode_list(row["redirect_uris"], "oauth_clients.redirect_uris"),
        grant_types=decode_list(row["grant_types"], "oauth_clients.grant_types"),
        scopes=decode_list(row["scopes"], "oauth_clients.scopes"),
        is_confidential=bool(row["is_confidential"]),
        owner_id=row["owner_id"],
        logo_url=row["logo_url"],
        website_url=row["website_url"],
        is_active=bool(row["is_active"]),
        created_at=from_epoch_ms(row["created_at"]),
        updated_at=from_epoch_ms(row["updated_at"]),
    )


def _token_from_row(row) -> TokenRecord:
    return TokenRecord(
        token=row["token"],
        type=row["type"],
        client_id=row["client_id"],
        user_id=row["user_id"],
        scopes=decode_list(row["scopes"], "oauth_tokens.scopes"),
        expires_at=from_epoch_ms(row["expires_at"]),
        created_at=from_epoch_ms(row["created_at"]),
        is_revoked=bool(row["is_revoked"]),
        access_token=row["access_token"],
    )


def _auth_code_from_row(row) -> AuthCodeRecord:
    return AuthCodeRecord(
        code=row["code"],
        client_id=row["client_id"],
        user_id=row["user_id"],
        redirect_uri=row["redirect_uri"],
        scopes=decode_list(row["scopes"], "oauth_auth_codes.scopes"),
        code_challenge=row["code_challenge"],
        code_challenge_method=row["code_challenge_method"],
        expires_at=from_epoch_ms(row["expires_at"]),
        created_at=from_epoch_ms(row["created_at"]),
        consumed=bool(row["consumed"]),
    )


class _SQLStore:
    def __init__(self, adapter: "SQLStorageAdapter"):
        self._adapter = adapter
        self._db = adapter.db

    def _now_ms(self) -> int:
        return to_epoch_ms(self._adapter.now())


class SQLClientStore(_SQLStore, ClientStore):
    async def create(self, client_data) -> OAuthClient:
        data = as_client_create(client_data)
        now = self._now_ms()
        async with self._db.transaction("create client") as conn:
            result = await conn.execute(
                text(
                    f"""
                    INSERT INTO oauth_clients (id, {CLIENT_COLUMNS})
                    VALUES (:id, :client_id, :client_secret_hash, :name, :description, :redirect_uris,
                            :grant_types, :scopes, :is_confidential, :owner_id, :logo_url, :website_url,
                            :is_active, :created_at, :updated_at)
                    RETURNING {CLIENT_COLUMNS}
                    """
                ),
                {
                    "id": str(uuid4()),
                    "client_id": data.client_id,
                    "client_secret_hash": data.client_secret_hash,
                    "name": data.name,
                    "description": data.description,
                    "redirect_uris": encode_list(data.redirect_uris),
                    "grant_types": encode_list(data.grant_types),
                    "scopes": encode_list(data.scopes),
                    "is_confidential": data.is_confidential,
                    "owner_id": data.owner_id,
                    "logo_url": data.logo_url,
                    "website_url": data.website_url,
                    "is_active": data.is_active,
                    "created_at": now,
                    "updated_at": now,
                },
            )
            row = result.mappings().one()
        logger.info("Client created", client_id=data.client_id, owner_id=data.owner_id)
        return _client_from_row(row)

    async def get(self, client_id: str) -> Optional[OAuthClient]:
        async with self._db.transaction("get client") as conn:
            result = await conn.execute(
                text(f"SELECT {CLIENT_COLUMNS} FROM oauth_clients WHERE client_id = :client_id"),
                {"client_id": client_id},
            )
            row = result.mappings().first()
        return _client_from_row(row) if row else None

    async def list_by_owner(self, owner_id: str) -> List[OAuthClient]:
        async with self._db.transaction("list clients") as conn:
            result = await conn.execute(
                text(
                    f"SELECT {CLIENT_COLUMNS} FROM oauth_clients "
                    "WHERE owner_id = :owner_id ORDER BY created_at, client_id"
                ),
                {"owner_id": owner_id},
            )
            rows = result.mappings().all()
        return [_client_from_row(row) for row in rows]

    async def update(self, client_id: str, fields) -> Optional[OAuthClient]:
        changes = as_client_update(fields)
        params = {"client_id": client_id, "updated_at": self._now_ms()}
        assignments = []
        # Column names come from the validated update model, never from the caller
        for column, value in changes.items():
            params[column] = encode_list(value) if column in _CLIENT_LIST_FIELDS else value
            assignments.append(f"{column} = :{column}")
        assignments.append("updated_at = :updated_at")

        async with self._db.transaction("update client") as conn:
            result = await conn.execute(
                text(
                    f"UPDATE oauth_clients SET {', '.join(assignments)} "
                    f"WHERE client_id = :client_id RETURNING {CLIENT_COLUMNS}"
                ),
                params,
            )
            row = result.mappings().first()
        if row is None:
            return None
        logger.info("Client updated", client_id=client_id, fields=sorted(changes))
        return _client_from_row(row)

    async def delete(self, client_id: str) -> bool:
        async with self._db.transaction("delete client") as conn:
            result = await conn.execute(
                text("DELETE FROM oauth_clients WHERE client_id = :client_id"),
                {"client_id": client_id},
            )
        removed = result.rowcount > 0
        logger.info("Client deleted", client_id=client_id, removed=removed)
        return removed


class SQLTokenStore(_SQLStore, TokenStore):
    async def store(self, token_data) -> TokenRecord:
        data = as_token_create(token_data)
        async with self._db.transaction("store token") as conn:
            result = await conn.execute(
                text(
                    f"""
                    INSERT INTO oauth_tokens (id, {TOKEN_COLUMNS})
                    VALUES (:id, :token, :type, :client_id, :user_id, :scopes, :expires_at,
                            :created_at, :is_revoked, :access_token)
                    RETURNING {TOKEN_COLUMNS}
                    """
                ),
                {
                    "id": str(uuid4()),
                    "token": data.token,
                    "type": data.type,
                    "client_id": data.client_id,
                    "user_id": data.user_id,
                    "scopes": encode_list(data.scopes),
                    "expires_at": to_epoch_ms(data.expires_at),
                    "created_at": self._now_ms(),
                    "is_revoked": data.is_revoked,
                    "access_token": data.access_token,
                },
            )
            row = result.mappings().one()
        logger.debug("Token stored", token=fingerprint(data.token), type=data.type, client_id=data.client_id)
        return _token_from_row(row)

    async def get(self, token: str) -> Optional[TokenRecord]:
        async with self._db.transaction("get token") as conn:
            result = await conn.execute(
                text(f"SELECT {TOKEN_COLUMNS} FROM oauth_tokens WHERE token = :token"),
                {"token": token},
            )
            row = result.mappings().first()
        if row is None:
            return None
        record = _token_from_row(row)
        return record if record.is_valid(self._adapter.now()) else None

    async def revoke(self, token: str) -> bool:
        async with self._db.transaction("revoke token") as conn:
            result = await conn.execute(
                text("UPDATE oauth_tokens SET is_revoked = TRUE WHERE token = :token"),
                {"token": token},
            )
        found = result.rowcount > 0
        if found:
            logger.info("Token revoked", token=fingerprint(token))
        return found

    async def revoke_all_for_client(self, client_id: str) -> int:
        async with self._db.transaction("revoke client tokens") as conn:
            result = await conn.execute(
                text(
                    "UPDATE oauth_tokens SET is_revoked = TRUE "
                    "WHERE client_id = :client_id AND is_revoked = FALSE"
                ),
                {"client_id": client_id},
            )
        logger.info("Client tokens revoked", client_id=client_id, count=result.rowcount)
        return result.rowcount

    async def revoke_all_for_user(self, user_id: str) -> int:
        async with self._db.transaction("revoke user tokens") as conn:
            result = await conn.execute(
                text(
                    "UPDATE oauth_tokens SET is_revoked = TRUE "
                    "WHERE user_id = :user_id AND is_revoked = FALSE"
                ),
                {"user_id": user_id},
            )
        logger.info("User tokens revoked", user_id=user_id, count=result.rowcount)
        return result.rowcount

    async def clean_expired(self) -> int:
        async with self._db.transaction("clean expired tokens") as conn:
            result = await conn.execute(
                text("DELETE FROM oauth_tokens WHERE expires_at <= :now"),
                {"now": self._now_ms()},
            )
        logger.info("Expired tokens cleaned", count=result.rowcount)
        return result.rowcount


class SQLAuthCodeStore(_SQLStore, AuthCodeStore):
    async def store(self, code_data) -> AuthCodeRecord:
        data = as_auth_code_create(code_data)
        async with self._db.transaction("store auth code") as conn:
            result = await conn.execute(
                text(
                    f"""
                    INSERT INTO oauth_auth_codes (id, {AUTH_CODE_COLUMNS})
                    VALUES (:id, :code, :client_id, :user_id, :redirect_uri, :scopes, :code_challenge,
                            :code_challenge_method, :expires_at, :created_at, FALSE)
                    RETURNING {AUTH_CODE_COLUMNS}
                    """
                ),
                {
                    "id": str(uuid4()),
                    "code": data.code,
                    "client_id": data.client_id,
                    "user_id": data.user_id,
                    "redirect_uri": data.redirect_uri,
                    "scopes": encode_list(data.scopes),
                    "code_challenge": data.code_challenge,
                    "code_challenge_method": data.code_challenge_method,
                    "expires_at": to_epoch_ms(data.expires_at),
                    "created_at": self._now_ms(),
                },
            )
            row = result.mappings().one()
        logger.debug("Authorization code stored", code=fingerprint(data.code), client_id=data.client_id)
        return _auth_code_from_row(row)

    async def consume(self, code: str) -> Optional[AuthCodeRecord]:
        async with self._db.transaction("consume auth code") as conn:
            result = await conn.execute(
                text(
                    f"""
                    UPDATE oauth_auth_codes SET consumed = TRUE
                    WHERE code = :code AND consumed = FALSE AND expires_at > :now
                    RETURNING {AUTH_CODE_COLUMNS}
                    """
                ),
                {"code": code, "now": self._now_ms()},
            )
            row = result.mappings().first()
        if row is None:
            logger.info("Authorization code not redeemable", code=fingerprint(code))
            return None
        record = _auth_code_from_row(row)
        logger.info("Authorization code consumed", code=fingerprint(code), client_id=record.client_id)
        return record.model_copy(update={"consumed": False})

    async def get(self, code: str) -> Optional[AuthCodeRecord]:
        async with self._db.transaction("get auth code") as conn:
            result = await conn.execute(
                text(f"SELECT {AUTH_CODE_COLUMNS} FROM oauth_auth_codes WHERE code = :code"),
                {"code": code},
            )
            row = result.mappings().first()
        return _auth_code_from_row(row) if row else None

    async def clean_expired(self) -> int:
        async with self._db.transaction("clean expired auth codes") as conn:
            result = await conn.execute(
                text("DELETE FROM oauth_auth_codes WHERE expires_at <= :now"),
                {"now": self._now_ms()},
            )
        logger.info("Expired authorization codes cleaned", count=result.rowcount)
        return result.rowcount


class SQLRateLimiter(_SQLStore, RateLimiter):
    async def check_and_increment(self, key: str, window_seconds: float, max_count: int) -> RateLimitResult:
        validate_window(window_seconds, max_count)
        now = self._adapter.now()
        async with self._db.transaction("rate limit") as conn:
            result = await conn.execute(
                text(
                    """
                    INSERT INTO oauth_rate_limits (id, key, count, reset_at)
                    VALUES (:id, :key, 1, :reset_at)
                    ON CONFLICT (key) DO UPDATE SET
                        count = CASE WHEN oauth_rate_limits.reset_at <= :now
                                     THEN 1 ELSE oauth_rate_limits.count + 1 END,
                        reset_at = CASE WHEN oauth_rate_limits.reset_at <= :now
                                        THEN excluded.reset_at ELSE oauth_rate_limits.reset_at END
                    RETURNING count, reset_at
                    """
                ),
                {
                    "id": str(uuid4()),
                    "key": key,
                    "reset_at": to_epoch_ms(window_end(now, window_seconds)),
                    "now": to_epoch_ms(now),
                },
            )
            row = result.mappings().one()
        outcome = rate_limit_result(int(row["count"]), from_epoch_ms(row["reset_at"]), max_count)
        if not outcome.allowed:
            logger.info("Rate limit exceeded", key=key, count=outcome.count, max_count=max_count)
        return outcome

    async def get_count(self, key: str) -> int:
        async with self._db.transaction("rate limit count") as conn:
            result = await conn.execute(
                text("SELECT count FROM oauth_rate_limits WHERE key = :key AND reset_at > :now"),
                {"key": key, "now": self._now_ms()},
            )
            count = result.scalar()
        return int(count) if count is not None else 0

    async def reset(self, key: str) -> bool:
        async with self._db.transaction("rate limit reset") as conn:
            result = await conn.execute(
                text("DELETE FROM oauth_rate_limits WHERE key = :key"),
                {"key": key},
            )
        return result.rowcount > 0


class SQLConsentStore(_SQLStore, ConsentStore):
    async def store(self, user_id: str, client_id: str, scopes: List[str]) -> None:
        scopes = unique(scopes)
        async with self._db.transaction("store consent") as conn:
            # Not one ON CONFLICT DO UPDATE: a JSON array union has no portable SQL form.
            # Claim the row first: the write takes the lock the merge below relies on
            inserted = await conn.execute(
                text(
                    """
                    INSERT INTO oauth_consents (id, user_id, client_id, scopes, created_at)
                    VALUES (:id, :user_id, :client_id, :scopes, :created_at)
                    ON CONFLICT (user_id, client_id) DO NOTHING
                    RETURNING id
                    """
                ),
                {
                    "id": str(uuid4()),
                    "user_id": user_id,
                    "client_id": client_id,
                    "scopes": encode_list(scopes),
                    "created_at": self._now_ms(),
                },
            )
            if inserted.first() is None:
                await self._merge(conn, user_id, client_id, scopes)
        logger.info("Consent stored", user_id=user_id, client_id=client_id)

    async def _merge(self, conn: AsyncConnection, user_id: str, client_id: str, scopes: List[str]):
        lock = "" if conn.dialect.name == "sqlite" else " FOR UPDATE"
        result = await conn.execute(
            text(f"SELECT scopes FROM oauth_consents WHERE user_id = :user_id AND client_id = :client_id{lock}"),
            {"user_id": user_id, "client_id": client_id},
        )
        existing = decode_list(result.scalar_one(), "oauth_consents.scopes")
        await conn.execute(
            text("UPDATE oauth_consents SET scopes = :scopes WHERE user_id = :user_id AND client_id = :client_id"),
            {"scopes": encode_list(unique(existing + scopes)), "user_id": user_id, "client_id": client_id},
        )

    async def get(self, user_id: str, client_id: str) -> Optional[Set[str]]:
        async with self._db.transaction("get consent") as conn:
            result = await conn.execute(
                text("SELECT scopes FROM oauth_consents WHERE user_id = :user_id AND client_id = :client_id"),
                {"user_id": user_id, "client_id": client_id},
            )
            row = result.first()
        if row is None:
            return None
        return set(decode_list(row[0], "oauth_consents.scopes"))

    async def revoke(self, user_id: str, client_id: str) -> bool:
        async with self._db.transaction("revoke consent") as conn:
            result = await conn.execute(
                text("DELETE FROM oauth_consents WHERE user_id = :user_id AND client_id = :client_id"),
                {"user_id": user_id, "client_id": client_id},
            )
        removed = result.rowcount > 0
        logger.info("Consent revoked", user_id=user_id, client_id=client_id, removed=removed)
        return removed


class SQLStorageAdapter(StorageAdapter):
    name = "sql"

    def __init__(
        self,
        database_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self.db = DatabaseManager(database_url=database_url, settings=settings, engine=engine)
        self._clients = SQLClientStore(self)
        self._tokens = SQLTokenStore(self)
        self._auth_codes = SQLAuthCodeStore(self)
        self._rate_limiter = SQLRateLimiter(self)
        self._consents = SQLConsentStore(self)

    @property
    def clients(self) -> SQLClientStore:
        return self._clients

    @property
    def tokens(self) -> SQLTokenStore:
        return self._tokens

    @property
    def auth_codes(self) -> SQLAuthCodeStore:
        return self._auth_codes

    @property
    def rate_limiter(self) -> SQLRateLimiter:
        return self._rate_limiter

    @property
    def consents(self) -> SQLConsentStore:
        return self._consents

    async def initialize(self) -> None:
        async def create_schema(conn: AsyncConnection):
            for statement in SCHEMA_STATEMENTS:
                await conn.execute(text(statement))

        await self.db.run_startup_step("initialize sql schema", create_schema)

    async def close(self) -> None:
        await self.db.close()
