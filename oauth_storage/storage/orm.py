"""
ORM storage adapter over the declarative models in ``oauth_storage.models``.

Plain reads and writes go through mapped objects. The atomic operations use
ORM/Core statements that decide and write in one round trip: conditional
UPDATE ... RETURNING for code consumption and the dialect's native upsert for
rate limiting and consent.
"""
from typing import List, Optional, Set
from uuid import uuid4

import structlog
from sqlalchemy import case, delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncEngine

from ..common.config import Settings
from ..common.database import DatabaseManager
from ..common.encoding import decode_list, encode_list, unique
from ..common.exceptions import StorageError
from ..common.logging_config import fingerprint
from ..models import Base, OAuthAuthCode, OAuthConsent, OAuthRateLimit, OAuthToken
from ..models import OAuthClient as OAuthClientModel
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

logger = structlog.get_logger("oauth_storage.storage.orm")

_CLIENT_LIST_FIELDS = {"redirect_uris", "grant_types", "scopes"}


def _insert_for(dialect: str):
    """The dialect-specific INSERT construct that supports ON CONFLICT."""
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise StorageError(f"Upsert is not supported on dialect '{dialect}'")


def _client_from_model(model: OAuthClientModel) -> OAuthClient:
    return OAuthClient(
        client_id=model.client_id,
        client_secret_hash=model.client_secret_hash,
        name=model.name,
        description=model.description,
        redirect_uris=decode_list(model.redirect_uris, "oauth_clients.redirect_uris"),
        grant_types=decode_list(model.grant_types, "oauth_clients.grant_types"),
        scopes=decode_list(model.scopes, "oauth_clients.scopes"),
        is_confidential=model.is_confidential,
        owner_id=model.owner_id,
        logo_url=model.logo_url,
        website_url=model.website_url,
        is_active=model.is_active,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def _token_from_model(model: OAuthToken) -> TokenRecord:
    return TokenRecord(
        token=model.token,
        type=model.type,
        client_id=model.client_id,
        user_id=model.user_id,
        scopes=decode_list(model.scopes, "oauth_tokens.scopes"),
        expires_at=model.expires_at,
        created_at=model.created_at,
        is_revoked=model.is_revoked,
        access_token=model.access_token,
    )


def _auth_code_from_model(model: OAuthAuthCode) -> AuthCodeRecord:
    return AuthCodeRecord(
        code=model.code,
        client_id=model.client_id,
        user_id=model.user_id,
        redirect_uri=model.redirect_uri,
        scopes=decode_list(model.scopes, "oauth_auth_codes.scopes"),
        code_challenge=model.code_challenge,
        code_challenge_method=model.code_challenge_method,
        expires_at=model.expires_at,
        created_at=model.created_at,
        consumed=model.consumed,
    )


class _ORMStore:
    def __init__(self, adapter: "ORMStorageAdapter"):
        self._adapter = adapter
        self._db = adapter.db


class ORMClientStore(_ORMStore, ClientStore):
    async def create(self, client_data) -> OAuthClient:
        data = as_client_create(client_data)
        now = self._adapter.now()
        async with self._db.session("create client") as session:
            model = OAuthClientModel(
                client_id=data.client_id,
                client_secret_hash=data.client_secret_hash,
                name=data.name,
                description=data.description,
                redirect_uris=encode_list(data.redirect_uris),
                grant_types=encode_list(data.grant_types),
                scopes=encode_list(data.scopes),
                is_confidential=data.is_confidential,
                owner_id=data.owner_id,
                logo_url=data.logo_url,
                website_url=data.website_url,
                is_active=data.is_active,
                created_at=now,
                updated_at=now,
            )
            session.add(model)
            await session.flush()
            client = _client_from_model(model)
        logger.info("Client created", client_id=data.client_id, owner_id=data.owner_id)
        return client

    async def get(self, client_id: str) -> Optional[OAuthClient]:
        async with self._db.session("get client") as session:
            result = await session.execute(
                select(OAuthClientModel).where(OAuthClientModel.client_id == client_id)
            )
            model = result.scalar_one_or_none()
            return _client_from_model(model) if model else None

    async def list_by_owner(self, owner_id: str) -> List[OAuthClient]:
        async with self._db.session("list clients") as session:
            result = await session.execute(
                select(OAuthClientModel)
                .where(OAuthClientModel.owner_id == owner_id)
                .order_by(OAuthClientModel.created_at, OAuthClientModel.client_id)
            )
            return [_client_from_model(model) for model in result.scalars().all()]

    async def update(self, client_id: str, fields) -> Optional[OAuthClient]:
        changes = as_client_update(fields)
        async with self._db.session("update client") as session:
            result = await session.execute(
                select(OAuthClientModel)
                .where(OAuthClientModel.client_id == client_id)
                .with_for_update()
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            for field, value in changes.items():
                setattr(model, field, encode_list(value) if field in _CLIENT_LIST_FIELDS else value)
            model.updated_at = self._adapter.now()
            await session.flush()
            client = _client_from_model(model)
        logger.info("Client updated", client_id=client_id, fields=sorted(changes))
        return client

    async def delete(self, client_id: str) -> bool:
        async with self._db.session("delete client") as session:
            result = await session.execute(
                delete(OAuthClientModel).where(OAuthClientModel.client_id == client_id)
            )
            removed = result.rowcount > 0
        logger.info("Client deleted", client_id=client_id, removed=removed)
        return removed


class ORMTokenStore(_ORMStore, TokenStore):
    async def store(self, token_data) -> TokenRecord:
        data = as_token_create(token_data)
        async with self._db.session("store token") as session:
            model = OAuthToken(
                token=data.token,
                type=data.type,
                client_id=data.client_id,
                user_id=data.user_id,
                scopes=encode_list(data.scopes),
                expires_at=data.expires_at,
                created_at=self._adapter.now(),
                is_revoked=data.is_revoked,
                access_token=data.access_token,
            )
            session.add(model)
            await session.flush()
            record = _token_from_model(model)
        logger.debug("Token stored", token=fingerprint(data.token), type=data.type, client_id=data.client_id)
        return record

    async def get(self, token: str) -> Optional[TokenRecord]:
        async with self._db.session("get token") as session:
            result = await session.execute(select(OAuthToken).where(OAuthToken.token == token))
            model = result.scalar_one_or_none()
            record = _token_from_model(model) if model else None
        if record is None or not record.is_valid(self._adapter.now()):
            return None
        return record

    async def _revoke_where(self, operation: str, *criteria) -> int:
        async with self._db.session(operation) as session:
            result = await session.execute(
                update(OAuthToken)
                .where(*criteria)
                .values(is_revoked=True)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def revoke(self, token: str) -> bool:
        found = await self._revoke_where("revoke token", OAuthToken.token == token) > 0
        if found:
            logger.info("Token revoked", token=fingerprint(token))
        return found

    async def revoke_all_for_client(self, client_id: str) -> int:
        count = await self._revoke_where(
            "revoke client tokens",
            OAuthToken.client_id == client_id,
            OAuthToken.is_revoked.is_(False),
        )
        logger.info("Client tokens revoked", client_id=client_id, count=count)
        return count

    async def revoke_all_for_user(self, user_id: str) -> int:
        count = await self._revoke_where(
            "revoke user tokens",
            OAuthToken.user_id == user_id,
            OAuthToken.is_revoked.is_(False),
        )
        logger.info("User tokens revoked", user_id=user_id, count=count)
        return count

    async def clean_expired(self) -> int:
        async with self._db.session("clean expired tokens") as session:
            result = await session.execute(
                delete(OAuthToken)
                .where(OAuthToken.expires_at <= self._adapter.now())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        logger.info("Expired tokens cleaned", count=count)
        return count


class ORMAuthCodeStore(_ORMStore, AuthCodeStore):
    async def store(self, code_data) -> AuthCodeRecord:
        data = as_auth_code_create(code_data)
        async with self._db.session("store auth code") as session:
            model = OAuthAuthCode(
                code=data.code,
                client_id=data.client_id,
                user_id=data.user_id,
                redirect_uri=data.redirect_uri,
                scopes=encode_list(data.scopes),
                code_challenge=data.code_challenge,
                code_challenge_method=data.code_challenge_method,
                expires_at=data.expires_at,
                created_at=self._adapter.now(),
                consumed=False,
            )
            session.add(model)
            await session.flush()
            record = _auth_code_from_model(model)
        logger.debug("Authorization code stored", code=fingerprint(data.code), client_id=data.client_id)
        return record

    async def consume(self, code: str) -> Optional[AuthCodeRecord]:
        async with self._db.session("consume auth code") as session:
            result = await session.execute(
                update(OAuthAuthCode)
                .where(
                    OAuthAuthCode.code == code,
                    OAuthAuthCode.consumed.is_(False),
                    OAuthAuthCode.expires_at > self._adapter.now(),
                )
                .values(consumed=True)
                .returning(OAuthAuthCode)
                .execution_options(synchronize_session=False)
            )
            model = result.scalar_one_or_none()
            record = _auth_code_from_model(model) if model else None
        if record is None:
            logger.info("Authorization code not redeemable", code=fingerprint(code))
            return None
        logger.info("Authorization code consumed", code=fingerprint(code), client_id=record.client_id)
        return record.model_copy(update={"consumed": False})

    async def get(self, code: str) -> Optional[AuthCodeRecord]:
        async with self._db.session("get auth code") as session:
            result = await session.execute(select(OAuthAuthCode).where(OAuthAuthCode.code == code))
            model = result.scalar_one_or_none()
            return _auth_code_from_model(model) if model else None

    async def clean_expired(self) -> int:
        async with self._db.session("clean expired auth codes") as session:
            result = await session.execute(
                delete(OAuthAuthCode)
                .where(OAuthAuthCode.expires_at <= self._adapter.now())
                .execution_options(synchronize_session=False)
            )
            count = result.rowcount
        logger.info("Expired authorization codes cleaned", count=count)
        return count


class ORMRateLimiter(_ORMStore, RateLimiter):
    async def check_and_increment(self, key: str, window_seconds: float, max_count: int) -> RateLimitResult:
        validate_window(window_seconds, max_count)
        now = self._adapter.now()
        table = OAuthRateLimit.__table__
        async with self._db.session("rate limit") as session:
            insert = _insert_for(self._db.dialect)
            stmt = insert(table).values(
                id=str(uuid4()),
                key=key,
                count=1,
                reset_at=window_end(now, window_seconds),
            )
            window_over = table.c.reset_at <= now
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.key],
                set_={
                    "count": case((window_over, 1), else_=table.c.count + 1),
                    "reset_at": case((window_over, stmt.excluded.reset_at), else_=table.c.reset_at),
                },
            ).returning(table.c.count, table.c.reset_at)
            count, reset_at = (await session.execute(stmt)).one()
        outcome = rate_limit_result(count, reset_at, max_count)
        if not outcome.allowed:
            logger.info("Rate limit exceeded", key=key, count=outcome.count, max_count=max_count)
        return outcome

    async def get_count(self, key: str) -> int:
        async with self._db.session("rate limit count") as session:
            result = await session.execute(
                select(OAuthRateLimit.count).where(
                    OAuthRateLimit.key == key,
                    OAuthRateLimit.reset_at > self._adapter.now(),
                )
            )
            count = result.scalar_one_or_none()
        return count or 0

    async def reset(self, key: str) -> bool:
        async with self._db.session("rate limit reset") as session:
            result = await session.execute(delete(OAuthRateLimit).where(OAuthRateLimit.key == key))
            return result.rowcount > 0


class ORMConsentStore(_ORMStore, ConsentStore):
    async def store(self, user_id: str, client_id: str, scopes: List[str]) -> None:
        scopes = unique(scopes)
        table = OAuthConsent.__table__
        async with self._db.session("store consent") as session:
            insert = _insert_for(self._db.dialect)
            inserted = await session.execute(
                insert(table)
                .values(
                    id=str(uuid4()),
                    user_id=user_id,
                    client_id=client_id,
                    scopes=encode_list(scopes),
                    created_at=self._adapter.now(),
                )
                .on_conflict_do_nothing(index_elements=[table.c.user_id, table.c.client_id])
                .returning(table.c.id)
            )
            # Merging JSON arrays inside ON CONFLICT DO UPDATE is dialect-specific, so the
            # union happens here, under the row lock taken by the insert or FOR UPDATE
            if inserted.first() is None:
                result = await session.execute(
                    select(OAuthConsent)
                    .where(OAuthConsent.user_id == user_id, OAuthConsent.client_id == client_id)
                    .with_for_update()
                )
                consent = result.scalar_one()
                existing = decode_list(consent.scopes, "oauth_consents.scopes")
                consent.scopes = encode_list(unique(existing + scopes))
        logger.info("Consent stored", user_id=user_id, client_id=client_id)

    async def get(self, user_id: str, client_id: str) -> Optional[Set[str]]:
        async with self._db.session("get consent") as session:
            result = await session.execute(
                select(OAuthConsent.scopes).where(
                    OAuthConsent.user_id == user_id,
                    OAuthConsent.client_id == client_id,
                )
            )
            row = result.first()
        if row is None:
            return None
        return set(decode_list(row.scopes, "oauth_consents.scopes"))

    async def revoke(self, user_id: str, client_id: str) -> bool:
        async with self._db.session("revoke consent") as session:
            result = await session.execute(
                delete(OAuthConsent).where(
                    OAuthConsent.user_id == user_id,
                    OAuthConsent.client_id == client_id,
                )
            )
            removed = result.rowcount > 0
        logger.info("Consent revoked", user_id=user_id, client_id=client_id, removed=removed)
        return removed


class ORMStorageAdapter(StorageAdapter):
    name = "orm"

    def __init__(
        self,
        database_url: Optional[str] = None,
        settings: Optional[Settings] = None,
        engine: Optional[AsyncEngine] = None,
        clock: Optional[Clock] = None,
    ):
        super().__init__(clock)
        self.db = DatabaseManager(database_url=database_url, settings=settings, engine=engine)
        self._clients = ORMClientStore(self)
        self._tokens = ORMTokenStore(self)
        self._auth_codes = ORMAuthCodeStore(self)
        self._rate_limiter = ORMRateLimiter(self)
        self._consents = ORMConsentStore(self)

    @property
    def clients(self) -> ORMClientStore:
        return self._clients

    @property
    def tokens(self) -> ORMTokenStore:
        return self._tokens

    @property
    def auth_codes(self) -> ORMAuthCodeStore:
        return self._auth_codes

    @property
    def rate_limiter(self) -> ORMRateLimiter:
        return self._rate_limiter

    @property
    def consents(self) -> ORMConsentStore:
        return self._consents

    async def initialize(self) -> None:
        async def create_tables(conn):
            await conn.run_sync(Base.metadata.create_all)

        await self.db.run_startup_step("initialize orm schema", create_tables)

    async def close(self) -> None:
        await self.db.close()
