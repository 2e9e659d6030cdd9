"""
In-memory storage adapter for development and testing.

Data lives in process dictionaries and is lost when the adapter is closed.
Every operation completes without yielding to the event loop, which is what
makes check-and-set steps atomic here; it gives no guarantee across processes.
"""
from datetime import datetime
from typing import Dict, List, Optional, Set, Tuple

import structlog

from ..common.encoding import truncate_ms, unique
from ..common.exceptions import ConflictError
from ..common.logging_config import fingerprint
from ..schemas.oauth import AuthCodeRecord, ConsentRecord, OAuthClient, RateLimitResult, TokenRecord
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

logger = structlog.get_logger("oauth_storage.storage.memory")


class _MemoryState:
    def __init__(self):
        self.clients: Dict[str, OAuthClient] = {}
        self.tokens: Dict[str, TokenRecord] = {}
        self.auth_codes: Dict[str, AuthCodeRecord] = {}
        self.rate_limits: Dict[str, Tuple[int, datetime]] = {}
        self.consents: Dict[Tuple[str, str], ConsentRecord] = {}

    def clear(self):
        self.clients.clear()
        self.tokens.clear()
        self.auth_codes.clear()
        self.rate_limits.clear()
        self.consents.clear()


class MemoryClientStore(ClientStore):
    def __init__(self, adapter: "MemoryStorageAdapter"):
        self._adapter = adapter
        self._clients = adapter.state.clients

    async def create(self, client_data) -> OAuthClient:
        data = as_client_create(client_data)
        if data.client_id in self._clients:
            raise ConflictError(f"Client '{data.client_id}' already exists")
        now = self._adapter.now()
        client = OAuthClient(**data.model_dump(), created_at=now, updated_at=now)
        self._clients[client.client_id] = client
        logger.info("Client created", client_id=client.client_id, owner_id=client.owner_id)
        return client.model_copy(deep=True)

    async def get(self, client_id: str) -> Optional[OAuthClient]:
        client = self._clients.get(client_id)
        return client.model_copy(deep=True) if client else None

    async def list_by_owner(self, owner_id: str) -> List[OAuthClient]:
        return [c.model_copy(deep=True) for c in self._clients.values() if c.owner_id == owner_id]

    async def update(self, client_id: str, fields) -> Optional[OAuthClient]:
        changes = as_client_update(fields)
        existing = self._clients.get(client_id)
        if existing is None:
            return None
        updated = existing.model_copy(update={**changes, "updated_at": truncate_ms(self._adapter.now())}, deep=True)
        self._clients[client_id] = updated
        logger.info("Client updated", client_id=client_id, fields=sorted(changes))
        return updated.model_copy(deep=True)

    async def delete(self, client_id: str) -> bool:
        removed = self._clients.pop(client_id, None) is not None
        logger.info("Client deleted", client_id=client_id, removed=removed)
        return removed


class MemoryTokenStore(TokenStore):
    def __init__(self, adapter: "MemoryStorageAdapter"):
        self._adapter = adapter
        self._tokens = adapter.state.tokens

    async def store(self, token_data) -> TokenRecord:
        data = as_token_create(token_data)
        if data.token in self._tokens:
            raise ConflictError("Token already exists")
        record = TokenRecord(**data.model_dump(), created_at=self._adapter.now())
        self._tokens[record.token] = record
        logger.debug("Token stored", token=fingerprint(record.token), type=record.type, client_id=record.client_id)
        return record.model_copy(deep=True)

    async def get(self, token: str) -> Optional[TokenRecord]:
        record = self._tokens.get(token)
        if record is None or not record.is_valid(self._adapter.now()):
            return None
        return record.model_copy(deep=True)

    async def revoke(self, token: str) -> bool:
        record = self._tokens.get(token)
        if record is None:
            return False
        record.is_revoked = True
        logger.info("Token revoked", token=fingerprint(token))
        return True

    def _revoke_where(self, predicate) -> int:
        count = 0
        for record in self._tokens.values():
            if predicate(record) and not record.is_revoked:
                record.is_revoked = True
                count += 1
        return count

    async def revoke_all_for_client(self, client_id: str) -> int:
        count = self._revoke_where(lambda r: r.client_id == client_id)
        logger.info("Client tokens revoked", client_id=client_id, count=count)
        return count

    async def revoke_all_for_user(self, user_id: str) -> int:
        count = self._revoke_where(lambda r: r.user_id == user_id)
        logger.info("User tokens revoked", user_id=user_id, count=count)
        return count

    async def clean_expired(self) -> int:
        now = self._adapter.now()
        expired = [key for key, record in self._tokens.items() if record.expires_at <= now]
        for key in expired:
            del self._tokens[key]
        logger.info("Expired tokens cleaned", count=len(expired))
        return len(expired)


class MemoryAuthCodeStore(AuthCodeStore):
    def __init__(self, adapter: "MemoryStorageAdapter"):
        self._adapter = adapter
        self._codes = adapter.state.auth_codes

    async def store(self, code_data) -> AuthCodeRecord:
        data = as_auth_code_create(code_data)
        if data.code in self._codes:
            raise ConflictError("Authorization code already exists")
        record = AuthCodeRecord(**data.model_dump(), created_at=self._adapter.now())
        self._codes[record.code] = record
        logger.debug("Authorization code stored", code=fingerprint(record.code), client_id=record.client_id)
        return record.model_copy(deep=True)

    async def consume(self, code: str) -> Optional[AuthCodeRecord]:
        record = self._codes.get(code)
        if record is None or not record.is_redeemable(self._adapter.now()):
            return None
        snapshot = record.model_copy(deep=True)
        record.consumed = True
        logger.info("Authorization code consumed", code=fingerprint(code), client_id=record.client_id)
        return snapshot

    async def get(self, code: str) -> Optional[AuthCodeRecord]:
        record = self._codes.get(code)
        return record.model_copy(deep=True) if record else None

    async def clean_expired(self) -> int:
        now = self._adapter.now()
        expired = [key for key, record in self._codes.items() if record.expires_at <= now]
        for key in expired:
            del self._codes[key]
        logger.info("Expired authorization codes cleaned", count=len(expired))
        return len(expired)


class MemoryRateLimiter(RateLimiter):
    def __init__(self, adapter: "MemoryStorageAdapter"):
        self._adapter = adapter
        self._buckets = adapter.state.rate_limits

    async def check_and_increment(self, key: str, window_seconds: float, max_count: int) -> RateLimitResult:
        validate_window(window_seconds, max_count)
        now = self._adapter.now()
        bucket = self._buckets.get(key)
        if bucket is None or bucket[1] <= now:
            count, reset_at = 1, window_end(now, window_seconds)
        else:
            count, reset_at = bucket[0] + 1, bucket[1]
        self._buckets[key] = (count, reset_at)
        result = rate_limit_result(count, reset_at, max_count)
        if not result.allowed:
            logger.info("Rate limit exceeded", key=key, count=count, max_count=max_count)
        return result

    async def get_count(self, key: str) -> int:
        bucket = self._buckets.get(key)
        if bucket is None or bucket[1] <= self._adapter.now():
            return 0
        return bucket[0]

    async def reset(self, key: str) -> bool:
        return self._buckets.pop(key, None) is not None


class MemoryConsentStore(ConsentStore):
    def __init__(self, adapter: "MemoryStorageAdapter"):
        self._adapter = adapter
        self._consents = adapter.state.consents

    async def store(self, user_id: str, client_id: str, scopes: List[str]) -> None:
        existing = self._consents.get((user_id, client_id))
        if existing is None:
            self._consents[(user_id, client_id)] = ConsentRecord(
                user_id=user_id,
                client_id=client_id,
                scopes=unique(scopes),
                created_at=self._adapter.now(),
            )
        else:
            existing.scopes = unique(list(existing.scopes) + list(scopes))
        logger.info("Consent stored", user_id=user_id, client_id=client_id)

    async def get(self, user_id: str, client_id: str) -> Optional[Set[str]]:
        record = self._consents.get((user_id, client_id))
        return set(record.scopes) if record else None

    async def revoke(self, user_id: str, client_id: str) -> bool:
        removed = self._consents.pop((user_id, client_id), None) is not None
        logger.info("Consent revoked", user_id=user_id, client_id=client_id, removed=removed)
        return removed


class MemoryStorageAdapter(StorageAdapter):
    name = "memory"

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock)
        self.state = _MemoryState()
        self._clients = MemoryClientStore(self)
        self._tokens = MemoryTokenStore(self)
        self._auth_codes = MemoryAuthCodeStore(self)
        self._rate_limiter = MemoryRateLimiter(self)
        self._consents = MemoryConsentStore(self)

    @property
    def clients(self) -> MemoryClientStore:
        return self._clients

    @property
    def tokens(self) -> MemoryTokenStore:
        return self._tokens

    @property
    def auth_codes(self) -> MemoryAuthCodeStore:
        return self._auth_codes

    @property
    def rate_limiter(self) -> MemoryRateLimiter:
        return self._rate_limiter

    @property
    def consents(self) -> MemoryConsentStore:
        return self._consents

    async def initialize(self) -> None:
        logger.info("Memory storage ready")

    async def close(self) -> None:
        self.state.clear()
