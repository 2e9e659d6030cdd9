"""
Storage contract for the authorization server.

Callers depend on :class:`StorageAdapter` only. Every backend provides the same
five stores with the same observable behaviour; absence, expiry, revocation and
prior consumption surface as ``None`` results, backend faults as
``OAuthStorageError`` subclasses.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, List, Mapping, Optional, Set, Union

from ..common.encoding import ensure_utc, truncate_ms, utcnow
from ..schemas.oauth import (
    AuthCodeCreate,
    AuthCodeRecord,
    OAuthClient,
    OAuthClientCreate,
    OAuthClientUpdate,
    RateLimitResult,
    TokenCreate,
    TokenRecord,
)

Clock = Callable[[], datetime]

ClientInput = Union[OAuthClientCreate, Mapping[str, Any]]
ClientUpdateInput = Union[OAuthClientUpdate, Mapping[str, Any]]
TokenInput = Union[TokenCreate, Mapping[str, Any]]
AuthCodeInput = Union[AuthCodeCreate, Mapping[str, Any]]


def as_client_create(data: ClientInput) -> OAuthClientCreate:
    if isinstance(data, OAuthClientCreate):
        return data
    return OAuthClientCreate.model_validate(dict(data))


_REQUIRED_CLIENT_FIELDS = {"name", "owner_id", "redirect_uris", "grant_types", "scopes", "is_confidential", "is_active"}


def as_client_update(data: ClientUpdateInput) -> dict:
    """
    Only the fields the caller actually supplied. Unknown keys, including
    ``client_id``, are rejected by the update model.

    An explicit None for a column that cannot be null is treated as "leave as is".
    """
    if not isinstance(data, OAuthClientUpdate):
        data = OAuthClientUpdate.model_validate(dict(data))
    changes = data.model_dump(exclude_unset=True)
    return {
        field: value
        for field, value in changes.items()
        if value is not None or field not in _REQUIRED_CLIENT_FIELDS
    }


def as_token_create(data: TokenInput) -> TokenCreate:
    if isinstance(data, TokenCreate):
        return data
    return TokenCreate.model_validate(dict(data))


def as_auth_code_create(data: AuthCodeInput) -> AuthCodeCreate:
    if isinstance(data, AuthCodeCreate):
        return data
    return AuthCodeCreate.model_validate(dict(data))


def rate_limit_result(count: int, reset_at: datetime, max_count: int) -> RateLimitResult:
    return RateLimitResult(
        allowed=count <= max_count,
        remaining=max(0, max_count - count),
        reset_at=reset_at,
        count=count,
    )


def window_end(now: datetime, window_seconds: float) -> datetime:
    """End of a fresh fixed window, on the millisecond grid every backend stores."""
    return truncate_ms(now + timedelta(seconds=window_seconds))


def validate_window(window_seconds: float, max_count: int):
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    if max_count < 1:
        raise ValueError("max_count must be at least 1")


class ClientStore(ABC):
    @abstractmethod
    async def create(self, client_data: ClientInput) -> OAuthClient:
        """Register a client. Raises ConflictError if ``client_id`` is taken."""

    @abstractmethod
    async def get(self, client_id: str) -> Optional[OAuthClient]:
        ...

    @abstractmethod
    async def list_by_owner(self, owner_id: str) -> List[OAuthClient]:
        ...

    @abstractmethod
    async def update(self, client_id: str, fields: ClientUpdateInput) -> Optional[OAuthClient]:
        """Apply a partial update. Returns None when the client does not exist."""

    @abstractmethod
    async def delete(self, client_id: str) -> bool:
        """Hard delete. Tokens and codes issued to the client are left alone."""


class TokenStore(ABC):
    @abstractmethod
    async def store(self, token_data: TokenInput) -> TokenRecord:
        ...

    @abstractmethod
    async def get(self, token: str) -> Optional[TokenRecord]:
        """The token if it exists, is not revoked and has not expired; otherwise None."""

    @abstractmethod
    async def revoke(self, token: str) -> bool:
        """Idempotent. True iff the token exists."""

    @abstractmethod
    async def revoke_all_for_client(self, client_id: str) -> int:
        """Revoke every live token of a client; returns how many were flipped."""

    @abstractmethod
    async def revoke_all_for_user(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def clean_expired(self) -> int:
        """Delete expired tokens; returns how many rows were removed."""


class AuthCodeStore(ABC):
    @abstractmethod
    async def store(self, code_data: AuthCodeInput) -> AuthCodeRecord:
        ...

    @abstractmethod
    async def consume(self, code: str) -> Optional[AuthCodeRecord]:
        """
        Atomically redeem a code.

        Checks ``not consumed and now < expires_at`` and marks the code consumed
        in one indivisible step. Returns the record as it was before
        consumption, or None (with no side effects) if it cannot be redeemed.
        """

    @abstractmethod
    async def get(self, code: str) -> Optional[AuthCodeRecord]:
        """Read-only lookup for diagnostics; returns the record in any state."""

    @abstractmethod
    async def clean_expired(self) -> int:
        ...


class RateLimiter(ABC):
    @abstractmethod
    async def check_and_increment(self, key: str, window_seconds: float, max_count: int) -> RateLimitResult:
        """
        Count one attempt against a fixed window.

        A missing or elapsed bucket restarts at count 1 with a fresh window.
        Rejected attempts are still counted.
        """

    @abstractmethod
    async def get_count(self, key: str) -> int:
        """Attempts in the current window; 0 if there is no live bucket."""

    @abstractmethod
    async def reset(self, key: str) -> bool:
        """Drop the bucket. True iff one existed."""


class ConsentStore(ABC):
    @abstractmethod
    async def store(self, user_id: str, client_id: str, scopes: List[str]) -> None:
        """Record consent, merging scopes into any existing grant."""

    @abstractmethod
    async def get(self, user_id: str, client_id: str) -> Optional[Set[str]]:
        """Granted scopes; None if consent was never recorded."""

    @abstractmethod
    async def revoke(self, user_id: str, client_id: str) -> bool:
        ...


class StorageAdapter(ABC):
    """One backend's implementation of every store, plus lifecycle."""

    name = "abstract"

    def __init__(self, clock: Optional[Clock] = None):
        self.clock: Clock = clock or utcnow

    def now(self) -> datetime:
        return ensure_utc(self.clock())

    @property
    @abstractmethod
    def clients(self) -> ClientStore:
        ...

    @property
    @abstractmethod
    def tokens(self) -> TokenStore:
        ...

    @property
    @abstractmethod
    def auth_codes(self) -> AuthCodeStore:
        ...

    @property
    @abstractmethod
    def rate_limiter(self) -> RateLimiter:
        ...

    @property
    @abstractmethod
    def consents(self) -> ConsentStore:
        ...

    @abstractmethod
    async def initialize(self) -> None:
        """Make the backend ready (schema, indexes). Safe to call repeatedly."""

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Safe to call repeatedly."""

    async def __aenter__(self) -> "StorageAdapter":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()
