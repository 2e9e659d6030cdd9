from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..common.encoding import ensure_utc, truncate_ms, unique


class _Record(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("created_at", "updated_at", "expires_at", "reset_at", check_fields=False)
    @classmethod
    def _as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return truncate_ms(value) if value is not None else value


class OAuthClientCreate(_Record):
    client_id: str = Field(..., min_length=1)
    client_secret_hash: Optional[str] = Field(None, description="Hashed secret; None for public clients")
    name: str = ""
    description: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list, description="Allowed redirect URIs, order preserved")
    grant_types: List[str] = Field(default_factory=list)
    scopes: List[str] = Field(default_factory=list)
    is_confidential: bool = True
    owner_id: str
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    is_active: bool = True

    @field_validator("grant_types", "scopes")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return unique(value)


class OAuthClientUpdate(_Record):
    """Partial update; only fields explicitly set are written."""

    model_config = ConfigDict(from_attributes=True, extra="forbid")

    client_secret_hash: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    redirect_uris: Optional[List[str]] = None
    grant_types: Optional[List[str]] = None
    scopes: Optional[List[str]] = None
    is_confidential: Optional[bool] = None
    owner_id: Optional[str] = None
    logo_url: Optional[str] = None
    website_url: Optional[str] = None
    is_active: Optional[bool] = None

    @field_validator("grant_types", "scopes")
    @classmethod
    def _dedupe(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        return unique(value) if value is not None else value


class OAuthClient(OAuthClientCreate):
    created_at: datetime
    updated_at: datetime


class TokenCreate(_Record):
    token: str = Field(..., min_length=1)
    type: str = "access"  # access, refresh, or a caller-defined kind
    client_id: str
    user_id: Optional[str] = None
    scopes: List[str] = Field(default_factory=list)
    expires_at: datetime
    is_revoked: bool = False
    access_token: Optional[str] = Field(None, description="For refresh tokens: the paired access token")

    @field_validator("scopes")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return unique(value)


class TokenRecord(TokenCreate):
    created_at: datetime

    def is_valid(self, at: datetime) -> bool:
        """The one validity rule for tokens: not revoked and not yet expired."""
        return not self.is_revoked and ensure_utc(at) < self.expires_at


class AuthCodeCreate(_Record):
    code: str = Field(..., min_length=1)
    client_id: str
    user_id: str
    redirect_uri: str
    scopes: List[str] = Field(default_factory=list)
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None  # S256 or plain
    expires_at: datetime

    @field_validator("scopes")
    @classmethod
    def _dedupe(cls, value: List[str]) -> List[str]:
        return unique(value)


class AuthCodeRecord(AuthCodeCreate):
    created_at: datetime
    consumed: bool = False

    def is_redeemable(self, at: datetime) -> bool:
        return not self.consumed and ensure_utc(at) < self.expires_at


class RateLimitResult(_Record):
    allowed: bool
    remaining: int
    reset_at: datetime
    count: int


class ConsentRecord(_Record):
    user_id: str
    client_id: str
    scopes: List[str] = Field(default_factory=list)
    created_at: datetime
