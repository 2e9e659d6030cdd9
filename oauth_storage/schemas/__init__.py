from .oauth import (
    AuthCodeCreate,
    AuthCodeRecord,
    ConsentRecord,
    OAuthClient,
    OAuthClientCreate,
    OAuthClientUpdate,
    RateLimitResult,
    TokenCreate,
    TokenRecord,
)
