"""
Credential helpers for callers of the storage engine.

Nothing in the storage backends calls into this module: stores persist what
they are given (hashed secrets, PKCE challenges) and leave verification to the
layer issuing the artifacts.
"""
import base64
import hashlib
import hmac
import secrets
from typing import Optional

import structlog
from passlib.context import CryptContext

from .config import Settings, settings as default_settings

logger = structlog.get_logger("oauth_storage.crypto")

PKCE_METHODS = ("S256", "plain")


def generate_random_string(length: int = 32) -> str:
    """URL-safe random string of exactly ``length`` characters."""
    return secrets.token_urlsafe(length)[:length]


def generate_client_id() -> str:
    return f"cli_{generate_random_string(24)}"


def generate_client_secret() -> str:
    return f"sec_{generate_random_string(48)}"


def generate_access_token() -> str:
    return generate_random_string(64)


def generate_refresh_token() -> str:
    return generate_random_string(64)


def generate_auth_code() -> str:
    return generate_random_string(32)


class SecretHasher:
    """Argon2id hashing for client secrets."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or default_settings
        self.pwd_context = CryptContext(
            schemes=["argon2"],
            deprecated="auto",
            argon2__memory_cost=settings.ARGON2_MEMORY_COST,
            argon2__rounds=settings.ARGON2_TIME_COST,
            argon2__parallelism=settings.ARGON2_PARALLELISM,
        )

    def hash_secret(self, secret: str) -> str:
        return self.pwd_context.hash(secret)

    def verify_secret(self, secret: str, secret_hash: Optional[str]) -> bool:
        """
        Verify a plaintext secret against a stored hash.
        Unknown or malformed hashes verify as False.
        """
        if not secret_hash:
            return False
        try:
            return self.pwd_context.verify(secret, secret_hash)
        except (ValueError, TypeError):
            logger.warning("Stored client secret hash could not be parsed")
            return False


def compute_code_challenge(code_verifier: str, method: str = "S256") -> str:
    if method == "S256":
        hashed_verifier = hashlib.sha256(code_verifier.encode("utf-8")).digest()
        return base64.urlsafe_b64encode(hashed_verifier).rstrip(b"=").decode("utf-8")
    if method == "plain":
        return code_verifier
    raise ValueError(f"Unsupported code_challenge_method: {method}")


def verify_code_challenge(code_verifier: str, code_challenge: str, method: Optional[str] = "S256") -> bool:
    """
    Check a PKCE code verifier against the challenge stored with an auth code.
    A missing method means S256.
    """
    method = method or "S256"
    if method == "plain":
        logger.warning("PKCE plain method in use; S256 should be preferred")
    try:
        expected_challenge = compute_code_challenge(code_verifier, method)
    except ValueError:
        return False
    return hmac.compare_digest(expected_challenge.encode("utf-8"), code_challenge.encode("utf-8"))
