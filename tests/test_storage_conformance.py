"""Behaviour every storage backend must share. Runs once per backend."""
import asyncio
from datetime import timedelta

import pytest
from pydantic import ValidationError

from oauth_storage.common.exceptions import ConflictError
from oauth_storage.schemas import OAuthClientCreate, OAuthClientUpdate

from factories import client_data, code_data, token_data


# Clients

@pytest.mark.asyncio
async def test_client_lifecycle(storage):
    created = await storage.clients.create(client_data())
    assert created.client_id == "c1"

    fetched = await storage.clients.get("c1")
    assert fetched == created

    assert await storage.clients.delete("c1") is True
    assert await storage.clients.get("c1") is None
    assert await storage.clients.delete("c1") is False


@pytest.mark.asyncio
async def test_client_fields_round_trip(storage, clock):
    created = await storage.clients.create(
        OAuthClientCreate(
            **client_data(
                description="Reporting dashboard",
                logo_url="https://app.example.com/logo.png",
                website_url="https://app.example.com",
                grant_types=["authorization_code", "authorization_code", "refresh_token"],
            )
        )
    )
    fetched = await storage.clients.get("c1")

    assert fetched.redirect_uris == ["https://app.example.com/callback", "https://app.example.com/alt"]
    assert fetched.grant_types == ["authorization_code", "refresh_token"]
    assert fetched.scopes == ["read", "write"]
    assert fetched.description == "Reporting dashboard"
    assert fetched.logo_url == "https://app.example.com/logo.png"
    assert fetched.is_confidential is True
    assert fetched.is_active is True
    assert fetched.created_at == clock()
    assert fetched.created_at == created.created_at


@pytest.mark.asyncio
async def test_public_client_without_secret(storage):
    await storage.clients.create(client_data(client_secret_hash=None, is_confidential=False))

    fetched = await storage.clients.get("c1")
    assert fetched.client_secret_hash is None
    assert fetched.is_confidential is False


@pytest.mark.asyncio
async def test_create_duplicate_client_conflicts(storage):
    await storage.clients.create(client_data())

    with pytest.raises(ConflictError) as exc_info:
        await storage.clients.create(client_data(name="Other"))
    assert exc_info.value.status_code == 409

    assert (await storage.clients.get("c1")).name == "Test App"


@pytest.mark.asyncio
async def test_list_clients_by_owner(storage):
    await storage.clients.create(client_data(client_id="c1"))
    await storage.clients.create(client_data(client_id="c2"))
    await storage.clients.create(client_data(client_id="c3", owner_id="user-2"))

    owned = await storage.clients.list_by_owner("user-1")
    assert sorted(c.client_id for c in owned) == ["c1", "c2"]
    assert await storage.clients.list_by_owner("nobody") == []


@pytest.mark.asyncio
async def test_update_client_is_partial(storage, clock):
    created = await storage.clients.create(client_data())
    clock.advance(minutes=5)

    updated = await storage.clients.update("c1", {"name": "Renamed", "scopes": ["read"]})

    assert updated.name == "Renamed"
    assert updated.scopes == ["read"]
    assert updated.redirect_uris == created.redirect_uris
    assert updated.grant_types == created.grant_types
    assert updated.created_at == created.created_at
    assert updated.updated_at == clock()
    assert await storage.clients.get("c1") == updated


@pytest.mark.asyncio
async def test_update_ignores_null_for_required_fields(storage):
    await storage.clients.create(client_data())

    updated = await storage.clients.update("c1", OAuthClientUpdate(name=None, description="Now described"))

    assert updated.name == "Test App"
    assert updated.description == "Now described"


@pytest.mark.asyncio
async def test_update_moves_client_to_new_owner(storage):
    await storage.clients.create(client_data())

    updated = await storage.clients.update("c1", {"owner_id": "user-9"})

    assert updated.owner_id == "user-9"
    assert (await storage.clients.get("c1")).owner_id == "user-9"
    assert [c.client_id for c in await storage.clients.list_by_owner("user-9")] == ["c1"]
    assert await storage.clients.list_by_owner("user-1") == []


@pytest.mark.asyncio
@pytest.mark.parametrize("fields", [{"client_id": "c2"}, {"nmae": "Typo"}])
async def test_update_rejects_unknown_or_immutable_fields(storage, fields):
    await storage.clients.create(client_data())

    with pytest.raises(ValidationError):
        await storage.clients.update("c1", fields)

    assert await storage.clients.get("c1") is not None
    assert await storage.clients.get("c2") is None


@pytest.mark.asyncio
async def test_update_missing_client_returns_none(storage):
    assert await storage.clients.update("missing", {"name": "x"}) is None


@pytest.mark.asyncio
async def test_deleting_client_keeps_its_tokens(storage, clock):
    await storage.clients.create(client_data())
    await storage.tokens.store(token_data(clock))

    assert await storage.clients.delete("c1") is True
    assert await storage.tokens.get("tok-1") is not None


# Tokens

@pytest.mark.asyncio
async def test_token_valid_until_expiry(storage, clock):
    stored = await storage.tokens.store(token_data(clock, expires_at=clock() + timedelta(seconds=60)))
    assert stored.is_revoked is False

    fetched = await storage.tokens.get("tok-1")
    assert fetched.token == "tok-1"
    assert fetched.scopes == ["read"]
    assert fetched.created_at == clock()

    clock.advance(seconds=59)
    assert await storage.tokens.get("tok-1") is not None

    clock.advance(seconds=1)
    assert await storage.tokens.get("tok-1") is None


@pytest.mark.asyncio
async def test_sub_millisecond_expiry_is_the_same_everywhere(storage, clock):
    await storage.tokens.store(token_data(clock, token="half-ms", expires_at=clock() + timedelta(microseconds=500)))
    await storage.tokens.store(token_data(clock, token="ms-and-a-half", expires_at=clock() + timedelta(microseconds=1500)))

    stored_expiry = clock() + timedelta(milliseconds=1)

    assert await storage.tokens.get("half-ms") is None

    clock.advance(microseconds=700)
    fetched = await storage.tokens.get("ms-and-a-half")
    assert fetched.expires_at == stored_expiry

    clock.advance(microseconds=300)
    assert await storage.tokens.get("ms-and-a-half") is None


@pytest.mark.asyncio
async def test_code_expiring_within_a_millisecond_is_not_redeemable(storage, clock):
    await storage.auth_codes.store(code_data(clock, expires_at=clock() + timedelta(microseconds=500)))
    assert await storage.auth_codes.consume("code-1") is None


@pytest.mark.asyncio
async def test_revoked_token_is_not_returned(storage, clock):
    await storage.tokens.store(token_data(clock))

    assert await storage.tokens.revoke("tok-1") is True
    assert await storage.tokens.get("tok-1") is None
    assert await storage.tokens.revoke("tok-1") is True
    assert await storage.tokens.revoke("unknown") is False


@pytest.mark.asyncio
async def test_get_unknown_token(storage):
    assert await storage.tokens.get("unknown") is None


@pytest.mark.asyncio
async def test_store_duplicate_token_conflicts(storage, clock):
    await storage.tokens.store(token_data(clock))
    with pytest.raises(ConflictError):
        await storage.tokens.store(token_data(clock, client_id="c2"))


@pytest.mark.asyncio
async def test_refresh_token_keeps_access_token_link(storage, clock):
    await storage.tokens.store(
        token_data(clock, token="refresh-1", type="refresh", access_token="tok-1", expires_at=clock() + timedelta(days=30))
    )

    fetched = await storage.tokens.get("refresh-1")
    assert fetched.type == "refresh"
    assert fetched.access_token == "tok-1"


@pytest.mark.asyncio
async def test_client_credentials_token_has_no_user(storage, clock):
    await storage.tokens.store(token_data(clock, user_id=None))
    assert (await storage.tokens.get("tok-1")).user_id is None


@pytest.mark.asyncio
async def test_revoke_all_for_client_counts_only_live_tokens(storage, clock):
    await storage.tokens.store(token_data(clock, token="a"))
    await storage.tokens.store(token_data(clock, token="b"))
    await storage.tokens.store(token_data(clock, token="c", client_id="c2"))
    await storage.tokens.revoke("b")

    assert await storage.tokens.revoke_all_for_client("c1") == 1
    assert await storage.tokens.revoke_all_for_client("c1") == 0
    assert await storage.tokens.get("a") is None
    assert await storage.tokens.get("c") is not None


@pytest.mark.asyncio
async def test_revoke_all_for_user(storage, clock):
    await storage.tokens.store(token_data(clock, token="a"))
    await storage.tokens.store(token_data(clock, token="b", client_id="c2"))
    await storage.tokens.store(token_data(clock, token="c", user_id="user-2"))

    assert await storage.tokens.revoke_all_for_user("user-1") == 2
    assert await storage.tokens.revoke_all_for_user("user-1") == 0
    assert await storage.tokens.get("c") is not None


@pytest.mark.asyncio
async def test_clean_expired_tokens(storage, clock):
    await storage.tokens.store(token_data(clock, token="short", expires_at=clock() + timedelta(seconds=10)))
    await storage.tokens.store(token_data(clock, token="long", expires_at=clock() + timedelta(hours=1)))
    clock.advance(seconds=10)

    assert await storage.tokens.clean_expired() == 1
    assert await storage.tokens.clean_expired() == 0
    assert await storage.tokens.get("long") is not None
    assert await storage.tokens.revoke("short") is False


# Authorization codes

@pytest.mark.asyncio
async def test_consume_code_once(storage, clock):
    await storage.auth_codes.store(code_data(clock))

    consumed = await storage.auth_codes.consume("code-1")
    assert consumed.code == "code-1"
    assert consumed.consumed is False
    assert consumed.redirect_uri == "https://app.example.com/callback"
    assert consumed.scopes == ["read", "write"]
    assert consumed.code_challenge == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"
    assert consumed.code_challenge_method == "S256"

    assert await storage.auth_codes.consume("code-1") is None
    assert (await storage.auth_codes.get("code-1")).consumed is True


@pytest.mark.asyncio
async def test_concurrent_consume_has_one_winner(storage, clock):
    await storage.auth_codes.store(code_data(clock))

    results = await asyncio.gather(
        storage.auth_codes.consume("code-1"),
        storage.auth_codes.consume("code-1"),
    )

    assert len([r for r in results if r is not None]) == 1


@pytest.mark.asyncio
async def test_expired_code_cannot_be_consumed(storage, clock):
    await storage.auth_codes.store(code_data(clock, expires_at=clock() - timedelta(seconds=1)))

    assert await storage.auth_codes.consume("code-1") is None
    assert (await storage.auth_codes.get("code-1")).consumed is False


@pytest.mark.asyncio
async def test_code_expires_at_boundary(storage, clock):
    await storage.auth_codes.store(code_data(clock, expires_at=clock() + timedelta(seconds=30)))
    clock.advance(seconds=30)

    assert await storage.auth_codes.consume("code-1") is None


@pytest.mark.asyncio
async def test_consume_unknown_code(storage):
    assert await storage.auth_codes.consume("nope") is None
    assert await storage.auth_codes.get("nope") is None


@pytest.mark.asyncio
async def test_code_without_pkce(storage, clock):
    await storage.auth_codes.store(code_data(clock, code_challenge=None, code_challenge_method=None))

    consumed = await storage.auth_codes.consume("code-1")
    assert consumed.code_challenge is None
    assert consumed.code_challenge_method is None


@pytest.mark.asyncio
async def test_store_duplicate_code_conflicts(storage, clock):
    await storage.auth_codes.store(code_data(clock))
    with pytest.raises(ConflictError):
        await storage.auth_codes.store(code_data(clock))


@pytest.mark.asyncio
async def test_clean_expired_codes(storage, clock):
    await storage.auth_codes.store(code_data(clock, code="old", expires_at=clock() + timedelta(seconds=5)))
    await storage.auth_codes.store(code_data(clock, code="fresh"))
    clock.advance(seconds=5)

    assert await storage.auth_codes.clean_expired() == 1
    assert await storage.auth_codes.get("old") is None
    assert await storage.auth_codes.get("fresh") is not None


# Rate limiting

@pytest.mark.asyncio
async def test_rate_limit_window(storage, clock):
    results = [await storage.rate_limiter.check_and_increment("ip:1", 60, 3) for _ in range(4)]

    assert [r.allowed for r in results] == [True, True, True, False]
    assert [r.count for r in results] == [1, 2, 3, 4]
    assert [r.remaining for r in results] == [2, 1, 0, 0]
    assert all(r.reset_at == clock() + timedelta(seconds=60) for r in results)


@pytest.mark.asyncio
async def test_rate_limit_starts_fresh_window_after_reset_at(storage, clock):
    for _ in range(5):
        await storage.rate_limiter.check_and_increment("ip:1", 60, 3)
    clock.advance(seconds=60)

    result = await storage.rate_limiter.check_and_increment("ip:1", 60, 3)

    assert result.allowed is True
    assert result.count == 1
    assert result.reset_at == clock() + timedelta(seconds=60)


@pytest.mark.asyncio
async def test_rate_limit_keys_are_independent(storage):
    await storage.rate_limiter.check_and_increment("ip:1", 60, 1)
    blocked = await storage.rate_limiter.check_and_increment("ip:1", 60, 1)
    other = await storage.rate_limiter.check_and_increment("ip:2", 60, 1)

    assert blocked.allowed is False
    assert other.allowed is True


@pytest.mark.asyncio
async def test_concurrent_increments_are_all_counted(storage):
    results = await asyncio.gather(
        *[storage.rate_limiter.check_and_increment("login:user-1", 60, 5) for _ in range(10)]
    )

    assert sorted(r.count for r in results) == list(range(1, 11))
    assert len([r for r in results if r.allowed]) == 5


@pytest.mark.asyncio
async def test_rate_limit_get_count_and_reset(storage, clock):
    assert await storage.rate_limiter.get_count("ip:1") == 0
    await storage.rate_limiter.check_and_increment("ip:1", 60, 3)
    await storage.rate_limiter.check_and_increment("ip:1", 60, 3)
    assert await storage.rate_limiter.get_count("ip:1") == 2

    assert await storage.rate_limiter.reset("ip:1") is True
    assert await storage.rate_limiter.reset("ip:1") is False
    assert await storage.rate_limiter.get_count("ip:1") == 0

    result = await storage.rate_limiter.check_and_increment("ip:1", 60, 3)
    assert result.count == 1


@pytest.mark.asyncio
async def test_rate_limit_count_lapses_with_window(storage, clock):
    await storage.rate_limiter.check_and_increment("ip:1", 30, 3)
    clock.advance(seconds=30)
    assert await storage.rate_limiter.get_count("ip:1") == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("window_seconds,max_count", [(0, 3), (-5, 3), (60, 0), (60, -1)])
async def test_rate_limit_rejects_bad_window(storage, window_seconds, max_count):
    with pytest.raises(ValueError):
        await storage.rate_limiter.check_and_increment("ip:1", window_seconds, max_count)
    assert await storage.rate_limiter.get_count("ip:1") == 0


@pytest.mark.asyncio
async def test_first_attempt_in_a_window_is_always_allowed(storage):
    result = await storage.rate_limiter.check_and_increment("ip:1", 60, 1)
    assert result.allowed is True
    assert result.count == 1
    assert result.remaining == 0


# Consent

@pytest.mark.asyncio
async def test_consent_merges_scopes(storage):
    await storage.consents.store("user-1", "c1", ["read"])
    await storage.consents.store("user-1", "c1", ["write", "read"])

    assert await storage.consents.get("user-1", "c1") == {"read", "write"}
    assert await storage.consents.get("user-1", "c2") is None


@pytest.mark.asyncio
async def test_consent_with_no_scopes_is_recorded(storage):
    await storage.consents.store("user-1", "c1", [])
    assert await storage.consents.get("user-1", "c1") == set()


@pytest.mark.asyncio
async def test_concurrent_consents_both_land(storage):
    await asyncio.gather(
        storage.consents.store("user-1", "c1", ["read"]),
        storage.consents.store("user-1", "c1", ["write"]),
    )
    assert await storage.consents.get("user-1", "c1") == {"read", "write"}


@pytest.mark.asyncio
async def test_revoke_consent(storage):
    await storage.consents.store("user-1", "c1", ["read"])

    assert await storage.consents.revoke("user-1", "c1") is True
    assert await storage.consents.get("user-1", "c1") is None
    assert await storage.consents.revoke("user-1", "c1") is False


# Lifecycle

@pytest.mark.asyncio
async def test_initialize_is_idempotent(storage):
    await storage.clients.create(client_data())
    await storage.initialize()
    assert await storage.clients.get("c1") is not None


@pytest.mark.asyncio
async def test_close_can_be_called_twice(storage):
    await storage.close()
    await storage.close()
