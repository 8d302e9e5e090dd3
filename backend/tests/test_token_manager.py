"""
Tests for token validation and refresh.
"""

import asyncio
from datetime import timedelta

import pytest

from adconnect.adapters.base import (
    AuthenticationError,
    RefreshedToken,
    TransientProviderError,
)
from adconnect.core.enums import Platform
from adconnect.core.errors import DecryptionFailureError, ReauthenticationRequiredError
from adconnect.models import Connection
from adconnect.services.token_manager import TokenManager


@pytest.mark.asyncio
async def test_valid_token_is_returned_without_platform_calls(
    token_manager, make_user, make_connection, adapters
):
    user = await make_user()
    connection = await make_connection(user, expires_in=timedelta(hours=1))

    token = await token_manager.ensure_valid_token(connection)

    assert token == "access-token"
    assert adapters[Platform.FACEBOOK].calls == {}


@pytest.mark.asyncio
async def test_token_inside_skew_window_is_refreshed(
    token_manager, make_user, make_connection, adapters, store
):
    user = await make_user()
    connection = await make_connection(user, expires_in=timedelta(seconds=30))

    token = await token_manager.ensure_valid_token(connection)

    assert token == "refreshed-access"
    assert adapters[Platform.FACEBOOK].calls["refresh_token"] == 1

    stored = await store.get(user.id, connection.id)
    assert stored.access_token == "refreshed-access"
    assert not token_manager.is_expired(stored)


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_persisted(
    token_manager, make_user, make_connection, adapters, store
):
    user = await make_user()
    connection = await make_connection(user, expires_in=timedelta(hours=-1))
    adapters[Platform.FACEBOOK].refresh_result = RefreshedToken(
        access_token="new-access", expires_in=7200, refresh_token="new-refresh"
    )

    await token_manager.ensure_valid_token(connection)

    stored = await store.get(user.id, connection.id)
    assert stored.access_token == "new-access"
    assert stored.refresh_token == "new-refresh"


@pytest.mark.asyncio
async def test_unknown_expiry_is_validated_remotely(
    token_manager, make_user, make_connection, adapters
):
    user = await make_user()
    connection = await make_connection(user, expires_in=None)

    assert await token_manager.ensure_valid_token(connection) == "access-token"
    assert adapters[Platform.FACEBOOK].calls == {"validate_token": 1}

    adapters[Platform.FACEBOOK].token_valid = False
    assert await token_manager.ensure_valid_token(connection) == "refreshed-access"


@pytest.mark.asyncio
async def test_unknown_expiry_trusted_when_validation_disabled(
    store, adapter_factory, make_user, make_connection, adapters
):
    manager = TokenManager(store, adapter_factory=adapter_factory, validate_without_expiry=False)
    user = await make_user()
    connection = await make_connection(user, expires_in=None)

    assert await manager.ensure_valid_token(connection) == "access-token"
    assert adapters[Platform.FACEBOOK].calls == {}


@pytest.mark.asyncio
async def test_missing_refresh_token_requires_reauthentication(
    token_manager, make_user, make_connection
):
    user = await make_user()
    connection = await make_connection(user, refresh_token=None, expires_in=timedelta(hours=-1))

    with pytest.raises(ReauthenticationRequiredError) as exc_info:
        await token_manager.ensure_valid_token(connection)

    assert "Please reconnect your account" in exc_info.value.message
    assert exc_info.value.connection_id == connection.id


@pytest.mark.asyncio
async def test_rejected_refresh_requires_reauthentication(
    token_manager, make_user, make_connection, adapters, store
):
    user = await make_user()
    connection = await make_connection(user, expires_in=timedelta(hours=-1))
    adapters[Platform.FACEBOOK].refresh_error = AuthenticationError("revoked", "facebook")

    with pytest.raises(ReauthenticationRequiredError):
        await token_manager.ensure_valid_token(connection)

    stored = await store.get(user.id, connection.id)
    assert stored.access_token == "access-token"


@pytest.mark.asyncio
async def test_transient_refresh_failure_propagates_unchanged(
    token_manager, make_user, make_connection, adapters, store
):
    user = await make_user()
    connection = await make_connection(user, expires_in=timedelta(hours=-1))
    adapters[Platform.FACEBOOK].refresh_error = TransientProviderError("timeout", "facebook")

    with pytest.raises(TransientProviderError):
        await token_manager.ensure_valid_token(connection)

    stored = await store.get(user.id, connection.id)
    assert stored.access_token == "access-token"
    assert stored.refresh_token == "refresh-token"


@pytest.mark.asyncio
async def test_undecryptable_token_raises_decryption_failure(
    token_manager, make_user, make_connection, session_factory, store
):
    user = await make_user()
    connection = await make_connection(user)

    async with session_factory() as db:
        row = await db.get(Connection, connection.id)
        row.access_token = "garbage"
        await db.commit()

    reloaded = await store.get(user.id, connection.id)
    with pytest.raises(DecryptionFailureError) as exc_info:
        await token_manager.ensure_valid_token(reloaded)

    assert isinstance(exc_info.value, ReauthenticationRequiredError)


@pytest.mark.asyncio
async def test_concurrent_refreshes_share_one_exchange(
    token_manager, make_user, make_connection, adapters
):
    user = await make_user()
    connection = await make_connection(user, expires_in=timedelta(hours=-1))
    adapters[Platform.FACEBOOK].refresh_delay = 0.05

    tokens = await asyncio.gather(
        *(token_manager.ensure_valid_token(connection) for _ in range(5))
    )

    assert tokens == ["refreshed-access"] * 5
    assert adapters[Platform.FACEBOOK].calls["refresh_token"] == 1


@pytest.mark.asyncio
async def test_stale_record_reuses_token_refreshed_elsewhere(
    token_manager, make_user, make_connection, adapters
):
    """A caller holding an outdated record picks up the already renewed token."""
    user = await make_user()
    stale = await make_connection(user, expires_in=timedelta(hours=-1))

    await token_manager.ensure_valid_token(stale)
    token = await token_manager.ensure_valid_token(stale)

    assert token == "refreshed-access"
    assert adapters[Platform.FACEBOOK].calls["refresh_token"] == 1
