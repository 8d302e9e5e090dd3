"""
Tests for authorization URLs and the authorization-code exchange.
"""

from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from adconnect.config import settings
from adconnect.core.enums import Platform
from adconnect.core.ephemeral import OAuthStateStore
from adconnect.core.oauth import OAuthClientFactory, get_provider_config, token_data_from_response


@pytest.fixture
def state_store() -> OAuthStateStore:
    return OAuthStateStore(timedelta(minutes=15))


@pytest.fixture(autouse=True)
def provider_credentials(monkeypatch):
    monkeypatch.setattr(settings, "google_ads_client_id", "google-client")
    monkeypatch.setattr(settings, "google_ads_client_secret", "google-secret")
    monkeypatch.setattr(settings, "meta_app_id", "meta-app")
    monkeypatch.setattr(settings, "meta_app_secret", "meta-secret")
    monkeypatch.setattr(settings, "tiktok_app_id", "tiktok-app")
    monkeypatch.setattr(settings, "tiktok_app_secret", "tiktok-secret")


def _query(url: str) -> dict:
    return {key: values[0] for key, values in parse_qs(urlparse(url).query).items()}


def test_unknown_platform_has_no_config():
    with pytest.raises(ValueError):
        get_provider_config("myspace")


# ---------------------------------------------------------------------------
# Authorization URLs
# ---------------------------------------------------------------------------


def test_google_authorization_url_requests_offline_access(state_store):
    url, state = OAuthClientFactory(state_store).get_authorization_url(Platform.GOOGLE, "user-1")
    params = _query(url)

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert params["client_id"] == "google-client"
    assert params["state"] == state
    assert params["access_type"] == "offline"
    assert params["prompt"] == "consent"
    assert params["scope"] == "https://www.googleapis.com/auth/adwords"


def test_meta_authorization_url_uses_comma_scopes(state_store):
    url, _ = OAuthClientFactory(state_store).get_authorization_url(Platform.FACEBOOK, "user-1")

    assert _query(url)["scope"] == "ads_read,ads_management,business_management"


def test_tiktok_authorization_url_uses_app_id(state_store):
    url, _ = OAuthClientFactory(state_store).get_authorization_url(Platform.TIKTOK, "user-1")
    params = _query(url)

    assert params["app_id"] == "tiktok-app"
    assert "client_id" not in params


def test_authorization_state_is_bound_to_user(state_store):
    _, state = OAuthClientFactory(state_store).get_authorization_url(Platform.GOOGLE, "user-1")

    assert state_store.validate(state, "user-2") is None
    entry = state_store.validate(state, "user-1")
    assert entry.platform == Platform.GOOGLE


# ---------------------------------------------------------------------------
# Code exchange
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_exchange_code_for_tokens(state_store):
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = request.content.decode()
        return httpx.Response(
            200,
            json={
                "access_token": "ya29.access",
                "refresh_token": "1//refresh",
                "expires_in": 3600,
                "token_type": "Bearer",
                "scope": "https://www.googleapis.com/auth/adwords",
            },
        )

    factory = OAuthClientFactory(state_store, transport=httpx.MockTransport(handler))
    _, state = factory.get_authorization_url(Platform.GOOGLE, "user-1")

    token = await factory.exchange_code_for_tokens(Platform.GOOGLE, "auth-code", state, "user-1")

    assert seen["url"] == "https://oauth2.googleapis.com/token"
    assert "code=auth-code" in seen["body"]
    assert "grant_type=authorization_code" in seen["body"]
    assert token.access_token == "ya29.access"
    assert token.refresh_token == "1//refresh"
    assert token.scopes == ["https://www.googleapis.com/auth/adwords"]
    assert token.expires_at is not None

    # The state is single use
    assert await factory.exchange_code_for_tokens(Platform.GOOGLE, "auth-code", state, "user-1") is None


@pytest.mark.asyncio
async def test_exchange_with_unknown_state_makes_no_request(state_store):
    def handler(request):
        raise AssertionError("token endpoint must not be called")

    factory = OAuthClientFactory(state_store, transport=httpx.MockTransport(handler))

    assert await factory.exchange_code_for_tokens(Platform.GOOGLE, "code", "forged", "user-1") is None


@pytest.mark.asyncio
async def test_exchange_rejects_platform_mismatch(state_store):
    factory = OAuthClientFactory(state_store)
    _, state = factory.get_authorization_url(Platform.GOOGLE, "user-1")

    assert await factory.exchange_code_for_tokens(Platform.TIKTOK, "code", state, "user-1") is None


@pytest.mark.asyncio
async def test_exchange_error_response_returns_none(state_store):
    factory = OAuthClientFactory(
        state_store,
        transport=httpx.MockTransport(
            lambda request: httpx.Response(400, json={"error": "invalid_grant"})
        ),
    )
    _, state = factory.get_authorization_url(Platform.FACEBOOK, "user-1")

    assert await factory.exchange_code_for_tokens(Platform.FACEBOOK, "code", state, "user-1") is None


# ---------------------------------------------------------------------------
# Token responses
# ---------------------------------------------------------------------------


def test_token_data_from_response_uses_expires_in():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    token = token_data_from_response(
        {"access_token": "a", "expires_in": "600", "scope": "ads_read,ads_management"}, now=now
    )

    assert token.expires_at == now + timedelta(minutes=10)
    assert token.scopes == ["ads_read", "ads_management"]
    assert token.refresh_token is None


def test_token_data_without_expiry():
    token = token_data_from_response({"access_token": "a"})

    assert token.expires_at is None
    assert token.token_type == "Bearer"
