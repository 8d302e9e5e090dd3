"""
Tests for the Google Ads adapter.

The gRPC search is patched out; the OAuth refresh runs against a mocked
httpx transport.
"""

from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import pytest
from google.ads.googleads.errors import GoogleAdsException

from adconnect.adapters.base import (
    AuthenticationError,
    DateRange,
    PlatformError,
    RateLimitError,
    TransientProviderError,
    ValidationError,
)
from adconnect.adapters.google_ads import GoogleAdsAdapter
from adconnect.core.enums import ObjectLevel


def _adapter(handler=None, use_manager_account=False) -> GoogleAdsAdapter:
    transport = httpx.MockTransport(handler) if handler else None
    adapter = GoogleAdsAdapter(use_manager_account=use_manager_account, transport=transport)
    adapter.client_id = "client-id"
    adapter.client_secret = "client-secret"
    return adapter


def _google_failure(kind: str) -> GoogleAdsException:
    detail = SimpleNamespace(
        message=f"{kind} happened",
        error_code=SimpleNamespace(_pb=SimpleNamespace(WhichOneof=lambda _: kind)),
    )
    return GoogleAdsException(None, None, SimpleNamespace(errors=[detail]), "request-1")


# ---------------------------------------------------------------------------
# Manager accounts
# ---------------------------------------------------------------------------


def test_manager_account_sets_login_customer_id():
    adapter = _adapter(use_manager_account=True)
    adapter.manager_customer_id = "123-456-7890"

    assert adapter._login_customer_id() == "1234567890"


def test_direct_access_has_no_login_customer_id():
    adapter = _adapter(use_manager_account=False)
    adapter.manager_customer_id = "123-456-7890"

    assert adapter._login_customer_id() is None


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "kind, expected",
    [
        ("authentication_error", AuthenticationError),
        ("authorization_error", AuthenticationError),
        ("quota_error", RateLimitError),
        ("internal_error", TransientProviderError),
        ("query_error", ValidationError),
        ("billing_setup_error", PlatformError),
    ],
)
def test_google_error_mapping(kind, expected):
    with pytest.raises(expected):
        _adapter()._handle_google_error(_google_failure(kind), "fetch_metrics")


# ---------------------------------------------------------------------------
# Token handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_refresh_token_success():
    def handler(request):
        assert request.url.path == "/token"
        assert b"grant_type=refresh_token" in request.content
        return httpx.Response(
            200,
            json={"access_token": "ya29.new", "expires_in": 3599, "token_type": "Bearer"},
        )

    refreshed = await _adapter(handler).refresh_token("1//refresh")

    assert refreshed.access_token == "ya29.new"
    assert refreshed.expires_in == 3599
    assert refreshed.refresh_token is None


@pytest.mark.asyncio
async def test_refresh_token_rotation():
    adapter = _adapter(
        lambda request: httpx.Response(
            200,
            json={"access_token": "ya29.new", "expires_in": 3599, "refresh_token": "1//rotated"},
        )
    )

    refreshed = await adapter.refresh_token("1//refresh")

    assert refreshed.refresh_token == "1//rotated"


@pytest.mark.asyncio
async def test_invalid_grant_is_an_authentication_error():
    adapter = _adapter(
        lambda request: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token has been revoked."}
        )
    )

    with pytest.raises(AuthenticationError) as exc_info:
        await adapter.refresh_token("1//revoked")

    assert exc_info.value.details["error"] == "invalid_grant"


@pytest.mark.asyncio
async def test_token_endpoint_outage_is_transient():
    adapter = _adapter(lambda request: httpx.Response(503, text="unavailable"))

    with pytest.raises(TransientProviderError):
        await adapter.refresh_token("1//refresh")


@pytest.mark.asyncio
async def test_validate_token():
    adapter = _adapter(
        lambda request: httpx.Response(
            200 if request.url.params["access_token"] == "good" else 400, json={}
        )
    )

    assert await adapter.validate_token("good")
    assert not await adapter.validate_token("bad")


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def _metrics_row(campaign_id, name, impressions, clicks, cost_micros, conversions):
    return SimpleNamespace(
        campaign=SimpleNamespace(id=campaign_id, name=name),
        metrics=SimpleNamespace(
            impressions=impressions,
            clicks=clicks,
            cost_micros=cost_micros,
            conversions=conversions,
            conversions_value=conversions * 20.0,
        ),
    )


@pytest.mark.asyncio
async def test_fetch_metrics_converts_micros():
    adapter = _adapter()
    adapter._search = AsyncMock(
        return_value=[
            _metrics_row(11, "Search", 1000, 40, 12_340_000, 2.0),
            _metrics_row(12, "Display", 5000, 10, 1_000_000, 0.0),
        ]
    )

    rows = await adapter.fetch_metrics(
        "token",
        "1234567890",
        DateRange(date(2024, 1, 1), date(2024, 1, 31)),
        level=ObjectLevel.CAMPAIGN,
        object_id="11",
    )

    query = adapter._search.await_args.args[2]
    assert "FROM campaign" in query
    assert "BETWEEN '2024-01-01' AND '2024-01-31'" in query
    assert "campaign.id = 11" in query

    assert [(r.object_id, r.object_name) for r in rows] == [("11", "Search"), ("12", "Display")]
    assert rows[0].spend == pytest.approx(12.34)
    assert rows[0].conversions == 2
    assert rows[0].conversion_value == pytest.approx(40.0)


@pytest.mark.asyncio
async def test_fetch_campaigns():
    adapter = _adapter()
    adapter._search = AsyncMock(
        return_value=[
            SimpleNamespace(
                campaign=SimpleNamespace(
                    id=11,
                    name="Search",
                    status=SimpleNamespace(name="ENABLED"),
                    advertising_channel_type=SimpleNamespace(name="SEARCH"),
                )
            )
        ]
    )

    campaigns = await adapter.fetch_campaigns("token", "1234567890")

    assert campaigns[0].campaign_id == "11"
    assert campaigns[0].status == "ENABLED"
    assert campaigns[0].platform_data == {"channel_type": "SEARCH"}
