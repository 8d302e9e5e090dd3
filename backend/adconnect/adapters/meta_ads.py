"""
Meta (Facebook) Ads API Adapter

Implements the PlatformAdsClient interface for Meta Ads.
Uses the Graph API (Marketing API) over httpx.

API Documentation: https://developers.facebook.com/docs/marketing-apis
"""

import json
from typing import Optional

import httpx
import structlog

from adconnect.adapters.base import (
    AdAccountInfo,
    AuthenticationError,
    CampaignInfo,
    DateRange,
    MetricRow,
    PlatformAdsClient,
    PlatformError,
    RateLimitError,
    RefreshedToken,
    TransientProviderError,
    ValidationError,
    to_float,
    to_int,
)
from adconnect.config import settings
from adconnect.core.enums import ObjectLevel, Platform

logger = structlog.get_logger()

# Meta API version
META_API_VERSION = "v19.0"
META_API_BASE = f"https://graph.facebook.com/{META_API_VERSION}"

PAGE_LIMIT = 500
MAX_PAGES = 20

# Graph error codes
AUTH_ERROR_CODES = {190, 102, 104}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613, 80000, 80004}
VALIDATION_ERROR_CODES = {100, 200}
TRANSIENT_ERROR_CODES = {1, 2}

CONVERSION_ACTION_TYPES = {"purchase", "lead", "complete_registration"}

INSIGHT_FIELDS = (
    "account_id,campaign_id,campaign_name,adset_id,adset_name,ad_id,ad_name,"
    "impressions,clicks,spend,reach,actions,action_values,date_start,date_stop"
)

# Which insight column identifies the row at each level
LEVEL_ID_FIELDS = {
    ObjectLevel.ACCOUNT: ("account_id", None),
    ObjectLevel.CAMPAIGN: ("campaign_id", "campaign_name"),
    ObjectLevel.ADSET: ("adset_id", "adset_name"),
    ObjectLevel.AD: ("ad_id", "ad_name"),
}


def normalize_account_id(account_id: str) -> str:
    """Meta returns account ids with an ``act_`` prefix; store them bare."""
    return account_id[4:] if account_id.startswith("act_") else account_id


class MetaAdsAdapter(PlatformAdsClient):
    """
    Meta (Facebook) Ads API adapter.

    Implements token validation/refresh and reporting reads
    using the Facebook Marketing API.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(platform=Platform.FACEBOOK)
        self.app_id = settings.meta_app_id
        self.app_secret = settings.meta_app_secret
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=settings.http_timeout_seconds,
            transport=self._transport,
        )

    async def _make_request(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        access_token: Optional[str] = None,
    ) -> dict:
        """
        Make a GET request to the Graph API.

        Args:
            endpoint: API endpoint (without base URL)
            params: Query parameters
            access_token: User access token, if the call needs one

        Returns:
            JSON response

        Raises:
            Appropriate adapter error on failure
        """
        url = f"{META_API_BASE}/{endpoint}"
        params = dict(params or {})
        if access_token:
            params["access_token"] = access_token

        async with self._client() as client:
            try:
                response = await client.get(url, params=params)
            except httpx.RequestError as e:
                raise TransientProviderError(
                    message=f"Network error: {str(e)}",
                    platform=self.platform.value,
                )

        if response.status_code == 200:
            return response.json()

        try:
            error_data = response.json()
        except ValueError:
            error_data = {}
        self._handle_meta_error(response.status_code, error_data)

    def _handle_meta_error(self, status_code: int, error_data: dict):
        """
        Convert Meta API errors to adapter errors.

        Args:
            status_code: HTTP status code
            error_data: Error response from API

        Raises:
            Appropriate adapter error
        """
        error = error_data.get("error", {}) if isinstance(error_data, dict) else {}
        error_code = error.get("code", 0)
        error_message = error.get("message", "Unknown error")
        error_type = error.get("type", "OAuthException")

        self._log_error(
            "meta_api",
            Exception(error_message),
            status_code=status_code,
            error_code=error_code,
            error_type=error_type,
        )

        if error_code in AUTH_ERROR_CODES or status_code == 401:
            raise AuthenticationError(
                message=f"Meta authentication failed: {error_message}",
                platform=self.platform.value,
                details={"error_code": error_code},
            )

        if error_code in RATE_LIMIT_ERROR_CODES or status_code == 429:
            raise RateLimitError(
                message="Meta API rate limit exceeded",
                platform=self.platform.value,
                retry_after=60,
            )

        if error_code in TRANSIENT_ERROR_CODES or status_code >= 500:
            raise TransientProviderError(
                message=f"Meta API temporarily unavailable: {error_message}",
                platform=self.platform.value,
                details={"status_code": status_code, "error_code": error_code},
            )

        if error_code in VALIDATION_ERROR_CODES:
            raise ValidationError(
                message=f"Invalid request: {error_message}",
                platform=self.platform.value,
                details={"error_code": error_code},
            )

        raise PlatformError(
            message=f"Meta API error: {error_message}",
            platform=self.platform.value,
            details={"error_code": error_code, "error_type": error_type},
        )

    async def _paginate(
        self, endpoint: str, access_token: str, params: dict
    ) -> list[dict]:
        """Collect ``data`` across cursor pages."""
        params = {**params, "limit": PAGE_LIMIT}
        items: list[dict] = []

        for _ in range(MAX_PAGES):
            page = await self._make_request(endpoint, params, access_token)
            items.extend(page.get("data", []))

            paging = page.get("paging", {})
            after = paging.get("cursors", {}).get("after")
            if not paging.get("next") or not after:
                break
            params = {**params, "after": after}
        else:
            self.logger.warning(
                "meta_pagination_truncated",
                endpoint=endpoint,
                max_pages=MAX_PAGES,
                items=len(items),
            )

        return items

    # =========================================================================
    # Authentication
    # =========================================================================

    async def validate_token(self, access_token: str) -> bool:
        """Validate a Meta access token via debug_token, or /me without app credentials."""
        try:
            if self.app_id and self.app_secret:
                data = await self._make_request(
                    "debug_token",
                    params={
                        "input_token": access_token,
                        "access_token": f"{self.app_id}|{self.app_secret}",
                    },
                )
                return bool(data.get("data", {}).get("is_valid", False))

            await self._make_request("me", params={"fields": "id"}, access_token=access_token)
            return True

        except (AuthenticationError, ValidationError, PlatformError) as e:
            self._log_error("validate_token", e)
            return False

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        """Exchange a token for a long-lived one (``fb_exchange_token`` grant)."""
        if not self.app_id or not self.app_secret:
            raise AuthenticationError(
                message="Meta app credentials are not configured",
                platform=self.platform.value,
            )

        self._log_operation("refresh_token")
        try:
            data = await self._make_request(
                "oauth/access_token",
                params={
                    "grant_type": "fb_exchange_token",
                    "client_id": self.app_id,
                    "client_secret": self.app_secret,
                    "fb_exchange_token": refresh_token,
                },
            )
        except (ValidationError, PlatformError) as e:
            # Meta reports a rejected exchange token as a generic OAuthException
            raise AuthenticationError(
                message=f"Meta token exchange rejected: {e.message}",
                platform=self.platform.value,
                details=e.details,
            )

        access_token = data.get("access_token")
        if not access_token:
            raise AuthenticationError(
                message="Meta token exchange returned no access token",
                platform=self.platform.value,
            )

        expires_in = data.get("expires_in")
        return RefreshedToken(
            access_token=access_token,
            expires_in=int(expires_in) if expires_in else None,
            # A long-lived token doubles as the credential for the next exchange
            refresh_token=access_token,
        )

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def list_accounts(self, access_token: str) -> list[AdAccountInfo]:
        """List all accessible Meta ad accounts."""
        self._log_operation("list_accounts")

        rows = await self._paginate(
            "me/adaccounts",
            access_token,
            {"fields": "id,name,currency,account_status"},
        )

        accounts = []
        for account in rows:
            account_id = normalize_account_id(account["id"])
            accounts.append(
                AdAccountInfo(
                    account_id=account_id,
                    account_name=account.get("name") or f"Account {account_id}",
                    currency=account.get("currency"),
                    status=str(account.get("account_status", "")),
                )
            )

        return accounts

    # =========================================================================
    # Reporting
    # =========================================================================

    async def fetch_campaigns(
        self, access_token: str, account_id: str
    ) -> list[CampaignInfo]:
        """List campaigns in a Meta ad account."""
        self._log_operation("fetch_campaigns", account_id=account_id)

        rows = await self._paginate(
            f"act_{normalize_account_id(account_id)}/campaigns",
            access_token,
            {"fields": "id,name,status,objective,daily_budget,lifetime_budget"},
        )

        return [
            CampaignInfo(
                campaign_id=row["id"],
                name=row.get("name", ""),
                status=row.get("status", "UNKNOWN"),
                objective=row.get("objective"),
                platform_data={
                    "daily_budget": row.get("daily_budget"),
                    "lifetime_budget": row.get("lifetime_budget"),
                },
            )
            for row in rows
        ]

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        date_range: DateRange,
        level: ObjectLevel = ObjectLevel.ACCOUNT,
        object_id: Optional[str] = None,
    ) -> list[MetricRow]:
        """Get insights for the objects at ``level``."""
        self._log_operation(
            "fetch_metrics",
            account_id=account_id,
            level=level.value,
            since=str(date_range.since),
            until=str(date_range.until),
        )

        target = object_id or f"act_{normalize_account_id(account_id)}"
        rows = await self._paginate(
            f"{target}/insights",
            access_token,
            {
                "fields": INSIGHT_FIELDS,
                "time_range": json.dumps(
                    {"since": str(date_range.since), "until": str(date_range.until)}
                ),
                "level": level.value,
            },
        )

        id_field, name_field = LEVEL_ID_FIELDS[level]
        return [self._parse_insight(row, id_field, name_field, target) for row in rows]

    # =========================================================================
    # Helper Methods
    # =========================================================================

    def _parse_insight(
        self, row: dict, id_field: str, name_field: Optional[str], fallback_id: str
    ) -> MetricRow:
        conversions = 0
        for action in row.get("actions", []) or []:
            if action.get("action_type") in CONVERSION_ACTION_TYPES:
                conversions += to_int(action.get("value"))

        conversion_value = 0.0
        for av in row.get("action_values", []) or []:
            if av.get("action_type") == "purchase":
                conversion_value += to_float(av.get("value"))

        return MetricRow(
            object_id=str(row.get(id_field) or fallback_id),
            object_name=row.get(name_field) if name_field else None,
            impressions=to_int(row.get("impressions")),
            clicks=to_int(row.get("clicks")),
            spend=to_float(row.get("spend")),
            reach=to_int(row.get("reach")),
            conversions=conversions,
            conversion_value=conversion_value,
            raw=row,
        )
