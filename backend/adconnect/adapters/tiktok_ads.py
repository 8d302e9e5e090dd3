"""
TikTok Ads API Adapter

Implements the PlatformAdsClient interface for TikTok Ads.
Uses the TikTok Business API over httpx.

API Documentation: https://business-api.tiktok.com/portal/docs
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

# TikTok API base URL
TIKTOK_API_BASE = "https://business-api.tiktok.com/open_api/v1.3"

# Largest page_size the list and report endpoints accept
PAGE_SIZE = 1000
MAX_PAGES = 20

AUTH_ERROR_CODES = {40001, 40002, 40101, 40104, 40105}
RATE_LIMIT_ERROR_CODES = {40100, 40133}
VALIDATION_ERROR_CODES = {40000, 40003}

REPORT_METRICS = ["spend", "impressions", "clicks", "reach", "conversion", "total_purchase_value"]

# data_level and dimension for each reporting level
LEVEL_REPORT_FIELDS = {
    ObjectLevel.ACCOUNT: ("AUCTION_ADVERTISER", "advertiser_id", None),
    ObjectLevel.CAMPAIGN: ("AUCTION_CAMPAIGN", "campaign_id", "campaign_name"),
    ObjectLevel.ADSET: ("AUCTION_ADGROUP", "adgroup_id", "adgroup_name"),
    ObjectLevel.AD: ("AUCTION_AD", "ad_id", "ad_name"),
}


class TikTokAdsAdapter(PlatformAdsClient):
    """
    TikTok Ads API adapter.

    Implements token validation/refresh and reporting reads
    using the TikTok Marketing API.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(platform=Platform.TIKTOK)
        self.app_id = settings.tiktok_app_id
        self.app_secret = settings.tiktok_app_secret
        self._transport = transport

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        access_token: Optional[str] = None,
        params: dict = None,
        data: dict = None,
    ) -> dict:
        """
        Make a request to the TikTok API.

        Args:
            method: HTTP method
            endpoint: API endpoint (without base URL)
            access_token: Access token
            params: Query parameters
            data: Request body for POST

        Returns:
            JSON response data

        Raises:
            Appropriate adapter error on failure
        """
        url = f"{TIKTOK_API_BASE}/{endpoint}"

        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Access-Token"] = access_token

        async with httpx.AsyncClient(
            timeout=settings.http_timeout_seconds, transport=self._transport
        ) as client:
            try:
                if method.upper() == "GET":
                    response = await client.get(url, headers=headers, params=params)
                elif method.upper() == "POST":
                    response = await client.post(url, headers=headers, json=data)
                else:
                    raise ValueError(f"Unsupported HTTP method: {method}")
            except httpx.RequestError as e:
                raise TransientProviderError(
                    message=f"Network error: {str(e)}",
                    platform=self.platform.value,
                )

        if response.status_code >= 500:
            raise TransientProviderError(
                message=f"TikTok API returned {response.status_code}",
                platform=self.platform.value,
            )

        try:
            response_data = response.json()
        except ValueError:
            raise PlatformError(
                message="TikTok API returned a non-JSON response",
                platform=self.platform.value,
                details={"status_code": response.status_code},
            )

        # TikTok uses code 0 for success
        if response_data.get("code") == 0:
            return response_data.get("data", {}) or {}

        self._handle_tiktok_error(response_data)

    def _handle_tiktok_error(self, response_data: dict):
        """
        Convert TikTok API errors to adapter errors.

        Args:
            response_data: API response

        Raises:
            Appropriate adapter error
        """
        error_code = response_data.get("code", 0)
        error_message = response_data.get("message", "Unknown error")

        self._log_error(
            "tiktok_api",
            Exception(error_message),
            error_code=error_code,
        )

        if error_code in AUTH_ERROR_CODES:
            raise AuthenticationError(
                message=f"TikTok authentication failed: {error_message}",
                platform=self.platform.value,
                details={"error_code": error_code},
            )

        if error_code in RATE_LIMIT_ERROR_CODES:
            raise RateLimitError(
                message="TikTok API rate limit exceeded",
                platform=self.platform.value,
                retry_after=60,
            )

        if error_code in VALIDATION_ERROR_CODES:
            raise ValidationError(
                message=f"Invalid request: {error_message}",
                platform=self.platform.value,
                details={"error_code": error_code},
            )

        if 50000 <= error_code < 60000:
            raise TransientProviderError(
                message=f"TikTok API internal error: {error_message}",
                platform=self.platform.value,
                details={"error_code": error_code},
            )

        raise PlatformError(
            message=f"TikTok API error: {error_message}",
            platform=self.platform.value,
            details={"error_code": error_code},
        )

    async def _paginate(self, endpoint: str, access_token: str, params: dict) -> list[dict]:
        """Collect ``list`` across numbered pages until ``page_info.total_page``."""
        items: list[dict] = []

        for page in range(1, MAX_PAGES + 1):
            data = await self._make_request(
                "GET", endpoint, access_token, params={**params, "page": page, "page_size": PAGE_SIZE}
            )
            items.extend(data.get("list", []))

            total_pages = to_int(data.get("page_info", {}).get("total_page")) or 1
            if page >= total_pages:
                break
        else:
            self.logger.warning(
                "tiktok_pagination_truncated",
                endpoint=endpoint,
                max_pages=MAX_PAGES,
                items=len(items),
            )

        return items

    # =========================================================================
    # Authentication
    # =========================================================================

    async def validate_token(self, access_token: str) -> bool:
        """Validate a TikTok access token by reading the user profile."""
        try:
            await self._make_request("GET", "user/info/", access_token)
            return True
        except (AuthenticationError, ValidationError, PlatformError) as e:
            self._log_error("validate_token", e)
            return False

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        """Exchange a refresh token for a new access token."""
        self._log_operation("refresh_token")

        try:
            data = await self._make_request(
                "POST",
                "oauth2/refresh_token/",
                data={
                    "app_id": self.app_id,
                    "secret": self.app_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
            )
        except (ValidationError, PlatformError) as e:
            raise AuthenticationError(
                message=f"TikTok refresh token rejected: {e.message}",
                platform=self.platform.value,
                details=e.details,
            )

        access_token = data.get("access_token")
        if not access_token:
            raise AuthenticationError(
                message="TikTok refresh returned no access token",
                platform=self.platform.value,
            )

        expires_in = data.get("expires_in")
        return RefreshedToken(
            access_token=access_token,
            expires_in=int(expires_in) if expires_in else None,
            refresh_token=data.get("refresh_token"),
        )

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def list_accounts(self, access_token: str) -> list[AdAccountInfo]:
        """List advertiser accounts authorized for this app."""
        self._log_operation("list_accounts")

        data = await self._make_request(
            "GET",
            "oauth2/advertiser/get/",
            access_token,
            params={"app_id": self.app_id, "secret": self.app_secret},
        )

        return [
            AdAccountInfo(
                account_id=str(item["advertiser_id"]),
                account_name=item.get("advertiser_name") or f"Advertiser {item['advertiser_id']}",
            )
            for item in data.get("list", [])
        ]

    # =========================================================================
    # Reporting
    # =========================================================================

    async def fetch_campaigns(
        self, access_token: str, account_id: str
    ) -> list[CampaignInfo]:
        """List campaigns in a TikTok advertiser account."""
        self._log_operation("fetch_campaigns", account_id=account_id)

        items = await self._paginate("campaign/get/", access_token, {"advertiser_id": account_id})

        return [
            CampaignInfo(
                campaign_id=str(item["campaign_id"]),
                name=item.get("campaign_name", ""),
                status=item.get("operation_status", "UNKNOWN"),
                objective=item.get("objective_type"),
            )
            for item in items
        ]

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        date_range: DateRange,
        level: ObjectLevel = ObjectLevel.ACCOUNT,
        object_id: Optional[str] = None,
    ) -> list[MetricRow]:
        """Get an integrated report for the objects at ``level``."""
        self._log_operation(
            "fetch_metrics",
            account_id=account_id,
            level=level.value,
            since=str(date_range.since),
            until=str(date_range.until),
        )

        data_level, dimension, name_metric = LEVEL_REPORT_FIELDS[level]
        metrics = REPORT_METRICS + ([name_metric] if name_metric else [])
        params = {
            "advertiser_id": account_id,
            "report_type": "BASIC",
            "data_level": data_level,
            "dimensions": json.dumps([dimension]),
            "metrics": json.dumps(metrics),
            "start_date": str(date_range.since),
            "end_date": str(date_range.until),
        }
        if object_id and level != ObjectLevel.ACCOUNT:
            params["filtering"] = json.dumps(
                [{"field_name": f"{dimension}s", "filter_type": "IN", "filter_value": json.dumps([object_id])}]
            )

        rows = []
        for item in await self._paginate("report/integrated/get/", access_token, params):
            dims = item.get("dimensions", {})
            values = item.get("metrics", {})
            rows.append(
                MetricRow(
                    object_id=str(dims.get(dimension) or object_id or account_id),
                    object_name=values.get(name_metric) if name_metric else None,
                    impressions=to_int(values.get("impressions")),
                    clicks=to_int(values.get("clicks")),
                    spend=to_float(values.get("spend")),
                    reach=to_int(values.get("reach")),
                    conversions=to_int(values.get("conversion")),
                    conversion_value=to_float(values.get("total_purchase_value")),
                    raw=item,
                )
            )

        return rows
