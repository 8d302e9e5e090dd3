"""
Google Ads API Adapter

Implements the PlatformAdsClient interface for Google Ads.
Uses the google-ads Python library for reporting queries and Authlib for the
refresh-token exchange.

One adapter serves both direct and manager-account (MCC) access: the
``use_manager_account`` flag decides whether requests carry the configured
``login_customer_id``.

API Documentation: https://developers.google.com/google-ads/api/docs/start
"""

import asyncio
from functools import reduce
from typing import Any, Optional

import httpx
import structlog
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import AsyncOAuth2Client
from google.ads.googleads.client import GoogleAdsClient
from google.ads.googleads.errors import GoogleAdsException
from google.oauth2.credentials import Credentials

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
)
from adconnect.config import settings
from adconnect.core.enums import ObjectLevel, Platform

logger = structlog.get_logger()

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"

# GAQL resource plus the id/name fields identifying a row at each level
LEVEL_QUERY_FIELDS = {
    ObjectLevel.ACCOUNT: ("customer", "customer.id", "customer.descriptive_name"),
    ObjectLevel.CAMPAIGN: ("campaign", "campaign.id", "campaign.name"),
    ObjectLevel.ADSET: ("ad_group", "ad_group.id", "ad_group.name"),
    ObjectLevel.AD: ("ad_group_ad", "ad_group_ad.ad.id", "ad_group_ad.ad.name"),
}

AUTH_ERROR_KINDS = {"authentication_error", "authorization_error"}
VALIDATION_ERROR_KINDS = {"request_error", "query_error", "field_error"}


def _resolve(row: Any, path: str) -> Any:
    """Read a dotted GAQL field path from a result row."""
    return reduce(getattr, path.split("."), row)


def _error_kind(error_detail: Any) -> Optional[str]:
    """Name of the populated ``error_code`` oneof of a GoogleAdsFailure entry."""
    try:
        return error_detail.error_code._pb.WhichOneof("error_code")
    except AttributeError:
        return None


class GoogleAdsAdapter(PlatformAdsClient):
    """
    Google Ads API adapter.

    Implements token validation/refresh and reporting reads
    using the Google Ads API.
    """

    def __init__(
        self,
        use_manager_account: Optional[bool] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(platform=Platform.GOOGLE)
        self.developer_token = settings.google_ads_developer_token
        self.client_id = settings.google_ads_client_id
        self.client_secret = settings.google_ads_client_secret
        if use_manager_account is None:
            use_manager_account = settings.google_ads_use_manager_account
        self.use_manager_account = use_manager_account
        self.manager_customer_id = settings.google_ads_login_customer_id
        self._transport = transport

    def _login_customer_id(self) -> Optional[str]:
        if self.use_manager_account and self.manager_customer_id:
            return self.manager_customer_id.replace("-", "")
        return None

    def _create_client(self, access_token: str) -> GoogleAdsClient:
        """
        Create a Google Ads client for the provided access token.

        Args:
            access_token: OAuth access token

        Returns:
            Configured GoogleAdsClient
        """
        return GoogleAdsClient(
            credentials=Credentials(token=access_token),
            developer_token=self.developer_token,
            login_customer_id=self._login_customer_id(),
            use_proto_plus=True,
        )

    def _handle_google_error(self, error: GoogleAdsException, operation: str):
        """
        Convert Google Ads errors to adapter errors.

        Args:
            error: Google Ads exception
            operation: Operation that failed

        Raises:
            Appropriate adapter error
        """
        self._log_error(operation, error)

        errors = list(error.failure.errors)
        for error_detail in errors:
            kind = _error_kind(error_detail)

            if kind in AUTH_ERROR_KINDS:
                raise AuthenticationError(
                    message="Google Ads authentication failed",
                    platform=self.platform.value,
                    details={"error": str(error_detail.message)},
                )

            if kind == "quota_error":
                raise RateLimitError(
                    message="Google Ads rate limit exceeded",
                    platform=self.platform.value,
                    retry_after=60,
                )

            if kind == "internal_error":
                raise TransientProviderError(
                    message=f"Google Ads internal error: {error_detail.message}",
                    platform=self.platform.value,
                    details={"request_id": error.request_id},
                )

            if kind in VALIDATION_ERROR_KINDS:
                raise ValidationError(
                    message=f"Invalid request: {error_detail.message}",
                    platform=self.platform.value,
                    details={"kind": kind},
                )

        message = errors[0].message if errors else "unknown failure"
        raise PlatformError(
            message=f"Google Ads error: {message}",
            platform=self.platform.value,
            details={"request_id": error.request_id},
        )

    async def _search(
        self, access_token: str, customer_id: str, query: str, operation: str
    ) -> list:
        """Run a GAQL query off the event loop and materialize the rows."""

        def run() -> list:
            client = self._create_client(access_token)
            ga_service = client.get_service("GoogleAdsService")
            return list(ga_service.search(customer_id=customer_id, query=query))

        try:
            return await asyncio.to_thread(run)
        except GoogleAdsException as e:
            self._handle_google_error(e, operation)

    # =========================================================================
    # Authentication
    # =========================================================================

    async def validate_token(self, access_token: str) -> bool:
        """Validate an access token against Google's tokeninfo endpoint."""
        async with httpx.AsyncClient(
            timeout=settings.http_timeout_seconds, transport=self._transport
        ) as client:
            try:
                response = await client.get(
                    GOOGLE_TOKENINFO_URL, params={"access_token": access_token}
                )
            except httpx.RequestError as e:
                raise TransientProviderError(
                    message=f"Network error: {str(e)}",
                    platform=self.platform.value,
                )

        if response.status_code >= 500:
            raise TransientProviderError(
                message=f"Google tokeninfo returned {response.status_code}",
                platform=self.platform.value,
            )
        return response.status_code == 200

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        """Exchange a refresh token at Google's OAuth token endpoint."""
        self._log_operation("refresh_token", manager=self.use_manager_account)

        client = AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            timeout=settings.http_timeout_seconds,
            transport=self._transport,
        )
        try:
            token = await client.refresh_token(
                GOOGLE_TOKEN_URL,
                refresh_token=refresh_token,
            )
        except OAuthError as e:
            raise AuthenticationError(
                message=f"Google refresh token rejected: {e.error}",
                platform=self.platform.value,
                details={"error": e.error, "description": e.description},
            )
        except httpx.HTTPError as e:
            # Network failure, or a 5xx raised while parsing the response
            raise TransientProviderError(
                message=f"Token endpoint unavailable: {str(e)}",
                platform=self.platform.value,
            )
        except ValueError as e:
            # Non-JSON body, typically an upstream 5xx page
            raise TransientProviderError(
                message=f"Unexpected token endpoint response: {str(e)}",
                platform=self.platform.value,
            )
        finally:
            await client.aclose()

        expires_in = token.get("expires_in")
        rotated = token.get("refresh_token")
        return RefreshedToken(
            access_token=token["access_token"],
            expires_in=int(expires_in) if expires_in else None,
            refresh_token=rotated if rotated and rotated != refresh_token else None,
        )

    # =========================================================================
    # Account Operations
    # =========================================================================

    async def list_accounts(self, access_token: str) -> list[AdAccountInfo]:
        """List all accessible Google Ads accounts."""
        self._log_operation("list_accounts")

        def run():
            client = self._create_client(access_token)
            customer_service = client.get_service("CustomerService")
            return list(customer_service.list_accessible_customers().resource_names)

        try:
            resource_names = await asyncio.to_thread(run)
        except GoogleAdsException as e:
            self._handle_google_error(e, "list_accounts")

        accounts = []
        for resource_name in resource_names:
            customer_id = resource_name.split("/")[-1]
            try:
                rows = await self._search(
                    access_token,
                    customer_id,
                    "SELECT customer.id, customer.descriptive_name, "
                    "customer.currency_code, customer.status FROM customer",
                    "get_account",
                )
            except PlatformError as e:
                self.logger.warning(
                    "failed_to_get_account_details",
                    customer_id=customer_id,
                    error=str(e),
                )
                continue

            for row in rows:
                customer = row.customer
                accounts.append(
                    AdAccountInfo(
                        account_id=str(customer.id),
                        account_name=customer.descriptive_name or f"Account {customer.id}",
                        currency=customer.currency_code,
                        status=customer.status.name,
                    )
                )

        return accounts

    # =========================================================================
    # Reporting
    # =========================================================================

    async def fetch_campaigns(
        self, access_token: str, account_id: str
    ) -> list[CampaignInfo]:
        """List campaigns in a Google Ads account."""
        self._log_operation("fetch_campaigns", account_id=account_id)

        query = """
            SELECT
                campaign.id,
                campaign.name,
                campaign.status,
                campaign.advertising_channel_type
            FROM campaign
            WHERE campaign.status != 'REMOVED'
            ORDER BY campaign.name
        """
        rows = await self._search(access_token, account_id, query, "fetch_campaigns")

        return [
            CampaignInfo(
                campaign_id=str(row.campaign.id),
                name=row.campaign.name,
                status=row.campaign.status.name,
                platform_data={
                    "channel_type": row.campaign.advertising_channel_type.name,
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
        """Get metrics aggregated over the range for each object at ``level``."""
        self._log_operation(
            "fetch_metrics",
            account_id=account_id,
            level=level.value,
            since=str(date_range.since),
            until=str(date_range.until),
        )

        resource, id_field, name_field = LEVEL_QUERY_FIELDS[level]
        query = f"""
            SELECT
                {id_field},
                {name_field},
                metrics.impressions,
                metrics.clicks,
                metrics.cost_micros,
                metrics.conversions,
                metrics.conversions_value
            FROM {resource}
            WHERE segments.date BETWEEN '{date_range.since}' AND '{date_range.until}'
        """
        if object_id:
            query += f" AND {id_field} = {int(object_id)}"

        rows = await self._search(access_token, account_id, query, "fetch_metrics")

        return [
            MetricRow(
                object_id=str(_resolve(row, id_field)),
                object_name=_resolve(row, name_field) or None,
                impressions=int(row.metrics.impressions),
                clicks=int(row.metrics.clicks),
                spend=row.metrics.cost_micros / 1_000_000,
                conversions=int(row.metrics.conversions),
                conversion_value=float(row.metrics.conversions_value),
                raw={"cost_micros": int(row.metrics.cost_micros)},
            )
            for row in rows
        ]
