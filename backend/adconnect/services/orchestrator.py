"""
Connection Orchestrator

Facade over the store, token manager, retrying fetcher and metric cache.

collect():
1. Load the active connection (NotFound if absent or on another platform)
2. Ensure a valid token (reauthentication errors propagate unchanged)
3. Return the cached result for the key if there is one
4. Otherwise fetch through the retrying fetcher, normalize, cache, return

collect_many() runs independent collect() units concurrently and reports
failures per connection instead of raising.
"""

import asyncio
from typing import Callable, List, Optional, Sequence

import structlog

from adconnect.adapters import get_adapter
from adconnect.adapters.base import DateRange, MetricRow, PlatformAdsClient
from adconnect.config import Settings, settings
from adconnect.core.clock import as_utc, utcnow
from adconnect.core.enums import ObjectLevel, Platform
from adconnect.core.ephemeral import TempTokenStore
from adconnect.core.errors import ConnectionNotFoundError, TemporaryTokenNotFoundError
from adconnect.core.metrics import COLLECTIONS
from adconnect.core.retry import RetryPolicy, is_transient, run_with_policy
from adconnect.models import CachedMetric
from adconnect.schemas import (
    AccountData,
    AvailableAccount,
    BatchResult,
    BatchSummary,
    CampaignData,
    ConnectionCreate,
    ConnectionRecord,
    ConnectionSummary,
    DateWindow,
    FailedCollection,
    MetricPayload,
    ObjectMetrics,
    TokenData,
)
from adconnect.services.aggregation import aggregate_rows, normalize_row
from adconnect.services.connection_store import ConnectionStore
from adconnect.services.metric_cache import CacheEntryKey, MetricCache
from adconnect.services.token_manager import TokenManager

logger = structlog.get_logger()


def default_retry_policy(config: Optional[Settings] = None) -> RetryPolicy:
    config = config or settings
    return RetryPolicy(
        max_retries=config.retry_max_retries,
        base_delay=config.retry_base_delay_seconds,
        backoff_multiplier=config.retry_backoff_multiplier,
        retry_if=is_transient if config.retry_transient_only else None,
    )


class ConnectionOrchestrator:
    """Entry point for connecting accounts and collecting their data."""

    def __init__(
        self,
        store: ConnectionStore,
        token_manager: TokenManager,
        cache: MetricCache,
        adapter_factory: Callable[[str], PlatformAdsClient] = get_adapter,
        temp_tokens: Optional[TempTokenStore] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.store = store
        self.token_manager = token_manager
        self.cache = cache
        self.adapter_factory = adapter_factory
        self.temp_tokens = temp_tokens
        self.retry_policy = retry_policy or default_retry_policy()

    # =========================================================================
    # Collection
    # =========================================================================

    async def collect(
        self,
        user_id: str,
        connection_id: str,
        date_range: DateRange,
        platform: Optional[Platform] = None,
        level: ObjectLevel = ObjectLevel.ACCOUNT,
        breakdowns: Sequence[str] = (),
    ) -> AccountData:
        """
        Collect metrics for one connection.

        Args:
            user_id: Owner of the connection
            connection_id: Connection to collect
            date_range: Reporting window
            platform: If given, the connection must be on this platform
            level: Granularity of the per-object breakdown
            breakdowns: Extra breakdown parameters, part of the cache key

        Raises:
            ConnectionNotFoundError: Missing, inactive or platform mismatch
            ReauthenticationRequiredError: Token unusable
            AdapterError: Platform call failed after retries
        """
        connection = await self.store.get(user_id, connection_id)
        if connection is None or (
            platform is not None and connection.platform != Platform(platform)
        ):
            raise ConnectionNotFoundError(connection_id)

        access_token = await self.token_manager.ensure_valid_token(connection)

        key = CacheEntryKey(
            connection_id=connection.id,
            platform=connection.platform,
            account_id=connection.account_id,
            date_range=date_range,
            object_type=level,
            breakdowns=tuple(breakdowns),
        )
        cached = await self.cache.get(key)
        if cached is not None:
            COLLECTIONS.labels(platform=connection.platform.value, outcome="cache").inc()
            return self._from_cache(connection, date_range, level, cached)

        data = await self._collect_live(connection, access_token, date_range, level)
        await self.cache.put(
            key,
            data.totals,
            raw_data={
                "campaigns": [c.model_dump(mode="json") for c in data.campaigns],
                "breakdown": [b.model_dump(mode="json") for b in data.breakdown],
            },
        )

        COLLECTIONS.labels(platform=connection.platform.value, outcome="live").inc()
        logger.info(
            "account_data_collected",
            connection_id=connection.id,
            platform=connection.platform.value,
            campaigns=len(data.campaigns),
        )
        return data

    async def _collect_live(
        self,
        connection: ConnectionRecord,
        access_token: str,
        date_range: DateRange,
        level: ObjectLevel,
    ) -> AccountData:
        adapter = self.adapter_factory(connection.platform)
        account_id = connection.account_id

        campaigns = await run_with_policy(
            lambda: adapter.fetch_campaigns(access_token, account_id),
            self.retry_policy,
        )
        campaign_rows: List[MetricRow] = await run_with_policy(
            lambda: adapter.fetch_metrics(
                access_token, account_id, date_range, level=ObjectLevel.CAMPAIGN
            ),
            self.retry_policy,
        )

        # Providers may split one campaign over several rows
        grouped: dict[str, list[MetricRow]] = {}
        for row in campaign_rows:
            grouped.setdefault(row.object_id, []).append(row)
        by_campaign = {cid: aggregate_rows(rows) for cid, rows in grouped.items()}

        campaign_data = [
            CampaignData(
                campaign_id=campaign.campaign_id,
                name=campaign.name,
                status=campaign.status,
                objective=campaign.objective,
                metrics=by_campaign.get(campaign.campaign_id, MetricPayload()),
            )
            for campaign in campaigns
        ]

        if level in (ObjectLevel.ADSET, ObjectLevel.AD):
            detail_rows = await run_with_policy(
                lambda: adapter.fetch_metrics(access_token, account_id, date_range, level=level),
                self.retry_policy,
            )
        elif level == ObjectLevel.CAMPAIGN:
            detail_rows = campaign_rows
        else:
            detail_rows = []

        return AccountData(
            connection=self._summary(connection),
            date_range=DateWindow(since=date_range.since, until=date_range.until),
            level=level,
            totals=aggregate_rows(campaign_rows),
            campaigns=campaign_data,
            breakdown=[
                ObjectMetrics(
                    object_id=row.object_id,
                    object_name=row.object_name,
                    metrics=normalize_row(row),
                )
                for row in detail_rows
            ],
            collected_at=utcnow(),
            from_cache=False,
        )

    def _from_cache(
        self,
        connection: ConnectionRecord,
        date_range: DateRange,
        level: ObjectLevel,
        entry: CachedMetric,
    ) -> AccountData:
        raw = entry.raw_data or {}
        totals = MetricPayload.model_validate(
            {name: getattr(entry, name) for name in MetricPayload.model_fields}
        )
        return AccountData(
            connection=self._summary(connection),
            date_range=DateWindow(since=date_range.since, until=date_range.until),
            level=level,
            totals=totals,
            campaigns=[CampaignData.model_validate(c) for c in raw.get("campaigns", [])],
            breakdown=[ObjectMetrics.model_validate(b) for b in raw.get("breakdown", [])],
            collected_at=as_utc(entry.created_at),
            from_cache=True,
        )

    @staticmethod
    def _summary(connection: ConnectionRecord) -> ConnectionSummary:
        return ConnectionSummary(
            id=connection.id,
            platform=connection.platform,
            account_id=connection.account_id,
            account_name=connection.account_name,
        )

    async def collect_many(
        self,
        user_id: str,
        connection_ids: Sequence[str],
        date_range: DateRange,
        level: ObjectLevel = ObjectLevel.ACCOUNT,
        breakdowns: Sequence[str] = (),
    ) -> BatchResult:
        """
        Collect several connections concurrently.

        A failing connection never aborts the others; its error is reported
        in ``failed`` with the exception type name.
        """

        async def collect_one(connection_id: str):
            try:
                return await self.collect(
                    user_id, connection_id, date_range, level=level, breakdowns=breakdowns
                )
            except Exception as e:
                # Adapter and reauthentication errors know their platform
                platform = getattr(e, "platform", None) or "unknown"
                COLLECTIONS.labels(platform=platform, outcome="error").inc()
                logger.warning(
                    "account_data_collection_failed",
                    connection_id=connection_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                return FailedCollection(
                    connection_id=connection_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )

        outcomes = await asyncio.gather(*(collect_one(cid) for cid in connection_ids))

        successful = [o for o in outcomes if isinstance(o, AccountData)]
        failed = [o for o in outcomes if isinstance(o, FailedCollection)]

        logger.info(
            "batch_collection_completed",
            user_id=user_id,
            total=len(outcomes),
            successful=len(successful),
            failed=len(failed),
        )
        return BatchResult(
            successful=successful,
            failed=failed,
            summary=BatchSummary(
                total=len(outcomes),
                successful=len(successful),
                failed=len(failed),
            ),
        )

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect_account(
        self,
        user_id: str,
        platform: Platform,
        account_id: str,
        account_name: str,
        token: TokenData,
    ) -> ConnectionRecord:
        """
        Store credentials for an account.

        Reconnecting an already linked account replaces its credentials and
        invalidates its cached metrics.

        Raises:
            QuotaExceededError: If the plan limit is reached
        """
        platform = Platform(platform)

        record, replaced = await self.store.upsert(
            ConnectionCreate(
                user_id=user_id,
                platform=platform,
                account_id=account_id,
                account_name=account_name,
                access_token=token.access_token,
                refresh_token=token.refresh_token,
                expires_at=token.expires_at,
            )
        )

        # Also covers a deactivated row coming back with new credentials
        if replaced:
            await self.cache.invalidate(record.id, reason="reconnection")

        return record

    async def disconnect(self, user_id: str, connection_id: str) -> bool:
        """Soft delete; cached metrics stay in place."""
        return await self.store.delete(user_id, connection_id)

    def _temp_token(self, user_id: str, platform: Platform, temp_token_id: str) -> TokenData:
        if self.temp_tokens is None:
            raise TemporaryTokenNotFoundError(temp_token_id)
        entry = self.temp_tokens.retrieve(temp_token_id, user_id)
        if entry is None or entry.platform != Platform(platform):
            raise TemporaryTokenNotFoundError(temp_token_id)
        return entry.token

    async def list_available_accounts(
        self, user_id: str, platform: Platform, temp_token_id: str
    ) -> List[AvailableAccount]:
        """
        Accounts reachable with a freshly exchanged token.

        Raises:
            TemporaryTokenNotFoundError: Token expired or issued to another user
        """
        platform = Platform(platform)
        token = self._temp_token(user_id, platform, temp_token_id)
        adapter = self.adapter_factory(platform)

        accounts = await run_with_policy(
            lambda: adapter.list_accounts(token.access_token),
            self.retry_policy,
        )
        connected = {c.account_id for c in await self.store.list(user_id, platform)}

        return [
            AvailableAccount(
                account_id=account.account_id,
                account_name=account.account_name,
                currency=account.currency,
                status=account.status,
                already_connected=account.account_id in connected,
            )
            for account in accounts
        ]

    async def connect_selected_accounts(
        self,
        user_id: str,
        platform: Platform,
        temp_token_id: str,
        accounts: Sequence[AvailableAccount],
    ) -> List[ConnectionRecord]:
        """
        Connect the accounts the user picked, then discard the temporary token.

        Stops at the first quota failure; accounts connected before it stay
        connected.
        """
        platform = Platform(platform)
        token = self._temp_token(user_id, platform, temp_token_id)

        records = []
        for account in accounts:
            records.append(
                await self.connect_account(
                    user_id, platform, account.account_id, account.account_name, token
                )
            )

        self.temp_tokens.remove(temp_token_id)
        return records
