"""
Metric Cache

Database-backed, time-boxed cache of collected metrics.

- Entries are keyed by (connection, cache key); writes upsert
- Reads skip stale and expired entries
- Invalidation marks entries stale and writes an audit log row; nothing is
  deleted
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adconnect.adapters.base import DateRange
from adconnect.config import Settings, settings
from adconnect.core.clock import as_utc, utcnow
from adconnect.core.database import session_scope
from adconnect.core.enums import ObjectLevel, Platform
from adconnect.core.metrics import CACHE_LOOKUPS
from adconnect.models import CachedMetric, CacheInvalidationLog
from adconnect.schemas import MetricPayload

logger = structlog.get_logger()


def default_ttls(config: Optional[Settings] = None) -> Dict[Platform, timedelta]:
    config = config or settings
    return {
        Platform.FACEBOOK: timedelta(hours=config.facebook_cache_ttl_hours),
        Platform.GOOGLE: timedelta(hours=config.google_cache_ttl_hours),
        Platform.TIKTOK: timedelta(hours=config.tiktok_cache_ttl_hours),
    }


@dataclass(frozen=True)
class CacheEntryKey:
    """Identity of one cached metric result."""
    connection_id: str
    platform: Platform
    account_id: str
    date_range: DateRange
    object_type: ObjectLevel = ObjectLevel.ACCOUNT
    object_id: Optional[str] = None
    breakdowns: Sequence[str] = ()

    @property
    def cache_key(self) -> str:
        """Deterministic string; breakdown order does not matter."""
        breakdowns = ",".join(sorted(self.breakdowns)) or "none"
        return ":".join(
            [
                Platform(self.platform).value,
                self.account_id,
                ObjectLevel(self.object_type).value,
                self.object_id or "*",
                self.date_range.as_key(),
                breakdowns,
            ]
        )


class MetricCache:
    """Read-through cache of metric payloads."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ttls: Optional[Dict[Platform, timedelta]] = None,
    ):
        self.session_factory = session_factory
        self.ttls = ttls or default_ttls()

    async def get(self, key: CacheEntryKey) -> Optional[CachedMetric]:
        """Return the entry for ``key`` unless it is missing, stale or expired."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CachedMetric).where(
                    CachedMetric.connection_id == key.connection_id,
                    CachedMetric.cache_key == key.cache_key,
                )
            )
            entry = result.scalar_one_or_none()

        platform = Platform(key.platform).value
        if entry is None or entry.is_stale or as_utc(entry.expires_at) <= utcnow():
            CACHE_LOOKUPS.labels(platform=platform, result="miss").inc()
            logger.debug("metric_cache_miss", connection_id=key.connection_id, cache_key=key.cache_key)
            return None

        CACHE_LOOKUPS.labels(platform=platform, result="hit").inc()
        logger.info("metric_cache_hit", connection_id=key.connection_id, cache_key=key.cache_key)
        return entry

    async def put(
        self,
        key: CacheEntryKey,
        payload: MetricPayload,
        raw_data: Optional[Dict[str, Any]] = None,
        ttl: Optional[timedelta] = None,
    ) -> CachedMetric:
        """
        Upsert the entry for ``key``.

        Args:
            key: Cache identity
            payload: Normalized metrics
            raw_data: Provider breakdown kept alongside the totals
            ttl: Lifetime (default: the platform's configured TTL)

        Returns:
            The stored entry
        """
        ttl = ttl or self.ttls[Platform(key.platform)]

        try:
            entry = await self._upsert(key, payload, raw_data, ttl)
        except IntegrityError:
            # A concurrent writer inserted the same key first
            entry = await self._upsert(key, payload, raw_data, ttl)

        logger.info(
            "metric_cache_stored",
            connection_id=key.connection_id,
            cache_key=key.cache_key,
            ttl_seconds=int(ttl.total_seconds()),
        )
        return entry

    async def _upsert(
        self,
        key: CacheEntryKey,
        payload: MetricPayload,
        raw_data: Optional[Dict[str, Any]],
        ttl: timedelta,
    ) -> CachedMetric:
        now = utcnow()
        values = dict(
            payload.model_dump(),
            raw_data=raw_data,
            created_at=now,
            expires_at=now + ttl,
            is_stale=False,
        )

        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                select(CachedMetric).where(
                    CachedMetric.connection_id == key.connection_id,
                    CachedMetric.cache_key == key.cache_key,
                )
            )
            entry = result.scalar_one_or_none()

            if entry is None:
                entry = CachedMetric(
                    connection_id=key.connection_id,
                    cache_key=key.cache_key,
                    platform=Platform(key.platform),
                    account_id=key.account_id,
                    object_type=ObjectLevel(key.object_type),
                    object_id=key.object_id,
                    date_range=key.date_range.as_key(),
                    **values,
                )
                db.add(entry)
            else:
                for name, value in values.items():
                    setattr(entry, name, value)

            await db.flush()

        return entry

    async def invalidate(
        self,
        connection_id: str,
        reason: str,
        object_ids: Optional[List[str]] = None,
    ) -> int:
        """
        Mark cached entries of a connection stale.

        Args:
            connection_id: Owning connection
            reason: Recorded in the invalidation log
            object_ids: Restrict to entries for these objects

        Returns:
            Number of entries invalidated
        """
        query = update(CachedMetric).where(
            CachedMetric.connection_id == connection_id,
            CachedMetric.is_stale.is_(False),
        )
        if object_ids:
            query = query.where(CachedMetric.object_id.in_(object_ids))

        async with session_scope(self.session_factory) as db:
            result = await db.execute(query.values(is_stale=True))
            count = result.rowcount or 0

            db.add(
                CacheInvalidationLog(
                    connection_id=connection_id,
                    scope="objects" if object_ids else "connection",
                    reason=reason,
                    object_ids=list(object_ids) if object_ids else None,
                    entries_invalidated=count,
                )
            )

        logger.info(
            "metric_cache_invalidated",
            connection_id=connection_id,
            reason=reason,
            entries=count,
        )
        return count

    async def history(self, connection_id: str, limit: int = 50) -> List[CacheInvalidationLog]:
        """Invalidation log entries for a connection, newest first."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(CacheInvalidationLog)
                .where(CacheInvalidationLog.connection_id == connection_id)
                .order_by(CacheInvalidationLog.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())
