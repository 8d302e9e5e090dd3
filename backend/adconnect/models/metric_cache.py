"""
Metric cache models.

CachedMetric memoizes one platform data pull; CacheInvalidationLog keeps an
audit trail of every invalidation. Cached rows are never deleted, only marked
stale.
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from adconnect.core.clock import utcnow
from adconnect.core.database import Base
from adconnect.core.enums import ObjectLevel, Platform

_enum_values = lambda e: [member.value for member in e]  # noqa: E731


class CachedMetric(Base):
    """Normalized metrics for one cache key, plus the raw breakdown."""

    __tablename__ = "cached_metrics"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    connection_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("connections.id", ondelete="CASCADE"),
        nullable=False,
    )
    cache_key: Mapped[str] = mapped_column(String(512), nullable=False)

    # Scope
    platform: Mapped[Platform] = mapped_column(
        Enum(Platform, name="ad_platform", values_callable=_enum_values),
        nullable=False,
    )
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    object_type: Mapped[ObjectLevel] = mapped_column(
        Enum(ObjectLevel, name="object_level", values_callable=_enum_values),
        nullable=False,
    )
    object_id: Mapped[Optional[str]] = mapped_column(String(100))
    date_range: Mapped[str] = mapped_column(String(32), nullable=False)

    # Counters
    impressions: Mapped[int] = mapped_column(BigInteger, default=0)
    clicks: Mapped[int] = mapped_column(BigInteger, default=0)
    spend: Mapped[float] = mapped_column(Float, default=0.0)
    reach: Mapped[int] = mapped_column(BigInteger, default=0)
    conversions: Mapped[int] = mapped_column(Integer, default=0)
    conversion_value: Mapped[float] = mapped_column(Float, default=0.0)

    # Derived ratios
    ctr: Mapped[float] = mapped_column(Float, default=0.0)
    cpc: Mapped[float] = mapped_column(Float, default=0.0)
    cpm: Mapped[float] = mapped_column(Float, default=0.0)
    cost_per_conversion: Mapped[float] = mapped_column(Float, default=0.0)
    conversion_rate: Mapped[float] = mapped_column(Float, default=0.0)

    raw_data: Mapped[Optional[dict]] = mapped_column(JSON)

    # Validity
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "cache_key", name="uq_cached_metric_key"),
        Index("ix_cached_metrics_connection_object", "connection_id", "object_id"),
        Index("ix_cached_metrics_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<CachedMetric {self.cache_key}>"


class CacheInvalidationLog(Base):
    """Audit record of one cache invalidation."""

    __tablename__ = "cache_invalidation_logs"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    connection_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    object_ids: Mapped[Optional[list]] = mapped_column(JSON)
    entries_invalidated: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
