"""
Metric normalization and aggregation.

Ratios are always recomputed from summed counters, never averaged across rows.
"""

from typing import Iterable

from adconnect.adapters.base import MetricRow
from adconnect.schemas import MetricPayload

COUNTER_FIELDS = ("impressions", "clicks", "spend", "reach", "conversions", "conversion_value")


def _ratio(numerator: float, denominator: float, scale: float = 1.0) -> float:
    return round(numerator / denominator * scale, 2) if denominator > 0 else 0.0


def with_ratios(
    impressions: int,
    clicks: int,
    spend: float,
    reach: int,
    conversions: int,
    conversion_value: float,
) -> MetricPayload:
    """Build a payload from raw counters, deriving ctr/cpc/cpm/cost per conversion/conversion rate."""
    return MetricPayload(
        impressions=impressions,
        clicks=clicks,
        spend=round(spend, 2),
        reach=reach,
        conversions=conversions,
        conversion_value=round(conversion_value, 2),
        ctr=_ratio(clicks, impressions, 100),
        cpc=_ratio(spend, clicks),
        cpm=_ratio(spend, impressions, 1000),
        cost_per_conversion=_ratio(spend, conversions),
        conversion_rate=_ratio(conversions, clicks, 100),
    )


def normalize_row(row: MetricRow) -> MetricPayload:
    """Convert a provider row into the normalized payload shape."""
    return with_ratios(
        impressions=row.impressions,
        clicks=row.clicks,
        spend=row.spend,
        reach=row.reach,
        conversions=row.conversions,
        conversion_value=row.conversion_value,
    )


def aggregate_metrics(payloads: Iterable[MetricPayload]) -> MetricPayload:
    """
    Sum counters across payloads and recompute ratios from the totals.

    Args:
        payloads: Normalized payloads (ratios on the inputs are ignored)

    Returns:
        Aggregated payload; empty input yields all zeros
    """
    return with_ratios(**_sum_counters(payloads))


def aggregate_rows(rows: Iterable[MetricRow]) -> MetricPayload:
    """
    Aggregate provider rows directly.

    Counters are summed unrounded; money is rounded once on the result.
    """
    return with_ratios(**_sum_counters(rows))


def _sum_counters(items) -> dict:
    totals = dict.fromkeys(COUNTER_FIELDS, 0)
    for item in items:
        for name in COUNTER_FIELDS:
            totals[name] += getattr(item, name)
    return totals
