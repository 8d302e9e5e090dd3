"""Prometheus counters for the connection lifecycle."""

from prometheus_client import Counter

CACHE_LOOKUPS = Counter(
    "adconnect_metric_cache_lookups_total",
    "Metric cache lookups",
    ["platform", "result"],
)

TOKEN_REFRESHES = Counter(
    "adconnect_token_refreshes_total",
    "Access token refresh attempts",
    ["platform", "outcome"],
)

RETRY_ATTEMPTS = Counter(
    "adconnect_retry_attempts_total",
    "Outbound calls retried after a failure",
    ["error_type"],
)

COLLECTIONS = Counter(
    "adconnect_collections_total",
    "Account data collections",
    ["platform", "outcome"],
)
