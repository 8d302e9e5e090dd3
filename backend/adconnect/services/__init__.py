# Connection lifecycle services
from adconnect.services.connection_store import ConnectionStore
from adconnect.services.metric_cache import CacheEntryKey, MetricCache
from adconnect.services.orchestrator import ConnectionOrchestrator
from adconnect.services.token_manager import TokenManager

__all__ = [
    "CacheEntryKey",
    "ConnectionOrchestrator",
    "ConnectionStore",
    "MetricCache",
    "TokenManager",
]
