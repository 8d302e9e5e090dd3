"""
SQLAlchemy Models

All database models are imported here so ``init_db`` registers them.
"""

from adconnect.models.user import User
from adconnect.models.connection import Connection
from adconnect.models.metric_cache import CachedMetric, CacheInvalidationLog

__all__ = [
    "User",
    "Connection",
    "CachedMetric",
    "CacheInvalidationLog",
]
