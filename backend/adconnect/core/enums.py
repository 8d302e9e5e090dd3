"""Enumerations shared by models, adapters and services."""

from enum import Enum


class Platform(str, Enum):
    """Supported ad platforms."""
    FACEBOOK = "facebook"
    GOOGLE = "google"
    TIKTOK = "tiktok"


class PlanTier(str, Enum):
    """Subscription level governing connection quotas."""
    FREE = "FREE"
    BASIC = "BASIC"
    PRO = "PRO"
    ENTERPRISE = "ENTERPRISE"


class ObjectLevel(str, Enum):
    """Granularity of a metrics query."""
    ACCOUNT = "account"
    CAMPAIGN = "campaign"
    ADSET = "adset"
    AD = "ad"
