"""
Ad Platform Adapters

Factory for creating platform-specific adapters.
Each adapter implements the PlatformAdsClient interface.
"""

from adconnect.adapters.base import (
    AdAccountInfo,
    AdapterError,
    AuthenticationError,
    CampaignInfo,
    DateRange,
    MetricRow,
    PermanentProviderError,
    PlatformAdsClient,
    PlatformError,
    RateLimitError,
    RefreshedToken,
    TransientProviderError,
    ValidationError,
)
from adconnect.adapters.google_ads import GoogleAdsAdapter
from adconnect.adapters.meta_ads import MetaAdsAdapter
from adconnect.adapters.tiktok_ads import TikTokAdsAdapter
from adconnect.core.enums import Platform


# Adapter registry
_adapters: dict[Platform, type[PlatformAdsClient]] = {
    Platform.FACEBOOK: MetaAdsAdapter,
    Platform.GOOGLE: GoogleAdsAdapter,
    Platform.TIKTOK: TikTokAdsAdapter,
}


def get_adapter(platform: str, **kwargs) -> PlatformAdsClient:
    """
    Get an adapter instance for a platform.

    Args:
        platform: Platform name (facebook, google, tiktok)
        **kwargs: Passed to the adapter constructor (e.g. ``transport``)

    Returns:
        Configured adapter instance

    Raises:
        ValueError: If platform is not supported
    """
    adapter_class = _adapters.get(Platform(platform))
    if not adapter_class:
        raise ValueError(f"Unsupported platform: {platform}")

    return adapter_class(**kwargs)


def get_supported_platforms() -> list[str]:
    """Get list of supported platforms."""
    return [platform.value for platform in _adapters]


__all__ = [
    # Factory
    "get_adapter",
    "get_supported_platforms",
    # Adapters
    "GoogleAdsAdapter",
    "MetaAdsAdapter",
    "TikTokAdsAdapter",
    # Base types
    "PlatformAdsClient",
    "AdAccountInfo",
    "CampaignInfo",
    "DateRange",
    "MetricRow",
    "RefreshedToken",
    # Errors
    "AdapterError",
    "TransientProviderError",
    "PermanentProviderError",
    "AuthenticationError",
    "PlatformError",
    "RateLimitError",
    "ValidationError",
]
