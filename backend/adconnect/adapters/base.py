"""
Base Ad Platform Adapter

Abstract base class defining the interface the connection core depends on.
Each platform (Meta, Google, TikTok) implements this interface; the
orchestrator never sees vendor-specific request shapes.

Design principles:
- Platform-agnostic interface
- Async-first for non-blocking operations
- Provider failures classified as transient (retryable) or permanent
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional

import structlog

from adconnect.core.enums import ObjectLevel, Platform

logger = structlog.get_logger()


# =============================================================================
# Data Types
# =============================================================================

@dataclass(frozen=True)
class DateRange:
    """Inclusive reporting window."""
    since: date
    until: date

    def __post_init__(self):
        if self.since > self.until:
            raise ValueError(f"Invalid date range: {self.since} > {self.until}")

    def as_key(self) -> str:
        return f"{self.since.isoformat()}_{self.until.isoformat()}"


@dataclass
class RefreshedToken:
    """Result of a refresh-token exchange."""
    access_token: str
    expires_in: Optional[int] = None  # seconds
    refresh_token: Optional[str] = None  # set when the provider rotates it


@dataclass
class AdAccountInfo:
    """Platform ad account information."""
    account_id: str
    account_name: str
    currency: Optional[str] = None
    status: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class CampaignInfo:
    """Unified campaign information."""
    campaign_id: str
    name: str
    status: str
    objective: Optional[str] = None
    platform_data: dict[str, Any] = field(default_factory=dict)


@dataclass
class MetricRow:
    """One row of raw counters for an object over a date range."""
    object_id: str
    object_name: Optional[str] = None
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    conversions: int = 0
    conversion_value: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Error Types
# =============================================================================

class AdapterError(Exception):
    """Base exception for adapter errors."""
    def __init__(self, message: str, platform: str, details: dict = None):
        self.message = message
        self.platform = platform
        self.details = details or {}
        super().__init__(message)


class TransientProviderError(AdapterError):
    """Network or 5xx-class failure; eligible for retry."""
    pass


class RateLimitError(TransientProviderError):
    """Platform rate limit exceeded."""
    def __init__(self, message: str, platform: str, retry_after: int = 60):
        super().__init__(message, platform)
        self.retry_after = retry_after


class PermanentProviderError(AdapterError):
    """4xx-class rejection; surfaced as-is, never retried."""
    pass


class AuthenticationError(PermanentProviderError):
    """OAuth token is invalid, expired or revoked."""
    pass


class ValidationError(PermanentProviderError):
    """Request validation failed."""
    pass


class PlatformError(PermanentProviderError):
    """Platform-specific error."""
    pass


# =============================================================================
# Base Adapter
# =============================================================================

class PlatformAdsClient(ABC):
    """
    Abstract base class for ad platform adapters.

    All platform-specific adapters must implement these methods.
    Methods are async to support non-blocking I/O.
    """

    platform: Platform

    def __init__(self, platform: Platform):
        self.platform = platform
        self.logger = logger.bind(platform=platform.value)

    # =========================================================================
    # Authentication
    # =========================================================================

    @abstractmethod
    async def validate_token(self, access_token: str) -> bool:
        """
        Check whether an access token is still accepted by the platform.

        Args:
            access_token: OAuth access token

        Returns:
            True if the token is valid. Network failures raise
            TransientProviderError instead of returning False.
        """

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        """
        Exchange a refresh token for a new access token.

        Args:
            refresh_token: Long-lived refresh credential

        Returns:
            New access token with its lifetime

        Raises:
            AuthenticationError: If the provider rejects the refresh token
            TransientProviderError: On network or server failure
        """

    # =========================================================================
    # Account Operations
    # =========================================================================

    @abstractmethod
    async def list_accounts(self, access_token: str) -> list[AdAccountInfo]:
        """List all ad accounts reachable with the token."""

    # =========================================================================
    # Reporting
    # =========================================================================

    @abstractmethod
    async def fetch_campaigns(
        self, access_token: str, account_id: str
    ) -> list[CampaignInfo]:
        """
        List campaigns in an ad account.

        Args:
            access_token: OAuth access token
            account_id: Platform account ID

        Returns:
            List of campaigns
        """

    @abstractmethod
    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        date_range: DateRange,
        level: ObjectLevel = ObjectLevel.ACCOUNT,
        object_id: Optional[str] = None,
    ) -> list[MetricRow]:
        """
        Get counters for the objects at ``level`` over ``date_range``.

        Args:
            access_token: OAuth access token
            account_id: Platform account ID
            date_range: Reporting window
            level: Granularity of the returned rows
            object_id: Restrict to one object (defaults to the whole account)

        Returns:
            One row per object at the requested level
        """

    # =========================================================================
    # Utility Methods
    # =========================================================================

    def _log_operation(self, operation: str, **kwargs):
        """Log an adapter operation."""
        self.logger.info(f"adapter_{operation}", **kwargs)

    def _log_error(self, operation: str, error: Exception, **kwargs):
        """Log an adapter error."""
        self.logger.error(
            f"adapter_{operation}_error",
            error=str(error),
            error_type=type(error).__name__,
            **kwargs,
        )


def to_int(value: Any) -> int:
    """Parse a counter that platforms may return as a string or float."""
    if value in (None, ""):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def to_float(value: Any) -> float:
    if value in (None, ""):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0
