"""
Pydantic models exchanged between the services and their callers.

ORM rows never leave the services; callers receive these models with
credentials already decrypted.
"""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from adconnect.core.enums import ObjectLevel, PlanTier, Platform


# =============================================================================
# OAuth
# =============================================================================

class TokenData(BaseModel):
    """OAuth token data."""
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_type: str = "Bearer"
    expires_at: Optional[datetime] = None
    scopes: list[str] = []


# =============================================================================
# Connections
# =============================================================================

class ConnectionCreate(BaseModel):
    """Credential for one external ad account, as handed over by the OAuth flow."""
    user_id: str
    platform: Platform
    account_id: str = Field(min_length=1)
    account_name: str = ""
    access_token: str = Field(min_length=1, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None


class ConnectionUpdate(BaseModel):
    """
    Partial update of a connection.

    Only fields explicitly set are written, so ``refresh_token=None`` clears
    the stored refresh token while an omitted field leaves it untouched.
    """
    account_name: Optional[str] = None
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None


class ConnectionRecord(BaseModel):
    """A stored connection with decrypted credentials."""
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    platform: Platform
    account_id: str
    account_name: str
    access_token: Optional[str] = Field(default=None, repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class ConnectionLimits(BaseModel):
    """Quota usage for a user."""
    current: int
    max: int
    profile: PlanTier
    remaining: int


class AvailableAccount(BaseModel):
    """An account reachable with a temporary token."""
    account_id: str
    account_name: str
    currency: Optional[str] = None
    status: Optional[str] = None
    already_connected: bool = False


# =============================================================================
# Metrics
# =============================================================================

class MetricPayload(BaseModel):
    """Normalized counters plus ratios derived from them."""
    impressions: int = 0
    clicks: int = 0
    spend: float = 0.0
    reach: int = 0
    conversions: int = 0
    conversion_value: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    cost_per_conversion: float = 0.0
    conversion_rate: float = 0.0


class CampaignData(BaseModel):
    campaign_id: str
    name: str
    status: str
    objective: Optional[str] = None
    metrics: MetricPayload = Field(default_factory=MetricPayload)


class ObjectMetrics(BaseModel):
    """Metrics of one object at the requested level."""
    object_id: str
    object_name: Optional[str] = None
    metrics: MetricPayload


class ConnectionSummary(BaseModel):
    id: str
    platform: Platform
    account_id: str
    account_name: str


class DateWindow(BaseModel):
    since: date
    until: date


class AccountData(BaseModel):
    """Collected data for one connection over a date range."""
    connection: ConnectionSummary
    date_range: DateWindow
    level: ObjectLevel = ObjectLevel.ACCOUNT
    totals: MetricPayload
    campaigns: list[CampaignData] = []
    breakdown: list[ObjectMetrics] = []
    collected_at: datetime
    from_cache: bool = False


class FailedCollection(BaseModel):
    connection_id: str
    error: str
    error_type: str


class BatchSummary(BaseModel):
    total: int
    successful: int
    failed: int


class BatchResult(BaseModel):
    """Outcome of collecting several connections; never raised as a whole."""
    successful: list[AccountData] = []
    failed: list[FailedCollection] = []
    summary: BatchSummary

