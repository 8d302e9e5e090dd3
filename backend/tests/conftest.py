"""
Shared test fixtures for the adconnect test suite.

The suite runs against a temporary SQLite file through aiosqlite instead of a
real PostgreSQL instance. A file (rather than ``:memory:``) lets concurrent
sessions see each other's commits, which the batch and single-flight tests
rely on.
"""

import asyncio
import uuid
from datetime import date, timedelta
from typing import Callable, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from adconnect.adapters.base import (
    AdAccountInfo,
    CampaignInfo,
    DateRange,
    MetricRow,
    PlatformAdsClient,
    RefreshedToken,
)
from adconnect.core.clock import utcnow
from adconnect.core.database import create_session_factory, init_db
from adconnect.core.enums import ObjectLevel, PlanTier, Platform
from adconnect.core.ephemeral import TempTokenStore
from adconnect.core.retry import RetryPolicy
from adconnect.core.security import TokenCipher
from adconnect.models import User
from adconnect.schemas import ConnectionCreate
from adconnect.services.connection_store import ConnectionStore
from adconnect.services.metric_cache import MetricCache
from adconnect.services.orchestrator import ConnectionOrchestrator
from adconnect.services.token_manager import TokenManager

TEST_SECRET = "test-encryption-secret"
PLAN_LIMITS = {"FREE": 1, "BASIC": 3, "PRO": 10, "ENTERPRISE": 999}


# ---------------------------------------------------------------------------
# Fake platform adapter
# ---------------------------------------------------------------------------

class FakeAdapter(PlatformAdsClient):
    """In-memory PlatformAdsClient recording every call."""

    def __init__(self, platform: Platform = Platform.FACEBOOK):
        super().__init__(platform=platform)
        self.campaigns = [
            CampaignInfo(campaign_id="c1", name="Spring Sale", status="ACTIVE"),
            CampaignInfo(campaign_id="c2", name="Retargeting", status="PAUSED"),
        ]
        self.rows = [
            MetricRow(object_id="c1", impressions=1000, clicks=50, spend=100.0, conversions=5),
            MetricRow(object_id="c2", impressions=2000, clicks=100, spend=50.0, conversions=5),
        ]
        self.accounts = [
            AdAccountInfo(account_id="111", account_name="Main"),
            AdAccountInfo(account_id="222", account_name="Secondary"),
        ]
        self.token_valid = True
        self.refresh_result: Optional[RefreshedToken] = RefreshedToken(
            access_token="refreshed-access", expires_in=3600
        )
        self.refresh_error: Optional[Exception] = None
        self.refresh_delay = 0.0
        self.fetch_errors: list[Exception] = []
        self.calls: dict[str, int] = {}
        self.seen_tokens: list[str] = []

    def _record(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1

    async def validate_token(self, access_token: str) -> bool:
        self._record("validate_token")
        return self.token_valid

    async def refresh_token(self, refresh_token: str) -> RefreshedToken:
        self._record("refresh_token")
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_result

    async def list_accounts(self, access_token: str) -> list[AdAccountInfo]:
        self._record("list_accounts")
        return list(self.accounts)

    async def fetch_campaigns(self, access_token: str, account_id: str) -> list[CampaignInfo]:
        self._record("fetch_campaigns")
        self.seen_tokens.append(access_token)
        if self.fetch_errors:
            raise self.fetch_errors.pop(0)
        return list(self.campaigns)

    async def fetch_metrics(
        self,
        access_token: str,
        account_id: str,
        date_range: DateRange,
        level: ObjectLevel = ObjectLevel.ACCOUNT,
        object_id: Optional[str] = None,
    ) -> list[MetricRow]:
        self._record("fetch_metrics")
        return list(self.rows)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'adconnect.db'}",
        connect_args={"timeout": 30},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def make_user(session_factory) -> Callable:
    async def _make_user(plan: PlanTier = PlanTier.FREE) -> User:
        async with session_factory() as db:
            user = User(
                id=str(uuid.uuid4()),
                email=f"{uuid.uuid4().hex[:8]}@example.com",
                plan=plan,
            )
            db.add(user)
            await db.commit()
            return user

    return _make_user


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def cipher() -> TokenCipher:
    return TokenCipher(TEST_SECRET)


@pytest.fixture
def store(session_factory, cipher) -> ConnectionStore:
    return ConnectionStore(session_factory, cipher=cipher, plan_limits=PLAN_LIMITS)


@pytest.fixture
def adapters() -> dict[Platform, FakeAdapter]:
    return {platform: FakeAdapter(platform) for platform in Platform}


@pytest.fixture
def adapter_factory(adapters) -> Callable[[str], FakeAdapter]:
    return lambda platform: adapters[Platform(platform)]


@pytest.fixture
def token_manager(store, adapter_factory) -> TokenManager:
    return TokenManager(
        store,
        adapter_factory=adapter_factory,
        skew_seconds=60,
        validate_without_expiry=True,
    )


@pytest.fixture
def metric_cache(session_factory) -> MetricCache:
    return MetricCache(session_factory)


@pytest.fixture
def temp_tokens() -> TempTokenStore:
    return TempTokenStore(timedelta(minutes=10))


@pytest.fixture
def orchestrator(store, token_manager, metric_cache, adapter_factory, temp_tokens):
    return ConnectionOrchestrator(
        store,
        token_manager,
        metric_cache,
        adapter_factory=adapter_factory,
        temp_tokens=temp_tokens,
        retry_policy=RetryPolicy(max_retries=2, base_delay=0.0),
    )


@pytest.fixture
def make_connection(store) -> Callable:
    async def _make_connection(
        user: User,
        platform: Platform = Platform.FACEBOOK,
        account_id: str = "111",
        access_token: str = "access-token",
        refresh_token: Optional[str] = "refresh-token",
        expires_in: Optional[timedelta] = timedelta(hours=1),
    ):
        return await store.create(
            ConnectionCreate(
                user_id=user.id,
                platform=platform,
                account_id=account_id,
                account_name=f"Account {account_id}",
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=utcnow() + expires_in if expires_in is not None else None,
            )
        )

    return _make_connection


@pytest.fixture
def date_range() -> DateRange:
    return DateRange(since=date(2024, 1, 1), until=date(2024, 1, 31))
