"""
adconnect - Application Wiring

Configures logging and error tracking, and builds the process-wide service
objects. Host applications enter ``lifespan()`` once at startup:

    async with lifespan() as services:
        data = await services.orchestrator.collect(user_id, connection_id, window)
"""

import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

import sentry_sdk
import structlog
from prometheus_client import start_http_server
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adconnect import __version__
from adconnect.adapters import get_adapter
from adconnect.config import Settings, get_settings
from adconnect.core.database import close_db, create_session_factory
from adconnect.core.ephemeral import (
    OAuthStateStore,
    StoreSweeper,
    TempTokenStore,
    create_state_store,
    create_temp_token_store,
)
from adconnect.core.oauth import OAuthClientFactory
from adconnect.core.security import TokenCipher
from adconnect.services import (
    ConnectionOrchestrator,
    ConnectionStore,
    MetricCache,
    TokenManager,
)
from adconnect.services.metric_cache import default_ttls
from adconnect.services.orchestrator import default_retry_policy

logger = structlog.get_logger()


# =============================================================================
# Logging
# =============================================================================

def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog on top of stdlib logging."""
    settings = settings or get_settings()

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    if settings.log_format == "console":
        renderer = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


# =============================================================================
# Sentry Error Tracking
# =============================================================================

def init_sentry(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    if not settings.sentry_dsn:
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"adconnect@{__version__}",
        traces_sample_rate=0.1 if settings.is_production else 1.0,
    )
    logger.info("sentry_initialized", environment=settings.environment)
    return True


# =============================================================================
# Services
# =============================================================================

@dataclass
class Services:
    """Process-wide service objects."""
    store: ConnectionStore
    token_manager: TokenManager
    cache: MetricCache
    orchestrator: ConnectionOrchestrator
    oauth: OAuthClientFactory
    state_store: OAuthStateStore
    temp_tokens: TempTokenStore
    sweeper: StoreSweeper


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    adapter_factory=get_adapter,
) -> Services:
    """
    Wire the services together.

    Args:
        settings: Configuration (default: environment)
        session_factory: Database sessions (default: the global engine)
        adapter_factory: Platform -> PlatformAdsClient

    Returns:
        Services container
    """
    settings = settings or get_settings()
    session_factory = session_factory or create_session_factory()

    store = ConnectionStore(
        session_factory,
        cipher=TokenCipher(settings.encryption_key),
        plan_limits=settings.plan_connection_limits,
    )
    token_manager = TokenManager(
        store,
        adapter_factory=adapter_factory,
        skew_seconds=settings.token_expiry_skew_seconds,
        validate_without_expiry=settings.validate_tokens_without_expiry,
    )
    cache = MetricCache(session_factory, ttls=default_ttls(settings))
    state_store = create_state_store(settings)
    temp_tokens = create_temp_token_store(settings)

    return Services(
        store=store,
        token_manager=token_manager,
        cache=cache,
        orchestrator=ConnectionOrchestrator(
            store,
            token_manager,
            cache,
            adapter_factory=adapter_factory,
            temp_tokens=temp_tokens,
            retry_policy=default_retry_policy(settings),
        ),
        oauth=OAuthClientFactory(state_store),
        state_store=state_store,
        temp_tokens=temp_tokens,
        sweeper=StoreSweeper(
            [state_store, temp_tokens],
            interval_seconds=settings.ephemeral_sweep_interval_seconds,
        ),
    )


# =============================================================================
# Lifespan
# =============================================================================

@asynccontextmanager
async def lifespan(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[Services, None]:
    """
    Startup and shutdown of the connection core.

    Tables are not created here; run ``init_db`` once against a fresh database.
    """
    settings = settings or get_settings()

    # Startup
    configure_logging(settings)
    init_sentry(settings)
    logger.info(
        "application_starting",
        version=__version__,
        environment=settings.environment,
    )

    if settings.metrics_port:
        start_http_server(settings.metrics_port)
        logger.info("metrics_server_started", port=settings.metrics_port)

    services = build_services(settings, session_factory)
    services.sweeper.start()

    try:
        yield services
    finally:
        # Shutdown
        logger.info("application_shutting_down")
        await services.sweeper.stop()
        await close_db()
        logger.info("database_disconnected")
