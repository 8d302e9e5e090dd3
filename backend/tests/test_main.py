"""
Tests for service wiring and the startup/shutdown lifespan.
"""

from datetime import timedelta

import pytest

from adconnect.config import Settings
from adconnect.core.enums import Platform
from adconnect.main import build_services, lifespan


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, encryption_key="test-encryption-secret", **overrides)


def test_build_services_shares_components(session_factory, adapter_factory):
    services = build_services(_settings(), session_factory, adapter_factory=adapter_factory)

    assert services.orchestrator.store is services.store
    assert services.orchestrator.token_manager is services.token_manager
    assert services.orchestrator.cache is services.cache
    assert services.orchestrator.temp_tokens is services.temp_tokens
    assert services.oauth.state_store is services.state_store
    assert services.sweeper.stores == [services.state_store, services.temp_tokens]


def test_build_services_applies_settings(session_factory):
    services = build_services(
        _settings(
            token_expiry_skew_seconds=300,
            plan_connection_limits={"FREE": 5},
            facebook_cache_ttl_hours=1,
            retry_max_retries=0,
            retry_transient_only=False,
            oauth_state_ttl_minutes=1,
            temp_token_ttl_minutes=2,
        ),
        session_factory,
    )

    assert services.token_manager.skew == timedelta(seconds=300)
    assert services.store.plan_limits == {"FREE": 5}
    assert services.cache.ttls[Platform.FACEBOOK] == timedelta(hours=1)
    assert services.orchestrator.retry_policy.max_retries == 0
    assert services.orchestrator.retry_policy.retry_if is None
    assert services.state_store.ttl == timedelta(minutes=1)
    assert services.temp_tokens.ttl == timedelta(minutes=2)


@pytest.mark.asyncio
async def test_lifespan_runs_sweeper(session_factory, make_user):
    user = await make_user()

    async with lifespan(_settings(log_format="console"), session_factory) as services:
        assert services.sweeper.running
        assert await services.store.limits(user.id, Platform.GOOGLE) is not None

    assert not services.sweeper.running
