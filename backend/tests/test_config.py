"""
Tests for settings parsing.
"""

from adconnect.config import Settings


def test_defaults():
    settings = Settings(_env_file=None)

    assert settings.plan_connection_limits == {"FREE": 1, "BASIC": 3, "PRO": 10, "ENTERPRISE": 999}
    assert settings.token_expiry_skew_seconds == 60
    assert settings.retry_max_retries == 3
    assert settings.retry_transient_only is True
    assert settings.metrics_port is None
    assert settings.is_development


def test_meta_scopes_accepts_comma_separated_string():
    settings = Settings(_env_file=None, meta_scopes="ads_read, business_management,")

    assert settings.meta_scopes == ["ads_read", "business_management"]


def test_environment_variables_override_defaults(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "production")
    monkeypatch.setenv("TOKEN_EXPIRY_SKEW_SECONDS", "120")
    monkeypatch.setenv("PLAN_CONNECTION_LIMITS", '{"FREE": 2, "PRO": 20}')

    settings = Settings(_env_file=None)

    assert settings.is_production
    assert settings.token_expiry_skew_seconds == 120
    assert settings.plan_connection_limits == {"FREE": 2, "PRO": 20}
