"""Test suite for configuration profiles."""
import pytest
from pydantic import ValidationError

from config.settings import CacheSettings, Environment, PROFILE_DEFAULTS


def test_default_settings():
    settings = CacheSettings()
    assert settings.environment == Environment.DEVELOPMENT
    assert settings.default_ttl == 300
    assert settings.max_size == 100
    assert settings.stale_while_revalidate is True
    assert settings.security_rules.max_key_length == 256
    assert settings.security_rules.max_value_bytes == 1024 * 1024
    assert settings.retry.max_retries == 3
    assert settings.breaker.failure_threshold == 5


def test_test_profile():
    settings = CacheSettings.for_environment("test")
    assert settings.environment == Environment.TEST
    assert settings.default_ttl == 5
    assert settings.max_size == 50
    assert settings.retry.base_delay == 0
    assert settings.breaker.failure_threshold == 3


def test_production_profile():
    """Production screens sensitive data and rate-limits hot keys."""
    settings = CacheSettings.for_environment(Environment.PRODUCTION)
    assert settings.max_size == 1000
    assert settings.security_rules.reject_sensitive is True
    assert settings.security_rules.rate_limit_per_key == 100
    assert settings.ttl_for("group:1:status") == 30
    assert settings.ttl_for("groups:all") == 45
    assert settings.ttl_for("something:else") == settings.default_ttl


def test_profile_sections_are_not_shared():
    """Settings built from the same profile own their nested sections."""
    first = CacheSettings.for_environment("production")
    second = CacheSettings.for_environment("production")
    assert first.security_rules is not second.security_rules

    first.security_rules.rate_limit_per_key = 5
    first.per_key_ttl_overrides["group:"] = 1.0
    assert second.security_rules.rate_limit_per_key == 100
    assert second.ttl_for("group:1:status") == 30
    assert CacheSettings.for_environment("production").security_rules.rate_limit_per_key == 100

    test_settings = CacheSettings.for_environment("test")
    test_settings.retry.max_retries = 9
    assert CacheSettings.for_environment("test").retry.max_retries == 2


def test_every_profile_builds():
    for environment in PROFILE_DEFAULTS:
        assert CacheSettings.for_environment(environment).environment == environment


def test_explicit_overrides_win():
    settings = CacheSettings.for_environment("production", max_size=10)
    assert settings.max_size == 10
    assert settings.default_ttl == 300


def test_ttl_for_uses_longest_prefix():
    settings = CacheSettings(per_key_ttl_overrides={"group:": 30, "group:1:": 10})
    assert settings.ttl_for("group:1:status") == 10
    assert settings.ttl_for("group:2:status") == 30


def test_environment_variables(monkeypatch):
    """The profile comes from the environment, and env values beat profile defaults."""
    monkeypatch.setenv("LEDGER_CACHE_ENVIRONMENT", "staging")
    monkeypatch.setenv("LEDGER_CACHE_MAX_SIZE", "7")
    monkeypatch.setenv("LEDGER_CACHE_RETRY__MAX_RETRIES", "5")

    settings = CacheSettings.for_environment()
    assert settings.environment == Environment.STAGING
    assert settings.max_size == 7
    assert settings.retry.max_retries == 5
    assert settings.per_key_ttl_overrides["group:"] == 30


def test_invalid_settings():
    with pytest.raises(ValidationError):
        CacheSettings(max_size=0)
    with pytest.raises(ValidationError):
        CacheSettings(unknown_option=True)
    with pytest.raises(ValueError):
        CacheSettings.for_environment("qa")
