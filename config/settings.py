"""Configuration profiles for the ledger cache.

Settings are read from ``LEDGER_CACHE_*`` environment variables on top of a
per-environment profile (development, staging, production, test). Nested
sections use ``__`` as delimiter, e.g. ``LEDGER_CACHE_RETRY__MAX_RETRIES=5``.
"""
import copy
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


DEFAULT_SENSITIVE_PATTERNS = [
    r"(?i)passw(or)?d",
    r"(?i)secret",
    r"(?i)\btoken\b|access_token|refresh_token|auth_token",
    r"(?i)private[_\s-]?key",
    r"(?i)api[_\s-]?key",
    r"(?i)mnemonic|seed[_\s-]?phrase",
    r"\bS[A-Z2-7]{55}\b",  # Stellar secret seed
]


class SecurityRules(BaseModel):
    """Limits and patterns applied before anything reaches the store."""
    sensitive_patterns: List[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_PATTERNS))
    max_key_length: int = Field(default=256, gt=0)
    max_value_bytes: int = Field(default=1024 * 1024, gt=0)
    reject_sensitive: bool = False
    rate_limit_per_key: int = Field(default=0, ge=0)  # 0 disables
    rate_limit_window: float = Field(default=60.0, gt=0)


class RetrySettings(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=1.0, ge=0)
    multiplier: float = Field(default=2.0, ge=1)
    jitter_max: float = Field(default=0.25, ge=0)
    max_delay: float = Field(default=10.0, ge=0)


class BreakerSettings(BaseModel):
    failure_threshold: int = Field(default=5, gt=0)
    failure_window: float = Field(default=60.0, gt=0)
    base_cooldown: float = Field(default=60.0, gt=0)
    max_cooldown: float = Field(default=600.0, gt=0)
    call_timeout: Optional[float] = Field(default=30.0, gt=0)


class HealthThresholds(BaseModel):
    """Ceilings and floors used by ``MetricsCollector.check_health``."""
    min_hit_rate: float = Field(default=0.5, ge=0, le=1)
    max_size_fraction: float = Field(default=0.9, gt=0, le=1)
    max_evictions_per_minute: float = Field(default=30.0, ge=0)
    max_invalidations_per_minute: float = Field(default=60.0, ge=0)
    min_samples: int = Field(default=20, ge=0)


class CacheSettings(BaseSettings):
    """Runtime configuration for the ledger cache."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_CACHE_",
        env_nested_delimiter="__",
        validate_assignment=True,
        extra="forbid",
    )

    environment: Environment = Environment.DEVELOPMENT

    # Store
    default_ttl: float = Field(default=300.0, gt=0)
    max_size: int = Field(default=100, gt=0)
    stale_while_revalidate: bool = True
    per_key_ttl_overrides: Dict[str, float] = Field(default_factory=dict)

    security_rules: SecurityRules = Field(default_factory=SecurityRules)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    breaker: BreakerSettings = Field(default_factory=BreakerSettings)
    health: HealthThresholds = Field(default_factory=HealthThresholds)

    # Logging
    log_level: str = "INFO"
    json_logs: bool = True

    # Diagnostics API
    diagnostics_host: str = "127.0.0.1"
    diagnostics_port: int = 8090

    @classmethod
    def for_environment(cls, environment: Any = None, **overrides: Any) -> "CacheSettings":
        """
        Build settings for a deployment profile.

        Environment variables win over profile defaults; explicit keyword
        overrides win over both.

        Args:
            environment: Profile name or ``Environment``; read from
                ``LEDGER_CACHE_ENVIRONMENT`` when omitted
            **overrides: Field values to force

        Returns:
            The resolved settings
        """
        if environment is not None:
            overrides["environment"] = Environment(environment)
        settings = cls(**overrides)

        profile = PROFILE_DEFAULTS[settings.environment]
        update = {
            name: copy.deepcopy(value)
            for name, value in profile.items()
            if name not in settings.model_fields_set
        }
        if not update:
            return settings
        return cls(**{**settings.model_dump(exclude_unset=True), **update})

    def ttl_for(self, key: str) -> float:
        """Resolve the TTL for ``key`` from the longest matching prefix override."""
        best = None
        for prefix, ttl in self.per_key_ttl_overrides.items():
            if key.startswith(prefix) and (best is None or len(prefix) > len(best[0])):
                best = (prefix, ttl)
        return best[1] if best else self.default_ttl


# Per-profile defaults. TTLs mirror the ledger data classes: group status
# changes often, member lists less so, transaction history rarely.
PROFILE_DEFAULTS: Dict[Environment, Dict[str, Any]] = {
    Environment.DEVELOPMENT: {
        "default_ttl": 60.0,
        "max_size": 100,
        "log_level": "DEBUG",
        "json_logs": False,
    },
    Environment.STAGING: {
        "default_ttl": 300.0,
        "max_size": 500,
        "per_key_ttl_overrides": {
            "group:": 30.0,
            "groups:": 45.0,
            "user:": 60.0,
        },
    },
    Environment.PRODUCTION: {
        "default_ttl": 300.0,
        "max_size": 1000,
        "per_key_ttl_overrides": {
            "group:": 30.0,
            "groups:": 45.0,
            "user:": 60.0,
        },
        "security_rules": SecurityRules(reject_sensitive=True, rate_limit_per_key=100),
        "log_level": "INFO",
    },
    Environment.TEST: {
        "default_ttl": 5.0,
        "max_size": 50,
        "retry": RetrySettings(max_retries=2, base_delay=0.0, jitter_max=0.0, max_delay=0.0),
        "breaker": BreakerSettings(failure_threshold=3, base_cooldown=1.0, max_cooldown=8.0, call_timeout=1.0),
        "log_level": "WARNING",
    },
}
