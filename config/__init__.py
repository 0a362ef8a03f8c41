from .settings import (
    BreakerSettings,
    CacheSettings,
    Environment,
    HealthThresholds,
    RetrySettings,
    SecurityRules,
)

__all__ = [
    'BreakerSettings',
    'CacheSettings',
    'Environment',
    'HealthThresholds',
    'RetrySettings',
    'SecurityRules',
]
