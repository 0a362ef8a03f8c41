"""Key/value validation and sensitive-data screening for the ledger cache."""

from .cache_validator import (
    CachePolicyDecision,
    SecurityValidator,
    sanitize_key,
    serialize_value,
)
from .rate_limiter import KeyRateLimiter

__all__ = [
    'CachePolicyDecision',
    'SecurityValidator',
    'sanitize_key',
    'serialize_value',
    'KeyRateLimiter',
]
