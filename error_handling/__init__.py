"""
Error handling for calls to the ledger RPC: the error taxonomy, retry with
backoff, and per-endpoint circuit breakers.
"""

from .errors import (
    CacheError,
    CacheValidationError,
    InvalidKey,
    KeyTooLong,
    ValueTooLarge,
    SensitiveDataRejected,
    RateLimitExceeded,
    UpstreamError,
    NetworkError,
    UpstreamTimeoutError,
    RateLimitError,
    ContractError,
    LedgerValidationError,
    UnknownUpstreamError,
    CircuitOpenError,
    classify_error,
)
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .retry import RetryPolicy, retry_async
from .fetcher import ResilientFetcher

__all__ = [
    'CacheError',
    'CacheValidationError',
    'InvalidKey',
    'KeyTooLong',
    'ValueTooLarge',
    'SensitiveDataRejected',
    'RateLimitExceeded',
    'UpstreamError',
    'NetworkError',
    'UpstreamTimeoutError',
    'RateLimitError',
    'ContractError',
    'LedgerValidationError',
    'UnknownUpstreamError',
    'CircuitOpenError',
    'classify_error',
    'CircuitBreaker',
    'CircuitBreakerConfig',
    'CircuitBreakerRegistry',
    'CircuitState',
    'RetryPolicy',
    'retry_async',
    'ResilientFetcher',
]
