"""
Gatekeeper for everything that enters the cache.

Hard checks (key shape, key length, value size) are enforced by the store
on every write. The sensitive-data scan is advisory: callers consult
``should_cache`` or opt into ``enforce`` before writing.
"""
import json
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Pattern

import structlog

from config.settings import DEFAULT_SENSITIVE_PATTERNS, SecurityRules
from error_handling.errors import (
    InvalidKey,
    KeyTooLong,
    RateLimitExceeded,
    SensitiveDataRejected,
    ValueTooLarge,
)
from .rate_limiter import KeyRateLimiter

logger = structlog.get_logger()

# Everything outside this class is replaced with "_" to prevent cache poisoning
DISALLOWED_KEY_CHARS = re.compile(r"[^a-zA-Z0-9:_\-./]")
MAX_KEY_LENGTH = 256
MAX_VALUE_BYTES = 1024 * 1024


@dataclass(frozen=True)
class CachePolicyDecision:
    allowed: bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.allowed


def sanitize_key(key: Any, max_length: int = MAX_KEY_LENGTH) -> str:
    """
    Validate and sanitize a cache key.

    Pure: the same raw key always yields the same sanitized key.

    Raises:
        InvalidKey: If ``key`` is not a non-empty string
        KeyTooLong: If the sanitized key exceeds ``max_length``
    """
    if not isinstance(key, str) or not key:
        raise InvalidKey("Cache key must be a non-empty string")

    sanitized = DISALLOWED_KEY_CHARS.sub("_", key)
    if len(sanitized) > max_length:
        raise KeyTooLong(len(sanitized), max_length)
    return sanitized


def serialize_value(value: Any) -> str:
    """Serialize a value the way it is measured and scanned."""
    return json.dumps(value, default=str, ensure_ascii=False)


class SecurityValidator:
    """Validates keys and values before they reach the store."""

    def __init__(self, rules: Optional[SecurityRules] = None,
                 clock: Optional[Callable[[], float]] = None):
        self.rules = rules or SecurityRules()
        self._patterns: List[Pattern[str]] = [
            re.compile(p) for p in (self.rules.sensitive_patterns or DEFAULT_SENSITIVE_PATTERNS)
        ]
        limiter_args = {"clock": clock} if clock is not None else {}
        self.rate_limiter = KeyRateLimiter(
            max_requests=self.rules.rate_limit_per_key,
            window_size=self.rules.rate_limit_window,
            **limiter_args,
        )

    def validate_key(self, key: Any) -> str:
        return sanitize_key(key, self.rules.max_key_length)

    def validate_value(self, value: Any) -> int:
        """
        Measure the serialized size of ``value``.

        Returns:
            Size in bytes

        Raises:
            ValueTooLarge: Above the configured ceiling (1 MiB by default)
        """
        size = len(serialize_value(value).encode("utf-8"))
        if size > self.rules.max_value_bytes:
            raise ValueTooLarge(size, self.rules.max_value_bytes)
        return size

    def check_rate_limit(self, key: str) -> None:
        if not self.rate_limiter.check_rate_limit(key):
            raise RateLimitExceeded(key, self.rate_limiter.max_requests,
                                    self.rate_limiter.window_size)

    def should_cache(self, key: str, value: Any) -> CachePolicyDecision:
        """
        Scan ``key`` and the serialized ``value`` for sensitive data.

        Returns:
            ``CachePolicyDecision(allowed=False, reason=...)`` on the first match
        """
        for pattern in self._patterns:
            if pattern.search(key):
                return CachePolicyDecision(False, f"key matches sensitive pattern {pattern.pattern!r}")

        try:
            serialized = serialize_value(value)
        except (TypeError, ValueError) as e:
            return CachePolicyDecision(False, f"value is not serializable: {e}")

        for pattern in self._patterns:
            if pattern.search(serialized):
                return CachePolicyDecision(False, f"value matches sensitive pattern {pattern.pattern!r}")
        return CachePolicyDecision(True)

    def enforce(self, key: str, value: Any) -> None:
        """
        Raises:
            SensitiveDataRejected: When ``should_cache`` refuses the pair
        """
        decision = self.should_cache(key, value)
        if not decision.allowed:
            logger.warning("sensitive_data_rejected", key=key, reason=decision.reason)
            raise SensitiveDataRejected(key, decision.reason)
