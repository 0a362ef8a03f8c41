"""
Error taxonomy for the ledger cache.

Two families cross the public surface:

- validation errors, raised synchronously at the store boundary and never
  retried;
- upstream errors, produced exclusively by ``classify_error`` at the point
  where a raw exception from the ledger RPC first enters the system.
"""
import asyncio
from typing import Any, Optional


class CacheError(Exception):
    """Base class for every error raised by the cache layer."""


# ---------------------------------------------------------------------------
# Validation boundary
# ---------------------------------------------------------------------------

class CacheValidationError(CacheError, ValueError):
    """A key or value was refused before reaching the store."""


class InvalidKey(CacheValidationError):
    pass


class KeyTooLong(CacheValidationError):
    def __init__(self, length: int, limit: int):
        self.length = length
        self.limit = limit
        super().__init__(f"Cache key too long: {length} characters (max {limit})")


class ValueTooLarge(CacheValidationError):
    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Cache entry too large: {size} bytes (max {limit})")


class SensitiveDataRejected(CacheValidationError):
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Refusing to cache '{key}': {reason}")


class RateLimitExceeded(CacheValidationError):
    def __init__(self, key: str, limit: int, window: float):
        self.key = key
        self.limit = limit
        self.window = window
        super().__init__(f"Rate limit exceeded for cache key: {key} ({limit} per {window:g}s)")


# ---------------------------------------------------------------------------
# Upstream boundary
# ---------------------------------------------------------------------------

class UpstreamError(CacheError):
    """
    A classified failure of the ledger RPC call.

    Attributes:
        retryable: Whether another attempt could plausibly succeed
        severity: One of ``low``, ``medium``, ``high``, ``critical``
        cause: The raw exception this was classified from
    """

    retryable = True
    severity = "high"
    default_message = "Ledger request failed"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        self.message = message or self.default_message
        self.cause = cause
        super().__init__(self.message)


class NetworkError(UpstreamError):
    default_message = "Network connection error. Please check your connection."


class UpstreamTimeoutError(UpstreamError):
    default_message = "The ledger did not respond in time"


class RateLimitError(UpstreamError):
    severity = "medium"
    default_message = "The ledger is rate limiting requests"

    def __init__(
        self,
        message: Optional[str] = None,
        cause: Optional[BaseException] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, cause)
        self.retry_after = retry_after


class ContractError(UpstreamError):
    retryable = False
    default_message = "Smart contract execution failed"


class LedgerValidationError(UpstreamError):
    retryable = False
    severity = "medium"
    default_message = "Invalid parameters provided"


class UnknownUpstreamError(UpstreamError):
    severity = "critical"
    default_message = "An unexpected error occurred"


class CircuitOpenError(CacheError):
    """The breaker for ``endpoint`` is open; the network was not touched."""

    retryable = False
    severity = "high"

    def __init__(self, endpoint: str, retry_in: Optional[float] = None):
        self.endpoint = endpoint
        self.retry_in = retry_in
        msg = f"Circuit breaker is open for {endpoint}. Service temporarily unavailable."
        if retry_in is not None:
            msg += f" Retry in {retry_in:.1f}s."
        super().__init__(msg)


RETRYABLE_CODES = {"TRANSACTION_PENDING", "TRY_AGAIN_LATER"}
CONTRACT_CODES = {
    "CONTRACT_ERROR": ("Smart contract execution failed", "high"),
    "INSUFFICIENT_BALANCE": ("Insufficient balance to complete transaction", "medium"),
    "UNAUTHORIZED": ("Wallet authorization required", "medium"),
}
VALIDATION_CODES = {"INVALID_PARAMETERS", "VALIDATION_ERROR"}


def _retry_after(raw: Any) -> Optional[float]:
    value = getattr(raw, "retry_after", None)
    if value is None:
        headers = getattr(raw, "headers", None) or {}
        try:
            value = headers.get("retry-after") or headers.get("Retry-After")
        except AttributeError:
            value = None
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return None


def classify_error(raw: BaseException) -> UpstreamError:
    """
    Map a raw exception from the ledger RPC onto the closed taxonomy.

    Already-classified errors pass through untouched. Unrecognized errors are
    treated as retryable.

    Args:
        raw: Whatever the upstream call raised

    Returns:
        The typed error, with ``cause`` set to ``raw``
    """
    if isinstance(raw, UpstreamError):
        return raw

    name = type(raw).__name__
    message = str(raw)
    lowered = message.lower()
    status = getattr(raw, "status", None) or getattr(raw, "status_code", None)
    code = getattr(raw, "code", None)
    if not isinstance(status, int):
        status = None
    if not isinstance(code, str):
        code = None

    if status == 429 or code == "RATE_LIMIT_EXCEEDED":
        return RateLimitError(cause=raw, retry_after=_retry_after(raw))

    if code in CONTRACT_CODES:
        text, severity = CONTRACT_CODES[code]
        error = ContractError(text, cause=raw)
        error.severity = severity
        return error

    if code in VALIDATION_CODES:
        return LedgerValidationError(cause=raw)

    if isinstance(raw, (asyncio.TimeoutError, TimeoutError)) or name == "TimeoutError" or "timeout" in lowered:
        return UpstreamTimeoutError(cause=raw)

    if code in RETRYABLE_CODES or (status is not None and 500 <= status < 600):
        return NetworkError(cause=raw)

    if isinstance(raw, (ConnectionError, OSError)) or name == "NetworkError" or "network" in lowered:
        return NetworkError(cause=raw)

    # A bare ValueError (e.g. decoding a garbled response) falls through as unknown.
    if status is not None and 400 <= status < 500:
        return LedgerValidationError(cause=raw)

    return UnknownUpstreamError(cause=raw)
