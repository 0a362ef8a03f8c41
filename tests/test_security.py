"""Test suite for cache key/value validation and sensitive-data screening."""
import pytest

from config.settings import SecurityRules
from error_handling.errors import (
    CacheValidationError,
    InvalidKey,
    KeyTooLong,
    RateLimitExceeded,
    SensitiveDataRejected,
    ValueTooLarge,
)
from security.cache_validator import (
    MAX_VALUE_BYTES,
    SecurityValidator,
    sanitize_key,
    serialize_value,
)
from security.rate_limiter import KeyRateLimiter


@pytest.fixture
def validator(clock):
    """Create a validator with per-key rate limiting on the fake clock."""
    return SecurityValidator(SecurityRules(rate_limit_per_key=3, rate_limit_window=60), clock=clock)


@pytest.mark.parametrize("raw", [
    "group:1",
    "groups:user:GABC",
    "weird key with spaces & <html>",
    "ünïcødé:🙂",
    "a" * 256,
])
def test_key_sanitization_is_deterministic(raw):
    """Sanitizing the same raw key twice gives the same result, and sanitized keys are fixed points."""
    once = sanitize_key(raw)
    assert sanitize_key(raw) == once
    assert sanitize_key(once) == once


def test_disallowed_characters_replaced():
    assert sanitize_key("group:1/members.v2-x_y") == "group:1/members.v2-x_y"
    assert sanitize_key("a b;c*d") == "a_b_c_d"


def test_invalid_keys_rejected():
    """Empty and non-string keys are rejected."""
    for bad in ("", None, 42, b"bytes"):
        with pytest.raises(InvalidKey):
            sanitize_key(bad)


def test_key_length_limit():
    assert sanitize_key("k" * 256) == "k" * 256
    with pytest.raises(KeyTooLong) as exc_info:
        sanitize_key("k" * 257)
    assert exc_info.value.length == 257
    assert exc_info.value.limit == 256


def test_validation_errors_are_value_errors():
    """Validation errors can be caught as plain ValueError by callers."""
    assert issubclass(InvalidKey, ValueError)
    assert issubclass(KeyTooLong, CacheValidationError)


def test_value_size_limit(validator):
    """Values are measured by their serialized byte size."""
    assert validator.validate_value({"cycle": 1}) == len(serialize_value({"cycle": 1}).encode())

    # The JSON quotes push this just over the ceiling
    with pytest.raises(ValueTooLarge) as exc_info:
        validator.validate_value("x" * (MAX_VALUE_BYTES - 1))
    assert exc_info.value.limit == MAX_VALUE_BYTES


def test_multibyte_values_measured_in_bytes():
    validator = SecurityValidator(SecurityRules(max_value_bytes=10))
    # 4 characters, 3 bytes each, plus two quotes
    with pytest.raises(ValueTooLarge):
        validator.validate_value("€€€€")


@pytest.mark.parametrize("value", [
    {"password": "hunter2"},
    {"note": "my secret plan"},
    {"auth": {"access_token": "abc"}},
    {"private_key": "0xdeadbeef"},
    {"words": "seed phrase goes here"},
    {"seed": "S" + "A" * 55},
])
def test_should_cache_rejects_sensitive_values(validator, value):
    """Anything matching a sensitive-data pattern is refused."""
    decision = validator.should_cache("group:1", value)
    assert decision.allowed is False
    assert decision.reason
    assert not decision


def test_should_cache_rejects_sensitive_keys(validator):
    decision = validator.should_cache("user:1:password", {"ok": True})
    assert decision.allowed is False
    assert "key" in decision.reason


def test_should_cache_allows_ledger_data(validator):
    decision = validator.should_cache("group:1", {
        "id": "1",
        "members": ["GABCDEF", "GHIJKL"],
        "contribution": "100",
        "cycle": 3,
    })
    assert decision.allowed is True
    assert decision.reason is None


def test_custom_patterns():
    validator = SecurityValidator(SecurityRules(sensitive_patterns=[r"ssn"]))
    assert validator.should_cache("k", {"ssn": "123"}).allowed is False
    assert validator.should_cache("k", {"password": "x"}).allowed is True


def test_enforce_raises(validator):
    with pytest.raises(SensitiveDataRejected) as exc_info:
        validator.enforce("k", {"password": "hunter2"})
    assert exc_info.value.key == "k"
    validator.enforce("k", {"cycle": 1})


def test_rate_limit_per_key(validator, clock):
    """Each key gets its own sliding window."""
    for _ in range(3):
        validator.check_rate_limit("hot")
    with pytest.raises(RateLimitExceeded):
        validator.check_rate_limit("hot")

    # Other keys are unaffected
    validator.check_rate_limit("cold")

    clock.advance(60)
    validator.check_rate_limit("hot")


def test_rate_limiter_disabled_by_default():
    limiter = KeyRateLimiter(max_requests=0)
    assert not limiter.enabled
    assert all(limiter.check_rate_limit("k") for _ in range(1000))


def test_rate_limiter_cleanup(clock):
    limiter = KeyRateLimiter(max_requests=5, window_size=10, clock=clock)
    limiter.check_rate_limit("a")
    clock.advance(5)
    limiter.check_rate_limit("b")
    clock.advance(6)

    assert limiter.cleanup() == 1
    limiter.reset_key("b")
    assert limiter.cleanup() == 0


def test_store_enforces_rate_limit(clock):
    """The store rate-limits both reads and writes of a key."""
    from cache.core import CacheStore

    validator = SecurityValidator(SecurityRules(rate_limit_per_key=2), clock=clock)
    store = CacheStore(validator=validator, clock=clock)
    store.set("k", 1)
    store.get("k")
    with pytest.raises(RateLimitExceeded):
        store.get("k")
