"""Retry with exponential backoff for individual ledger RPC attempts."""
import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import structlog

from .errors import UpstreamError, UpstreamTimeoutError, classify_error

logger = structlog.get_logger()


@dataclass
class RetryPolicy:
    """
    Backoff schedule: ``base_delay * multiplier ** attempt`` capped at
    ``max_delay``, plus uniform jitter in ``[0, jitter_max]``.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    multiplier: float = 2.0
    jitter_max: float = 0.25
    max_delay: Optional[float] = 10.0

    def compute_delay(
        self,
        attempt: int,
        error: Optional[BaseException] = None,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> float:
        """
        Delay before retry number ``attempt + 1``.

        A server-provided ``retry_after`` hint on ``error`` replaces the schedule,
        still capped at ``max_delay``.
        """
        retry_after = getattr(error, "retry_after", None)
        if retry_after is not None:
            delay = float(retry_after)
            if self.max_delay is not None:
                delay = min(delay, self.max_delay)
            return delay

        delay = self.base_delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter_max > 0:
            delay += jitter(0, self.jitter_max)
        return delay


RetryHook = Callable[[int, UpstreamError, float], None]


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    attempt_timeout: Optional[float] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    on_retry: Optional[RetryHook] = None,
    operation_name: str = "fetch",
) -> Any:
    """
    Run ``operation`` until it succeeds or the policy gives up.

    Every raw failure is classified once; non-retryable errors are raised
    immediately without consuming retries.

    Args:
        operation: Zero-argument coroutine function performing one attempt
        policy: Backoff schedule
        attempt_timeout: Seconds allowed for each attempt, or None
        sleep: Awaitable sleep used between attempts
        on_retry: Called as ``on_retry(retry_number, error, delay)`` before sleeping
        operation_name: Label used in log events

    Returns:
        The operation's result

    Raises:
        UpstreamError: The classified final failure
    """
    attempt = 0
    while True:
        try:
            if attempt_timeout is not None:
                return await asyncio.wait_for(operation(), attempt_timeout)
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as raw:
            if attempt_timeout is not None and isinstance(raw, asyncio.TimeoutError):
                error = UpstreamTimeoutError(
                    f"Ledger did not respond within {attempt_timeout:g}s", cause=raw
                )
            else:
                error = classify_error(raw)

            if not error.retryable or attempt >= policy.max_retries:
                if error.retryable:
                    logger.warning("upstream_retries_exhausted",
                                   operation=operation_name,
                                   attempts=attempt + 1,
                                   error_type=type(error).__name__)
                if error is raw:
                    raise
                raise error from raw

            delay = policy.compute_delay(attempt, error)
            logger.info("upstream_retry",
                        operation=operation_name,
                        attempt=attempt + 1,
                        max_attempts=policy.max_retries + 1,
                        delay=round(delay, 3),
                        error_type=type(error).__name__)
            if on_retry is not None:
                on_retry(attempt + 1, error, delay)
            await sleep(delay)
            attempt += 1
