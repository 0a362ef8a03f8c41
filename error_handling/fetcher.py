"""
Resilient execution of ledger RPC calls.

Each call goes through the circuit breaker of its endpoint; inside the
breaker the retry policy drives individual attempts, each bounded by its
own timeout. The breaker only sees the final outcome of the retry loop.
"""
import asyncio
import dataclasses
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitBreakerRegistry, CircuitState
from .errors import UpstreamError
from .retry import RetryPolicy, retry_async

logger = structlog.get_logger()

DEFAULT_ENDPOINT = "default"


class ResilientFetcher:
    """Retry/backoff plus a per-endpoint circuit breaker around upstream calls."""

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        call_timeout: Optional[float] = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        metrics: Any = None,
    ):
        """
        Args:
            retry_policy: Backoff schedule applied inside the breaker
            breaker_config: Shared configuration for every endpoint breaker
            call_timeout: Per-attempt timeout in seconds, None for no timeout
            clock: Monotonic time source for the breakers
            sleep: Awaitable sleep used between retries
            metrics: Optional MetricsCollector receiving retry and breaker events
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self.call_timeout = call_timeout
        self._sleep = sleep
        self._metrics = metrics
        self.breakers = CircuitBreakerRegistry(
            breaker_config, clock=clock, listener=self._on_state_change
        )

    async def execute(
        self,
        fetch_fn: Callable[[], Awaitable[Any]],
        endpoint: str = DEFAULT_ENDPOINT,
    ) -> Any:
        """
        Run ``fetch_fn`` under the breaker for ``endpoint``.

        Raises:
            CircuitOpenError: Without calling ``fetch_fn`` when the breaker is open
            UpstreamError: The classified failure once retries are exhausted or
                the error is not retryable
        """
        breaker = self.breakers.get(endpoint)
        return await breaker.call(self._attempt_with_retry, fetch_fn, endpoint, breaker)

    async def _attempt_with_retry(
        self,
        fetch_fn: Callable[[], Awaitable[Any]],
        endpoint: str,
        breaker: CircuitBreaker,
    ) -> Any:
        policy = self.retry_policy
        if breaker.probing:
            # A half-open trial is one attempt; its outcome alone decides the circuit.
            policy = dataclasses.replace(policy, max_retries=0)
        return await retry_async(
            fetch_fn,
            policy,
            attempt_timeout=self.call_timeout,
            sleep=self._sleep,
            on_retry=self._on_retry(endpoint),
            operation_name=endpoint,
        )

    def _on_retry(self, endpoint: str):
        def hook(retry_number: int, error: UpstreamError, delay: float) -> None:
            if self._metrics is not None:
                self._metrics.record_event("upstream_retry", endpoint=endpoint,
                                           attempt=retry_number,
                                           error=type(error).__name__,
                                           delay=delay)
        return hook

    def _on_state_change(self, endpoint: str, old: CircuitState, new: CircuitState) -> None:
        logger.info("circuit_state_changed", endpoint=endpoint, old=old.value, new=new.value)
        if self._metrics is not None:
            self._metrics.record_event("circuit_state_change", endpoint=endpoint,
                                       old=old.value, new=new.value)

    def breaker_states(self) -> Dict[str, Dict[str, Any]]:
        return self.breakers.states()
