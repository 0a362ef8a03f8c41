"""Circuit breaker pattern implementation for calls to the ledger RPC."""
import asyncio
import time
import functools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .errors import CircuitOpenError

logger = structlog.get_logger()


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """Thresholds and timings for one breaker."""
    failure_threshold: int = 5      # failures inside the window before opening
    failure_window: float = 60.0    # seconds
    base_cooldown: float = 60.0     # seconds spent open after the first trip
    max_cooldown: float = 600.0


StateListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    Implements the Circuit Breaker pattern to prevent cascading failures.

    When the ledger RPC is experiencing issues, calling it repeatedly can worsen the problem.
    The Circuit Breaker stops calls once failures exceed a threshold, allowing it time to recover.

    Circuit states:
    - CLOSED: Normal operation, calls pass through to the service
    - OPEN: Calls fail immediately with CircuitOpenError until the cooldown ends
    - HALF_OPEN: Exactly one probe call is let through; success closes the
      circuit, failure reopens it with a doubled cooldown (capped)

    Errors that carry ``retryable = False`` (contract and validation
    rejections) prove the endpoint answered and are not counted as failures.

    All state changes happen between awaits, so a single event loop needs no locking.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        listeners: Optional[List[StateListener]] = None,
    ):
        """
        Initialize a new Circuit Breaker.

        Args:
            name: Upstream endpoint this breaker guards
            config: Thresholds and timings
            clock: Monotonic time source in seconds
            listeners: Callbacks invoked as ``listener(name, old, new)`` on transitions
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._listeners = list(listeners or [])

        # Internal state
        self._state = CircuitState.CLOSED
        self._failure_times: List[float] = []
        self.cooldown = self.config.base_cooldown
        self.open_until = 0.0
        self._probe_in_flight = False

    def __call__(self, func):
        """Use as a decorator on coroutine functions that might fail."""
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.call(func, *args, **kwargs)
        return wrapper

    @property
    def state(self) -> CircuitState:
        """Current state; an expired OPEN circuit reports HALF_OPEN."""
        if self._state == CircuitState.OPEN and self._clock() >= self.open_until:
            self._transition(CircuitState.HALF_OPEN)
        return self._state

    @property
    def probing(self) -> bool:
        """True while the single half-open trial call is running."""
        return self._probe_in_flight

    @property
    def failure_count(self) -> int:
        self._prune(self._clock())
        return len(self._failure_times)

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpenError: If the circuit is open, or a half-open probe is already running
        """
        state = self.state
        if state == CircuitState.OPEN:
            retry_in = max(0.0, self.open_until - self._clock())
            logger.debug("circuit_breaker_rejected", endpoint=self.name, seconds_remaining=retry_in)
            raise CircuitOpenError(self.name, retry_in)
        if state == CircuitState.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name)
            self._probe_in_flight = True
            logger.info("circuit_breaker_probe", endpoint=self.name)

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Call the protected coroutine function with circuit breaker protection.

        Args:
            func: The coroutine function to call
            *args, **kwargs: Arguments to pass to the function

        Returns:
            The result of the function call

        Raises:
            CircuitOpenError: If the circuit is open
            Exception: Any exception raised by the function
        """
        self.before_call()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            self._probe_in_flight = False
            raise
        except Exception as e:
            if getattr(e, "retryable", True):
                self.record_failure(e)
            else:
                self.record_success()
            raise
        self.record_success()
        return result

    def record_success(self) -> None:
        self._probe_in_flight = False
        if self._state == CircuitState.HALF_OPEN:
            logger.info("circuit_breaker_closed", endpoint=self.name)
            self.cooldown = self.config.base_cooldown
            self._transition(CircuitState.CLOSED)
        self._failure_times.clear()

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        now = self._clock()
        self._probe_in_flight = False

        if self._state == CircuitState.HALF_OPEN:
            self.cooldown = min(self.cooldown * 2, self.config.max_cooldown)
            logger.warning("circuit_breaker_recovery_failed",
                           endpoint=self.name,
                           cooldown=self.cooldown,
                           exception=str(error) if error else None)
            self._open(now)
            return

        self._failure_times.append(now)
        self._prune(now)
        if self._state == CircuitState.CLOSED and len(self._failure_times) >= self.config.failure_threshold:
            logger.warning("circuit_breaker_tripped",
                           endpoint=self.name,
                           failure_count=len(self._failure_times),
                           cooldown=self.cooldown,
                           exception=str(error) if error else None)
            self._open(now)

    def reset(self) -> None:
        """Reset the circuit breaker to closed state."""
        self._failure_times.clear()
        self.cooldown = self.config.base_cooldown
        self.open_until = 0.0
        self._probe_in_flight = False
        self._transition(CircuitState.CLOSED)
        logger.info("circuit_breaker_reset", endpoint=self.name)

    def force_open(self) -> None:
        """Manually force the circuit into open state."""
        self._open(self._clock())
        logger.warning("circuit_breaker_forced_open", endpoint=self.name)

    def get_state(self) -> Dict[str, Any]:
        """Get the current state of the circuit breaker."""
        state = self.state
        return {
            'endpoint': self.name,
            'state': state.value,
            'failure_count': self.failure_count,
            'cooldown': self.cooldown,
            'open_until': self.open_until if state == CircuitState.OPEN else None,
        }

    def _open(self, now: float) -> None:
        self.open_until = now + self.cooldown
        self._failure_times.clear()
        self._transition(CircuitState.OPEN)

    def _prune(self, now: float) -> None:
        horizon = now - self.config.failure_window
        self._failure_times = [t for t in self._failure_times if t > horizon]

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        for listener in self._listeners:
            listener(self.name, old_state, new_state)


class CircuitBreakerRegistry:
    """One breaker per upstream endpoint, created on first use."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        listener: Optional[StateListener] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._listener = listener
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, endpoint: str) -> CircuitBreaker:
        breaker = self._breakers.get(endpoint)
        if breaker is None:
            listeners = [self._listener] if self._listener else []
            breaker = CircuitBreaker(endpoint, self.config, clock=self._clock, listeners=listeners)
            self._breakers[endpoint] = breaker
        return breaker

    def __contains__(self, endpoint: str) -> bool:
        return endpoint in self._breakers

    def states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_state() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()
