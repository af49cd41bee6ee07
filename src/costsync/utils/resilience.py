"""
Retry-with-backoff and circuit breaking for upstream billing API calls.

Every provider adapter call goes through a ResilientExecutor bound to the
circuit breaker of its (tenant, provider) pair. Breakers live in an
injectable CircuitBreakerRegistry rather than in module globals so that
concurrent tenant syncs and tests never share state by accident.
"""

import asyncio
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

import botocore.exceptions
import httpx

from ..errors import (
    CircuitOpenError,
    CloudProviderError,
    ProviderTimeoutError,
    RateLimitError,
    UpstreamUnavailableError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class RetryPolicy:
    """Retry limits for one upstream call."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    timeout: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt following ``attempt`` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> "RetryPolicy":
        config = config or {}
        return cls(
            max_attempts=int(config.get("max_attempts", cls.max_attempts)),
            base_delay=float(config.get("base_delay", cls.base_delay)),
            max_delay=float(config.get("max_delay", cls.max_delay)),
            timeout=float(config.get("timeout", cls.timeout)),
        )


class CircuitBreaker:
    """Failure isolation for one (tenant, provider) upstream."""

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: float | None = None
        self._trials_in_flight = 0

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition(self, new_state: CircuitState, reason: str):
        old_state = self._state
        self._state = new_state
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(f"Circuit breaker {self.name}: {old_state.value} -> {new_state.value} ({reason})")

    def allow_request(self) -> bool:
        """Return True if a call may go to the upstream right now."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = self._clock() - (self._opened_at or 0.0)
                if elapsed < self.reset_timeout:
                    return False
                self._transition(
                    CircuitState.HALF_OPEN, f"reset timeout of {self.reset_timeout}s elapsed"
                )
                self._trials_in_flight = 0

            if self._trials_in_flight < self.half_open_max_calls:
                self._trials_in_flight += 1
                return True
            return False

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.CLOSED, "trial call succeeded")
                self._trials_in_flight = 0
            self._failure_count = 0
            self._opened_at = None

    def record_failure(self, error: BaseException | None = None):
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._opened_at = self._clock()
                self._trials_in_flight = 0
                self._transition(CircuitState.OPEN, f"trial call failed: {error!r}")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._opened_at = self._clock()
                self._transition(
                    CircuitState.OPEN,
                    f"{self._failure_count} consecutive failures, last: {error!r}",
                )

    def reset(self):
        """Manually close the breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._opened_at = None
            self._trials_in_flight = 0
        logger.info(f"Circuit breaker {self.name} manually reset")

    def get_state(self) -> dict[str, Any]:
        with self._lock:
            retry_in = None
            if self._state == CircuitState.OPEN and self._opened_at is not None:
                retry_in = max(0.0, self.reset_timeout - (self._clock() - self._opened_at))
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "retry_in_seconds": retry_in,
            }


class CircuitBreakerRegistry:
    """Owns one breaker per (tenant, provider) key."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max_calls: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._breakers: dict[tuple[str, str], CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: dict[str, Any] | None, **kwargs) -> "CircuitBreakerRegistry":
        config = config or {}
        return cls(
            failure_threshold=int(config.get("failure_threshold", 5)),
            reset_timeout=float(config.get("reset_timeout", 60.0)),
            half_open_max_calls=int(config.get("half_open_max_calls", 3)),
            **kwargs,
        )

    def get(self, tenant: str, provider: str) -> CircuitBreaker:
        key = (tenant, provider)
        breaker = self._breakers.get(key)
        if breaker is not None:
            return breaker
        with self._lock:
            breaker = self._breakers.get(key)
            if breaker is None:
                breaker = CircuitBreaker(
                    f"{tenant}/{provider}",
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    half_open_max_calls=self.half_open_max_calls,
                    clock=self._clock,
                )
                self._breakers[key] = breaker
            return breaker

    def reset(self, tenant: str, provider: str) -> bool:
        breaker = self._breakers.get((tenant, provider))
        if breaker is None:
            return False
        breaker.reset()
        return True

    def evict(self, tenant: str) -> int:
        """Drop every breaker belonging to a tenant."""
        with self._lock:
            keys = [key for key in self._breakers if key[0] == tenant]
            for key in keys:
                del self._breakers[key]
        return len(keys)

    def snapshot(self) -> list[dict[str, Any]]:
        return [breaker.get_state() for breaker in list(self._breakers.values())]


def classify_exception(
    exc: BaseException, provider: str | None = None
) -> CloudProviderError | None:
    """Translate transport-level exceptions into the error taxonomy, None if unknown."""
    if isinstance(exc, CloudProviderError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return ProviderTimeoutError(f"Request timed out: {exc!r}", provider=provider)
    if isinstance(
        exc, (botocore.exceptions.ReadTimeoutError, botocore.exceptions.ConnectTimeoutError)
    ):
        return ProviderTimeoutError(f"Request timed out: {exc}", provider=provider)
    if isinstance(exc, (httpx.TransportError, botocore.exceptions.EndpointConnectionError)):
        return UpstreamUnavailableError(f"Network error: {exc}", provider=provider)
    if isinstance(exc, OSError):
        return UpstreamUnavailableError(f"Network error: {exc}", provider=provider)
    return None


class ResilientExecutor:
    """Runs upstream operations with timeout, retry and circuit breaking."""

    def __init__(
        self,
        breaker: CircuitBreaker,
        policy: RetryPolicy | None = None,
        provider: str | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.breaker = breaker
        self.policy = policy or RetryPolicy()
        self.provider = provider
        self._sleep = sleep

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` until it succeeds or the policy is exhausted.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: If the breaker rejects the call
            CloudProviderError: The last error once retries are exhausted,
                or immediately for non-retryable errors
        """
        if not self.breaker.allow_request():
            state = self.breaker.get_state()
            logger.warning(f"Request blocked by circuit breaker {self.breaker.name}")
            raise CircuitOpenError(
                f"{self.breaker.name} is temporarily unavailable (circuit open, "
                f"retry in {state['retry_in_seconds'] or 0:.0f}s)",
                provider=self.provider,
            )

        policy = self.policy
        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = await asyncio.wait_for(operation(), timeout=policy.timeout)
            except Exception as exc:
                error = classify_exception(exc, self.provider)
                if error is None:
                    logger.error(f"Unexpected error calling {self.breaker.name}: {exc!r}")
                    self.breaker.record_failure(exc)
                    raise

                if not error.retryable:
                    logger.error(
                        f"Non-retryable error from {self.breaker.name} on attempt {attempt}: {error}"
                    )
                    self.breaker.record_failure(error)
                    raise error from (None if error is exc else exc)

                if attempt >= policy.max_attempts:
                    logger.error(
                        f"All {policy.max_attempts} attempts exhausted for {self.breaker.name}: {error}"
                    )
                    self.breaker.record_failure(error)
                    raise error from (None if error is exc else exc)

                delay = policy.delay_for(attempt)
                if isinstance(error, RateLimitError) and error.retry_after:
                    delay = min(policy.max_delay, max(delay, float(error.retry_after)))
                logger.warning(
                    f"Retry {attempt}/{policy.max_attempts} for {self.breaker.name} "
                    f"in {delay:.1f}s: {error}"
                )
                await self._sleep(delay)
                continue

            self.breaker.record_success()
            if attempt > 1:
                logger.info(f"Request to {self.breaker.name} succeeded after {attempt} attempts")
            return result

        raise RuntimeError("unreachable")  # pragma: no cover
