"""
Retry and circuit-breaker policies for external calls.

Every dependency (embedding provider, vector index, web search, LLM,
reranker) is wrapped in one ``ExternalCall``. The wrapper owns:

- a per-call timeout, clamped to what is left of the request deadline
- a ``RetryPolicy``: bounded attempts, exponential back-off with jitter,
  only for retryable failures (timeouts, 429, 5xx)
- a ``CircuitBreaker``: opens after N consecutive failures and refuses
  calls until the cool-down elapses, then lets one probe through
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from ragcore.core.cancellation import CancellationToken
from ragcore.core.errors import CircuitOpenError, PipelineCancelled, ProviderError, ProviderTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    multiplier: float = 2.0
    jitter: float = 0.1       # fraction of the delay added at random

    def delay_for(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        # attempt is 1-based: delay before attempt N+1
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        return delay + delay * self.jitter * rng()


NO_RETRY = RetryPolicy(max_attempts=1, base_delay=0.0)


@dataclass(frozen=True)
class BreakerPolicy:
    failure_threshold: int = 5
    reset_timeout: float = 30.0


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, name: str, policy: BreakerPolicy, clock=time.monotonic):
        self.name = name
        self.policy = policy
        self._clock = clock
        self._failures = 0
        self._opened_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        if self._opened_at is None:
            return self.CLOSED
        if self._clock() - self._opened_at >= self.policy.reset_timeout:
            return self.HALF_OPEN
        return self.OPEN

    def before_call(self) -> bool:
        """Raise while open; return True when this call holds the half-open probe slot."""
        state = self.state
        if state == self.OPEN:
            retry_in = self.policy.reset_timeout - (self._clock() - self._opened_at)
            raise CircuitOpenError(self.name, retry_in)
        if state == self.HALF_OPEN:
            if self._probe_in_flight:
                raise CircuitOpenError(self.name, 0.0)
            self._probe_in_flight = True
            return True
        return False

    def release_probe(self) -> None:
        """Free the half-open slot without counting an outcome (caller gave up)."""
        self._probe_in_flight = False

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("circuit %s closed after successful probe", self.name)
        self._failures = 0
        self._opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        was_probe = self._probe_in_flight
        self._probe_in_flight = False
        self._failures += 1
        if was_probe or self._failures >= self.policy.failure_threshold:
            if self._opened_at is None or was_probe:
                logger.warning(
                    "circuit %s opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )
            self._opened_at = self._clock()


class ExternalCall:
    """Timeout + retry + circuit breaker around one external dependency."""

    def __init__(
        self,
        name: str,
        timeout: Optional[float] = 10.0,
        retry: RetryPolicy = RetryPolicy(),
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.timeout = timeout
        self.retry = retry
        self.breaker = breaker or CircuitBreaker(name, BreakerPolicy())
        self._sleep = sleep

    @classmethod
    def from_policies(
        cls,
        name: str,
        timeout: Optional[float],
        retry: RetryPolicy,
        breaker: BreakerPolicy,
    ) -> "ExternalCall":
        return cls(name, timeout=timeout, retry=retry, breaker=CircuitBreaker(name, breaker))

    async def __call__(
        self,
        fn: Callable[[], Awaitable[T]],
        token: Optional[CancellationToken] = None,
        timeout: Optional[float] = None,
    ) -> T:
        token = token or CancellationToken.none()
        last_exc: Optional[Exception] = None

        for attempt in range(1, self.retry.max_attempts + 1):
            token.raise_if_cancelled()
            is_probe = self.breaker.before_call()
            limit = token.bound(timeout if timeout is not None else self.timeout)
            try:
                result = await token.guard(asyncio.wait_for(fn(), timeout=limit))
            except asyncio.TimeoutError:
                last_exc = ProviderTimeout(self.name, limit or 0.0)
            except ProviderError as exc:
                last_exc = exc
            except (PipelineCancelled, asyncio.CancelledError):
                if is_probe:
                    self.breaker.release_probe()
                raise
            except Exception as exc:
                logger.warning("%s failed with unexpected error: %r", self.name, exc)
                self.breaker.record_failure()
                raise
            else:
                self.breaker.record_success()
                return result

            self.breaker.record_failure()
            retryable = isinstance(last_exc, ProviderTimeout) or (
                isinstance(last_exc, ProviderError) and last_exc.retryable
            )
            if not retryable:
                logger.warning("%s failed with non-retryable error: %s", self.name, last_exc)
                raise last_exc

            if attempt < self.retry.max_attempts:
                delay = self.retry.delay_for(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    self.name,
                    attempt,
                    self.retry.max_attempts,
                    last_exc,
                    delay,
                )
                await self._sleep(delay)
            else:
                logger.error("%s failed after %d attempts: %s", self.name, attempt, last_exc)

        raise last_exc  # type: ignore[misc]
