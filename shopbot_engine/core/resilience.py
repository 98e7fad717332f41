"""
Resilient provider invocation.

Wraps a single provider call in exponential-backoff retries and a
provider-wide circuit breaker. Backoff uses asyncio.sleep so a retrying
request never holds up other shops' pipelines.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from shopbot_engine.config.loader import CircuitBreakerConfig, RetryConfig

from .errors import CircuitOpenError, DeadlineExceededError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS_CODES = frozenset({408, 429})


def _status_code(error: BaseException) -> Optional[int]:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def default_should_retry(error: BaseException) -> bool:
    """Retry network failures, server errors, request timeouts and rate limits."""
    if isinstance(error, (CircuitOpenError, DeadlineExceededError)):
        return False
    status = _status_code(error)
    if status is None:
        return isinstance(error, (ConnectionError, TimeoutError))
    return status >= 500 or status in RETRYABLE_STATUS_CODES


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.3
    should_retry: Callable[[BaseException], bool] = default_should_retry

    @classmethod
    def from_config(
        cls,
        config: RetryConfig,
        should_retry: Callable[[BaseException], bool] = default_should_retry,
    ) -> "RetryPolicy":
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.initial_delay,
            max_delay=config.max_delay,
            backoff_multiplier=config.backoff_multiplier,
            jitter=config.jitter,
            should_retry=should_retry,
        )

    def delay_for(self, attempt: int, rng: random.Random) -> float:
        """Delay after the given 0-based attempt: capped exponential backoff with jitter."""
        base = min(self.initial_delay * (self.backoff_multiplier ** attempt), self.max_delay)
        return max(0.0, base * (1 + rng.uniform(-self.jitter, self.jitter)))


async def _run_before_deadline(
    fn: Callable[[], Awaitable[T]],
    deadline: Optional[float],
    clock: Callable[[], float],
) -> T:
    if deadline is None:
        return await fn()
    remaining = deadline - clock()
    if remaining <= 0:
        raise DeadlineExceededError("Request deadline elapsed before the provider call")
    try:
        return await asyncio.wait_for(fn(), timeout=remaining)
    except asyncio.TimeoutError:
        if clock() >= deadline:
            raise DeadlineExceededError("Request deadline elapsed during the provider call") from None
        raise


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    rng: Optional[random.Random] = None,
    deadline: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Run fn, retrying transient failures with exponential backoff.

    Makes at most max_retries + 1 attempts. Errors the policy does not
    retry, and the error of the final attempt, propagate unmodified.

    Args:
        fn: Zero-argument coroutine factory; called once per attempt
        policy: Retry policy
        sleep: Awaitable sleep used between attempts
        rng: Random source for jitter
        deadline: Optional absolute time (on clock) after which no attempt starts
        clock: Monotonic clock the deadline is expressed in

    Returns:
        The first successful result
    """
    rng = rng or random.Random()
    attempts = policy.max_retries + 1

    for attempt in range(attempts):
        try:
            return await _run_before_deadline(fn, deadline, clock)
        except Exception as error:
            if attempt == policy.max_retries or not policy.should_retry(error):
                raise
            delay = policy.delay_for(attempt, rng)
            if deadline is not None and clock() + delay >= deadline:
                raise
            logger.warning(
                "Attempt %d/%d failed, retrying in %dms: %s",
                attempt + 1, attempts, round(delay * 1000), error,
            )
            await sleep(delay)

    raise AssertionError("unreachable")  # pragma: no cover


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops calling a failing dependency for a cool-down period.

    CLOSED -> OPEN after `threshold` consecutive failures. While OPEN every
    call fails fast with CircuitOpenError. Once `reset_timeout` has passed
    a single trial call runs (HALF_OPEN); success closes the circuit,
    failure reopens it.
    """

    def __init__(
        self,
        name: str = "provider",
        threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.threshold = threshold
        self.reset_timeout = reset_timeout
        self.clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._trial_in_flight = False
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: CircuitBreakerConfig, name: str = "provider", **kwargs) -> "CircuitBreaker":
        return cls(name=name, threshold=config.threshold, reset_timeout=config.reset_timeout, **kwargs)

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        is_failure: Optional[Callable[[BaseException], bool]] = None,
    ) -> T:
        """Run fn through the breaker.

        Args:
            fn: Zero-argument coroutine factory
            is_failure: Which errors count against the circuit; all of them when omitted.
                Any other error still propagates but counts as a response.

        Raises:
            CircuitOpenError: Without calling fn, while the circuit is open
        """
        async with self._lock:
            if self._state == CircuitState.OPEN:
                elapsed = self.clock() - self._opened_at
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit '%s' half-open, allowing a trial call", self.name)
            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpenError(self.name, 0.0)
                self._trial_in_flight = True

        try:
            result = await fn()
        except asyncio.CancelledError:
            async with self._lock:
                self._trial_in_flight = False
            raise
        except Exception as error:
            if is_failure is None or is_failure(error):
                await self._on_failure()
            else:
                # The dependency answered; the request itself was rejected.
                await self._on_success()
            raise

        await self._on_success()
        return result

    async def _on_success(self) -> None:
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                logger.info("Circuit '%s' closed", self.name)
            self._failure_count = 0
            self._state = CircuitState.CLOSED
            self._trial_in_flight = False

    async def _on_failure(self) -> None:
        async with self._lock:
            self._failure_count += 1
            trial_failed = self._state == CircuitState.HALF_OPEN
            self._trial_in_flight = False
            if trial_failed or self._failure_count >= self.threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self.clock()
                logger.warning(
                    "Circuit '%s' opened after %d consecutive failures",
                    self.name, self._failure_count,
                )


class ResilientInvoker:
    """Retry-with-backoff inside a circuit breaker; one instance per provider."""

    def __init__(
        self,
        policy: RetryPolicy,
        breaker: CircuitBreaker,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy
        self.breaker = breaker
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        retry: RetryConfig,
        circuit_breaker: CircuitBreakerConfig,
        should_retry: Callable[[BaseException], bool] = default_should_retry,
        name: str = "provider",
    ) -> "ResilientInvoker":
        return cls(
            policy=RetryPolicy.from_config(retry, should_retry),
            breaker=CircuitBreaker.from_config(circuit_breaker, name=name),
        )

    async def invoke(self, fn: Callable[[], Awaitable[T]], deadline: Optional[float] = None) -> T:
        """Call fn with retries, behind the circuit breaker.

        Args:
            fn: Zero-argument coroutine factory performing one provider call
            deadline: Optional absolute monotonic deadline for the whole invocation

        Returns:
            The provider call's result
        """
        return await self.breaker.call(
            lambda: with_retry(
                fn,
                self.policy,
                sleep=self.sleep,
                rng=self.rng,
                deadline=deadline,
                clock=self.clock,
            ),
            is_failure=self._counts_against_circuit,
        )

    def _counts_against_circuit(self, error: BaseException) -> bool:
        # Only transient provider failures and deadlines count.
        return isinstance(error, DeadlineExceededError) or self.policy.should_retry(error)
