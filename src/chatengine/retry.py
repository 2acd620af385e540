"""Retry policy for transient completion-service failures.

Each attempt returns a sum-typed ``Outcome``:

- Success(payload): done
- RetryableFailure(status, retry_after): retried after a delay
- FatalFailure(error): returned immediately

Retry strategy:
- Max attempts: 10 (configurable); exhaustion becomes a rate-limit FatalFailure
- Delay: the server's retry-after hint verbatim when present, otherwise
  ``previous_delay * base * (1 + random())`` with base 2 and a 1s seed
- Retryable statuses: 429 and 5xx only. Auth/validation failures are fatal.

The loop is tenacity's ``AsyncRetrying``; sleeps go through an injectable
coroutine so callers can cancel (or tests can observe) them.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar, Union

from tenacity import AsyncRetrying, RetryCallState, retry_if_result, stop_after_attempt

from .config import EngineConfig
from .errors import ErrorRecord, rate_limit_record
from .metrics import retries_total, retry_delay_seconds, retry_exhausted_total

logger = logging.getLogger("chatengine.retry")

__all__ = [
    "FatalFailure",
    "Outcome",
    "RetryOutcomeKind",
    "RetryPolicy",
    "RetryState",
    "RetryableFailure",
    "Success",
    "is_retryable_status",
    "parse_retry_after",
]

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_BACKOFF_BASE = 2.0
DEFAULT_INITIAL_DELAY = 1.0


@dataclass(frozen=True)
class Success(Generic[T]):
    payload: T


@dataclass(frozen=True)
class RetryableFailure:
    """Transient failure.

    Attributes:
        status: HTTP status that triggered the failure
        retry_after: Server hint in seconds, if any
        raw: Upstream payload for diagnostics
    """

    status: int
    retry_after: Optional[float] = None
    raw: Any = None


@dataclass(frozen=True)
class FatalFailure:
    error: ErrorRecord


Outcome = Union[Success, RetryableFailure, FatalFailure]


class RetryOutcomeKind(str, Enum):
    """How an ``execute`` call terminated."""

    SUCCESS = "success"
    FATAL = "fatal"
    EXHAUSTED = "exhausted"


@dataclass
class RetryState:
    """Progress of one ``execute`` call.

    Attributes:
        attempts: Attempts made so far
        delay: Current exponential backoff delay in seconds
        outcome: Terminal classification, None while running
    """

    attempts: int = 0
    delay: float = DEFAULT_INITIAL_DELAY
    outcome: Optional[RetryOutcomeKind] = None


def is_retryable_status(status: int) -> bool:
    """Rate limiting (429) and server errors (5xx) are transient."""
    return status == 429 or 500 <= status < 600


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds.

    Returns:
        Non-negative seconds, or None when absent or not numeric
        (HTTP-date values are treated as absent)
    """
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except (ValueError, AttributeError):
        return None
    if seconds < 0:
        return None
    return seconds


class RetryPolicy:
    """Bounded retry loop over an attempt coroutine.

    Example:
        >>> policy = RetryPolicy(max_attempts=3)
        >>> outcome = await policy.execute(send_once)
        >>> isinstance(outcome, Success)
        True
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        jitter: Callable[[], float] = random.random,
    ):
        """Initialize retry policy.

        Args:
            max_attempts: Total attempts before giving up (>= 1)
            backoff_base: Multiplier applied to the previous delay
            initial_delay: Seed for the first exponential delay
            sleep: Awaitable sleep (default: asyncio.sleep)
            jitter: Source of random values in [0, 1)
        """
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.initial_delay = initial_delay
        self._sleep = sleep or asyncio.sleep
        self._jitter = jitter
        self.state = RetryState(delay=initial_delay)

    @classmethod
    def from_config(cls, config: EngineConfig, **kwargs) -> "RetryPolicy":
        return cls(
            max_attempts=config.max_retry_attempts,
            backoff_base=config.backoff_base,
            initial_delay=config.initial_backoff_seconds,
            **kwargs,
        )

    def next_delay(self, state: RetryState, failure: RetryableFailure) -> float:
        """Delay before the next attempt.

        A retry-after hint is used verbatim and leaves the exponential
        delay untouched.
        """
        if failure.retry_after is not None:
            return failure.retry_after
        state.delay = state.delay * self.backoff_base * (1 + self._jitter())
        return state.delay

    async def execute(self, attempt: Callable[[], Awaitable[Outcome]]) -> Outcome:
        """Run ``attempt`` until it succeeds, fails fatally, or the budget runs out.

        Args:
            attempt: Coroutine function performing one request

        Returns:
            Success, or FatalFailure (including rate-limit exhaustion)

        Raises:
            Any exception raised by ``attempt`` itself (not retried), and
            asyncio.CancelledError if cancelled while attempting or sleeping.
        """
        state = RetryState(delay=self.initial_delay)
        self.state = state

        async def counted() -> Outcome:
            state.attempts += 1
            return await attempt()

        def wait(retry_state: RetryCallState) -> float:
            return self.next_delay(state, retry_state.outcome.result())

        def before_sleep(retry_state: RetryCallState) -> None:
            failure: RetryableFailure = retry_state.outcome.result()
            delay = retry_state.next_action.sleep
            retries_total.labels(str(failure.status)).inc()
            retry_delay_seconds.observe(delay)
            logger.warning(
                "exchange_retry_scheduled",
                extra={
                    "attempt": retry_state.attempt_number,
                    "max_attempts": self.max_attempts,
                    "status": failure.status,
                    "wait_seconds": round(delay, 3),
                    "retry_after_hint": failure.retry_after is not None,
                },
            )

        def exhausted(retry_state: RetryCallState) -> FatalFailure:
            failure: RetryableFailure = retry_state.outcome.result()
            state.outcome = RetryOutcomeKind.EXHAUSTED
            retry_exhausted_total.inc()
            logger.error(
                "exchange_retries_exhausted",
                extra={"attempts": state.attempts, "status": failure.status},
            )
            return FatalFailure(rate_limit_record(status=failure.status, raw=failure.raw))

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait,
            retry=retry_if_result(lambda outcome: isinstance(outcome, RetryableFailure)),
            before_sleep=before_sleep,
            retry_error_callback=exhausted,
            sleep=self._sleep,
        )

        outcome = await retrying(counted)

        if state.outcome is None:
            if isinstance(outcome, Success):
                state.outcome = RetryOutcomeKind.SUCCESS
            else:
                state.outcome = RetryOutcomeKind.FATAL
        return outcome
