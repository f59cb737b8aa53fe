"""Exponential backoff with jitter for store operations.

:class:`BackoffExecutor` drives a ``tenacity.AsyncRetrying`` loop whose wait
strategy is the capped exponential delay with one of three jitter modes.
Retryability is decided by the :class:`~sachain.storage.errors.ErrorClassifier`
unless a predicate is injected, so the loop itself knows nothing about the
backing store's error shapes.

The executor only holds configuration; every :meth:`BackoffExecutor.execute`
call builds its own retry state, so one instance can be shared freely between
concurrent callers.
"""

from __future__ import annotations

import asyncio
import functools
import random
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar

import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from sachain.storage.errors import ErrorClassifier

if TYPE_CHECKING:
    from config.settings import Settings

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class JitterType(StrEnum):
    __slots__ = ()

    FULL = "full"
    NONE = "none"
    EQUAL = "equal"


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff parameters; delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    jitter: JitterType = JitterType.FULL

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("delays must be >= 0")

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryConfig:
        return cls(
            max_retries=settings.retry_max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
            jitter=JitterType(settings.retry_jitter),
        )


@dataclass(frozen=True, slots=True)
class RetryOutcome(Generic[T]):
    result: T
    attempts: int
    total_delay: float


class BackoffExecutor:
    """Retries an async unit of work with capped exponential backoff.

    Parameters
    ----------
    config:
        Retry limits and jitter strategy.
    is_retryable:
        Predicate deciding whether a failure may be retried.  Defaults to
        :meth:`ErrorClassifier.is_retryable`.
    sleep:
        Awaitable sleep function; injectable for tests.
    rng:
        Random source used for jitter.
    """

    __slots__ = ("_config", "_is_retryable", "_rng", "_sleep")

    def __init__(
        self,
        config: RetryConfig | None = None,
        *,
        is_retryable: Callable[[BaseException], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or RetryConfig()
        self._is_retryable = is_retryable or ErrorClassifier.is_retryable
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def config(self) -> RetryConfig:
        return self._config

    def compute_delay(self, retry_index: int) -> float:
        """Delay before retry number *retry_index* (0 for the first retry)."""
        cfg = self._config
        capped = min(cfg.max_delay, cfg.base_delay * (2**retry_index))
        if cfg.jitter == JitterType.NONE:
            return capped
        if cfg.jitter == JitterType.EQUAL:
            half = capped / 2
            return half + self._rng.uniform(0, half)
        return self._rng.uniform(0, capped)

    # -- tenacity hooks ---------------------------------------------------------

    def _wait(self, retry_state: RetryCallState) -> float:
        return self.compute_delay(retry_state.attempt_number - 1)

    def _before_sleep(self, retry_state: RetryCallState, label: str) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "retry.attempt_failed",
            label=label,
            attempt=retry_state.attempt_number,
            max_attempts=self._config.max_retries + 1,
            delay_s=round(delay, 4),
            error=str(error),
            error_type=type(error).__name__,
        )

    # -- Public API -------------------------------------------------------------

    async def execute(self, operation: Callable[[], Awaitable[T]], label: str = "unknown") -> RetryOutcome[T]:
        """Run *operation* until it succeeds or retries are exhausted.

        Raises the last underlying error unchanged when the error is not
        retryable or after ``max_retries + 1`` attempts.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries + 1),
            wait=self._wait,
            retry=retry_if_exception(self._is_retryable),
            sleep=self._sleep,
            before_sleep=functools.partial(self._before_sleep, label=label),
            reraise=True,
        )
        started = time.monotonic()
        try:
            async for attempt in retrying:
                with attempt:
                    result = await operation()
        except BaseException as exc:
            state = retrying.statistics
            logger.error(
                "retry.gave_up",
                label=label,
                attempts=state.get("attempt_number", 1),
                total_delay_s=round(state.get("idle_for", 0.0), 4),
                retryable=self._is_retryable(exc) if isinstance(exc, Exception) else False,
                error=str(exc),
                elapsed_ms=round((time.monotonic() - started) * 1000, 2),
            )
            raise

        retry_state = attempt.retry_state
        outcome = RetryOutcome(
            result=result,
            attempts=retry_state.attempt_number,
            total_delay=retry_state.idle_for,
        )
        if outcome.attempts > 1:
            logger.info(
                "retry.succeeded_after_retries",
                label=label,
                attempts=outcome.attempts,
                total_delay_s=round(outcome.total_delay, 4),
            )
        return outcome


def with_backoff(
    config: RetryConfig | None = None,
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async callable so every call runs through a :class:`BackoffExecutor`."""
    executor = BackoffExecutor(config)

    def decorator(fn: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            outcome = await executor.execute(lambda: fn(*args, **kwargs), fn.__qualname__)
            return outcome.result

        return wrapper

    return decorator
