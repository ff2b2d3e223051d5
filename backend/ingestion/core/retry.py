"""Retry policy for dependent fetches.

Built on tenacity: exponential backoff (1s, 2s, 4s ... capped), retrying only
failures a predicate classifies as transient. Anything that ends the attempt
loop is re-raised as RetryExhaustedError carrying the attempt count and the
last underlying error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

import httpx
import tenacity
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from ingestion.core.errors import (
    FetchError,
    NetworkError,
    RateLimitedError,
    RateLimitRejected,
    RetryExhaustedError,
    ServerError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Predicate = Callable[[BaseException], bool]


def is_rate_limit_error(error: BaseException) -> bool:
    """Server-side throttling only; a local limiter rejection is final."""
    if isinstance(error, RateLimitRejected):
        return False
    if isinstance(error, RateLimitedError):
        return True
    return isinstance(error, FetchError) and error.status == 429


def is_network_error(error: BaseException) -> bool:
    return isinstance(error, (NetworkError, httpx.TransportError, ConnectionError, asyncio.TimeoutError))


def is_server_error(error: BaseException) -> bool:
    if isinstance(error, ServerError):
        return True
    return isinstance(error, FetchError) and error.status is not None and 500 <= error.status < 600


DEFAULT_PREDICATES: tuple[Predicate, ...] = (is_rate_limit_error, is_network_error, is_server_error)


class _WaitRetryAfter(tenacity.wait.wait_base):
    """Honor a server-provided Retry-After, otherwise fall back to backoff."""

    def __init__(self, fallback: tenacity.wait.wait_base, cap_s: float) -> None:
        self.fallback = fallback
        self.cap_s = cap_s

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None and outcome.failed else None
        retry_after = getattr(error, "retry_after", None)
        if isinstance(retry_after, (int, float)) and retry_after > 0:
            return min(float(retry_after), self.cap_s)
        return self.fallback(retry_state)


class RetryPolicy:
    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff_multiplier: float = 2.0,
        predicates: Sequence[Predicate] = DEFAULT_PREDICATES,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier
        self.predicates = tuple(predicates)
        self._sleep = sleep or asyncio.sleep

    def is_retryable(self, error: BaseException) -> bool:
        return any(predicate(error) for predicate in self.predicates)

    def _controller(self) -> AsyncRetrying:
        backoff = wait_exponential(multiplier=self.initial_delay, exp_base=self.backoff_multiplier, max=self.max_delay)
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=_WaitRetryAfter(backoff, self.max_delay),
            retry=retry_if_exception(self.is_retryable),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )

    @staticmethod
    def _log_retry(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(f"Attempt {retry_state.attempt_number} failed ({error!r}); retrying in {wait:.1f}s")

    async def call(self, operation: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        attempts = 0
        try:
            async for attempt in self._controller():
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    return await operation(*args, **kwargs)
        except Exception as e:
            raise RetryExhaustedError(
                f"Operation failed after {attempts} attempt(s): {e}",
                attempts=attempts,
                last_error=e,
            ) from e
        raise AssertionError("unreachable")
