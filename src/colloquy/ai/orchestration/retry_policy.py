"""Retry/backoff policy for remote completion calls.

Failures are classified as ``retry`` or ``fatal``. Retryable failures are
retried through tenacity with a capped exponential delay that never drops
below :data:`MIN_DELAY_SECONDS`; once the attempt limit is reached, or a fatal
failure occurs, the last exception is translated into the engine's error
taxonomy and re-raised with the original chained.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from typing import Any, Awaitable, Callable, Collection, TypeVar

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from .errors import (
    CompletionError,
    FatalAPIError,
    RateLimitExceeded,
    RetriesExhausted,
    TransientTransportError,
)

__all__ = [
    "MIN_DELAY_SECONDS",
    "RetryDecision",
    "RetryCallback",
    "RetryPolicy",
]

LOGGER = logging.getLogger(__name__)

MIN_DELAY_SECONDS = 0.2
DEFAULT_RETRYABLE_STATUSES = frozenset({408, 500, 502, 503, 504})
_RATE_LIMIT_STATUS = 429
_RETRY_HINT = re.compile(r"try again in\s+(\d+(?:\.\d+)?)\s*(ms|s)\b", re.IGNORECASE)

T = TypeVar("T")
RetryCallback = Callable[[int, float, BaseException], None]


class RetryDecision(str, enum.Enum):
    RETRY = "retry"
    FATAL = "fatal"


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _hint_seconds(exc: BaseException) -> float | None:
    match = _RETRY_HINT.search(str(exc))
    if match is None:
        return None
    value = float(match.group(1))
    return value / 1000.0 if match.group(2).lower() == "ms" else value


class RetryPolicy:
    """Classify failures and retry the retryable ones with bounded backoff."""

    def __init__(
        self,
        *,
        max_attempts: int = 3,
        base_delay: float = MIN_DELAY_SECONDS,
        max_delay: float = 2.0,
        retry_rate_limits: bool = False,
        retryable_statuses: Collection[int] = DEFAULT_RETRYABLE_STATUSES,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay = max(MIN_DELAY_SECONDS, float(base_delay))
        self.max_delay = max(self.base_delay, float(max_delay))
        self.retry_rate_limits = retry_rate_limits
        self.retryable_statuses = frozenset(retryable_statuses)
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------
    def classify(self, exc: BaseException) -> RetryDecision:
        if isinstance(exc, CompletionError):
            if isinstance(exc, TransientTransportError):
                return RetryDecision.RETRY
            if isinstance(exc, RateLimitExceeded) and self.retry_rate_limits:
                return RetryDecision.RETRY
            return RetryDecision.FATAL
        if isinstance(exc, (APITimeoutError, APIConnectionError, httpx.TransportError, TimeoutError)):
            return RetryDecision.RETRY
        status = _status_code(exc)
        if status == _RATE_LIMIT_STATUS:
            return RetryDecision.RETRY if self.retry_rate_limits else RetryDecision.FATAL
        if status is not None and status in self.retryable_statuses:
            return RetryDecision.RETRY
        return RetryDecision.FATAL

    def is_retryable(self, exc: BaseException) -> bool:
        return self.classify(exc) is RetryDecision.RETRY

    def delay(self, attempt: int, exc: BaseException | None = None) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""

        exponent = max(0, int(attempt) - 1)
        wait = min(self.max_delay, self.base_delay * (2**exponent))
        wait = max(MIN_DELAY_SECONDS, wait)
        if exc is not None and _status_code(exc) == _RATE_LIMIT_STATUS:
            hint = _hint_seconds(exc)
            if hint is not None and hint > wait:
                wait = hint
        return wait

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    async def call(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        on_retry: RetryCallback | None = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails fatally, or attempts run out."""

        try:
            async for attempt in self._retrying(on_retry):
                with attempt:
                    result = await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            translated = self._translate(exc)
            if translated is exc:
                raise
            raise translated from exc
        return result

    def _retrying(self, on_retry: RetryCallback | None) -> AsyncRetrying:
        def _wait(state: RetryCallState) -> float:
            exc = state.outcome.exception() if state.outcome else None
            return self.delay(state.attempt_number, exc)

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            wait = state.next_action.sleep if state.next_action else 0.0
            LOGGER.warning(
                "Transient failure on attempt %s/%s; retrying in %.2fs: %s",
                state.attempt_number,
                self.max_attempts,
                wait,
                exc,
            )
            if on_retry is not None and exc is not None:
                on_retry(state.attempt_number, wait, exc)

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=_wait,
            retry=retry_if_exception(self.is_retryable),
            before_sleep=_before_sleep,
            sleep=self._sleep,
        )

    def _translate(self, exc: Exception) -> CompletionError:
        status = _status_code(exc)
        if self.is_retryable(exc):
            return RetriesExhausted(
                f"Gave up after {self.max_attempts} attempt(s): {exc}",
                details={"cause": type(exc).__name__},
                status_code=status,
                attempts=self.max_attempts,
            )
        if isinstance(exc, CompletionError):
            return exc
        if status == _RATE_LIMIT_STATUS:
            return RateLimitExceeded(
                f"Rate limit exceeded: {exc}",
                details={"cause": type(exc).__name__},
            )
        return FatalAPIError(
            str(exc) or type(exc).__name__,
            details={"cause": type(exc).__name__},
            status_code=status,
        )
