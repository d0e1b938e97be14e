"""Bounded retry combinator for outbound API calls.

``with_retry`` builds a tenacity ``retry`` decorator from three inputs:
maximum attempts, backoff policy (exponential with jitter, capped, and
overridden by a server-sent Retry-After header) and a retryable-error
predicate. The API clients build one decorator per
operation class from the attempt ceilings below.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime

import httpx
import structlog
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)
from tenacity.wait import wait_base

from src.kaspi_amo.errors import ExternalAPIError

logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = frozenset({408, 429})

# Attempt ceilings per operation type: reads retry less than creates
READ_ATTEMPTS = 2
UPDATE_ATTEMPTS = 2
CREATE_ATTEMPTS = 3


def _is_retryable_status(status: int | None) -> bool:
    if status is None:
        return False
    return status in RETRYABLE_STATUSES or 500 <= status < 600


def is_retryable_error(exc: BaseException) -> bool:
    """Classify an exception as transient.

    Transient: timeouts, connection resets/refusals, DNS failures,
    HTTP 408, 429 and 5xx. Everything else (4xx, validation errors,
    programming errors) fails fast.
    """
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return _is_retryable_status(exc.response.status_code)
    if isinstance(exc, ExternalAPIError):
        return _is_retryable_status(exc.status_code)
    return False


def retry_after_seconds(exc: BaseException | None) -> float | None:
    """Extract a Retry-After delay (seconds or HTTP date) from an HTTP error."""
    if not isinstance(exc, httpx.HTTPStatusError):
        return None
    raw = exc.response.headers.get("retry-after")
    if not raw:
        return None
    try:
        return max(0.0, float(raw))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


class wait_retry_after(wait_base):
    """Honour Retry-After when the server sent one, else defer to ``fallback``."""

    def __init__(self, fallback: wait_base, max_delay: float) -> None:
        self.fallback = fallback
        self.max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = retry_after_seconds(exc)
        if delay is not None:
            return min(delay, self.max_delay)
        return self.fallback(retry_state)


def _log_before_sleep(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "retry.attempt_failed",
        operation=getattr(retry_state.fn, "__qualname__", "unknown"),
        attempt=retry_state.attempt_number,
        next_delay_s=round(retry_state.next_action.sleep, 2) if retry_state.next_action else None,
        error=str(exc),
    )


def with_retry(
    max_attempts: int,
    *,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    predicate: Callable[[BaseException], bool] = is_retryable_error,
):
    """Build a bounded retry decorator.

    Args:
        max_attempts: Total attempts including the first call.
        initial_delay: First backoff delay in seconds; doubles per attempt.
        max_delay: Cap for any single delay (also caps Retry-After).
        predicate: Returns True for exceptions worth retrying.

    Returns:
        A tenacity decorator that re-raises the last exception once the
        attempts are exhausted or the predicate rejects the error.
    """
    backoff = wait_exponential(multiplier=initial_delay, min=initial_delay, max=max_delay) + wait_random(
        0, initial_delay * 0.3
    )
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_retry_after(backoff, max_delay),
        retry=retry_if_exception(predicate),
        before_sleep=_log_before_sleep,
        reraise=True,
    )
