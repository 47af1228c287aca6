"""
Generic retry wrapper for external calls.

Exponential backoff with optional jitter, driven by tenacity. Rate-limit
responses may shorten or stretch the wait via Retry-After or
x-ratelimit-reset headers.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt
from tenacity.wait import wait_base

from src.core.errors import RateLimitError


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Upper bound of the random jitter added to each delay, in seconds
MAX_JITTER_SECONDS = 1.0

_RETRYABLE_MESSAGES = (
    "rate limit",
    "too many requests",
    "timed out",
    "timeout",
    "econnreset",
    "connection reset",
)


@dataclass(frozen=True)
class RetryConfig:
    """Delays are in seconds; max_attempts counts total calls."""
    max_attempts: int
    initial_delay: float
    max_delay: float
    backoff_multiplier: float
    jitter: bool = True


@dataclass
class RetryContext:
    """Passed to on_retry callbacks before each sleep."""
    operation: str
    attempt: int
    max_attempts: int
    delay: float
    error: BaseException


DEFAULT_RETRY_CONFIG = RetryConfig(
    max_attempts=5,
    initial_delay=5.0,
    max_delay=120.0,
    backoff_multiplier=2,
    jitter=True,
)

# GitHub secondary rate limits need longer patience
GITHUB_RETRY_CONFIG = RetryConfig(
    max_attempts=6,
    initial_delay=5.0,
    max_delay=120.0,
    backoff_multiplier=2,
    jitter=True,
)


def calculate_backoff(
    attempt: int,
    config: RetryConfig,
    retry_after: float | None = None,
) -> float:
    """
    Delay before the next call after `attempt` (1-based) failed.
    A server-provided retry_after wins over the exponential schedule; both are capped.
    """
    if retry_after is not None:
        base_delay = retry_after
    else:
        base_delay = config.initial_delay * config.backoff_multiplier ** (attempt - 1)
    capped = min(base_delay, config.max_delay)

    jitter = random.uniform(0, MAX_JITTER_SECONDS) if config.jitter else 0.0
    return capped + jitter


def _status_code(error: BaseException) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """
    Transient failures: rate limits, 5xx, timeouts and dropped connections.
    Anything else is treated as fatal.
    """
    if isinstance(error, RateLimitError):
        return True

    if isinstance(error, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
        return True

    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True

    status = _status_code(error)
    if status is not None:
        return status == 429 or 500 <= status < 600

    message = str(error).lower()
    return any(fragment in message for fragment in _RETRYABLE_MESSAGES)


def retry_delay_from_headers(
    headers: Mapping[str, str] | None,
    max_delay: float = DEFAULT_RETRY_CONFIG.max_delay,
    now: float | None = None,
) -> float | None:
    """
    Seconds to wait according to Retry-After (seconds) or x-ratelimit-reset (epoch seconds).
    Returns None when neither header yields a concrete wait.
    """
    if not headers:
        return None

    lowered = {k.lower(): v for k, v in headers.items()}

    retry_after = lowered.get("retry-after")
    if retry_after:
        try:
            return min(float(int(retry_after.strip())), max_delay)
        except ValueError:
            pass

    reset_at = lowered.get("x-ratelimit-reset")
    if reset_at:
        try:
            reset_epoch = int(reset_at.strip())
        except ValueError:
            return None
        current = time.time() if now is None else now
        if reset_epoch > current:
            return min(reset_epoch - current, max_delay)

    return None


def retry_delay_from_error(error: BaseException, max_delay: float = DEFAULT_RETRY_CONFIG.max_delay) -> float | None:
    headers = getattr(error, "headers", None)
    if headers is None:
        response = getattr(error, "response", None)
        headers = getattr(response, "headers", None)
    return retry_delay_from_headers(headers, max_delay)


class _BackoffWait(wait_base):
    """tenacity wait strategy: header hint if present, else exponential schedule."""

    def __init__(
        self,
        config: RetryConfig,
        get_retry_delay: Callable[[BaseException], float | None],
    ):
        self.config = config
        self.get_retry_delay = get_retry_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        hint = self.get_retry_delay(error) if error is not None else None
        return calculate_backoff(retry_state.attempt_number, self.config, hint)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    operation: str = "unknown",
    should_retry: Callable[[BaseException], bool] = is_retryable_error,
    get_retry_delay: Callable[[BaseException], float | None] | None = None,
    on_retry: Callable[[RetryContext], Any] | None = None,
) -> T:
    """
    Executes fn, retrying transient failures with backoff.

    Fatal errors and exhausted attempts re-raise the last error with a note
    naming the operation and how many attempts were made.

    Usage:
        issues = await with_retry(
            lambda: client.get(url),
            config=GITHUB_RETRY_CONFIG,
            operation="github:list-issues",
        )
    """
    if get_retry_delay is None:
        def get_retry_delay(error: BaseException) -> float | None:
            return retry_delay_from_error(error, config.max_delay)

    attempts = 0

    async def attempt() -> T:
        nonlocal attempts
        attempts += 1
        return await fn()

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            f"{operation} failed, retrying in {round(delay, 1)}s",
            extra={
                "operation": operation,
                "attempt": retry_state.attempt_number,
                "max_attempts": config.max_attempts,
                "delay_seconds": round(delay, 3),
                "error": str(error),
            },
        )
        if on_retry is not None:
            on_retry(
                RetryContext(
                    operation=operation,
                    attempt=retry_state.attempt_number,
                    max_attempts=config.max_attempts,
                    delay=delay,
                    error=error,
                )
            )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=_BackoffWait(config, get_retry_delay),
        retry=retry_if_exception(should_retry),
        before_sleep=before_sleep,
        reraise=True,
    )

    try:
        return await retrying(attempt)
    except Exception as e:
        extra = {
            "operation": operation,
            "attempt": attempts,
            "max_attempts": config.max_attempts,
            "error": str(e),
        }
        if should_retry(e):
            logger.error(f"{operation} failed after {attempts} attempt(s)", extra=extra)
        else:
            # Callers report fatal errors at their own level
            logger.debug(f"{operation} failed (not retrying)", extra=extra)
        e.add_note(f"{operation} failed after {attempts} attempt(s)")
        raise
