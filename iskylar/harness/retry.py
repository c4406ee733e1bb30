"""
Retry Logic — backoff for transient model API failures.

Only transient errors are retried (rate limits, 5xx, network faults); a bad
request or an auth failure is raised on the first attempt. The default
budget is zero retries, so a model fault surfaces immediately unless the
deployment opts in.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import anthropic
import structlog

logger = structlog.get_logger(__name__)


class RetryConfig:
    def __init__(
        self,
        max_retries: int = 0,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range


_RETRYABLE_STATUS = (429, 500, 502, 503, 529)


def is_retryable_error(error: Exception) -> bool:
    """
    Decide whether an error is transient.

    Retryable: rate limits, server errors, connection and timeout faults.
    Not retryable: 400/401/403/404 and anything unrecognized.
    """
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in _RETRYABLE_STATUS
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return True
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def _retry_after_seconds(error: Exception) -> Optional[float]:
    response = getattr(error, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    try:
        value = float(headers.get("retry-after", 0))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """Exponential backoff with symmetric jitter; a server Retry-After wins."""
    if retry_after is not None:
        return min(config.max_delay, max(config.base_delay, retry_after))

    delay = min(config.max_delay, config.base_delay * (config.exponential_base ** attempt))
    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


async def with_retries(
    func: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], None]] = None,
) -> Any:
    """
    Await ``func()`` and retry transient failures.

    Raises the last error once the budget is spent or on the first
    non-retryable error.
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e) or attempt >= config.max_retries:
                logger.debug(
                    "retry.giving_up",
                    error_type=type(e).__name__,
                    attempts=attempt + 1,
                    retryable=is_retryable_error(e),
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            attempt += 1
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
