"""
Retry-with-backoff for page loads, HEAD probes and downloads.

Client errors (4xx other than 408/429) are permanent and propagate on the
first attempt. Everything else is retried with exponential backoff until the
budget runs out, then the last error propagates.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from site_assets.errors import is_transient_status

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryObserver = Callable[[int, int, float, BaseException], None]


def status_of(error: BaseException) -> int | None:
    """HTTP status carried by an error, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable(error: BaseException) -> bool:
    return is_transient_status(status_of(error))


@dataclass
class RetryPolicy:
    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def delay_for(self, attempt: int) -> float:
        """Wait before retry number attempt+1 (attempt counts from 0)."""
        return self.initial_delay * self.backoff_multiplier ** attempt

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        on_retry: RetryObserver | None = None,
        should_retry: Callable[[BaseException], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> T:
        return await retry_async(
            operation,
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            backoff_multiplier=self.backoff_multiplier,
            on_retry=on_retry,
            should_retry=should_retry,
            sleep=sleep,
        )


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_multiplier: float = 2.0,
    on_retry: RetryObserver | None = None,
    should_retry: Callable[[BaseException], bool] | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to max_retries + 1 times.

    on_retry(attempt, max_retries, wait_seconds, error) is called before each
    wait and is purely informational. should_retry overrides the default
    status-code classification.
    """
    classify = should_retry or is_retryable
    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as e:
            if attempt >= max_retries or not classify(e):
                raise
            wait = initial_delay * backoff_multiplier ** attempt
            attempt += 1
            if on_retry:
                on_retry(attempt, max_retries, wait, e)
            else:
                logger.debug(f"[retry] attempt {attempt}/{max_retries} in {wait:.2f}s after: {e}")
            await sleep(wait)


def log_retry(label: str) -> RetryObserver:
    """Observer that logs each retry with a short label."""
    def _observer(attempt: int, max_retries: int, wait: float, error: BaseException):
        logger.warning(f"[retry] {label}: attempt {attempt}/{max_retries} in {wait:.2f}s ({error})")
    return _observer
