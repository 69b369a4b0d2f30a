"""Exponential backoff for recoverable failures."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from .config import RetryConfig
from .errors import RetrievalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _should_retry(exc: BaseException) -> bool:
    return not (isinstance(exc, RetrievalError) and not exc.recoverable)


def retry_with_backoff(fn: Callable[[], T], config: Optional[RetryConfig] = None) -> T:
    """
    Call ``fn`` until it succeeds, sleeping ``min(initial * multiplier**attempt, max)``
    between attempts. Non-recoverable ``RetrievalError``s are re-raised at once.
    """
    config = config or RetryConfig()
    for attempt in range(config.max_retries + 1):
        try:
            return fn()
        except Exception as exc:
            if not _should_retry(exc):
                raise
            if attempt >= config.max_retries:
                logger.error("Max retries (%d) exceeded: %s", config.max_retries, exc)
                raise
            delay = config.delay_for(attempt)
            logger.warning("Attempt %d failed, retrying in %.2fs: %s", attempt + 1, delay, exc)
            time.sleep(delay)
    raise AssertionError("unreachable")


async def retry_with_backoff_async(
    fn: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
) -> T:
    """Async counterpart of :func:`retry_with_backoff`."""
    config = config or RetryConfig()
    for attempt in range(config.max_retries + 1):
        try:
            return await fn()
        except Exception as exc:
            if not _should_retry(exc):
                raise
            if attempt >= config.max_retries:
                logger.error("Max retries (%d) exceeded: %s", config.max_retries, exc)
                raise
            delay = config.delay_for(attempt)
            logger.warning("Attempt %d failed, retrying in %.2fs: %s", attempt + 1, delay, exc)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
