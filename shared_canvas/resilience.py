"""Retry with exponential backoff for store calls.

Used where a transient store hiccup should be invisible to the caller:
the write coordinator's chunk appends and the compactor's page fetches.
The change log reader does its own error classification instead.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from .exceptions import StoreError, StoreErrorKind, TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_KINDS = frozenset(
    {
        StoreErrorKind.GONE,
        StoreErrorKind.TOO_MANY_REQUESTS,
        StoreErrorKind.SERVICE_UNAVAILABLE,
        StoreErrorKind.READ_SESSION_NOT_AVAILABLE,
    }
)


@dataclass
class RetryConfig:
    """Attempt budget and backoff curve for ``retry_with_backoff``."""

    max_retries: int = 3
    backoff_base: float = 0.5
    backoff_max: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_exceptions: tuple[type[Exception], ...] = (
        TransientStoreError,
        ConnectionError,
        TimeoutError,
    )


def is_retryable(exc: Exception, config: RetryConfig) -> bool:
    """Transient store errors and network-level failures are retryable."""
    if isinstance(exc, config.retryable_exceptions):
        return True
    return isinstance(exc, StoreError) and exc.kind in RETRYABLE_KINDS


def backoff_delay(exc: Exception, attempt: int, config: RetryConfig) -> float:
    """Delay before the next attempt; a server-supplied retry-after wins."""
    retry_after = getattr(exc, "retry_after", None)
    if retry_after is not None:
        return min(float(retry_after), config.backoff_max)
    return min(config.backoff_base * (config.backoff_multiplier**attempt), config.backoff_max)


async def retry_with_backoff(
    fn: Callable[..., Coroutine[Any, Any, T]],
    *args: Any,
    config: RetryConfig | None = None,
    context_msg: str = "",
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, sleeping and trying again on transient errors.

    The first non-retryable error propagates immediately; a retryable one
    propagates once ``config.max_retries`` retries have been spent.
    ``context_msg`` (for example ``"chunk 2/5"``) is attached to each log
    record as ``operation``.
    """
    cfg = config or RetryConfig()
    attempts = cfg.max_retries + 1

    for attempt in range(attempts):
        fields = {"operation": context_msg or getattr(fn, "__qualname__", repr(fn)), "attempt": attempt + 1}
        try:
            result = await fn(*args, **kwargs)
        except Exception as exc:
            if not is_retryable(exc, cfg):
                raise
            if attempt + 1 == attempts:
                logger.error("Giving up after %d attempts: %s", attempts, exc, extra=fields)
                raise

            delay = backoff_delay(exc, attempt, cfg)
            logger.warning("Transient failure, retrying in %.2fs: %s", delay, exc, extra={**fields, "delay": delay})
            await asyncio.sleep(delay)
        else:
            if attempt:
                logger.info("Recovered after %d attempts", attempt + 1, extra=fields)
            return result

    raise AssertionError("unreachable")  # pragma: no cover
