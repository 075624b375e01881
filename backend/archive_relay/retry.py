"""Single retry wrapper shared by the download and per-chunk upload paths."""

import asyncio
import random
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import httpx

from .errors import RemoteError
from .logging import get_logger

logger = get_logger("pipeline")

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    """Timeouts, dropped connections and 5xx answers are worth another try."""
    if isinstance(exc, RemoteError):
        return exc.is_transient
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    delay: float = 2.0,
    jitter: float = 0.0,
    retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    label: str = "operation",
) -> T:
    """Run `operation` until it succeeds, retrying transient failures.

    The first call plus up to `max_retries` retries, with a fixed `delay`
    (plus up to `jitter` seconds) between attempts. Non-retryable errors and
    the error of the final attempt propagate unchanged.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except Exception as exc:
            if attempt > max_retries or not retryable(exc):
                raise
            wait = delay + (random.uniform(0.0, jitter) if jitter > 0 else 0.0)
            logger.warning(
                f"{label} failed ({type(exc).__name__}: {exc}), "
                f"retry {attempt}/{max_retries} in {wait:.1f}s"
            )
            if on_retry is not None:
                on_retry(attempt, exc, wait)
            await sleep(wait)
