from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from authcore.logging import get_logger
from authcore.service.errors import StoreUnavailableError
from authcore.storage.errors import StorageUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


@contextmanager
def store_errors(operation: str) -> Iterator[None]:
    """Surface backend outages as the retryable service error."""
    try:
        yield
    except StorageUnavailable as exc:
        raise StoreUnavailableError(
            "storage temporarily unavailable", detail={"operation": operation}
        ) from exc


async def retry_read(
    operation: str,
    func: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_ms: int = 50,
) -> T:
    """Run an idempotent store read, retrying transient outages.

    Backoff doubles after each failed attempt. Only reads go through here;
    writes such as session creation are attempted exactly once.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except StorageUnavailable as exc:
            if attempt >= attempts:
                logger.error(
                    "store_read_failed",
                    operation=operation,
                    attempts=attempt,
                    error=str(exc),
                )
                raise StoreUnavailableError(
                    "storage temporarily unavailable",
                    detail={"operation": operation},
                ) from exc
            delay_ms = backoff_ms * (2 ** (attempt - 1))
            logger.warning(
                "store_read_retry",
                operation=operation,
                attempt=attempt,
                backoff_ms=delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000)
    raise AssertionError("unreachable")
