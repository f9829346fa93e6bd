"""Bounded retry with exponential backoff for idempotent collaborator calls."""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from storefront.common.config import settings
from storefront.common.logging import logger
from storefront.common.metrics import retries_total


T = TypeVar("T")


async def retry_async(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    retry_on: tuple[type[BaseException], ...],
    dependency: str,
) -> T:
    """Await `call` up to `attempts` times, backing off 1x, 2x, 4x... `base_delay`.

    Only exceptions in `retry_on` are retried; the last one is re-raised.
    """

    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except retry_on as exc:
            if attempt == attempts:
                raise
            retries_total.labels(service=settings.service_name, dependency=dependency).inc()
            backoff_seconds = base_delay * 2 ** (attempt - 1)
            logger.warning(
                "retrying dependency=%s attempt=%s/%s backoff_s=%s error=%s",
                dependency,
                attempt,
                attempts,
                backoff_seconds,
                exc,
            )
            await asyncio.sleep(backoff_seconds)
    raise AssertionError("unreachable")
