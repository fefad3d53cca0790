"""Bounded retry helper shared by chain RPC calls."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from paygate.common.config import settings
from paygate.common.logging import logger
from paygate.common.metrics import retries_total


T = TypeVar("T")


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    dependency: str,
    attempts: int = 3,
    delay_seconds: float = 2.0,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
) -> T:
    """Run `operation` up to `attempts` times with a fixed delay between tries.

    The last error is re-raised once attempts are exhausted; callers decide
    whether that is fatal.
    """

    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except retry_on as exc:
            if attempt == attempts:
                logger.error(
                    "retries exhausted dependency=%s attempts=%s error=%s",
                    dependency,
                    attempts,
                    exc,
                )
                raise
            retries_total.labels(service=settings.service_name, dependency=dependency).inc()
            logger.warning(
                "retrying dependency=%s attempt=%s/%s delay_s=%s error=%s",
                dependency,
                attempt,
                attempts,
                delay_seconds,
                exc,
            )
            await asyncio.sleep(delay_seconds)
    raise AssertionError("unreachable")
