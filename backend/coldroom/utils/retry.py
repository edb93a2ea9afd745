"""Bounded retry with exponential backoff for short write transactions.

The wrapped operation must be safe to re-run from scratch: callers roll the
session back in `on_retry` before the next attempt.
"""

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from coldroom.config import settings
from coldroom.middleware.exceptions import PersistenceError, StaleBalanceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE = (OperationalError, StaleDataError, StaleBalanceError)


async def with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    on_retry: Callable[[], Awaitable[None]] | None = None,
    attempts: int | None = None,
    base_delay: float | None = None,
) -> T:
    """Run `operation`, retrying transient database failures.

    Raises PersistenceError once every attempt has failed.
    """
    attempts = attempts or settings.persistence_retry_attempts
    base = settings.persistence_retry_base_delay if base_delay is None else base_delay

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except RETRYABLE as exc:
            if on_retry is not None:
                await on_retry()
            if attempt >= attempts:
                logger.error("%s failed after %d attempt(s): %s", label, attempts, exc)
                raise PersistenceError(f"{label} failed after {attempts} attempt(s)") from exc
            backoff = base * (2 ** (attempt - 1))
            logger.warning("%s retry %d/%d due to %s", label, attempt, attempts, exc)
            await asyncio.sleep(backoff * (0.6 + 0.4 * random.random()))

    raise PersistenceError(f"{label} was not attempted")
