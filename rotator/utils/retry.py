"""Retry helpers for remote catalog calls."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import random
from collections.abc import Awaitable, Callable

from rotator.errors import TransientRemoteError

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = int(os.environ.get("CATALOG_MAX_ATTEMPTS", 3))
BASE_DELAY = float(os.environ.get("CATALOG_RETRY_DELAY", 1.0))


def retry_async(func: Callable[..., Awaitable], *, attempts: int | None = None, base_delay: float | None = None):
    """Retry ``func`` on TransientRemoteError with exponential backoff and jitter.

    Any other exception propagates on the first occurrence.
    """
    max_attempts = attempts or MAX_ATTEMPTS
    first_delay = BASE_DELAY if base_delay is None else base_delay

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = first_delay
        for attempt in range(max_attempts):
            try:
                return await func(*args, **kwargs)
            except TransientRemoteError as exc:
                if attempt == max_attempts - 1:
                    raise
                logger.warning(
                    "Transient failure in %s (attempt %s/%s): %s",
                    getattr(func, "__name__", func), attempt + 1, max_attempts, exc,
                )
                await asyncio.sleep(delay + random.random() * delay)
                delay *= 2
    return wrapper
