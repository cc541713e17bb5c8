"""Bounded retry with exponential backoff for transient provider failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeVar

from stackgate.errors import TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_seconds: float) -> float:
    return base_seconds * (2**attempt)


def call_with_retry(
    func: Callable[[], T],
    *,
    max_retries: int,
    backoff_base_seconds: float = 0.5,
    retry_on: tuple[type[BaseException], ...] = (TransientProviderError,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "call",
) -> T:
    """Call ``func``; on a retryable error wait and try again, ``max_retries`` times at most."""
    attempt = 0
    while True:
        try:
            return func()
        except retry_on as exc:
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, backoff_base_seconds)
            logger.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label,
                attempt + 1,
                max_retries + 1,
                exc,
                delay,
            )
            sleep(delay)
            attempt += 1
