from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from .config import RetryPolicy

LOGGER = logging.getLogger("hostname_soak.retry")

T = TypeVar("T")


class RetryExhausted(Exception):
    """Raised when an operation keeps failing past its deadline."""

    def __init__(self, description: str, elapsed: float, last_error: BaseException) -> None:
        super().__init__(f"gave up after {elapsed:.1f}s trying to {description}: {last_error}")
        self.description = description
        self.elapsed = elapsed
        self.last_error = last_error


def retry_until_deadline(
    operation: Callable[[], T],
    policy: RetryPolicy,
    description: str,
    *,
    accept: Optional[Callable[[Exception], bool]] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Optional[T]:
    """Call ``operation`` every ``policy.interval`` seconds until it returns.

    Any exception counts as a failed attempt and is logged with the elapsed
    time. Failures for which ``accept`` returns true end the loop as a
    success and ``None`` is returned. Once ``policy.deadline`` seconds have
    passed since the first attempt, the last failure is raised wrapped in
    :class:`RetryExhausted`.
    """
    start = clock()
    while True:
        try:
            return operation()
        except Exception as exc:  # noqa: BLE001
            if accept is not None and accept(exc):
                LOGGER.debug("Treating %r as success for %s", exc, description)
                return None
            elapsed = clock() - start
            LOGGER.warning("After %.1fs failed to %s: %s", elapsed, description, exc)
            if elapsed >= policy.deadline:
                raise RetryExhausted(description, elapsed, exc) from exc
        sleep(policy.interval)
