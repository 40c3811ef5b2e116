from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import CommandError, ReadinessTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class NotReady(Exception):
    """Raised by a probe to request another attempt."""


class FatalProbeError(Exception):
    """Raised by a probe when further attempts cannot succeed."""


def attempts_for(timeout: float, interval: float) -> int:
    if interval <= 0:
        return 1
    return max(1, int(timeout // interval))


def poll_until(
    probe: Callable[[], T],
    *,
    description: str,
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call ``probe`` until it returns, sleeping ``interval`` between attempts.

    ``NotReady`` and ``CommandError`` count as transient. ``FatalProbeError``
    aborts immediately. Exhaustion raises ``ReadinessTimeoutError`` carrying the
    last transient error.
    """

    attempts = attempts_for(timeout, interval)
    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return probe()
        except FatalProbeError:
            raise
        except (NotReady, CommandError) as exc:
            last_error = exc
            logger.debug("%s: attempt %d/%d not ready: %s", description, attempt, attempts, exc)
        if attempt < attempts:
            sleep(interval)
    raise ReadinessTimeoutError(description, attempts, last_error)


def retry_call(
    fn: Callable[[], T],
    *,
    attempts: int,
    backoff: float,
    description: str,
    on_failure: Optional[Callable[[BaseException], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` up to ``attempts`` times; re-raise the last error on exhaustion."""

    attempts = max(1, attempts)
    attempt = 0
    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s failed (attempt %d/%d): %s", description, attempt, attempts, exc)
            if on_failure is not None:
                on_failure(exc)
            if attempt >= attempts:
                raise
            sleep(backoff)


__all__ = ["FatalProbeError", "NotReady", "attempts_for", "poll_until", "retry_call"]
