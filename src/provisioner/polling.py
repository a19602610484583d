"""Bounded polling.

One synchronous check per tick, fixed interval, deadline = start + timeout.
A timeout is returned to the caller, which decides whether to carry on.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


def wait_until(
    check: Callable[[], bool],
    *,
    timeout: float,
    interval: float,
    description: str = "condition",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Call ``check`` until it returns True or the deadline passes.

    Returns:
        True if the check passed, False on timeout.
    """
    deadline = clock() + timeout
    attempts = 0
    while True:
        attempts += 1
        if check():
            logger.debug("Wait finished", extra={"waiting_for": description, "attempts": attempts})
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            logger.warning(
                "Timed out waiting",
                extra={
                    "waiting_for": description,
                    "timeout_seconds": timeout,
                    "attempts": attempts,
                },
            )
            return False
        sleep(min(interval, remaining))
