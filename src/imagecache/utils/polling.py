# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/imagecache/utils/polling.py
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from imagecache.errors import BuildTimeoutError

log = logging.getLogger("imagecache")

T = TypeVar("T")


@dataclass
class Deadline:
    """
    Absolute point in time after which blocking waits give up.

    One deadline is created per build and handed to every wait, so the
    overall timeout covers the whole workflow rather than each call.
    """

    timeout_seconds: Optional[float]
    clock: Callable[[], float] = time.monotonic
    started_at: float = field(init=False)

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> float:
        if self.timeout_seconds is None:
            return float("inf")
        return max(0.0, self.started_at + self.timeout_seconds - self.clock())

    def timeout(self) -> Optional[float]:
        """Remaining seconds as a blocking-call timeout; None when unbounded."""
        if self.timeout_seconds is None:
            return None
        return self.remaining()

    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self, what: str) -> None:
        if self.expired():
            raise BuildTimeoutError(
                f"timed out after {self.timeout_seconds}s waiting for {what}"
            )


def poll_until(
    probe: Callable[[], Optional[T]],
    *,
    what: str,
    interval: float,
    deadline: Deadline,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``probe`` every ``interval`` seconds until it returns something
    other than None, or raise BuildTimeoutError once ``deadline`` passes.
    """
    while True:
        result = probe()
        if result is not None:
            return result
        deadline.check(what)
        log.debug("waiting for %s (%.0fs left)", what, deadline.remaining())
        sleep(min(interval, deadline.remaining()))
