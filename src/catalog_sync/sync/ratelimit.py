"""Sliding-window requests-per-minute gate for AI provider calls."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
SAFETY_MARGIN_SECONDS = 0.5


class RequestRateLimiter:
    """Block callers so that at most ``max_per_minute`` acquisitions land in any 60s window.

    ``max_per_minute <= 0`` disables the gate.
    """

    def __init__(
        self,
        max_per_minute: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_per_minute = max_per_minute
        self._clock = clock
        self._sleep = sleep
        self._stamps: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.max_per_minute > 0

    def acquire(self) -> float:
        """Take one slot, sleeping while the window is full; returns seconds waited."""

        if not self.enabled:
            return 0.0
        waited = 0.0
        while True:
            with self._lock:
                now = self._clock()
                while self._stamps and now - self._stamps[0] >= WINDOW_SECONDS:
                    self._stamps.popleft()
                if len(self._stamps) < self.max_per_minute:
                    self._stamps.append(now)
                    return waited
                wait_seconds = WINDOW_SECONDS - (now - self._stamps[0]) + SAFETY_MARGIN_SECONDS
            logger.info(
                "Provider RPM limit (%d) reached, waiting %.1fs",
                self.max_per_minute,
                wait_seconds,
            )
            self._sleep(wait_seconds)
            waited += wait_seconds
