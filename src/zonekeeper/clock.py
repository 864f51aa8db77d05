from __future__ import annotations

import threading
import time


class SystemClock:
    """Wall clock for lease timestamps, monotonic clock for deadlines.

    ``wait`` is the single suspension point used by the poller and the boot
    jitter; it returns True when the stop event fired during the wait.
    """

    def now(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()

    def wait(self, stop_event: threading.Event, seconds: float) -> bool:
        if seconds <= 0:
            return stop_event.is_set()
        return stop_event.wait(seconds)


DEFAULT_CLOCK = SystemClock()
