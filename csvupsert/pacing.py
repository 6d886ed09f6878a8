import time
from collections.abc import Callable


class IntervalPacer:
    """Fixed-interval gate between consecutive remote batches."""

    def __init__(self, interval_seconds: float = 0.1, *, sleep: Callable[[float], None] = time.sleep) -> None:
        if interval_seconds < 0:
            raise ValueError("interval_seconds must not be negative")
        self.interval_seconds = interval_seconds
        self._sleep = sleep

    def pause(self) -> None:
        if self.interval_seconds > 0:
            self._sleep(self.interval_seconds)
