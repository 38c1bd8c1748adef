"""
Deadline clock anchored to wall-clock time.

Remaining time is always recomputed from the anchor, so a restarted agent that
resumes with the server-confirmed elapsed time lands on the same deadline.
"""
import logging
import time
from typing import Callable, Optional

from ..scheduling import PeriodicTask
from ..signals import SignalBus

logger = logging.getLogger(__name__)


def epoch_ms() -> int:
    return int(time.time() * 1000)


class DeadlineClock:
    def __init__(self, tick_seconds: float = 1.0, now_ms: Callable[[], int] = epoch_ms):
        self.tick_seconds = tick_seconds
        self.now_ms = now_ms
        self.signals = SignalBus("clock")

        self.duration_seconds = 0
        self.anchor_ms: Optional[int] = None
        self.expired = False
        self._ticker: Optional[PeriodicTask] = None

    def start(self, duration_seconds: int, elapsed_seconds: int = 0) -> None:
        """Anchor the deadline; ``elapsed_seconds`` > 0 resumes an earlier attempt."""
        self.duration_seconds = duration_seconds
        self.anchor_ms = self.now_ms() - elapsed_seconds * 1000
        self.expired = False
        logger.info(f"Clock started: duration={duration_seconds}s elapsed={elapsed_seconds}s")

        self._ticker = PeriodicTask("clock", self.tick_seconds, self.tick)
        self._ticker.start()

    @property
    def running(self) -> bool:
        return self._ticker is not None and self._ticker.running

    def time_taken_seconds(self) -> int:
        if self.anchor_ms is None:
            return 0
        elapsed = max(0, self.now_ms() - self.anchor_ms) // 1000
        return int(min(elapsed, self.duration_seconds))

    def remaining_seconds(self) -> int:
        if self.anchor_ms is None:
            return self.duration_seconds
        elapsed = max(0, self.now_ms() - self.anchor_ms) // 1000
        return int(max(0, self.duration_seconds - elapsed))

    def tick(self) -> None:
        if self.anchor_ms is None or self.expired:
            return

        remaining = self.remaining_seconds()
        self.signals.emit(
            "tick",
            remaining_seconds=remaining,
            time_taken_seconds=self.time_taken_seconds(),
        )

        if remaining <= 0:
            self.expired = True
            self.stop()
            logger.info("Clock expired")
            self.signals.emit("expired")

    def stop(self) -> None:
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None
