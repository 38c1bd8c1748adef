"""
Violation Monitor - classifies browser-boundary events into violations

Local state is authoritative: the threshold check and the ``escalate``
signal never wait on the audit trail. Each violation is also pushed to the
monitoring collaborator; failed pushes are kept and retried on the next
flush.
"""

import asyncio
import logging
from collections import deque
from contextlib import contextmanager
from typing import Any, Deque, Dict, List, Optional, Set, Union

from ..models.schemas import KeyEvent, Violation, ViolationType
from ..collaborators import MonitoringApi
from ..logging_utils import log_violation
from ..scheduling import PeriodicTask
from ..signals import SignalBus

logger = logging.getLogger(__name__)

# (ctrl, shift, key) combinations whose default action is always suppressed
PROHIBITED_COMBINATIONS = {
    (True, False, "c"),
    (True, False, "v"),
    (True, False, "a"),
    (True, False, "s"),
    (True, False, "p"),
    (True, False, "u"),
    (True, False, "i"),
    (True, False, "j"),
    (True, True, "i"),
    (True, True, "j"),
    (True, True, "c"),
}
PROHIBITED_KEYS = {"f12"}


def is_prohibited_key(event: KeyEvent) -> bool:
    key = event.key.lower()
    if key in PROHIBITED_KEYS:
        return True
    ctrl = event.ctrl_key or event.meta_key
    return (ctrl, event.shift_key, key) in PROHIBITED_COMBINATIONS


class ViolationMonitor:
    def __init__(
        self,
        threshold: int,
        monitoring_api: Optional[MonitoringApi] = None,
        retry_seconds: float = 15.0,
    ):
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.threshold = threshold
        self.monitoring_api = monitoring_api
        self.retry_seconds = retry_seconds
        self.signals = SignalBus("violations")

        self.violations: List[Violation] = []
        self.escalated = False
        self.armed = False
        self.require_fullscreen = False
        self.monitoring_session_id: Optional[str] = None

        self._overlays = 0
        self._pending: Deque[Violation] = deque()
        self._delivery_tasks: Set[asyncio.Task] = set()
        self._retry_task: Optional[PeriodicTask] = None

    # ============== Lifecycle ==============

    def arm(self, require_fullscreen: bool = False, monitoring_session_id: Optional[str] = None) -> None:
        """Start classifying events."""
        self.armed = True
        self.require_fullscreen = require_fullscreen
        self.monitoring_session_id = monitoring_session_id
        if self.monitoring_api is not None and self._retry_task is None:
            self._retry_task = PeriodicTask("violation-retry", self.retry_seconds, self.flush_pending)
            self._retry_task.start()

    def disarm(self) -> None:
        """Stop classifying events; idempotent."""
        self.armed = False
        if self._retry_task is not None:
            self._retry_task.stop()
            self._retry_task = None

    # ============== Cooperative overlays ==============

    @property
    def overlay_open(self) -> bool:
        return self._overlays > 0

    def begin_overlay(self) -> None:
        self._overlays += 1

    def end_overlay(self) -> None:
        self._overlays = max(0, self._overlays - 1)

    @contextmanager
    def cooperative_overlay(self):
        """Suspend visibility/fullscreen detection while a picker or camera is open."""
        self.begin_overlay()
        try:
            yield
        finally:
            self.end_overlay()

    # ============== Recording ==============

    def record(self, violation_type: ViolationType, details: Union[str, Dict[str, Any]] = "") -> Violation:
        violation = Violation(type=violation_type, details=details or f"{violation_type.value} violation detected")
        self.violations.append(violation)
        count = len(self.violations)

        if self.monitoring_session_id:
            log_violation(self.monitoring_session_id, violation_type.value, count, self.threshold)
        else:
            logger.warning(f"Violation recorded: {violation_type.value} ({count}/{self.threshold})")

        if count >= self.threshold:
            if not self.escalated:
                self.escalated = True
                self.signals.emit("escalate", count=count, violation=violation)
        else:
            # warnings left before the next violation escalates
            self.signals.emit("warn", remaining=self.threshold - count - 1, violation=violation)

        self._schedule_delivery(violation)
        return violation

    # ============== Classifiers ==============

    def on_visibility_change(self, hidden: bool) -> Optional[Violation]:
        if not hidden or not self.armed or self.overlay_open:
            return None
        return self.record(ViolationType.TAB_SWITCH, "Student switched away from test tab")

    def on_fullscreen_change(self, is_fullscreen: bool) -> Optional[Violation]:
        if is_fullscreen or not self.armed or not self.require_fullscreen or self.overlay_open:
            return None
        return self.record(ViolationType.FULLSCREEN_EXIT, "Student exited fullscreen mode")

    def on_keydown(self, event: KeyEvent) -> bool:
        """Return True when the browser default action must be prevented."""
        if not is_prohibited_key(event):
            return False
        if self.armed:
            self.record(
                ViolationType.PROHIBITED_KEYS,
                {"key": event.key, "ctrl_key": event.ctrl_key, "shift_key": event.shift_key},
            )
        return True

    # ============== Audit delivery ==============

    def _schedule_delivery(self, violation: Violation) -> None:
        if self.monitoring_api is None:
            return
        if not self.monitoring_session_id:
            logger.warning("No monitoring session ID - violation not sent to server")
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._pending.append(violation)
            return
        task = loop.create_task(self._deliver(violation))
        self._delivery_tasks.add(task)
        task.add_done_callback(self._delivery_tasks.discard)

    async def _deliver(self, violation: Violation) -> bool:
        try:
            await self.monitoring_api.push_violation(self.monitoring_session_id, violation)
            return True
        except Exception as e:
            logger.error(f"Failed to record violation on server: {e}")
            self._pending.append(violation)
            return False

    async def flush_pending(self) -> int:
        """Retry violations whose delivery failed. Returns how many were delivered."""
        if self.monitoring_api is None or not self.monitoring_session_id:
            return 0
        delivered = 0
        for _ in range(len(self._pending)):
            violation = self._pending.popleft()
            if await self._deliver(violation):
                delivered += 1
        return delivered

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for in-flight deliveries, then make one last retry pass."""
        if self._delivery_tasks:
            await asyncio.gather(*list(self._delivery_tasks), return_exceptions=True)
        await self.flush_pending()
