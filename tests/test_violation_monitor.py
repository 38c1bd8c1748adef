"""
Tests for violation classification, thresholds and audit delivery
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from examguard.models.schemas import KeyEvent, ViolationType
from examguard.monitoring.violation_monitor import ViolationMonitor, is_prohibited_key


def _collect(monitor):
    events = []
    monitor.signals.connect_all(lambda name, payload: events.append((name, payload)))
    return events


class TestThreshold:

    def test_threshold_three_warns_twice_then_escalates(self):
        """Three tab switches with threshold 3: warn(1), warn(0), escalate(3)"""
        monitor = ViolationMonitor(threshold=3)
        monitor.arm()
        events = _collect(monitor)

        for _ in range(3):
            monitor.on_visibility_change(hidden=True)

        assert [(name, p.get("remaining", p.get("count"))) for name, p in events] == [
            ("warn", 1),
            ("warn", 0),
            ("escalate", 3),
        ]
        assert len(monitor.violations) == 3
        assert all(v.type == ViolationType.TAB_SWITCH for v in monitor.violations)

    def test_escalate_fires_once(self):
        monitor = ViolationMonitor(threshold=2)
        monitor.arm()
        events = _collect(monitor)

        for _ in range(5):
            monitor.record(ViolationType.TAB_SWITCH)

        assert [name for name, _ in events].count("escalate") == 1
        assert len(monitor.violations) == 5

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            ViolationMonitor(threshold=0)

    def test_becoming_visible_is_not_a_violation(self):
        monitor = ViolationMonitor(threshold=3)
        monitor.arm()
        assert monitor.on_visibility_change(hidden=False) is None
        assert monitor.violations == []

    def test_events_ignored_until_armed(self):
        monitor = ViolationMonitor(threshold=3)
        assert monitor.on_visibility_change(hidden=True) is None
        monitor.arm()
        monitor.disarm()
        assert monitor.on_visibility_change(hidden=True) is None
        assert monitor.violations == []


class TestFullscreenAndOverlay:

    def test_fullscreen_exit_only_counts_when_required(self):
        monitor = ViolationMonitor(threshold=5)
        monitor.arm(require_fullscreen=False)
        assert monitor.on_fullscreen_change(is_fullscreen=False) is None

        monitor.arm(require_fullscreen=True)
        violation = monitor.on_fullscreen_change(is_fullscreen=False)
        assert violation.type == ViolationType.FULLSCREEN_EXIT

    def test_overlay_suppresses_visibility_and_fullscreen(self):
        """A file picker or camera dialog is not the student leaving the test"""
        monitor = ViolationMonitor(threshold=5)
        monitor.arm(require_fullscreen=True)

        with monitor.cooperative_overlay():
            assert monitor.overlay_open
            assert monitor.on_visibility_change(hidden=True) is None
            assert monitor.on_fullscreen_change(is_fullscreen=False) is None

        assert not monitor.overlay_open
        assert monitor.on_visibility_change(hidden=True) is not None

    def test_nested_overlays(self):
        monitor = ViolationMonitor(threshold=5)
        monitor.arm()
        monitor.begin_overlay()
        monitor.begin_overlay()
        monitor.end_overlay()
        assert monitor.on_visibility_change(hidden=True) is None
        monitor.end_overlay()
        monitor.end_overlay()
        assert not monitor.overlay_open


class TestKeyDenylist:

    @pytest.mark.parametrize("event", [
        KeyEvent(key="c", ctrl_key=True),
        KeyEvent(key="V", ctrl_key=True),
        KeyEvent(key="F12"),
        KeyEvent(key="i", ctrl_key=True, shift_key=True),
        KeyEvent(key="u", meta_key=True),
    ])
    def test_prohibited(self, event):
        assert is_prohibited_key(event)

    @pytest.mark.parametrize("event", [
        KeyEvent(key="c"),
        KeyEvent(key="z", ctrl_key=True),
        KeyEvent(key="v", ctrl_key=True, shift_key=True),
        KeyEvent(key="Enter"),
    ])
    def test_allowed(self, event):
        assert not is_prohibited_key(event)

    def test_keydown_prevents_and_records(self):
        monitor = ViolationMonitor(threshold=5)
        monitor.arm()

        assert monitor.on_keydown(KeyEvent(key="c", ctrl_key=True)) is True
        assert monitor.on_keydown(KeyEvent(key="a")) is False

        assert len(monitor.violations) == 1
        assert monitor.violations[0].type == ViolationType.PROHIBITED_KEYS
        assert monitor.violations[0].details["key"] == "c"

    def test_keydown_prevented_but_not_recorded_when_disarmed(self):
        monitor = ViolationMonitor(threshold=5)
        assert monitor.on_keydown(KeyEvent(key="F12")) is True
        assert monitor.violations == []


class TestDelivery:

    async def test_failed_push_is_retried(self):
        api = AsyncMock()
        api.push_violation.side_effect = [RuntimeError("offline"), None]
        monitor = ViolationMonitor(threshold=5, monitoring_api=api, retry_seconds=3600)
        monitor.arm(monitoring_session_id="MON_1")

        monitor.record(ViolationType.TAB_SWITCH)
        await asyncio.sleep(0)
        assert monitor.pending_count == 1

        assert await monitor.flush_pending() == 1
        assert monitor.pending_count == 0
        assert api.push_violation.await_count == 2
        monitor.disarm()

    async def test_local_count_does_not_wait_for_delivery(self):
        """Escalation happens even when the server never acknowledges"""
        api = AsyncMock()
        api.push_violation.side_effect = RuntimeError("offline")
        monitor = ViolationMonitor(threshold=1, monitoring_api=api, retry_seconds=3600)
        monitor.arm(monitoring_session_id="MON_1")
        events = _collect(monitor)

        monitor.record(ViolationType.TAB_SWITCH)
        assert events[0][0] == "escalate"

        await monitor.drain()
        assert monitor.pending_count == 1
        monitor.disarm()

    def test_no_monitoring_session_skips_delivery(self):
        api = AsyncMock()
        monitor = ViolationMonitor(threshold=5, monitoring_api=api)
        monitor.record(ViolationType.TAB_SWITCH)
        assert monitor.pending_count == 0
        api.push_violation.assert_not_called()
