"""
Tests for background camera monitoring and camera arbitration
"""
import asyncio
import threading
from unittest.mock import AsyncMock

import pytest

from examguard.errors import InvalidTransition
from examguard.models.schemas import CameraOwner, MonitoringFrame
from examguard.monitoring.camera_arbiter import CameraArbiter
from examguard.monitoring.camera_monitor import CameraMonitor, MonitorState

from conftest import wait_for_state


def _monitor(opener, monitoring_api=None, buffer_cap=10):
    arbiter = CameraArbiter()
    monitor = CameraMonitor(
        arbiter,
        monitoring_api=monitoring_api,
        camera_index=0,
        capture_interval_ms=3_600_000,
        buffer_cap=buffer_cap,
        stream_opener=opener,
    )
    return arbiter, monitor


class TestLifecycle:

    async def test_start_acquires_camera(self, opener):
        arbiter, monitor = _monitor(opener)

        assert await monitor.start() == "active"
        assert monitor.is_monitoring
        assert monitor.is_camera_open()
        assert arbiter.owner == CameraOwner.MONITORING
        monitor.stop()

    async def test_optional_camera_failure_degrades(self, opener):
        opener.fail = True
        arbiter, monitor = _monitor(opener)
        degraded = []
        monitor.signals.connect("degraded", lambda reason: degraded.append(reason))

        assert await monitor.start(mandatory=False) == "degraded"
        assert monitor.state == MonitorState.DEGRADED
        assert arbiter.owner == CameraOwner.NONE
        assert len(degraded) == 1

    async def test_mandatory_camera_failure_is_fatal(self, opener):
        opener.fail = True
        arbiter, monitor = _monitor(opener)
        fatal = []
        monitor.signals.connect("fatal", lambda reason: fatal.append(reason))

        assert await monitor.start(mandatory=True) == "fatal"
        assert monitor.state == MonitorState.STOPPED
        assert fatal

    async def test_pause_releases_hardware(self, opener):
        arbiter, monitor = _monitor(opener)
        await monitor.start()

        assert monitor.pause() is True
        assert opener.log == ["open:1", "release:1"]
        assert monitor.state == MonitorState.PAUSED
        assert arbiter.owner == CameraOwner.NONE
        assert monitor.pause() is False

    async def test_resume_reacquires(self, opener):
        arbiter, monitor = _monitor(opener)
        await monitor.start()
        monitor.pause()

        assert await monitor.resume() is True
        assert monitor.is_monitoring
        assert opener.log == ["open:1", "release:1", "open:2"]
        assert arbiter.owner == CameraOwner.MONITORING
        monitor.stop()

    async def test_resume_failure_degrades(self, opener):
        _, monitor = _monitor(opener)
        await monitor.start()
        monitor.pause()
        opener.fail = True

        assert await monitor.resume() is False
        assert monitor.state == MonitorState.DEGRADED

    async def test_stop_is_idempotent(self, opener):
        arbiter, monitor = _monitor(opener)
        stopped = []
        monitor.signals.connect("stopped", lambda frames_captured: stopped.append(frames_captured))
        await monitor.start()

        monitor.stop()
        monitor.stop()

        assert stopped == [0]
        assert opener.log == ["open:1", "release:1"]
        assert arbiter.owner == CameraOwner.NONE
        assert await monitor.resume() is False


class TestCapture:

    async def test_capture_buffers_jpeg_frame(self, opener):
        _, monitor = _monitor(opener)
        await monitor.start()

        frame = await monitor.capture_frame()

        assert frame.image.startswith(b"\xff\xd8")
        assert frame.content_type == "image/jpeg"
        assert list(monitor.buffer) == [frame]
        assert monitor.frames_captured == 1
        monitor.stop()

    async def test_capture_while_paused_does_nothing(self, opener):
        _, monitor = _monitor(opener)
        await monitor.start()
        monitor.pause()

        assert await monitor.capture_frame() is None
        assert "read:1" not in opener.log

    async def test_buffer_drops_oldest(self, opener):
        _, monitor = _monitor(opener, buffer_cap=3)
        await monitor.start()

        frames = [await monitor.capture_frame() for _ in range(5)]

        assert list(monitor.buffer) == frames[2:]
        monitor.stop()

    async def test_drain_keeps_frames_after_failure(self):
        api = AsyncMock()
        api.push_frame.side_effect = [RuntimeError("offline"), None, None]
        _, monitor = _monitor(lambda index: None, monitoring_api=api)
        monitor.monitoring_session_id = "MON_1"
        first, second = MonitoringFrame(image=b"1"), MonitoringFrame(image=b"2")
        monitor.buffer.extend([first, second])

        assert await monitor.drain_frames() == 0
        assert list(monitor.buffer) == [first, second]

        assert await monitor.drain_frames() == 2
        assert not monitor.buffer
        pushed = [call.args[1] for call in api.push_frame.await_args_list]
        assert pushed == [first, first, second]


class TestArbiter:

    async def test_foreground_capture_pauses_and_resumes_monitor(self, opener):
        arbiter, monitor = _monitor(opener)
        await monitor.start()

        async with arbiter.foreground_capture():
            assert arbiter.owner == CameraOwner.CAPTURE
            assert monitor.state == MonitorState.PAUSED
            assert not monitor.is_camera_open()

        assert arbiter.owner == CameraOwner.MONITORING
        assert monitor.is_monitoring
        monitor.stop()

    async def test_foreground_capture_is_exclusive(self):
        arbiter = CameraArbiter()
        async with arbiter.foreground_capture():
            assert arbiter.claim_monitoring() is False
            with pytest.raises(InvalidTransition):
                async with arbiter.foreground_capture():
                    pass
        assert arbiter.owner == CameraOwner.NONE

    async def test_monitor_cannot_start_during_capture(self, opener):
        arbiter, monitor = _monitor(opener)
        async with arbiter.foreground_capture():
            assert await monitor.start() == "degraded"
        assert opener.log == []

    async def test_capture_pauses_monitor_that_is_still_opening(self, opener):
        """A capture that lands while the monitor is opening wins; the late stream is released"""
        arbiter, monitor = _monitor(opener)
        gate = threading.Event()
        opener.gate = gate
        starting = asyncio.create_task(monitor.start())
        await wait_for_state(monitor, MonitorState.STARTING)

        async with arbiter.foreground_capture():
            assert monitor.state == MonitorState.PAUSED
            gate.set()
            assert await starting == MonitorState.PAUSED
            assert not monitor.is_camera_open()
            assert arbiter.owner == CameraOwner.CAPTURE

        assert opener.log == ["open:1", "release:1", "open:2"]
        assert monitor.is_monitoring
        assert arbiter.owner == CameraOwner.MONITORING
        monitor.stop()

    async def test_stop_while_opening_releases_late_stream(self, opener):
        arbiter, monitor = _monitor(opener)
        gate = threading.Event()
        opener.gate = gate
        starting = asyncio.create_task(monitor.start())
        await wait_for_state(monitor, MonitorState.STARTING)

        monitor.stop()
        gate.set()

        assert await starting == MonitorState.STOPPED
        assert opener.log == ["open:1", "release:1"]
        assert not monitor.is_camera_open()
        assert arbiter.owner == CameraOwner.NONE
