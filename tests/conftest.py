"""
Pytest configuration for the proctoring agent tests
"""
import asyncio
import threading
from typing import List, Optional
from unittest.mock import AsyncMock

import numpy as np
import pytest

from examguard.config import Settings
from examguard.models.schemas import (
    ExamConfig,
    HandoffStatus,
    HandoffTicket,
    StartResult,
    SubmitResult,
)

JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
PDF_BYTES = b"%PDF-1.4\n" + b"\x00" * 32


class FakeStream:
    """Stands in for VideoStream; records every read/release in a shared log."""

    def __init__(self, serial: int, log: List[str]):
        self.serial = serial
        self.log = log
        self.released = False

    @property
    def is_open(self) -> bool:
        return not self.released

    def read(self):
        self.log.append(f"read:{self.serial}")
        return np.full((48, 64, 3), 128, dtype=np.uint8)

    def release(self) -> None:
        if not self.released:
            self.released = True
            self.log.append(f"release:{self.serial}")


class FakeOpener:
    """Injected as ``stream_opener``; ``fail = True`` simulates a missing camera.

    Setting ``gate`` holds the next open until the event is set, which keeps
    a monitor in its opening window for as long as a test needs.
    """

    def __init__(self):
        self.log: List[str] = []
        self.streams: List[FakeStream] = []
        self.fail = False
        self.gate: Optional[threading.Event] = None

    def __call__(self, camera_index: int) -> FakeStream:
        gate, self.gate = self.gate, None
        if gate is not None:
            gate.wait(timeout=5)
        if self.fail:
            self.log.append("open-failed")
            raise RuntimeError(f"Could not open camera at index {camera_index}")
        stream = FakeStream(len(self.streams) + 1, self.log)
        self.streams.append(stream)
        self.log.append(f"open:{stream.serial}")
        return stream


async def wait_for_state(monitor, state):
    """Yield to the loop until the monitor reaches ``state``."""
    for _ in range(500):
        if monitor.state == state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"monitor never reached {state}, still {monitor.state}")


class FakeTime:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.value = start_ms

    def __call__(self) -> int:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += int(seconds * 1000)


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def opener():
    return FakeOpener()


@pytest.fixture
def settings():
    """Settings with timers slow enough that no background tick fires during a test"""
    return Settings(
        EXAM_SERVER_URL="http://exam.test",
        PUBLIC_BASE_URL="http://student.test",
        CLOCK_TICK_SECONDS=3600,
        CAPTURE_INTERVAL_MS=3_600_000,
        MONITOR_CAMERA_INDEX=0,
        MOBILE_POLL_SECONDS=3600,
        VIOLATION_RETRY_SECONDS=3600,
    )


@pytest.fixture
def session_api():
    api = AsyncMock()
    api.start.return_value = StartResult(accepted=True)
    api.submit.return_value = SubmitResult(accepted=True, result_ref="RESULT_1")
    return api


@pytest.fixture
def monitoring_api():
    api = AsyncMock()
    api.start.return_value = "MON_1"
    return api


@pytest.fixture
def artifact_api():
    api = AsyncMock()
    api.upload_single.return_value = "drive://single"
    api.assemble_and_upload.return_value = "drive://assembled"
    return api


@pytest.fixture
def mobile_api():
    api = AsyncMock()
    api.request.return_value = HandoffTicket(token="tok123")
    api.poll_status.return_value = HandoffStatus(status="pending", upload_count=0)
    return api


@pytest.fixture
def exam():
    return ExamConfig(test_id="T1", duration_minutes=60)


@pytest.fixture
def collaborators(session_api, monitoring_api, artifact_api, mobile_api):
    return session_api, monitoring_api, artifact_api, mobile_api
