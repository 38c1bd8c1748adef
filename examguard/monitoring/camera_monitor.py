import asyncio
import logging
from collections import deque
from typing import Deque, Optional, Tuple

from ..collaborators import MonitoringApi
from ..models.schemas import MonitoringFrame
from ..scheduling import PeriodicTask
from ..signals import SignalBus
from .camera_arbiter import CameraArbiter
from .video import StreamOpener, VideoStream, choose_camera_index, encode_jpeg, open_video_stream

logger = logging.getLogger(__name__)


class MonitorState:
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    PAUSED = "paused"
    DEGRADED = "degraded"
    STOPPED = "stopped"


class CameraMonitor:
    """
    Periodic background snapshots from the front-facing camera.

    Frames are buffered (bounded, oldest dropped first) and drained to the
    monitoring collaborator in a separate task so a slow or failing upload
    never delays the next capture.
    """

    def __init__(
        self,
        arbiter: CameraArbiter,
        monitoring_api: Optional[MonitoringApi] = None,
        camera_index: Optional[int] = None,
        capture_interval_ms: int = 30000,
        buffer_cap: int = 10,
        jpeg_quality: int = 90,
        stream_opener: StreamOpener = open_video_stream,
    ):
        self.arbiter = arbiter
        self.monitoring_api = monitoring_api
        self.camera_index = camera_index
        self.capture_interval_ms = capture_interval_ms
        self.jpeg_quality = jpeg_quality
        self.stream_opener = stream_opener
        self.signals = SignalBus("camera")

        self.state = MonitorState.IDLE
        self.monitoring_session_id: Optional[str] = None
        self.buffer: Deque[MonitoringFrame] = deque(maxlen=buffer_cap)
        self.frames_captured = 0

        self._stream: Optional[VideoStream] = None
        self._interval: Optional[PeriodicTask] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._attempt = 0

        arbiter.register_monitor(self)

    @property
    def is_monitoring(self) -> bool:
        return self.state == MonitorState.ACTIVE

    def is_camera_open(self) -> bool:
        return self._stream is not None and self._stream.is_open

    # ============== Lifecycle ==============

    async def start(self, mandatory: bool = False) -> str:
        """
        Acquire the camera and begin periodic capture.

        Returns ``active``, ``degraded`` (optional monitoring, camera
        unavailable) or ``fatal`` (mandatory monitoring, camera unavailable;
        the monitor is left stopped). Never raises. A ``pause()`` or
        ``stop()`` that lands while the device is opening wins, and the
        freshly opened stream is released.
        """
        if self.state != MonitorState.IDLE:
            return self.state

        self.state = MonitorState.STARTING
        attempt = self._next_attempt()
        stream, error = await self._acquire()
        if attempt != self._attempt:
            self._discard(stream)
            return self.state
        if error is None:
            self._stream = stream
            self.state = MonitorState.ACTIVE
            self._start_interval()
            logger.info(f"Camera monitoring started (interval={self.capture_interval_ms}ms)")
            self.signals.emit("started", camera_index=self.camera_index)
            return self.state

        self.arbiter.release_monitoring()
        if mandatory:
            self.state = MonitorState.STOPPED
            logger.error(f"Camera access is required but unavailable: {error}")
            self.signals.emit("fatal", reason=error)
            return "fatal"

        self.state = MonitorState.DEGRADED
        logger.warning(f"Camera monitoring unavailable, continuing without monitoring: {error}")
        self.signals.emit("degraded", reason=error)
        return self.state

    def pause(self) -> bool:
        """
        Stop capturing and free the camera hardware.

        Returns True if the monitor was active or still opening the device;
        either way it ends up paused and ``resume()`` brings it back.
        """
        if self.state == MonitorState.STARTING:
            # the open in flight sees a newer attempt and releases its stream
            self._next_attempt()
            self.state = MonitorState.PAUSED
            self.signals.emit("paused")
            return True
        if self.state != MonitorState.ACTIVE:
            return False
        self._next_attempt()
        self._stop_interval()
        self._release_stream()
        self.state = MonitorState.PAUSED
        self.signals.emit("paused")
        return True

    async def resume(self) -> bool:
        """Re-acquire the camera and continue at the same cadence."""
        if self.state != MonitorState.PAUSED:
            return False

        self.state = MonitorState.STARTING
        attempt = self._next_attempt()
        stream, error = await self._acquire()
        if attempt != self._attempt:
            # paused again or stopped while the device was opening
            self._discard(stream)
            return False
        if error is not None:
            self.arbiter.release_monitoring()
            self.state = MonitorState.DEGRADED
            logger.warning(f"Camera monitoring could not be resumed: {error}")
            self.signals.emit("degraded", reason=error)
            return False

        self._stream = stream
        self.state = MonitorState.ACTIVE
        self._start_interval()
        self.signals.emit("resumed")
        return True

    def stop(self) -> None:
        """Permanently release the camera; idempotent."""
        if self.state == MonitorState.STOPPED:
            return
        self._next_attempt()
        self._stop_interval()
        self._release_stream()
        self.state = MonitorState.STOPPED
        self.signals.emit("stopped", frames_captured=self.frames_captured)

    # ============== Capture ==============

    async def capture_frame(self) -> Optional[MonitoringFrame]:
        if self.state != MonitorState.ACTIVE or self._stream is None:
            return None

        try:
            frame = self._stream.read()
            if frame is None:
                logger.warning("Camera returned no frame")
                return None
            image = encode_jpeg(frame, self.jpeg_quality, enhance=True)
        except Exception as e:
            logger.error(f"Image capture failed: {e}")
            return None

        monitoring_frame = MonitoringFrame(image=image)
        self.buffer.append(monitoring_frame)
        self.frames_captured += 1
        self.signals.emit("frame", timestamp=monitoring_frame.timestamp, size=len(image))
        self._spawn_drain()
        return monitoring_frame

    def _spawn_drain(self) -> None:
        if self.monitoring_api is None or not self.monitoring_session_id:
            return
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.get_running_loop().create_task(self.drain_frames())

    async def drain_frames(self) -> int:
        """Deliver buffered frames oldest first; stop at the first failure."""
        if self.monitoring_api is None or not self.monitoring_session_id:
            return 0

        delivered = 0
        while self.buffer:
            frame = self.buffer[0]
            try:
                await self.monitoring_api.push_frame(self.monitoring_session_id, frame)
            except Exception as e:
                logger.error(f"Failed to upload monitoring image: {e}")
                break
            # the frame may have been evicted by the buffer cap while uploading
            if self.buffer and self.buffer[0] is frame:
                self.buffer.popleft()
            delivered += 1
        return delivered

    # ============== Internals ==============

    def _next_attempt(self) -> int:
        self._attempt += 1
        return self._attempt

    async def _acquire(self) -> Tuple[Optional[VideoStream], Optional[str]]:
        if not self.arbiter.claim_monitoring():
            return None, "camera is in use for document capture"
        try:
            if self.camera_index is None:
                self.camera_index = await asyncio.to_thread(choose_camera_index, None)
                if self.camera_index is None:
                    raise RuntimeError("No available camera device found")
            stream = await asyncio.to_thread(self.stream_opener, self.camera_index)
        except Exception as e:
            return None, str(e)
        return stream, None

    def _discard(self, stream: Optional[VideoStream]) -> None:
        if stream is None:
            return
        try:
            stream.release()
        except Exception as e:
            logger.warning(f"Error releasing camera: {e}")

    def _release_stream(self) -> None:
        stream, self._stream = self._stream, None
        self._discard(stream)
        self.arbiter.release_monitoring()

    def _start_interval(self) -> None:
        self._interval = PeriodicTask(
            "camera-monitor", self.capture_interval_ms / 1000, self.capture_frame
        )
        self._interval.start()

    def _stop_interval(self) -> None:
        if self._interval is not None:
            self._interval.stop()
            self._interval = None
