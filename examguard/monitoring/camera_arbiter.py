import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, Protocol

from ..errors import InvalidTransition
from ..models.schemas import CameraOwner

logger = logging.getLogger(__name__)


class PausableCamera(Protocol):
    is_monitoring: bool

    def pause(self) -> bool: ...

    async def resume(self) -> bool: ...


class CameraArbiter:
    """
    Single owner of the camera hardware.

    Background monitoring and foreground document capture both go through
    here; a foreground capture pauses the monitor before it opens its own
    stream and resumes it after the stream is released.

    Captures are serialized: the capture lock is held until the monitor has
    finished resuming, so a capture requested during that window waits for
    the monitor to come back and then pauses it again.
    """

    def __init__(self):
        self.owner = CameraOwner.NONE
        self._monitor: Optional[PausableCamera] = None
        self._capture_lock = asyncio.Lock()

    def register_monitor(self, monitor: PausableCamera) -> None:
        self._monitor = monitor

    def claim_monitoring(self) -> bool:
        if self.owner == CameraOwner.CAPTURE:
            return False
        self.owner = CameraOwner.MONITORING
        return True

    def release_monitoring(self) -> None:
        if self.owner == CameraOwner.MONITORING:
            self.owner = CameraOwner.NONE

    @asynccontextmanager
    async def foreground_capture(self):
        if self.owner == CameraOwner.CAPTURE:
            raise InvalidTransition("Camera is already in use for document capture")

        async with self._capture_lock:
            paused = self._monitor is not None and self._monitor.pause()
            if paused:
                logger.info("Monitoring paused for camera capture")
            self.owner = CameraOwner.CAPTURE
            try:
                yield
            finally:
                self.owner = CameraOwner.NONE
                if paused:
                    if await self._monitor.resume():
                        logger.info("Monitoring resumed after camera capture")
                    else:
                        logger.warning("Camera monitoring could not be resumed")
                elif self._monitor is not None and self._monitor.is_monitoring:
                    self.owner = CameraOwner.MONITORING
