import cv2
import numpy as np
from typing import Callable, Dict, Optional


class VideoStream:
    """A single opened camera device. ``release()`` is safe to call repeatedly."""

    def __init__(self, camera_index: int, width: int = 640, height: int = 480):
        self.camera_index = camera_index
        self.cap: Optional[cv2.VideoCapture] = cv2.VideoCapture(camera_index)
        if not self.cap.isOpened():
            self.cap.release()
            self.cap = None
            raise RuntimeError(
                f"Could not open camera at index {camera_index}. "
                "Please ensure camera is connected and accessible."
            )
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)

    @property
    def is_open(self) -> bool:
        return self.cap is not None and self.cap.isOpened()

    def read(self) -> Optional[np.ndarray]:
        if not self.is_open:
            return None
        ret, frame = self.cap.read()
        if not ret:
            return None
        return frame

    def release(self) -> None:
        if self.cap is not None:
            try:
                self.cap.release()
            finally:
                self.cap = None


StreamOpener = Callable[[int], VideoStream]


def open_video_stream(camera_index: int) -> VideoStream:
    return VideoStream(camera_index)


def detect_available_cameras(max_index: int = 5) -> Dict[int, bool]:
    """Probe camera indices and return availability map."""
    availability: Dict[int, bool] = {}
    for idx in range(max_index + 1):
        cap = cv2.VideoCapture(idx)
        available = cap.isOpened()
        if available:
            cap.release()
        availability[idx] = available
    return availability


def choose_camera_index(preferred: Optional[int]) -> Optional[int]:
    """Return a camera index to use, preferring the provided index else first available."""
    if preferred is not None:
        return preferred
    availability = detect_available_cameras()
    for idx, ok in availability.items():
        if ok:
            return idx
    return None


def encode_jpeg(frame: np.ndarray, quality: int = 90, enhance: bool = False) -> bytes:
    """Encode a BGR frame as JPEG, optionally lifting brightness and contrast first."""
    if enhance:
        frame = cv2.convertScaleAbs(frame, alpha=1.2, beta=10)
    success, buffer = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
    if not success:
        raise ValueError("Failed to encode frame")
    return buffer.tobytes()
