"""Frame sources for face capture: uploaded images and local cameras."""

import logging
from typing import Protocol

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.errors import CameraError

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png")


class FrameSource(Protocol):
    def read(self): ...

    def release(self) -> None: ...


def decode_image(data: bytes):
    """BGR frame from JPG/PNG bytes, or None if the bytes are not an image."""
    if not data:
        return None
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)


class UploadedFrameSource:
    """A single frame the browser captured and posted."""

    def __init__(self, data: bytes):
        self._data: bytes | None = data
        self.released = False

    def read(self):
        if self._data is None:
            raise CameraError("Frame already released.")
        frame = decode_image(self._data)
        if frame is None:
            raise CameraError("Invalid image data.")
        return frame

    def release(self) -> None:
        self._data = None
        self.released = True

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.release()
        return False


class CameraFrameSource:
    """Local webcam for kiosk mode; the device is opened lazily."""

    def __init__(self, index: int = 0, warmup_frames: int = 3):
        self.index = index
        self.warmup_frames = warmup_frames
        self._capture = None

    def _open(self):
        if self._capture is not None and self._capture.isOpened():
            return self._capture
        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise CameraError(f"Cannot open camera index {self.index}.")
        for _ in range(self.warmup_frames):
            capture.read()
        self._capture = capture
        return capture

    def read(self):
        ok, frame = self._open().read()
        if not ok or frame is None:
            raise CameraError("Could not read a frame from the camera.")
        return frame

    def release(self) -> None:
        capture, self._capture = self._capture, None
        if capture is not None:
            capture.release()
            logger.debug("Camera %s released", self.index)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.release()
        return False
