import logging
import threading
from typing import NamedTuple

import cv2  # type: ignore
import numpy as np  # type: ignore

from backend.config import FACE_DETECTION_MODEL, FACE_UPSAMPLE_TIMES, REJECT_MULTIPLE_FACES
from backend.errors import FaceModelUnavailableError

logger = logging.getLogger(__name__)

_MODEL = None
_MODEL_LOCK = threading.Lock()


class FaceDetection(NamedTuple):
    descriptor: np.ndarray | None
    reason: str | None  # None | "no_face" | "multiple_faces"
    face_count: int


def load_model():
    """
    Load the dlib detector/descriptor models once per process.
    Later calls return the cached module.
    """
    global _MODEL
    if _MODEL is not None:
        return _MODEL
    with _MODEL_LOCK:
        if _MODEL is None:
            try:
                import face_recognition  # loads the pretrained dlib models
            except ImportError as exc:
                logger.error("face_recognition is not installed: %s", exc)
                raise FaceModelUnavailableError() from exc
            _MODEL = face_recognition
            logger.info("Face descriptor model loaded (detector=%s)", FACE_DETECTION_MODEL)
    return _MODEL


def is_model_loaded() -> bool:
    return _MODEL is not None


def detect_face(frame_bgr, *, reject_multiple: bool = REJECT_MULTIPLE_FACES) -> FaceDetection:
    """
    Detect faces in one frame and describe the chosen one.

    With several faces the largest box wins (the HOG/CNN detectors expose no
    per-face score, box area is the confidence proxy), unless
    `reject_multiple` asks for the frame to be refused instead.

    This is the entry point enrollment and verification call, since both
    report the rejection reason. `extract_descriptor` is the shorthand when
    only the descriptor matters.
    """
    model = load_model()
    rgb = cv2.cvtColor(frame_bgr, cv2.COLOR_BGR2RGB)
    locations = model.face_locations(
        rgb,
        number_of_times_to_upsample=FACE_UPSAMPLE_TIMES,
        model=FACE_DETECTION_MODEL,
    )

    if len(locations) == 0:
        return FaceDetection(None, "no_face", 0)

    if reject_multiple and len(locations) > 1:
        return FaceDetection(None, "multiple_faces", len(locations))

    # (top, right, bottom, left)
    chosen = max(locations, key=lambda r: (r[2] - r[0]) * (r[1] - r[3]))
    encodings = model.face_encodings(rgb, known_face_locations=[chosen])
    if not encodings:
        return FaceDetection(None, "no_face", len(locations))

    return FaceDetection(np.asarray(encodings[0], dtype=np.float64), None, len(locations))


def extract_descriptor(frame_bgr, *, reject_multiple: bool = REJECT_MULTIPLE_FACES) -> np.ndarray | None:
    """Descriptor of the chosen face, or None when the frame has no usable face."""
    return detect_face(frame_bgr, reject_multiple=reject_multiple).descriptor
