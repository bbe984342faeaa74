import base64
import logging
from typing import Iterable

import numpy as np

from backend.capture import decode_image
from backend.errors import CameraError, NoFaceDetectedError
from backend.recognizer import detect_face
from biometrics.matcher import as_descriptor

logger = logging.getLogger(__name__)


def build_reference_descriptor(images: Iterable[bytes]) -> list[float]:
    """
    Reference descriptor for a student from one or more enrollment photos.

    Every photo must decode and contain a face; with several photos the
    descriptors are averaged into the single stored reference.
    """
    descriptors = []
    for idx, data in enumerate(images, start=1):
        frame = decode_image(data)
        if frame is None:
            raise CameraError(f"Enrollment image {idx} is not a valid JPG/PNG.")

        detection = detect_face(frame, reject_multiple=True)
        if detection.descriptor is None:
            logger.info("Enrollment image %s rejected: %s", idx, detection.reason)
            raise NoFaceDetectedError(
                f"Enrollment image {idx}: exactly one clear face is required."
            )
        descriptors.append(as_descriptor(detection.descriptor))

    if not descriptors:
        raise NoFaceDetectedError("At least 1 face image is required.")

    reference = np.mean(np.stack(descriptors), axis=0)
    return [float(v) for v in reference]


def image_data_url(data: bytes, content_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{content_type};base64,{encoded}"
