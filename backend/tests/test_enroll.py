import pytest

import biometrics.enroll as enroll
from backend.errors import CameraError, NoFaceDetectedError
from backend.recognizer import FaceDetection
from biometrics.enroll import build_reference_descriptor, image_data_url
from conftest import face_vector, fake_detector, png_bytes


def test_descriptors_are_averaged(monkeypatch):
    detections = iter([face_vector(0.1), face_vector(0.3)])
    monkeypatch.setattr(
        enroll,
        "detect_face",
        lambda _frame, **_kw: FaceDetection(next(detections), None, 1),
    )

    reference = build_reference_descriptor([png_bytes(), png_bytes()])

    assert len(reference) == 128
    assert reference[0] == pytest.approx(0.2)


def test_photo_without_face_is_rejected(monkeypatch):
    monkeypatch.setattr(enroll, "detect_face", fake_detector(None))
    with pytest.raises(NoFaceDetectedError):
        build_reference_descriptor([png_bytes()])


def test_undecodable_photo_is_rejected(monkeypatch):
    monkeypatch.setattr(enroll, "detect_face", fake_detector(face_vector(0.1)))
    with pytest.raises(CameraError):
        build_reference_descriptor([b"not an image"])


def test_no_photos():
    with pytest.raises(NoFaceDetectedError):
        build_reference_descriptor([])


def test_image_data_url():
    assert image_data_url(b"abc", "image/jpeg") == "data:image/jpeg;base64,YWJj"
