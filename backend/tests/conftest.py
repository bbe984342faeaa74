import uuid
from datetime import timedelta
from types import SimpleNamespace

import cv2
import numpy as np
import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from backend.recognizer import FaceDetection
from backend.services.sessions import token_for_session
from database.models import DESCRIPTOR_LENGTH, AttendanceSession


def face_vector(value: float) -> list[float]:
    return [value] * DESCRIPTOR_LENGTH


def fake_detector(descriptor=None, reason=None, face_count=1):
    def _detect(_frame, **_kwargs):
        if descriptor is None:
            return FaceDetection(None, reason or "no_face", face_count if reason else 0)
        return FaceDetection(np.asarray(descriptor, dtype=np.float64), None, face_count)

    return _detect


def png_bytes() -> bytes:
    ok, encoded = cv2.imencode(".png", np.zeros((32, 32, 3), dtype=np.uint8))
    assert ok
    return encoded.tobytes()


def login(client, username: str, password: str) -> dict:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "attendo_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(temp_db, monkeypatch):
    monkeypatch.setattr(main, "ABSENCE_JOB_ENABLED", False)
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def admin_headers(client):
    return login(client, config.ADMIN_USERNAME, config.ADMIN_PASSWORD)


@pytest.fixture()
def school(temp_db):
    """One course, class and subject, a teacher and an enrolled student with accounts."""
    course = db.add_course("Computer Science", "4 years")
    school_class = db.add_class("CS-A", course.id)
    subject = db.add_subject("Networks", course.id)

    teacher = db.add_teacher("Grace Hopper", "grace@example.edu")
    db.create_user("grace", "teach-pass", "teacher", teacher.id)

    student = db.add_student(
        name="Ada Lovelace",
        email="ada@example.edu",
        usn="1CS001",
        class_id=school_class.id,
        face_descriptor=face_vector(0.1),
    )
    db.create_user("ada", "study-pass", "student", student.id)

    return SimpleNamespace(
        course=course,
        school_class=school_class,
        subject=subject,
        teacher=teacher,
        student=student,
    )


def make_session(school, start_time, *, minutes=30, gps=None, radius=50.0, class_id=None):
    """Insert an active session directly, with its QR token."""
    session = AttendanceSession(
        id=uuid.uuid4().hex,
        teacher_id=school.teacher.id,
        subject_id=school.subject.id,
        class_id=class_id or school.school_class.id,
        start_time=start_time,
        end_time=start_time + timedelta(minutes=minutes),
        gps_lat=gps.latitude if gps else None,
        gps_lng=gps.longitude if gps else None,
        gps_radius=radius,
        created_at=start_time,
    )
    session = session.model_copy(update={"qr_token": token_for_session(session)})
    db.insert_session(session)
    return session
