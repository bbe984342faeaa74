import json
import math
import sqlite3
import time
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest

import backend.services.verification as verification
import database.db as db
from backend.errors import (
    AlreadyMarkedError,
    CameraError,
    DescriptorLengthError,
    FaceNotRecognizedError,
    FaceProfileMissingError,
    GpsNotAvailableError,
    InvalidTokenError,
    LocationPermissionDeniedError,
    MultipleFacesError,
    NoFaceDetectedError,
    NotEnrolledError,
    OutOfRangeError,
    SessionExpiredError,
    StoreError,
    TokenExpiredError,
)
from backend.geo import EARTH_RADIUS_METERS, Coordinates, LocationFix, LocationReport
from backend.qr import QRSessionToken, encode_token
from backend.security import AuthContext
from backend.services.verification import (
    AttemptStore,
    VerificationAttempt,
    VerificationOrchestrator,
    WrongStepError,
)
from conftest import face_vector, fake_detector, make_session

NOW = datetime(2026, 3, 2, 9, 15, tzinfo=timezone.utc)
CLASSROOM = Coordinates(12.9716, 77.5946)


class FakeSource:
    def __init__(self, frame=None):
        self.frame = np.zeros((8, 8, 3), dtype=np.uint8) if frame is None else frame
        self.released = False
        self.reads = 0

    def read(self):
        self.reads += 1
        return self.frame

    def release(self):
        self.released = True


def _north_of(origin, meters):
    return Coordinates(origin.latitude + math.degrees(meters / EARTH_RADIUS_METERS), origin.longitude)


def _report(point):
    return LocationReport(fix=LocationFix(latitude=point.latitude, longitude=point.longitude, accuracy=5))


def _orchestrator(descriptor=None, **detector_kwargs):
    detector = fake_detector(descriptor, **detector_kwargs)
    return VerificationOrchestrator(detector=detector, clock=lambda: NOW)


@pytest.fixture()
def ctx(school):
    return AuthContext(username="ada", role="student", entity_id=school.student.id)


@pytest.fixture()
def qr_session(school):
    return make_session(school, NOW - timedelta(minutes=5), minutes=30)


@pytest.fixture()
def gps_session(school):
    return make_session(school, NOW - timedelta(minutes=5), minutes=30, gps=CLASSROOM, radius=50)


def test_qr_then_face_marks_present(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.1))
    source = FakeSource()

    attempt = orchestrator.begin(ctx, "qr")
    assert attempt.step == "qr_scan"
    orchestrator.submit_qr(attempt, qr_session.qr_token)
    assert attempt.step == "face_verify"
    assert attempt.session_id == qr_session.id

    record = orchestrator.verify_face(attempt, source)

    assert attempt.step == "success"
    assert record.status == "present"
    assert record.method == "qr+face"
    assert not record.auto_marked
    assert source.released
    assert db.attendance_record_exists(qr_session.id, ctx.entity_id)


def test_gps_then_face_marks_present(ctx, gps_session):
    orchestrator = _orchestrator(face_vector(0.12))

    attempt = orchestrator.begin(ctx, "gps")
    orchestrator.submit_location(attempt, gps_session.id, _report(_north_of(CLASSROOM, 20)))
    record = orchestrator.verify_face(attempt, FakeSource())

    assert record.method == "gps+face"
    assert attempt.distance_meters == pytest.approx(20, abs=0.01)


def test_out_of_range_reports_distance_and_writes_nothing(ctx, gps_session):
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "gps")

    with pytest.raises(OutOfRangeError) as exc_info:
        orchestrator.submit_location(attempt, gps_session.id, _report(_north_of(CLASSROOM, 80)))

    assert "80m" in exc_info.value.message
    assert attempt.step == "choosing_method"
    assert attempt.error is exc_info.value
    assert db.get_records_for_session(gps_session.id) == []


def test_gps_not_available_without_geofence(ctx, qr_session):
    attempt = _orchestrator().begin(ctx, "gps")
    with pytest.raises(GpsNotAvailableError):
        _orchestrator().submit_location(attempt, qr_session.id, _report(CLASSROOM))


def test_location_permission_denied(ctx, gps_session):
    orchestrator = _orchestrator()
    attempt = orchestrator.begin(ctx, "gps")
    with pytest.raises(LocationPermissionDeniedError):
        orchestrator.submit_location(attempt, gps_session.id, LocationReport(error_code=1))
    assert attempt.step == "choosing_method"


def test_expired_token_is_rejected_as_expired(ctx, school):
    session = make_session(school, NOW - timedelta(minutes=30, seconds=1), minutes=30)
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")

    with pytest.raises(TokenExpiredError):
        orchestrator.submit_qr(attempt, session.qr_token)


def test_corrupted_token_is_invalid(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")

    with pytest.raises(InvalidTokenError):
        orchestrator.submit_qr(attempt, qr_session.qr_token[:-4] + "abcd")
    with pytest.raises(InvalidTokenError):
        orchestrator.choose_method(attempt, "qr")
        orchestrator.submit_qr(attempt, '{"session_id": "' + qr_session.id)


def test_token_not_issued_for_the_session_is_invalid(ctx, qr_session):
    # correctly signed, but not the token stored on the session
    forged = encode_token(
        QRSessionToken(
            session_id=qr_session.id,
            expires_at=qr_session.end_time - timedelta(minutes=1),
            class_id=qr_session.class_id,
            subject_id=qr_session.subject_id,
        )
    )
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")

    with pytest.raises(InvalidTokenError):
        orchestrator.submit_qr(attempt, forged)


def test_unrelated_face_is_not_recognized(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.9))
    source = FakeSource()
    attempt = orchestrator.begin(ctx, "qr")
    orchestrator.submit_qr(attempt, qr_session.qr_token)

    with pytest.raises(FaceNotRecognizedError):
        orchestrator.verify_face(attempt, source)

    assert source.released
    assert attempt.step == "choosing_method"
    assert db.get_records_for_session(qr_session.id) == []


def test_no_face_and_multiple_faces(ctx, qr_session):
    for orchestrator, error in (
        (_orchestrator(None), NoFaceDetectedError),
        (_orchestrator(None, reason="multiple_faces", face_count=2), MultipleFacesError),
    ):
        attempt = orchestrator.begin(ctx, "qr")
        orchestrator.submit_qr(attempt, qr_session.qr_token)
        with pytest.raises(error):
            orchestrator.verify_face(attempt, FakeSource())

    assert db.get_records_for_session(qr_session.id) == []


def test_unreadable_frame_is_a_camera_error(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")
    orchestrator.submit_qr(attempt, qr_session.qr_token)

    source = FakeSource()
    source.frame = None
    source.read = lambda: None
    with pytest.raises(CameraError):
        orchestrator.verify_face(attempt, source)
    assert source.released


def test_already_marked_is_rejected_before_face(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.1))
    first = orchestrator.begin(ctx, "qr")
    orchestrator.submit_qr(first, qr_session.qr_token)
    orchestrator.verify_face(first, FakeSource())

    second = orchestrator.begin(ctx, "qr")
    with pytest.raises(AlreadyMarkedError):
        orchestrator.submit_qr(second, qr_session.qr_token)
    assert len(db.get_records_for_session(qr_session.id)) == 1


def test_concurrent_attempts_never_insert_twice(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.1))
    first = orchestrator.begin(ctx, "qr")
    second = orchestrator.begin(ctx, "qr")
    orchestrator.submit_qr(first, qr_session.qr_token)
    orchestrator.submit_qr(second, qr_session.qr_token)

    orchestrator.verify_face(first, FakeSource())
    with pytest.raises(AlreadyMarkedError):
        orchestrator.verify_face(second, FakeSource())

    assert len(db.get_records_for_session(qr_session.id)) == 1


def test_session_closed_between_steps(ctx, qr_session):
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")
    orchestrator.submit_qr(attempt, qr_session.qr_token)

    db.set_session_status(qr_session.id, "expired")

    with pytest.raises(SessionExpiredError):
        orchestrator.verify_face(attempt, FakeSource())
    assert db.get_records_for_session(qr_session.id) == []


def test_student_from_another_class(school, qr_session):
    other_class = db.add_class("CS-B", school.course.id)
    outsider = db.add_student(
        name="Outsider",
        email="out@example.edu",
        usn="1CS999",
        class_id=other_class.id,
        face_descriptor=face_vector(0.1),
    )
    ctx = AuthContext(username="out", role="student", entity_id=outsider.id)
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")

    with pytest.raises(NotEnrolledError):
        orchestrator.submit_qr(attempt, qr_session.qr_token)


def test_missing_face_profile(school, qr_session):
    student = db.add_student(
        name="No Face",
        email="noface@example.edu",
        usn="1CS500",
        class_id=school.school_class.id,
    )
    ctx = AuthContext(username="noface", role="student", entity_id=student.id)
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")
    orchestrator.submit_qr(attempt, qr_session.qr_token)

    with pytest.raises(FaceProfileMissingError) as exc_info:
        orchestrator.verify_face(attempt, FakeSource())
    assert exc_info.value.reason == "contact_admin"


def test_store_failure_is_reported_as_store_error(ctx, qr_session, monkeypatch):
    def locked(*_args, **_kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(verification, "get_session_by_id", locked)
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "qr")

    with pytest.raises(StoreError):
        orchestrator.submit_qr(attempt, qr_session.qr_token)
    assert attempt.step == "choosing_method"


def test_face_step_out_of_order(ctx):
    orchestrator = _orchestrator(face_vector(0.1))
    source = FakeSource()
    attempt = orchestrator.begin(ctx, "qr")

    with pytest.raises(WrongStepError):
        orchestrator.verify_face(attempt, source)
    assert source.released
    assert source.reads == 0


def test_corrupted_stored_descriptor_asks_for_admin(ctx, qr_session, school):
    conn = db.connect_db()
    try:
        conn.execute(
            "UPDATE students SET face_descriptor = ? WHERE id = ?",
            (json.dumps([0.1] * 64), school.student.id),
        )
        conn.commit()
    finally:
        conn.close()
    source = FakeSource()

    with pytest.raises(DescriptorLengthError) as exc_info:
        _orchestrator(face_vector(0.1)).verify_once(ctx, "qr", source, token=qr_session.qr_token)

    assert exc_info.value.reason == "contact_admin"
    assert source.released
    assert db.get_records_for_session(qr_session.id) == []


def test_geofence_decision_uses_in_range(ctx, gps_session, monkeypatch):
    checked = []

    def boundary(current, center, radius):
        checked.append(radius)
        return True

    monkeypatch.setattr(verification, "in_range", boundary)
    orchestrator = _orchestrator(face_vector(0.1))
    attempt = orchestrator.begin(ctx, "gps")
    orchestrator.submit_location(attempt, gps_session.id, _report(_north_of(CLASSROOM, 80)))

    assert checked == [50]
    assert attempt.step == "face_verify"
    assert attempt.distance_meters == pytest.approx(80, abs=0.01)


def test_verify_once(ctx, gps_session):
    orchestrator = _orchestrator(face_vector(0.1))
    source = FakeSource()

    record = orchestrator.verify_once(
        ctx,
        "gps",
        source,
        session_id=gps_session.id,
        location=_report(_north_of(CLASSROOM, 10)),
    )

    assert record.method == "gps+face"
    assert source.released


def test_verify_once_releases_source_on_early_failure(ctx, qr_session):
    source = FakeSource()
    with pytest.raises(InvalidTokenError):
        _orchestrator(face_vector(0.1)).verify_once(ctx, "qr", source, token="garbage")
    assert source.released
    assert source.reads == 0


def test_attempt_store_scopes_and_expires_attempts():
    store = AttemptStore(ttl_seconds=60)
    attempt = VerificationAttempt(student_id="stu-1")
    store.put(attempt)

    assert store.get(attempt.id, "stu-1") is attempt
    assert store.get(attempt.id, "stu-2") is None

    attempt.updated_at = time.monotonic() - 120
    assert store.get(attempt.id, "stu-1") is None
    assert len(store) == 0
