"""
Student attendance verification.

One attempt walks choosing_method -> (qr_scan | gps_verify) -> face_verify
-> success. Any failure sends it back to choosing_method with a specific
error; nothing is written until the face has matched.
"""

import logging
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Literal

from pydantic import ValidationError

from backend.capture import FrameSource
from backend.errors import (
    AlreadyMarkedError,
    AttendanceError,
    CameraError,
    DescriptorLengthError,
    FaceNotRecognizedError,
    FaceProfileMissingError,
    GpsNotAvailableError,
    InvalidTokenError,
    MultipleFacesError,
    NoFaceDetectedError,
    NotEnrolledError,
    SessionExpiredError,
    StoreError,
)
from backend.geo import (
    Coordinates,
    LocationReport,
    distance,
    in_range,
    location_from_report,
    out_of_range_error,
)
from backend.qr import validate_token
from backend.recognizer import FaceDetection, detect_face
from backend.security import AuthContext
from biometrics.matcher import Candidate, best_match
from database.db import (
    attendance_record_exists,
    get_session_by_id,
    get_student_by_id,
    insert_attendance_record,
)
from database.models import AttendanceRecord, AttendanceSession, Student, to_utc, utcnow

logger = logging.getLogger(__name__)

AttemptStep = Literal["choosing_method", "qr_scan", "gps_verify", "face_verify", "success"]
Method = Literal["qr", "gps"]


class WrongStepError(AttendanceError):
    reason = "wrong_step"
    kind = "validation"
    status_code = 409
    default_message = "This verification step is not available right now. Please start again."


@dataclass
class VerificationAttempt:
    student_id: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    step: AttemptStep = "choosing_method"
    method: Method | None = None
    session_id: str | None = None
    distance_meters: float | None = None
    error: AttendanceError | None = None
    record: AttendanceRecord | None = None
    updated_at: float = field(default_factory=time.monotonic)

    def to_dict(self) -> dict:
        data = {
            "attempt_id": self.id,
            "step": self.step,
            "method": self.method,
            "session_id": self.session_id,
        }
        if self.distance_meters is not None:
            data["distance_meters"] = round(self.distance_meters, 1)
        if self.error is not None:
            data["error"] = self.error.to_detail()
        if self.record is not None:
            data["record_id"] = self.record.id
            data["marked_at"] = self.record.marked_at.isoformat()
        return data


class VerificationOrchestrator:
    def __init__(
        self,
        *,
        detector: Callable[[object], FaceDetection] = detect_face,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._detect = detector
        self._clock = clock

    def _now(self) -> datetime:
        return to_utc(self._clock())

    # -----------------------------
    # Step plumbing
    # -----------------------------
    @contextmanager
    def _step(self, attempt: VerificationAttempt, *expected: AttemptStep) -> Iterator[None]:
        if attempt.step not in expected:
            raise WrongStepError()
        try:
            yield
        except sqlite3.Error as exc:
            logger.exception("Store failure during attempt %s", attempt.id)
            self._fail(attempt, StoreError())
            raise attempt.error from exc
        except AttendanceError as exc:
            self._fail(attempt, exc)
            raise
        finally:
            attempt.updated_at = time.monotonic()

    def _fail(self, attempt: VerificationAttempt, error: AttendanceError) -> None:
        attempt.step = "choosing_method"
        attempt.error = error
        if error.kind == "integrity":
            logger.error("Attempt %s by student %s: %s", attempt.id, attempt.student_id, error.message)
        else:
            logger.info(
                "Attempt %s by student %s rejected: %s",
                attempt.id,
                attempt.student_id,
                error.reason,
            )

    def _load_student(self, student_id: str) -> Student:
        try:
            student = get_student_by_id(student_id)
        except ValidationError as exc:
            logger.error("Student %s has an invalid stored profile: %s", student_id, exc)
            raise DescriptorLengthError() from exc
        if student is None:
            raise FaceProfileMissingError("Student profile not found. Please contact admin.")
        return student

    def _confirm_open(self, session_id: str) -> AttendanceSession:
        session = get_session_by_id(session_id)
        if session is None or not session.is_open_at(self._now()):
            raise SessionExpiredError()
        return session

    def _ready_for_face(self, attempt: VerificationAttempt, session: AttendanceSession) -> None:
        # re-read: a passing token/proximity check says nothing about current state
        session = self._confirm_open(session.id)

        student = self._load_student(attempt.student_id)
        if student.class_id != session.class_id:
            raise NotEnrolledError()

        if attendance_record_exists(session.id, attempt.student_id):
            raise AlreadyMarkedError()

        attempt.session_id = session.id
        attempt.error = None
        attempt.step = "face_verify"

    # -----------------------------
    # Steps
    # -----------------------------
    def begin(self, ctx: AuthContext, method: Method) -> VerificationAttempt:
        if ctx.role != "student" or not ctx.entity_id:
            raise FaceProfileMissingError("Only student accounts can mark attendance.")
        attempt = VerificationAttempt(student_id=ctx.entity_id)
        return self.choose_method(attempt, method)

    def choose_method(self, attempt: VerificationAttempt, method: Method) -> VerificationAttempt:
        with self._step(attempt, "choosing_method", "qr_scan", "gps_verify", "face_verify"):
            attempt.method = method
            attempt.session_id = None
            attempt.distance_meters = None
            attempt.error = None
            attempt.step = "qr_scan" if method == "qr" else "gps_verify"
        return attempt

    def submit_qr(self, attempt: VerificationAttempt, raw_token: str) -> VerificationAttempt:
        with self._step(attempt, "qr_scan"):
            token = validate_token(raw_token, self._now())
            session = get_session_by_id(token.session_id)
            if session is None:
                raise SessionExpiredError()
            if (
                token.expires_at > session.end_time
                or token.class_id != session.class_id
                or token.subject_id != session.subject_id
                or (session.qr_token is not None and session.qr_token != raw_token.strip())
            ):
                raise InvalidTokenError()
            self._ready_for_face(attempt, session)
        return attempt

    def submit_location(
        self,
        attempt: VerificationAttempt,
        session_id: str,
        report: LocationReport,
    ) -> VerificationAttempt:
        with self._step(attempt, "gps_verify"):
            session = get_session_by_id(session_id)
            if session is None:
                raise SessionExpiredError()
            if not session.has_geofence:
                raise GpsNotAvailableError()

            fix = location_from_report(report)
            center = Coordinates(session.gps_lat, session.gps_lng)
            attempt.distance_meters = distance(fix.coordinates, center)
            if not in_range(fix.coordinates, center, session.gps_radius):
                raise out_of_range_error(attempt.distance_meters, session.gps_radius)

            self._ready_for_face(attempt, session)
        return attempt

    def verify_face(self, attempt: VerificationAttempt, source: FrameSource) -> AttendanceRecord:
        """Capture, match and record. The frame source is released on every path."""
        try:
            with self._step(attempt, "face_verify"):
                frame = source.read()
                if frame is None:
                    raise CameraError()

                student = self._load_student(attempt.student_id)
                if not student.has_face_profile:
                    raise FaceProfileMissingError()

                detection = self._detect(frame)
                if detection.reason == "multiple_faces":
                    raise MultipleFacesError()
                if detection.descriptor is None:
                    raise NoFaceDetectedError()

                match = best_match(
                    detection.descriptor,
                    [Candidate(student.id, student.face_descriptor)],
                )
                if match is None:
                    raise FaceNotRecognizedError()

                self._confirm_open(attempt.session_id)
                record = AttendanceRecord(
                    session_id=attempt.session_id,
                    student_id=student.id,
                    status="present",
                    method=f"{attempt.method}+face",
                    marked_at=self._now(),
                    auto_marked=False,
                )
                try:
                    record = insert_attendance_record(record)
                except sqlite3.IntegrityError:
                    raise AlreadyMarkedError() from None

                attempt.record = record
                attempt.error = None
                attempt.step = "success"
                logger.info(
                    "Student %s marked present for session %s via %s (distance %.3f)",
                    student.id,
                    attempt.session_id,
                    record.method,
                    match.distance,
                )
                return record
        finally:
            source.release()

    def verify_once(
        self,
        ctx: AuthContext,
        method: Method,
        source: FrameSource,
        *,
        token: str | None = None,
        session_id: str | None = None,
        location: LocationReport | None = None,
    ) -> AttendanceRecord:
        """All steps in one call, for clients that post proximity proof and frame together."""
        try:
            attempt = self.begin(ctx, method)
            if method == "qr":
                self.submit_qr(attempt, token or "")
            else:
                if not session_id or location is None:
                    raise GpsNotAvailableError("A session and a location are required for GPS verification.")
                self.submit_location(attempt, session_id, location)
        except BaseException:
            source.release()
            raise
        return self.verify_face(attempt, source)


class AttemptStore:
    """In-memory attempts keyed by id, dropped after `ttl_seconds` idle."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._attempts: dict[str, VerificationAttempt] = {}
        self._lock = threading.Lock()

    def _cleanup(self, now: float) -> None:
        expired = [k for k, v in self._attempts.items() if now - v.updated_at > self.ttl_seconds]
        for k in expired:
            self._attempts.pop(k, None)

    def put(self, attempt: VerificationAttempt) -> None:
        with self._lock:
            self._cleanup(time.monotonic())
            self._attempts[attempt.id] = attempt

    def get(self, attempt_id: str, student_id: str) -> VerificationAttempt | None:
        with self._lock:
            self._cleanup(time.monotonic())
            attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.student_id != student_id:
            return None
        return attempt

    def discard(self, attempt_id: str) -> VerificationAttempt | None:
        with self._lock:
            return self._attempts.pop(attempt_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._attempts)
