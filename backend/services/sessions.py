import logging
import uuid
from datetime import datetime, timedelta
from typing import NamedTuple

from backend.config import DEFAULT_GPS_RADIUS_METERS, SESSION_DURATIONS
from backend.geo import Coordinates
from backend.qr import QRSessionToken, encode_token
from backend.security import AuthContext
from backend.services.absence import expire_session
from database.db import (
    get_class_by_id,
    get_session_by_id,
    get_subject_by_id,
    get_teacher_by_id,
    insert_session,
)
from database.models import AttendanceSession, to_utc, utcnow

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """A teacher action on a session was refused."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class StartedSession(NamedTuple):
    session: AttendanceSession
    token: str


def token_for_session(session: AttendanceSession) -> str:
    """Token scoped to the session; it never outlives the session window."""
    return encode_token(
        QRSessionToken(
            session_id=session.id,
            expires_at=session.end_time,
            class_id=session.class_id,
            subject_id=session.subject_id,
        )
    )


def start_session(
    ctx: AuthContext,
    *,
    subject_id: str,
    class_id: str,
    duration_minutes: int,
    gps_center: Coordinates | None = None,
    gps_radius: float | None = None,
    now: datetime | None = None,
) -> StartedSession:
    if ctx.role != "teacher" or not ctx.entity_id:
        raise SessionError("Only teachers can start attendance sessions.", 403)
    if duration_minutes not in SESSION_DURATIONS:
        allowed = ", ".join(str(d) for d in SESSION_DURATIONS)
        raise SessionError(f"Duration must be one of {allowed} minutes.")
    if not get_teacher_by_id(ctx.entity_id):
        raise SessionError("Teacher ID not found. Please login again.", 404)
    if not get_subject_by_id(subject_id):
        raise SessionError("Subject not found.", 404)
    if not get_class_by_id(class_id):
        raise SessionError("Class not found.", 404)

    start_time = to_utc(now or utcnow())
    session = AttendanceSession(
        id=uuid.uuid4().hex,
        teacher_id=ctx.entity_id,
        subject_id=subject_id,
        class_id=class_id,
        start_time=start_time,
        end_time=start_time + timedelta(minutes=duration_minutes),
        gps_lat=gps_center.latitude if gps_center else None,
        gps_lng=gps_center.longitude if gps_center else None,
        gps_radius=gps_radius if gps_radius is not None else DEFAULT_GPS_RADIUS_METERS,
        status="active",
        created_at=start_time,
    )
    token = token_for_session(session)
    session = session.model_copy(update={"qr_token": token})
    insert_session(session)

    logger.info(
        "Session %s started by teacher %s for class %s (%s min, gps=%s)",
        session.id,
        ctx.entity_id,
        class_id,
        duration_minutes,
        session.has_geofence,
    )
    return StartedSession(session, token)


def get_owned_session(ctx: AuthContext, session_id: str) -> AttendanceSession:
    session = get_session_by_id(session_id)
    if session is None:
        raise SessionError("Session not found.", 404)
    if ctx.role == "teacher" and session.teacher_id != ctx.entity_id:
        raise SessionError("This session belongs to another teacher.", 403)
    return session


def end_session_early(
    ctx: AuthContext,
    session_id: str,
    *,
    now: datetime | None = None,
) -> tuple[AttendanceSession, int]:
    """
    Teacher's "end now": backfill absences and move the session to expired.
    Ending an already expired session is a no-op.
    """
    session = get_owned_session(ctx, session_id)
    if not session.is_active:
        return session, 0

    absent = expire_session(session, now=now)
    logger.info("Session %s ended early, %s marked absent", session.id, absent)
    return session.expire(), absent
