from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

import database.db as db
from backend.geo import Coordinates
from backend.qr import validate_token
from backend.security import AuthContext
from backend.services.sessions import (
    SessionError,
    end_session_early,
    get_owned_session,
    start_session,
)
from database.models import AttendanceSession

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def teacher_ctx(school):
    return AuthContext(username="grace", role="teacher", entity_id=school.teacher.id)


def _start(ctx, school, **kwargs):
    options = {"duration_minutes": 30, "now": NOW, **kwargs}
    return start_session(
        ctx,
        subject_id=school.subject.id,
        class_id=school.school_class.id,
        **options,
    )


def test_start_session_stores_session_and_token(teacher_ctx, school):
    started = _start(teacher_ctx, school)
    session = started.session

    assert session.status == "active"
    assert session.end_time - session.start_time == timedelta(minutes=30)
    assert not session.has_geofence

    stored = db.get_session_by_id(session.id)
    assert stored == session
    assert stored.qr_token == started.token

    token = validate_token(started.token, NOW)
    assert token.session_id == session.id
    assert token.expires_at == session.end_time
    assert token.class_id == school.school_class.id


def test_start_session_with_geofence_uses_default_radius(teacher_ctx, school):
    session = _start(teacher_ctx, school, gps_center=Coordinates(12.97, 77.59)).session
    assert session.has_geofence
    assert session.gps_radius == 50.0


@pytest.mark.parametrize("minutes", [0, 20, 90])
def test_duration_must_come_from_the_menu(teacher_ctx, school, minutes):
    with pytest.raises(SessionError) as exc_info:
        _start(teacher_ctx, school, duration_minutes=minutes)
    assert exc_info.value.status_code == 400


def test_only_teachers_start_sessions(school):
    ctx = AuthContext(username="admin", role="admin")
    with pytest.raises(SessionError) as exc_info:
        _start(ctx, school)
    assert exc_info.value.status_code == 403


def test_unknown_subject(teacher_ctx, school):
    with pytest.raises(SessionError) as exc_info:
        start_session(
            teacher_ctx,
            subject_id="missing",
            class_id=school.school_class.id,
            duration_minutes=15,
            now=NOW,
        )
    assert exc_info.value.status_code == 404


def test_sessions_belong_to_their_teacher(teacher_ctx, school):
    session = _start(teacher_ctx, school).session
    other = db.add_teacher("Alan Turing", "alan@example.edu")
    other_ctx = AuthContext(username="alan", role="teacher", entity_id=other.id)

    with pytest.raises(SessionError) as exc_info:
        get_owned_session(other_ctx, session.id)
    assert exc_info.value.status_code == 403

    admin_ctx = AuthContext(username="admin", role="admin")
    assert get_owned_session(admin_ctx, session.id).id == session.id


def test_end_session_early_backfills_absences(teacher_ctx, school):
    session = _start(teacher_ctx, school).session

    ended, absent = end_session_early(teacher_ctx, session.id, now=NOW + timedelta(minutes=5))

    assert absent == 1
    assert ended.status == "expired"
    assert db.get_session_by_id(session.id).status == "expired"

    again, absent_again = end_session_early(teacher_ctx, session.id)
    assert absent_again == 0
    assert again.status == "expired"


def test_session_window_must_be_positive():
    with pytest.raises(ValidationError):
        AttendanceSession(
            id="s",
            teacher_id="t",
            subject_id="sub",
            class_id="c",
            start_time=NOW,
            end_time=NOW,
        )


def test_session_requires_both_coordinates():
    with pytest.raises(ValidationError):
        AttendanceSession(
            id="s",
            teacher_id="t",
            subject_id="sub",
            class_id="c",
            start_time=NOW,
            end_time=NOW + timedelta(minutes=15),
            gps_lat=12.0,
        )


def test_session_window_and_expiry():
    session = AttendanceSession(
        id="s",
        teacher_id="t",
        subject_id="sub",
        class_id="c",
        start_time=NOW,
        end_time=NOW + timedelta(minutes=15),
    )
    end = session.end_time

    assert session.is_open_at(end - timedelta(seconds=1))
    assert not session.is_open_at(end)
    assert not session.is_due_for_expiry(end)
    assert session.is_due_for_expiry(end + timedelta(seconds=1))

    expired = session.expire()
    assert expired.status == "expired"
    assert expired.expire() is expired
    assert not expired.is_open_at(NOW)


def test_naive_times_are_utc():
    session = AttendanceSession(
        id="s",
        teacher_id="t",
        subject_id="sub",
        class_id="c",
        start_time=datetime(2026, 3, 2, 9, 0),
        end_time=datetime(2026, 3, 2, 9, 15),
    )
    assert session.start_time == NOW
