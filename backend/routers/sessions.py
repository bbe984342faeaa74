import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, model_validator

from backend.geo import Coordinates
from backend.qr import render_qr_data_url
from backend.security import AuthContext, require_role
from backend.services.sessions import SessionError, end_session_early, get_owned_session, start_session
from database.db import (
    delete_session,
    get_open_sessions_for_class,
    get_sessions_for_teacher,
    get_student_by_id,
)
from database.models import AttendanceSession, utcnow

router = APIRouter()


class SessionCreate(BaseModel):
    subject_id: str
    class_id: str
    duration_minutes: int
    gps_lat: float | None = None
    gps_lng: float | None = None
    gps_radius: float | None = None

    @model_validator(mode="after")
    def _gps_pair(self):
        if (self.gps_lat is None) != (self.gps_lng is None):
            raise ValueError("gps_lat and gps_lng must be provided together.")
        return self


def _session_payload(session: AttendanceSession, *, include_token: bool = False) -> dict:
    data = session.model_dump(mode="json", exclude={"qr_token"})
    data["has_gps"] = session.has_geofence
    data["verification_methods"] = (["QR"] if session.qr_token else []) + (
        ["GPS"] if session.has_geofence else []
    ) + ["Face"]
    if include_token and session.qr_token and session.is_active:
        data["qr_token"] = session.qr_token
        data["qr_image"] = render_qr_data_url(session.qr_token)
    return data


def _raise_session_error(exc: SessionError):
    raise HTTPException(status_code=exc.status_code, detail=exc.message)


@router.post("/sessions")
def create_session(payload: SessionCreate, ctx: AuthContext = Depends(require_role("teacher"))):
    center = (
        Coordinates(payload.gps_lat, payload.gps_lng)
        if payload.gps_lat is not None and payload.gps_lng is not None
        else None
    )
    try:
        started = start_session(
            ctx,
            subject_id=payload.subject_id.strip(),
            class_id=payload.class_id.strip(),
            duration_minutes=payload.duration_minutes,
            gps_center=center,
            gps_radius=payload.gps_radius,
        )
    except SessionError as exc:
        _raise_session_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return {
        **_session_payload(started.session, include_token=True),
        "message": "Session started successfully! Students can now mark attendance.",
    }


@router.get("/sessions")
def session_history(
    status: str | None = None,
    ctx: AuthContext = Depends(require_role("teacher", "admin")),
):
    if status not in (None, "all", "active", "expired"):
        raise HTTPException(status_code=400, detail="Invalid status filter.")
    rows = get_sessions_for_teacher(
        ctx.entity_id if ctx.role == "teacher" else None,
        None if status in (None, "all") else status,
    )
    history = []
    for row in rows:
        methods = (["QR"] if row["qr_token"] else []) + (
            ["GPS"] if row["gps_lat"] is not None and row["gps_lng"] is not None else []
        ) + ["Face"]
        row.pop("qr_token", None)
        history.append(
            {
                **row,
                "subject_name": row["subject_name"] or "Unknown",
                "class_name": row["class_name"] or "Unknown",
                "verification_methods": methods,
            }
        )
    return history


@router.get("/sessions/active")
def active_sessions(ctx: AuthContext = Depends(require_role("student"))):
    student = get_student_by_id(ctx.entity_id)
    if not student:
        return []
    return [_session_payload(s) for s in get_open_sessions_for_class(student.class_id, utcnow())]


@router.get("/sessions/{session_id}")
def session_detail(session_id: str, ctx: AuthContext = Depends(require_role("teacher", "admin"))):
    try:
        session = get_owned_session(ctx, session_id)
    except SessionError as exc:
        _raise_session_error(exc)
    return _session_payload(session)


@router.get("/sessions/{session_id}/qr")
def session_qr(session_id: str, ctx: AuthContext = Depends(require_role("teacher"))):
    try:
        session = get_owned_session(ctx, session_id)
    except SessionError as exc:
        _raise_session_error(exc)
    if not session.is_open_at(utcnow()):
        raise HTTPException(status_code=410, detail="Session has ended.")
    return {
        "session_id": session.id,
        "expires_at": session.end_time.isoformat(),
        "qr_token": session.qr_token,
        "qr_image": render_qr_data_url(session.qr_token) if session.qr_token else None,
    }


@router.post("/sessions/{session_id}/end")
def end_session(session_id: str, ctx: AuthContext = Depends(require_role("teacher", "admin"))):
    try:
        session, absent = end_session_early(ctx, session_id)
    except SessionError as exc:
        _raise_session_error(exc)
    except sqlite3.Error:
        raise HTTPException(status_code=503, detail="Could not end the session. Please retry.")
    return {
        "ok": True,
        "session": _session_payload(session),
        "absent_marked": absent,
        "message": f"Session ended. {absent} students marked absent.",
    }


@router.delete("/sessions/{session_id}")
def remove_session(session_id: str, _ctx: AuthContext = Depends(require_role("admin"))):
    try:
        ok = delete_session(session_id)
    except sqlite3.IntegrityError:
        raise HTTPException(
            status_code=409,
            detail="Session has attendance records and cannot be deleted.",
        )
    if not ok:
        raise HTTPException(status_code=404, detail="Session not found.")
    return {"ok": True}
