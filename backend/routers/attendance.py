from typing import Literal

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, ValidationError, model_validator

from backend.capture import ALLOWED_IMAGE_TYPES, UploadedFrameSource
from backend.config import ATTEMPT_TTL_SECONDS
from backend.errors import AttendanceError, CameraError, InvalidTokenError
from backend.geo import LocationFix, LocationReport
from backend.qr import scan_qr_frame
from backend.security import AuthContext, require_context, require_role
from backend.services.verification import AttemptStore, VerificationOrchestrator
from database.db import get_attendance_report

router = APIRouter()

orchestrator = VerificationOrchestrator()
attempts = AttemptStore(ttl_seconds=ATTEMPT_TTL_SECONDS)


class AttemptStart(BaseModel):
    method: Literal["qr", "gps"]
    token: str | None = None
    session_id: str | None = None
    location: LocationReport | None = None

    @model_validator(mode="after")
    def _proof_for_method(self):
        if self.method == "qr" and not (self.token or "").strip():
            raise ValueError("token is required for QR verification.")
        if self.method == "gps" and (not self.session_id or self.location is None):
            raise ValueError("session_id and location are required for GPS verification.")
        return self


def _raise_attendance_error(exc: AttendanceError):
    raise HTTPException(status_code=exc.status_code, detail=exc.to_detail())


async def _read_frame(file: UploadFile) -> UploadedFrameSource:
    if file.content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")
    return UploadedFrameSource(await file.read())


def _scan_source(source: UploadedFrameSource) -> str | None:
    with source:
        return scan_qr_frame(source.read())


@router.post("/attendance/qr/scan")
async def scan_qr(
    _ctx: AuthContext = Depends(require_role("student")),
    file: UploadFile = File(...),
):
    """Read the session QR code from a camera frame for clients without a scanner."""
    source = await _read_frame(file)
    try:
        raw = await run_in_threadpool(_scan_source, source)
        if not raw:
            raise InvalidTokenError("No QR code found in the image. Please try again.")
    except (CameraError, InvalidTokenError) as exc:
        _raise_attendance_error(exc)
    return {"token": raw}


@router.post("/attendance/attempts")
def start_attempt(payload: AttemptStart, ctx: AuthContext = Depends(require_role("student"))):
    """Proximity proof, session state and duplicate checks; ends in face_verify."""
    try:
        attempt = orchestrator.begin(ctx, payload.method)
        if payload.method == "qr":
            orchestrator.submit_qr(attempt, payload.token)
        else:
            orchestrator.submit_location(attempt, payload.session_id, payload.location)
    except AttendanceError as exc:
        _raise_attendance_error(exc)

    attempts.put(attempt)
    return attempt.to_dict()


@router.post("/attendance/attempts/{attempt_id}/face")
async def submit_face(
    attempt_id: str,
    ctx: AuthContext = Depends(require_role("student")),
    file: UploadFile = File(...),
):
    attempt = attempts.get(attempt_id, ctx.entity_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail="Verification attempt not found or timed out.")

    source = await _read_frame(file)
    try:
        await run_in_threadpool(orchestrator.verify_face, attempt, source)
    except AttendanceError as exc:
        # back to method choice; the client starts a new attempt
        attempts.discard(attempt_id)
        _raise_attendance_error(exc)

    attempts.discard(attempt_id)
    return {**attempt.to_dict(), "message": "Attendance marked successfully."}


@router.delete("/attendance/attempts/{attempt_id}")
def abandon_attempt(attempt_id: str, ctx: AuthContext = Depends(require_role("student"))):
    attempt = attempts.get(attempt_id, ctx.entity_id)
    if attempt is None:
        raise HTTPException(status_code=404, detail="Verification attempt not found or timed out.")
    attempts.discard(attempt_id)
    return {"ok": True}


@router.post("/attendance/verify")
async def verify_attendance(
    ctx: AuthContext = Depends(require_role("student")),
    method: Literal["qr", "gps"] = Form(...),
    token: str | None = Form(default=None),
    session_id: str | None = Form(default=None),
    latitude: float | None = Form(default=None),
    longitude: float | None = Form(default=None),
    accuracy: float | None = Form(default=None),
    location_error: Literal[1, 2, 3] | None = Form(default=None),
    file: UploadFile = File(...),
):
    """Single-request variant: proximity proof and face frame posted together."""
    location = None
    if method == "gps":
        try:
            fix = (
                LocationFix(latitude=latitude, longitude=longitude, accuracy=accuracy)
                if latitude is not None and longitude is not None
                else None
            )
            location = LocationReport(fix=fix, error_code=location_error)
        except ValidationError:
            raise HTTPException(status_code=400, detail="Provide latitude/longitude or location_error.")

    source = await _read_frame(file)
    try:
        record = await run_in_threadpool(
            orchestrator.verify_once,
            ctx,
            method,
            source,
            token=token,
            session_id=session_id,
            location=location,
        )
    except AttendanceError as exc:
        _raise_attendance_error(exc)

    return {
        "verified": True,
        "record": record.model_dump(mode="json"),
        "message": "Attendance marked successfully.",
    }


@router.get("/attendance")
def attendance_report(
    date: str | None = None,
    status: Literal["present", "absent"] | None = None,
    student: str | None = None,
    class_id: str | None = None,
    subject_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    ctx: AuthContext = Depends(require_context),
):
    student_id = ctx.entity_id if ctx.role == "student" else None
    if ctx.role == "student" and not student_id:
        raise HTTPException(status_code=403, detail="Account is not linked to a profile.")
    return get_attendance_report(
        date=date,
        status=status,
        student_id=student_id,
        student_query=student if ctx.role != "student" else None,
        class_id=class_id,
        subject_id=subject_id,
        limit=limit,
        offset=offset,
    )
