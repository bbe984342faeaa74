from fastapi import APIRouter, Request

from backend.config import (
    ABSENCE_JOB_ENABLED,
    ABSENCE_JOB_INTERVAL_MINUTES,
    ATTEMPT_TTL_SECONDS,
    DEFAULT_GPS_RADIUS_METERS,
    LOCATION_TIMEOUT_SECONDS,
    REJECT_MULTIPLE_FACES,
    SESSION_DURATIONS,
)
from backend.recognizer import is_model_loaded
from biometrics.matcher import MATCH_THRESHOLD
from database.models import DESCRIPTOR_LENGTH

router = APIRouter()


@router.get("/health")
def health(request: Request):
    sweeper = getattr(request.app.state, "absence_sweeper", None)
    return {
        "status": "ok",
        "face_model_loaded": is_model_loaded(),
        "absence_job_running": bool(sweeper and sweeper.running),
    }


@router.get("/config/attendance")
def attendance_config():
    # clients read device options (geolocation timeout etc.) from here
    return {
        "session_durations": list(SESSION_DURATIONS),
        "default_gps_radius_meters": DEFAULT_GPS_RADIUS_METERS,
        "location_timeout_seconds": LOCATION_TIMEOUT_SECONDS,
        "location_high_accuracy": True,
        "attempt_ttl_seconds": ATTEMPT_TTL_SECONDS,
        "match_threshold": MATCH_THRESHOLD,
        "descriptor_length": DESCRIPTOR_LENGTH,
        "reject_multiple_faces": REJECT_MULTIPLE_FACES,
        "absence_job_enabled": ABSENCE_JOB_ENABLED,
        "absence_job_interval_minutes": ABSENCE_JOB_INTERVAL_MINUTES,
    }
