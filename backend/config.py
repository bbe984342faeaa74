import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DATA_DIR = Path(os.getenv("ATTENDO_DATA_DIR", BASE_DIR / "data"))
DB_PATH = Path(os.getenv("ATTENDO_DB_PATH", DATA_DIR / "attendo.db"))
LOG_DIR = Path(os.getenv("ATTENDO_LOG_DIR", BASE_DIR / "logs"))
LOG_LEVEL = os.getenv("ATTENDO_LOG_LEVEL", "INFO").strip().upper() or "INFO"

ADMIN_USERNAME = os.getenv("ATTENDO_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("ATTENDO_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("ATTENDO_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ATTENDO_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int_tuple(value: str | None, fallback: tuple[int, ...]) -> tuple[int, ...]:
    if not value:
        return fallback
    try:
        parsed = tuple(sorted({int(item) for item in value.split(",") if item.strip()}))
    except ValueError:
        return fallback
    if not parsed or any(item <= 0 for item in parsed):
        return fallback
    return parsed


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ATTENDO_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ATTENDO_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ATTENDO_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ATTENDO_CORS_ALLOW_CREDENTIALS"), True)

# Absence reconciliation job
ABSENCE_JOB_ENABLED = _parse_bool(os.getenv("ATTENDO_ABSENCE_JOB_ENABLED"), True)
ABSENCE_JOB_INTERVAL_MINUTES = max(
    1,
    int(os.getenv("ATTENDO_ABSENCE_JOB_INTERVAL_MINUTES", "5")),
)

# Attendance sessions
SESSION_DURATIONS = _parse_int_tuple(os.getenv("ATTENDO_SESSION_DURATIONS"), (15, 30, 45, 60))
DEFAULT_GPS_RADIUS_METERS = float(os.getenv("ATTENDO_DEFAULT_GPS_RADIUS_METERS", "50"))

# Verification attempts
LOCATION_TIMEOUT_SECONDS = int(os.getenv("ATTENDO_LOCATION_TIMEOUT_SECONDS", "10"))
ATTEMPT_TTL_SECONDS = int(os.getenv("ATTENDO_ATTEMPT_TTL_SECONDS", "300"))

# Face detection gates
REJECT_MULTIPLE_FACES = _parse_bool(os.getenv("ATTENDO_REJECT_MULTIPLE_FACES"), False)
FACE_DETECTION_MODEL = os.getenv("ATTENDO_FACE_DETECTION_MODEL", "hog").strip() or "hog"
FACE_UPSAMPLE_TIMES = max(0, int(os.getenv("ATTENDO_FACE_UPSAMPLE_TIMES", "1")))
