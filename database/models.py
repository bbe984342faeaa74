from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, field_validator, model_validator

DESCRIPTOR_LENGTH = 128

SessionStatus = Literal["active", "expired"]
RecordStatus = Literal["present", "absent"]
VerificationMethod = Literal["qr+face", "gps+face"]
Role = Literal["admin", "teacher", "student"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(value: datetime) -> datetime:
    # naive datetimes are treated as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def iso(value: datetime) -> str:
    """Fixed-width UTC ISO string, so stored instants compare as text."""
    return to_utc(value).isoformat(timespec="microseconds")


def _require_id(value: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValueError("Reference must not be empty.")
    return clean


RefId = Annotated[str, AfterValidator(_require_id)]


class Record(BaseModel):
    model_config = ConfigDict(frozen=True)


class Course(Record):
    id: str
    name: str
    duration: str | None = None


class SchoolClass(Record):
    id: str
    name: str
    course_id: RefId


class Subject(Record):
    id: str
    name: str
    course_id: str | None = None


class Teacher(Record):
    id: str
    name: str
    email: str
    phone: str | None = None


class Student(Record):
    id: str
    name: str
    email: str
    usn: str
    class_id: RefId
    phone: str | None = None
    face_descriptor: tuple[float, ...] | None = None
    face_image: str | None = None

    @field_validator("face_descriptor")
    @classmethod
    def _descriptor_length(cls, value):
        if value is not None and len(value) != DESCRIPTOR_LENGTH:
            raise ValueError(
                f"face_descriptor must have {DESCRIPTOR_LENGTH} values, got {len(value)}"
            )
        return value

    @property
    def has_face_profile(self) -> bool:
        return self.face_descriptor is not None


class AttendanceSession(Record):
    id: str
    teacher_id: RefId
    subject_id: RefId
    class_id: RefId
    start_time: datetime
    end_time: datetime
    gps_lat: float | None = None
    gps_lng: float | None = None
    gps_radius: float = 50.0
    qr_token: str | None = None
    status: SessionStatus = "active"
    created_at: datetime | None = None

    @field_validator("start_time", "end_time", "created_at")
    @classmethod
    def _as_utc(cls, value):
        return to_utc(value) if value is not None else value

    @model_validator(mode="after")
    def _window_and_geofence(self):
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if (self.gps_lat is None) != (self.gps_lng is None):
            raise ValueError("gps_lat and gps_lng must be set together")
        if self.gps_radius <= 0:
            raise ValueError("gps_radius must be positive")
        return self

    @property
    def has_geofence(self) -> bool:
        return self.gps_lat is not None and self.gps_lng is not None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def is_open_at(self, now: datetime) -> bool:
        return self.is_active and to_utc(now) < self.end_time

    def is_due_for_expiry(self, now: datetime) -> bool:
        return self.is_active and self.end_time < to_utc(now)

    def expire(self) -> "AttendanceSession":
        # active -> expired; expiring an expired session is a no-op
        if self.status == "expired":
            return self
        return self.model_copy(update={"status": "expired"})


class AttendanceRecord(Record):
    id: str | None = None
    session_id: RefId
    student_id: RefId
    status: RecordStatus
    method: VerificationMethod | None = None
    marked_at: datetime
    auto_marked: bool = False

    @field_validator("marked_at")
    @classmethod
    def _as_utc(cls, value):
        return to_utc(value)

    @model_validator(mode="after")
    def _method_matches_status(self):
        if self.status == "present" and self.method is None:
            raise ValueError("present records need a verification method")
        if self.auto_marked and self.status != "absent":
            raise ValueError("only absences can be auto-marked")
        return self


class User(Record):
    id: int
    username: str
    role: Role
    entity_id: str | None = None
