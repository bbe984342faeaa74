from typing import Literal

ErrorKind = Literal["validation", "transient", "rejection", "integrity"]

CONTACT_ADMIN = "Please contact admin."


class AttendanceError(Exception):
    """
    Base for every failure the verification pipeline reports to a user.

    `reason` is a stable snake_case code for clients, `message` is the
    human-readable text shown to the student.
    """

    reason = "error"
    kind: ErrorKind = "transient"
    status_code = 400
    default_message = "Failed to mark attendance."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> dict:
        return {"reason": self.reason, "kind": self.kind, "message": self.message}


# Input / validation
class InvalidTokenError(AttendanceError):
    reason = "invalid_token"
    kind = "validation"
    default_message = "Invalid QR code. Please scan the code shown by your teacher."


class GpsNotAvailableError(AttendanceError):
    reason = "gps_not_available"
    kind = "validation"
    default_message = "GPS not available for this session. Please use the QR code method."


# Transient I/O
class StoreError(AttendanceError):
    reason = "store_error"
    kind = "transient"
    status_code = 503
    default_message = "Could not reach the attendance database. Please try again."


class CameraError(AttendanceError):
    reason = "camera_error"
    kind = "transient"
    default_message = "Could not read a frame from the camera."


class LocationPermissionDeniedError(AttendanceError):
    reason = "location_permission_denied"
    kind = "transient"
    default_message = "Location permission denied. Please enable location access."


class LocationUnavailableError(AttendanceError):
    reason = "location_unavailable"
    kind = "transient"
    default_message = "Location information unavailable."


class LocationTimeoutError(AttendanceError):
    reason = "location_timeout"
    kind = "transient"
    default_message = "Location request timed out."


# Business-rule rejections
class TokenExpiredError(AttendanceError):
    reason = "token_expired"
    kind = "rejection"
    status_code = 410
    default_message = "This QR code has expired. Please ask your teacher for a new one."


class SessionExpiredError(AttendanceError):
    reason = "session_expired"
    kind = "rejection"
    status_code = 410
    default_message = "Session not found or expired."


class OutOfRangeError(AttendanceError):
    reason = "out_of_range"
    kind = "rejection"
    status_code = 403

    def __init__(self, distance: float, radius: float, message: str):
        self.distance = distance
        self.radius = radius
        super().__init__(message)

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["distance_meters"] = round(self.distance, 1)
        detail["radius_meters"] = self.radius
        return detail


class NotEnrolledError(AttendanceError):
    reason = "not_enrolled"
    kind = "rejection"
    status_code = 403
    default_message = "This session is not for your class."


class AlreadyMarkedError(AttendanceError):
    reason = "already_marked"
    kind = "rejection"
    status_code = 409
    default_message = "You have already marked attendance for this session."


class NoFaceDetectedError(AttendanceError):
    reason = "no_face"
    kind = "rejection"
    status_code = 422
    default_message = "No face detected. Please look at the camera and try again."


class MultipleFacesError(AttendanceError):
    reason = "multiple_faces"
    kind = "rejection"
    status_code = 422
    default_message = "More than one face detected. Make sure only you are in the frame."


class FaceNotRecognizedError(AttendanceError):
    reason = "face_not_recognized"
    kind = "rejection"
    status_code = 403
    default_message = "Face not recognized. Please try again or contact admin."


# Data integrity
class FaceProfileMissingError(AttendanceError):
    reason = "contact_admin"
    kind = "integrity"
    status_code = 409
    default_message = f"Student face data not found. {CONTACT_ADMIN}"


class DescriptorLengthError(AttendanceError):
    reason = "contact_admin"
    kind = "integrity"
    status_code = 409
    default_message = f"Stored face data is corrupted. {CONTACT_ADMIN}"


class FaceModelUnavailableError(AttendanceError):
    reason = "model_missing"
    kind = "integrity"
    status_code = 503
    default_message = f"Face recognition model is not installed. {CONTACT_ADMIN}"
