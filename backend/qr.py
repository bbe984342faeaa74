"""
QR session tokens.

A token binds an attendance session to an expiry instant. It is signed with
the application key so a student cannot forge or extend one, rendered as a
QR image for the teacher's screen and scanned back from a camera frame.
"""

import base64
import io
from datetime import datetime

import cv2
import qrcode
from pydantic import BaseModel, ValidationError, field_validator

from backend.errors import InvalidTokenError, TokenExpiredError
from backend.security import decode_signed, encode_signed
from database.models import iso, to_utc, utcnow

TOKEN_TYPE = "qr"
QR_BOX_SIZE = 10
QR_BORDER = 2

_REQUIRED_FIELDS = ("session_id", "expires_at", "class_id", "subject_id")


class QRSessionToken(BaseModel):
    session_id: str
    expires_at: datetime
    class_id: str
    subject_id: str

    @field_validator("session_id", "class_id", "subject_id")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @field_validator("expires_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return to_utc(value)

    def is_expired(self, now: datetime | None = None) -> bool:
        return to_utc(now or utcnow()) >= self.expires_at


def encode_token(token: QRSessionToken) -> str:
    return encode_signed(
        {
            "typ": TOKEN_TYPE,
            "session_id": token.session_id,
            "expires_at": iso(token.expires_at),
            "class_id": token.class_id,
            "subject_id": token.subject_id,
        }
    )


def decode_token(raw: str) -> QRSessionToken:
    """Fails closed: anything short of a complete, signed payload is invalid."""
    payload = decode_signed((raw or "").strip())
    if payload is None or payload.get("typ") != TOKEN_TYPE:
        raise InvalidTokenError()
    if any(not payload.get(name) for name in _REQUIRED_FIELDS):
        raise InvalidTokenError()
    try:
        return QRSessionToken(**{name: payload[name] for name in _REQUIRED_FIELDS})
    except ValidationError:
        raise InvalidTokenError() from None


def validate_token(raw: str, now: datetime | None = None) -> QRSessionToken:
    token = decode_token(raw)
    if token.is_expired(now):
        raise TokenExpiredError()
    return token


def render_qr_png(raw: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=QR_BOX_SIZE,
        border=QR_BORDER,
    )
    qr.add_data(raw)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_qr_data_url(raw: str) -> str:
    encoded = base64.b64encode(render_qr_png(raw)).decode("ascii")
    return f"data:image/png;base64,{encoded}"


def scan_qr_frame(frame_bgr) -> str | None:
    """Decoded QR text from a camera frame, or None when no code is readable."""
    detector = cv2.QRCodeDetector()
    data, points, _ = detector.detectAndDecode(frame_bgr)
    if points is None or not data:
        return None
    return data
