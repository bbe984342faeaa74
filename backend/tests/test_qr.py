from datetime import datetime, timedelta, timezone

import cv2
import numpy as np
import pytest

from backend.errors import InvalidTokenError, TokenExpiredError
from backend.qr import (
    QRSessionToken,
    decode_token,
    encode_token,
    render_qr_data_url,
    render_qr_png,
    scan_qr_frame,
    validate_token,
)
from backend.security import encode_signed, issue_session_token

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _token(expires_at=NOW + timedelta(minutes=30)) -> QRSessionToken:
    return QRSessionToken(
        session_id="sess-1",
        expires_at=expires_at,
        class_id="class-1",
        subject_id="subject-1",
    )


def test_decode_returns_encoded_token():
    token = _token()
    assert decode_token(encode_token(token)) == token


def test_validate_accepts_unexpired_token():
    token = validate_token(encode_token(_token()), NOW)
    assert token.session_id == "sess-1"


def test_token_expired_one_second_ago():
    raw = encode_token(_token(NOW - timedelta(seconds=1)))
    with pytest.raises(TokenExpiredError):
        validate_token(raw, NOW)


def test_token_expires_at_its_instant():
    raw = encode_token(_token(NOW))
    with pytest.raises(TokenExpiredError):
        validate_token(raw, NOW)


def test_tampered_token_is_invalid():
    raw = encode_token(_token())
    payload, signature = raw.split(".", 1)
    forged = encode_token(_token(NOW + timedelta(days=30))).split(".", 1)[0]
    with pytest.raises(InvalidTokenError):
        validate_token(f"{forged}.{signature}", NOW)
    with pytest.raises(InvalidTokenError):
        validate_token(f"{payload}.{signature[:-2]}xx", NOW)


@pytest.mark.parametrize("raw", ["", "not-a-token", "{\"session_id\": \"sess-1\"}", "abc.def"])
def test_garbage_is_invalid(raw):
    with pytest.raises(InvalidTokenError):
        validate_token(raw, NOW)


def test_missing_fields_are_invalid():
    raw = encode_signed({"typ": "qr", "session_id": "sess-1", "expires_at": NOW.isoformat()})
    with pytest.raises(InvalidTokenError):
        decode_token(raw)


def test_login_token_is_not_a_qr_token():
    raw, _claims = issue_session_token("ada", role="student", entity_id="stu-1")
    with pytest.raises(InvalidTokenError):
        decode_token(raw)


def test_render_png():
    png = render_qr_png("attendo-session")
    assert png.startswith(b"\x89PNG")
    assert render_qr_data_url("attendo-session").startswith("data:image/png;base64,")


def test_scan_reads_rendered_code():
    png = render_qr_png("attendo-session")
    frame = cv2.imdecode(np.frombuffer(png, np.uint8), cv2.IMREAD_COLOR)
    assert scan_qr_frame(frame) == "attendo-session"


def test_scan_blank_frame_finds_nothing():
    frame = np.full((200, 200, 3), 255, dtype=np.uint8)
    assert scan_qr_frame(frame) is None
