import base64
import hashlib
import hmac
import json
import time
from typing import Any, Callable

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY
from database.models import Role


class AuthContext(BaseModel):
    """Who is calling; passed explicitly into the attendance services."""

    username: str
    role: Role
    entity_id: str | None = None


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("ascii"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


def encode_signed(payload: dict[str, Any]) -> str:
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    return f"{payload_b64}.{_sign(payload_b64)}"


def decode_signed(token: str) -> dict[str, Any] | None:
    """Signature-checked payload, or None for anything malformed."""
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    try:
        expected = _sign(payload_b64)
    except UnicodeEncodeError:
        return None
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None
    return payload


def issue_session_token(
    username: str,
    *,
    role: Role,
    entity_id: str | None = None,
) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    exp = now + AUTH_TOKEN_TTL_SECONDS
    payload = {
        "typ": "auth",
        "sub": username.strip(),
        "role": role,
        "eid": entity_id,
        "iat": now,
        "exp": exp,
    }
    return encode_signed(payload), payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    payload = decode_signed(token)
    if not payload or payload.get("typ") != "auth":
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
        return None
    if payload.get("role") not in ("admin", "teacher", "student"):
        return None

    return payload


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    payload = decode_session_token(token.strip())
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")

    return payload


def require_context(session: dict = Depends(require_session)) -> AuthContext:
    return AuthContext(username=session["sub"], role=session["role"], entity_id=session.get("eid"))


def require_role(*roles: Role) -> Callable[..., AuthContext]:
    def _dependency(ctx: AuthContext = Depends(require_context)) -> AuthContext:
        if ctx.role not in roles:
            raise HTTPException(status_code=403, detail="Not allowed for this role.")
        if ctx.role != "admin" and not ctx.entity_id:
            raise HTTPException(status_code=403, detail="Account is not linked to a profile.")
        return ctx

    return _dependency
