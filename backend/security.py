import base64
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Literal, TypedDict

from fastapi import Depends, Header, HTTPException

from backend import config
from database.errors import AuthorizationError

Role = Literal["student", "teacher", "admin", "staff"]

DEVICE_TOKEN_BYTES = 24


class Principal(TypedDict):
    user_id: int
    role: Role


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


def _sign(payload_b64: str) -> str:
    digest = hmac.new(
        config.SIGNING_KEY.encode("utf-8"),
        payload_b64.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return _b64url_encode(digest)


# -----------------------------
# Hardware tokens
# -----------------------------
def hash_token(token: str) -> str:
    """One-way, deterministic hash used to store device secrets."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_device_token() -> str:
    return secrets.token_hex(DEVICE_TOKEN_BYTES)


def tokens_match(presented_hash: str, stored_hash: str) -> bool:
    # compare_digest walks the whole input; no early exit on first mismatch.
    return hmac.compare_digest(presented_hash.encode("ascii"), stored_hash.encode("ascii"))


# -----------------------------
# Session tokens for people
# -----------------------------
def issue_session_token(subject: str, *, role: str) -> tuple[str, dict[str, Any]]:
    now = int(time.time())
    exp = now + config.AUTH_TOKEN_TTL_SECONDS
    payload = {
        "sub": subject.strip(),
        "role": role,
        "iat": now,
        "exp": exp,
    }
    payload_json = json.dumps(payload, separators=(",", ":"), sort_keys=True)
    payload_b64 = _b64url_encode(payload_json.encode("utf-8"))
    token = f"{payload_b64}.{_sign(payload_b64)}"
    return token, payload


def decode_session_token(token: str) -> dict[str, Any] | None:
    if not token or "." not in token:
        return None

    payload_b64, signature = token.split(".", 1)
    expected = _sign(payload_b64)
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("ascii")):
        return None

    try:
        payload_raw = _b64url_decode(payload_b64).decode("utf-8")
        payload = json.loads(payload_raw)
    except (ValueError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None

    sub = payload.get("sub")
    exp = payload.get("exp")
    if not isinstance(sub, str) or not sub.strip():
        return None
    if not isinstance(exp, int):
        return None
    if exp < int(time.time()):
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


def require_principal(session: dict[str, Any] = Depends(require_session)) -> Principal:
    try:
        user_id = int(session["sub"])
    except (KeyError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    role = session.get("role")
    if role not in ("student", "teacher", "admin", "staff"):
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return {"user_id": user_id, "role": role}


def require_admin(principal: Principal = Depends(require_principal)) -> Principal:
    if principal["role"] != "admin":
        raise HTTPException(status_code=403, detail="Only administrators can perform this action.")
    return principal


# -----------------------------
# Role checks
# -----------------------------
def must_be_admin(principal: Principal) -> None:
    if principal["role"] != "admin":
        raise AuthorizationError("Only administrators can perform this action.")


def must_be_teacher_or_admin(principal: Principal) -> None:
    if principal["role"] not in ("teacher", "admin"):
        raise AuthorizationError("Only teachers or administrators can perform this action.")


def must_be_staff(principal: Principal) -> None:
    if principal["role"] not in ("teacher", "admin", "staff"):
        raise AuthorizationError("Only school staff can perform this action.")
