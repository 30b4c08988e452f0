import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ROLLCALL_DB_PATH", BASE_DIR / "database" / "rollcall.db"))
ADMIN_USERNAME = os.getenv("ROLLCALL_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("ROLLCALL_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("ROLLCALL_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ROLLCALL_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("ROLLCALL_LOG_LEVEL", "INFO").strip().upper() or "INFO"


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


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        return float(value.strip())
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_ORIGINS"),
    ["http://localhost:8081", "http://127.0.0.1:8081"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ROLLCALL_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ROLLCALL_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("ROLLCALL_ENABLE_DEBUG_ENDPOINTS"), False)

# Single fixed local offset for the whole deployment (UTC+7 by default).
UTC_OFFSET_HOURS = _parse_int(os.getenv("ROLLCALL_UTC_OFFSET_HOURS"), 7, minimum=-12)

# Attendance window
PRE_WINDOW_MINUTES = _parse_int(os.getenv("ROLLCALL_PRE_WINDOW_MINUTES"), 15)

# Anti-cheat
GEOFENCE_RADIUS_METERS = _parse_float(os.getenv("ROLLCALL_GEOFENCE_RADIUS_METERS"), 100.0)
CLOCK_DRIFT_TOLERANCE_SECONDS = _parse_int(os.getenv("ROLLCALL_CLOCK_DRIFT_TOLERANCE_SECONDS"), 300)

# Device gateway
REGISTER_MAX_ATTEMPTS = _parse_int(os.getenv("ROLLCALL_REGISTER_MAX_ATTEMPTS"), 5, minimum=1)
REGISTER_WINDOW_SECONDS = _parse_int(os.getenv("ROLLCALL_REGISTER_WINDOW_SECONDS"), 3600, minimum=1)
DEVICE_OFFLINE_AFTER_SECONDS = _parse_int(os.getenv("ROLLCALL_DEVICE_OFFLINE_AFTER_SECONDS"), 900, minimum=1)

# Suspicious activity analysis
SUSPICIOUS_MIN_SCANS = _parse_int(os.getenv("ROLLCALL_SUSPICIOUS_MIN_SCANS"), 5, minimum=1)
SUSPICIOUS_OFFLINE_RATIO = _parse_float(os.getenv("ROLLCALL_SUSPICIOUS_OFFLINE_RATIO"), 0.5)
SUSPICIOUS_LOOKBACK_DAYS = _parse_int(os.getenv("ROLLCALL_SUSPICIOUS_LOOKBACK_DAYS"), 7, minimum=1)
SHARED_DEVICE_LOOKBACK_HOURS = _parse_int(os.getenv("ROLLCALL_SHARED_DEVICE_LOOKBACK_HOURS"), 12, minimum=1)
