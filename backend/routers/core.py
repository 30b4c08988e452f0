from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    CLOCK_DRIFT_TOLERANCE_SECONDS,
    DB_PATH,
    DEVICE_OFFLINE_AFTER_SECONDS,
    ENABLE_DEBUG_ENDPOINTS,
    GEOFENCE_RADIUS_METERS,
    PRE_WINDOW_MINUTES,
    REGISTER_MAX_ATTEMPTS,
    REGISTER_WINDOW_SECONDS,
    UTC_OFFSET_HOURS,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "utc_offset_hours": UTC_OFFSET_HOURS,
        "pre_window_minutes": PRE_WINDOW_MINUTES,
        "late_after": "session_start + duration / 2",
        "geofence_radius_meters": GEOFENCE_RADIUS_METERS,
        "clock_drift_tolerance_seconds": CLOCK_DRIFT_TOLERANCE_SECONDS,
        "register_max_attempts": REGISTER_MAX_ATTEMPTS,
        "register_window_seconds": REGISTER_WINDOW_SECONDS,
        "device_offline_after_seconds": DEVICE_OFFLINE_AFTER_SECONDS,
    }
