import sqlite3
from typing import cast

from fastapi import APIRouter, Depends, HTTPException, Query

from backend.http_errors import http_errors
from backend.schemas import (
    DeviceAssignIn,
    EnrollIn,
    HolidayIn,
    HomeroomCreate,
    RoomCreate,
    SemesterCreate,
    SlotCreate,
    SlotUpdate,
    SubjectCreate,
    UserCreate,
)
from backend.security import Principal, require_admin
from database.academics import create_homeroom, create_room, create_semester, create_subject, enroll_student
from database.db import AlertType, create_user, get_active_alerts, get_audit_logs, resolve_alert
from database.devices import assign_device, list_devices, reset_device_token
from database.maintenance import run_maintenance
from database.schedule import SlotPatch, add_slot, delete_slot, list_homeroom_slots, update_slot
from database.school_calendar import generate_school_days, list_school_days, mark_holiday
from database.sessions import materialize_sessions, materialize_today

router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])
ALLOWED_ALERT_TYPES: set[str] = {"DEVICE_OFFLINE", "SUSPECT_GPS", "SUSPECT_DEVICE", "SENSOR_MALFUNCTION"}


# -----------------------------
# People, rooms, terms
# -----------------------------
@router.post("/users")
def add_user(payload: UserCreate):
    try:
        with http_errors():
            user_id = create_user(**payload.model_dump())
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Username or card UID already in use.")
    return {"id": user_id}


@router.post("/rooms")
def add_room(payload: RoomCreate):
    gps = payload.gps.model_dump() if payload.gps else None
    with http_errors():
        room_id = create_room(payload.name, room_type=payload.room_type, gps=gps)
    return {"id": room_id}


@router.post("/semesters")
def add_semester(payload: SemesterCreate):
    with http_errors():
        semester_id = create_semester(payload.name, payload.start_date, payload.end_date, payload.status)
    return {"id": semester_id}


@router.post("/semesters/{semester_id}/school-days/generate")
def generate_days(semester_id: int, principal: Principal = Depends(require_admin)):
    with http_errors():
        return generate_school_days(principal, semester_id)


@router.get("/semesters/{semester_id}/school-days")
def school_days(semester_id: int):
    return list_school_days(semester_id)


@router.post("/holidays")
def add_holiday(payload: HolidayIn, principal: Principal = Depends(require_admin)):
    with http_errors():
        return mark_holiday(principal, payload.date.strip(), payload.name)


@router.post("/homerooms")
def add_homeroom(payload: HomeroomCreate):
    with http_errors():
        homeroom_id = create_homeroom(
            payload.room_id,
            payload.semester_id,
            payload.name,
            grade_level=payload.grade_level,
            section=payload.section,
        )
    return {"id": homeroom_id}


@router.post("/homerooms/{homeroom_id}/students")
def enroll(homeroom_id: int, payload: EnrollIn):
    with http_errors():
        enrollment_id = enroll_student(homeroom_id, payload.student_id)
    return {"id": enrollment_id}


@router.get("/homerooms/{homeroom_id}/slots")
def homeroom_slots(homeroom_id: int):
    return list_homeroom_slots(homeroom_id)


@router.post("/subjects")
def add_subject(payload: SubjectCreate):
    with http_errors():
        subject_id = create_subject(payload.name, payload.code)
    return {"id": subject_id}


# -----------------------------
# Schedule
# -----------------------------
@router.post("/slots")
def add_schedule_slot(payload: SlotCreate, principal: Principal = Depends(require_admin)):
    with http_errors():
        slot_id = add_slot(principal, **payload.model_dump())
    return {"id": slot_id}


@router.patch("/slots/{slot_id}")
def edit_schedule_slot(slot_id: int, payload: SlotUpdate, principal: Principal = Depends(require_admin)):
    patch = cast(SlotPatch, payload.model_dump(exclude_none=True))
    with http_errors():
        return update_slot(principal, slot_id, patch)


@router.delete("/slots/{slot_id}")
def remove_schedule_slot(slot_id: int, principal: Principal = Depends(require_admin)):
    with http_errors():
        return delete_slot(principal, slot_id)


# -----------------------------
# Sessions + maintenance
# -----------------------------
@router.post("/school-days/{school_day_id}/materialize")
def materialize(school_day_id: int, principal: Principal = Depends(require_admin)):
    with http_errors():
        return materialize_sessions(principal, school_day_id)


@router.post("/sessions/generate-today")
def generate_today():
    return materialize_today()


@router.post("/maintenance")
def maintenance():
    stats = run_maintenance()
    return {
        "ok": True,
        "message": "Maintenance completed.",
        **stats,
    }


# -----------------------------
# Devices
# -----------------------------
@router.get("/devices")
def devices(principal: Principal = Depends(require_admin)):
    with http_errors():
        return list_devices(principal)


@router.post("/devices/{device_id}/assign")
def assign(device_id: int, payload: DeviceAssignIn, principal: Principal = Depends(require_admin)):
    with http_errors():
        return assign_device(principal, device_id, payload.room_id)


@router.post("/devices/{device_id}/reset-token")
def reset_token(device_id: int, principal: Principal = Depends(require_admin)):
    with http_errors():
        return reset_device_token(principal, device_id)


# -----------------------------
# Alerts + audit
# -----------------------------
@router.get("/alerts")
def alerts(alert_type: str | None = None):
    clean_type = alert_type.strip() if alert_type else None
    if clean_type and clean_type not in ALLOWED_ALERT_TYPES:
        raise HTTPException(status_code=400, detail="Invalid alert_type filter.")
    return get_active_alerts(alert_type=cast(AlertType | None, clean_type))


@router.post("/alerts/{alert_id}/resolve")
def resolve(alert_id: int, principal: Principal = Depends(require_admin)):
    if not resolve_alert(alert_id, resolved_by=principal["user_id"]):
        raise HTTPException(status_code=404, detail="Active alert not found.")
    return {"ok": True}


@router.get("/audit-logs")
def audit_logs(
    action: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    return get_audit_logs(action=action.strip() if action else None, limit=limit)
