import sqlite3
from typing import Any, Literal, TypedDict

from backend.app_logger import get_logger
from backend.security import Principal, must_be_teacher_or_admin
from backend.services import anticheat, clock
from backend.services.anticheat import AntiCheatFlag, GpsPoint
from backend.services.window import scan_status
from database.academics import find_homeroom_for_room, get_room
from database.db import connect_db, fetch_one_dict, get_user, log_activity
from database.errors import AuthorizationError, NotFoundError, ValidationError
from database.schedule import find_slot_at
from database.sessions import find_session

logger = get_logger(__name__)

AttendanceStatus = Literal["absent", "present", "late", "excused"]
ScanMethod = Literal["card", "phone"]
EventAction = Literal["OPEN_GATE", "ATTENDANCE"]
TimestampType = Literal["server", "local"]

ATTENDANCE_STATUSES: set[str] = {"absent", "present", "late", "excused"}

# Owned by whoever marked the record manually.
MANUAL_FIELDS = ("status", "marked_manually", "marked_by", "note")

UnmatchedReason = Literal[
    "not_attendance_action",
    "no_homeroom",
    "no_slot",
    "no_session",
    "session_cancelled",
    "not_enrolled",
]


class AccessEvent(TypedDict, total=False):
    user_id: int
    method: ScanMethod
    action: EventAction
    result: str
    timestamp: int
    timestamp_type: TimestampType
    device_time: int | None
    time_source: str | None
    has_internet: bool | None
    device_id: str | None
    gps: GpsPoint | None
    scan_order: int | None


class AttendancePatch(TypedDict, total=False):
    status: AttendanceStatus
    scan_time: int
    method: ScanMethod
    marked_manually: bool
    marked_by: int | None
    note: str | None
    device_time: int | None
    time_source: str | None
    has_internet: bool | None
    device_id: str | None
    gps: GpsPoint | None
    scan_order: int | None


class ReconcileOutcome(TypedDict):
    matched: bool
    status: AttendanceStatus | None
    reason: str | None
    flags: list[AntiCheatFlag]
    attendance_id: int | None
    session_id: int | None


def merge_attendance_patch(existing: dict[str, Any], patch: AttendancePatch) -> dict[str, Any]:
    """
    Resolve a patch against the stored record and return the fields to write.

    Manual beats automatic: a patch that is not itself manual never touches
    the status, manual flag, marker or note of a manually marked record.
    Scan time, method and telemetry always go through.
    """
    changes: dict[str, Any] = dict(patch)
    if existing.get("marked_manually") and not patch.get("marked_manually"):
        for field in MANUAL_FIELDS:
            changes.pop(field, None)
    return changes


def _write_attendance(cur: sqlite3.Cursor, attendance_id: int, changes: dict[str, Any]) -> None:
    columns: dict[str, Any] = {}
    for field, value in changes.items():
        if field == "gps":
            columns["gps_lat"] = value["lat"] if value else None
            columns["gps_lng"] = value["lng"] if value else None
        elif field in ("marked_manually", "has_internet") and value is not None:
            columns[field] = 1 if value else 0
        else:
            columns[field] = value
    if not columns:
        return
    assignments = ", ".join(f"{column} = ?" for column in columns)
    cur.execute(
        f"UPDATE attendance SET {assignments} WHERE id = ?",
        (*columns.values(), attendance_id),
    )


def _unmatched(reason: UnmatchedReason, flags: list[AntiCheatFlag], *, session_id: int | None = None) -> ReconcileOutcome:
    return {
        "matched": False,
        "status": None,
        "reason": reason,
        "flags": flags,
        "attendance_id": None,
        "session_id": session_id,
    }


def record_access_log(
    event: AccessEvent,
    *,
    room_id: int,
    received_at: int,
    source_chip_id: str | None = None,
    conn: sqlite3.Connection,
) -> int:
    """Append one raw scan. access_logs rows are never updated."""
    gps = event.get("gps")
    has_internet = event.get("has_internet")
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO access_logs (
            user_id, room_id, method, action, result, timestamp, timestamp_type,
            device_time, time_source, has_internet, device_id, gps_lat, gps_lng,
            scan_order, source_chip_id, received_at
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            event["user_id"],
            room_id,
            event["method"],
            event["action"],
            event.get("result") or "granted",
            event["timestamp"],
            event.get("timestamp_type") or "local",
            event.get("device_time"),
            event.get("time_source"),
            None if has_internet is None else int(bool(has_internet)),
            event.get("device_id"),
            gps["lat"] if gps else None,
            gps["lng"] if gps else None,
            event.get("scan_order"),
            source_chip_id,
            received_at,
        ),
    )
    return int(cur.lastrowid)


def apply_anticheat(
    event: AccessEvent,
    *,
    user: dict[str, Any] | None,
    room: dict[str, Any] | None,
    conn: sqlite3.Connection,
) -> list[AntiCheatFlag]:
    """Score the event and write one audit entry per flag. Never raises on a flag."""
    flags = anticheat.evaluate(
        event_device_id=event.get("device_id"),
        bound_device_id=user.get("device_id") if user else None,
        event_gps=event.get("gps"),
        room_gps=room.get("gps") if room else None,
        room_label=room.get("name") if room else None,
    )
    for flag in flags:
        log_activity(
            actor_id=event.get("user_id"),
            action=flag["code"],
            description=flag["description"],
            timestamp=event.get("timestamp"),
            conn=conn,
        )
        logger.warning("Anti-cheat %s for user %s: %s", flag["code"], event.get("user_id"), flag["description"])
    return flags


def reconcile_event(
    event: AccessEvent,
    *,
    room_id: int,
    flags: list[AntiCheatFlag] | None = None,
    conn: sqlite3.Connection,
) -> ReconcileOutcome:
    """
    Match one access event to a session and the user's attendance record and
    apply the scan. A miss at any step is an outcome, not an error.
    """
    flags = list(flags or [])
    if event.get("action") != "ATTENDANCE":
        return _unmatched("not_attendance_action", flags)

    timestamp = int(event["timestamp"])
    date, day_of_week, hhmm = clock.resolve_local(timestamp)

    homeroom = find_homeroom_for_room(room_id, conn=conn)
    if homeroom is None:
        logger.info("Unmatched scan user=%s room=%s: no_homeroom", event.get("user_id"), room_id)
        return _unmatched("no_homeroom", flags)

    slot = find_slot_at(int(homeroom["id"]), day_of_week, hhmm, conn=conn)
    if slot is None:
        logger.info("Unmatched scan user=%s room=%s at %s %s: no_slot", event.get("user_id"), room_id, date, hhmm)
        return _unmatched("no_slot", flags)

    session = find_session(int(slot["id"]), date, conn=conn)
    if session is None:
        logger.info("Unmatched scan user=%s slot=%s on %s: no_session", event.get("user_id"), slot["id"], date)
        return _unmatched("no_session", flags)
    if session["status"] == "cancelled":
        logger.info("Unmatched scan user=%s session=%s: session_cancelled", event.get("user_id"), session["id"])
        return _unmatched("session_cancelled", flags, session_id=int(session["id"]))

    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, status, marked_manually
        FROM attendance
        WHERE daily_session_id = ? AND student_id = ?
        """,
        (session["id"], event["user_id"]),
    )
    record = fetch_one_dict(cur)
    if record is None:
        logger.info("Unmatched scan user=%s session=%s: not_enrolled", event.get("user_id"), session["id"])
        return _unmatched("not_enrolled", flags, session_id=int(session["id"]))

    patch: AttendancePatch = {
        "status": scan_status(timestamp, int(session["window_end"])),
        "scan_time": timestamp,
        "method": event["method"],
        "marked_manually": False,
        "device_time": event.get("device_time"),
        "time_source": event.get("time_source"),
        "has_internet": event.get("has_internet"),
        "device_id": event.get("device_id"),
        "gps": event.get("gps"),
        "scan_order": event.get("scan_order"),
    }
    changes = merge_attendance_patch(record, patch)
    _write_attendance(cur, int(record["id"]), changes)

    final_status = changes.get("status", record["status"])
    return {
        "matched": True,
        "status": final_status,
        "reason": None if "status" in changes else "manual_override_kept",
        "flags": flags,
        "attendance_id": int(record["id"]),
        "session_id": int(session["id"]),
    }


def record_online_scan(
    principal: Principal,
    *,
    room_id: int,
    timestamp: int,
    method: ScanMethod,
    anti_cheat: dict[str, Any] | None = None,
    now_ms: int | None = None,
) -> ReconcileOutcome:
    """
    Single-event path for an interactive client scanning for itself. Shares
    the window and matching rules with hardware sync.
    """
    now = clock.now_ms() if now_ms is None else now_ms
    anti_cheat = anti_cheat or {}

    conn = connect_db()
    try:
        user = get_user(principal["user_id"], conn=conn)
        if user is None:
            raise AuthorizationError("Unknown user.")
        room = get_room(room_id, conn=conn)
        if room is None:
            raise ValidationError("Room not found.")

        flags: list[AntiCheatFlag] = []
        timestamp_type: TimestampType = "local"
        drift_flag = anticheat.check_clock_drift(timestamp, now)
        if drift_flag:
            log_activity(
                actor_id=principal["user_id"],
                action=drift_flag["code"],
                description=drift_flag["description"],
                timestamp=now,
                conn=conn,
            )
            logger.warning("Anti-cheat SUSPECT_TIME for user %s: %s", principal["user_id"], drift_flag["description"])
            flags.append(drift_flag)
            timestamp = now
            timestamp_type = "server"

        event: AccessEvent = {
            "user_id": principal["user_id"],
            "method": method,
            "action": "ATTENDANCE",
            "result": "granted",
            "timestamp": timestamp,
            "timestamp_type": timestamp_type,
            "device_time": anti_cheat.get("device_time"),
            "time_source": anti_cheat.get("time_source"),
            "has_internet": anti_cheat.get("has_internet"),
            "device_id": anti_cheat.get("device_id"),
            "gps": anti_cheat.get("gps"),
        }
        record_access_log(event, room_id=room_id, received_at=now, conn=conn)
        flags.extend(apply_anticheat(event, user=user, room=room, conn=conn))
        outcome = reconcile_event(event, room_id=room_id, flags=flags, conn=conn)
        conn.commit()
    finally:
        conn.close()
    return outcome


def get_attendance(attendance_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT id, daily_session_id, student_id, status, scan_time, method,
                   marked_manually, marked_by, note, device_id, gps_lat, gps_lng
            FROM attendance
            WHERE id = ?
            """,
            (attendance_id,),
        )
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def override_attendance(
    principal: Principal,
    attendance_id: int,
    status: AttendanceStatus,
    note: str | None = None,
) -> dict[str, Any]:
    """
    Teacher (own sessions only) or admin sets a record by hand. The record is
    marked manual, so later automatic scans leave its status alone.
    """
    must_be_teacher_or_admin(principal)
    if status not in ATTENDANCE_STATUSES:
        raise ValidationError(f"Unknown attendance status {status!r}.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        record = get_attendance(attendance_id, conn=conn)
        if record is None:
            raise NotFoundError("Attendance record not found.")
        cur.execute(
            """
            SELECT s.teacher_id
            FROM daily_sessions d
            JOIN schedule_slots s ON s.id = d.schedule_slot_id
            WHERE d.id = ?
            """,
            (record["daily_session_id"],),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFoundError("Session not found.")
        if principal["role"] == "teacher" and int(row[0]) != principal["user_id"]:
            raise AuthorizationError("You can only modify attendance for your own classes.")

        patch: AttendancePatch = {
            "status": status,
            "note": (note or "").strip() or None,
            "marked_manually": True,
            "marked_by": principal["user_id"],
        }
        _write_attendance(cur, attendance_id, merge_attendance_patch(record, patch))
        log_activity(
            actor_id=principal["user_id"],
            action="ATTENDANCE_OVERRIDE",
            description=f"Changed attendance {attendance_id} for student {record['student_id']} to {status}",
            conn=conn,
        )
        conn.commit()
        updated = get_attendance(attendance_id, conn=conn) or record
    finally:
        conn.close()

    logger.info("Attendance %s overridden to %s by user %s", attendance_id, status, principal["user_id"])
    updated["marked_manually"] = bool(updated["marked_manually"])
    return updated
