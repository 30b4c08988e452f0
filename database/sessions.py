import sqlite3
from typing import Any, TypedDict

from backend.app_logger import get_logger
from backend.security import Principal, must_be_admin, must_be_staff
from backend.services import clock
from backend.services.window import window_for_slot
from database.academics import get_active_semester, get_active_student_ids
from database.db import connect_db, fetch_all_dicts, fetch_one_dict, gps_from_row
from database.errors import NotFoundError
from database.schedule import list_slots_for_day
from database.school_calendar import get_or_create_school_day, get_school_day

logger = get_logger(__name__)

SESSION_COLUMNS = "id, schedule_slot_id, school_day_id, date, status, window_start, window_end"


class MaterializeResult(TypedDict):
    school_day_id: int | None
    date: str | None
    created_sessions: int
    skipped_sessions: int
    created_records: int
    reason: str | None


def _empty_result(school_day: dict[str, Any] | None, reason: str) -> MaterializeResult:
    return {
        "school_day_id": int(school_day["id"]) if school_day else None,
        "date": school_day["date"] if school_day else None,
        "created_sessions": 0,
        "skipped_sessions": 0,
        "created_records": 0,
        "reason": reason,
    }


def _materialize_school_day(school_day: dict[str, Any], *, conn: sqlite3.Connection) -> MaterializeResult:
    """
    Expand every live slot of the day's weekday into a dated session and
    snapshot the active roster as absent. A session that already exists for
    (slot, date) is left alone.
    """
    date = school_day["date"]
    if school_day["day_type"] == "holiday":
        return _empty_result(school_day, "holiday")
    if clock.is_weekend(date):
        return _empty_result(school_day, "weekend")

    day_of_week = clock.day_of_week_for_date(date)
    slots = list_slots_for_day(day_of_week, semester_id=int(school_day["semester_id"]), conn=conn)
    cur = conn.cursor()

    created_sessions = 0
    skipped_sessions = 0
    created_records = 0
    for slot in slots:
        session_start = clock.parse_time_for_date(date, slot["start_time"])
        session_end = clock.parse_time_for_date(date, slot["end_time"])
        window_start, window_end = window_for_slot(session_start, session_end)

        try:
            cur.execute(
                """
                INSERT INTO daily_sessions (
                    schedule_slot_id, school_day_id, date, status, window_start, window_end
                )
                VALUES (?, ?, ?, 'upcoming', ?, ?)
                """,
                (slot["id"], school_day["id"], date, window_start, window_end),
            )
        except sqlite3.IntegrityError:
            # UNIQUE(schedule_slot_id, date): already materialized.
            skipped_sessions += 1
            continue
        session_id = int(cur.lastrowid)
        created_sessions += 1

        for student_id in get_active_student_ids(int(slot["homeroom_id"]), conn=conn):
            cur.execute(
                """
                INSERT OR IGNORE INTO attendance (daily_session_id, student_id, status, marked_manually)
                VALUES (?, ?, 'absent', 0)
                """,
                (session_id, student_id),
            )
            created_records += cur.rowcount

    return {
        "school_day_id": int(school_day["id"]),
        "date": date,
        "created_sessions": created_sessions,
        "skipped_sessions": skipped_sessions,
        "created_records": created_records,
        "reason": None,
    }


def materialize_sessions(principal: Principal, school_day_id: int) -> MaterializeResult:
    must_be_admin(principal)

    conn = connect_db()
    try:
        # Concurrent callers queue on the write lock; the loser sees the rows as existing.
        conn.execute("BEGIN IMMEDIATE")
        school_day = get_school_day(school_day_id, conn=conn)
        if school_day is None:
            raise NotFoundError("School day not found.")
        result = _materialize_school_day(school_day, conn=conn)
        conn.commit()
    finally:
        conn.close()

    logger.info(
        "Materialized %s: created=%d skipped=%d records=%d reason=%s",
        result["date"],
        result["created_sessions"],
        result["skipped_sessions"],
        result["created_records"],
        result["reason"],
    )
    return result


def materialize_today(*, now_ms: int | None = None) -> MaterializeResult:
    """
    Entry point for the external daily scheduler: today's local date in the
    active semester, creating a regular school day when none exists.
    """
    now = clock.now_ms() if now_ms is None else now_ms
    today = clock.local_date(now)

    conn = connect_db()
    try:
        conn.execute("BEGIN IMMEDIATE")
        semester = get_active_semester(conn=conn)
        if semester is None:
            return _empty_result(None, "no_active_semester")
        if clock.is_weekend(today):
            return {**_empty_result(None, "weekend"), "date": today}

        school_day = get_or_create_school_day(int(semester["id"]), today, conn=conn)
        result = _materialize_school_day(school_day, conn=conn)
        conn.commit()
    finally:
        conn.close()

    logger.info(
        "Daily generation for %s: created=%d skipped=%d records=%d reason=%s",
        today,
        result["created_sessions"],
        result["skipped_sessions"],
        result["created_records"],
        result["reason"],
    )
    return result


def update_session_statuses(*, now_ms: int | None = None, conn: sqlite3.Connection | None = None) -> dict[str, int]:
    """upcoming -> ongoing at window_start; ongoing -> closed at window_end."""
    now = clock.now_ms() if now_ms is None else now_ms
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            UPDATE daily_sessions
            SET status = 'ongoing'
            WHERE status = 'upcoming' AND window_start <= ?
            """,
            (now,),
        )
        opened = cur.rowcount
        cur.execute(
            """
            UPDATE daily_sessions
            SET status = 'closed'
            WHERE status = 'ongoing' AND window_end <= ?
            """,
            (now,),
        )
        closed = cur.rowcount
        if owns_conn:
            active_conn.commit()
        return {"opened": opened, "closed": closed}
    finally:
        if owns_conn:
            active_conn.close()


def get_session(session_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(f"SELECT {SESSION_COLUMNS} FROM daily_sessions WHERE id = ?", (session_id,))
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def find_session(slot_id: int, date: str, *, conn: sqlite3.Connection) -> dict[str, Any] | None:
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SESSION_COLUMNS}
        FROM daily_sessions
        WHERE schedule_slot_id = ? AND date = ?
        """,
        (slot_id, date),
    )
    return fetch_one_dict(cur)


def list_sessions(date: str) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SESSION_COLUMNS}
        FROM daily_sessions
        WHERE date = ?
        ORDER BY window_start, id
        """,
        (date,),
    )
    rows = fetch_all_dicts(cur)
    conn.close()
    return rows


def get_session_attendance(principal: Principal, session_id: int) -> list[dict[str, Any]]:
    must_be_staff(principal)

    conn = connect_db()
    cur = conn.cursor()
    try:
        if get_session(session_id, conn=conn) is None:
            raise NotFoundError("Session not found.")
        cur.execute(
            """
            SELECT id, daily_session_id, student_id, status, scan_time, method,
                   marked_manually, marked_by, note, device_time, time_source,
                   has_internet, device_id, gps_lat, gps_lng, scan_order
            FROM attendance
            WHERE daily_session_id = ?
            ORDER BY student_id
            """,
            (session_id,),
        )
        rows = fetch_all_dicts(cur)
    finally:
        conn.close()

    for row in rows:
        row["marked_manually"] = bool(row["marked_manually"])
        row["has_internet"] = None if row["has_internet"] is None else bool(row["has_internet"])
        row["gps"] = gps_from_row(row)
        row.pop("gps_lat")
        row.pop("gps_lng")
    return rows
