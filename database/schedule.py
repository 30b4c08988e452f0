import sqlite3
from typing import Any, TypedDict

from backend.app_logger import get_logger
from backend.security import Principal, must_be_admin
from backend.services import clock
from database.academics import get_homeroom
from database.db import connect_db, fetch_all_dicts, fetch_one_dict, log_activity
from database.errors import NotFoundError, ValidationError

logger = get_logger(__name__)

SLOT_COLUMNS = "id, homeroom_id, subject_id, teacher_id, day_of_week, start_time, end_time, deleted_at"


class SlotPatch(TypedDict, total=False):
    subject_id: int
    teacher_id: int
    day_of_week: int
    start_time: str
    end_time: str


def _validate_slot_times(day_of_week: int, start_time: str, end_time: str) -> None:
    if not isinstance(day_of_week, int) or not 0 <= day_of_week <= 6:
        raise ValidationError("Day of week must be between 0 (Sunday) and 6 (Saturday).")
    if not clock.is_valid_time_of_day(start_time) or not clock.is_valid_time_of_day(end_time):
        raise ValidationError("Invalid time format. Use HH:MM (24-hour).")
    # Fixed-width HH:MM compares correctly as text.
    if start_time >= end_time:
        raise ValidationError("Start time must be before end time.")


def _validate_references(
    cur: sqlite3.Cursor,
    *,
    subject_id: int,
    teacher_id: int,
) -> None:
    cur.execute("SELECT id FROM subjects WHERE id = ?", (subject_id,))
    if cur.fetchone() is None:
        raise ValidationError("Subject not found.")
    cur.execute("SELECT role FROM users WHERE id = ?", (teacher_id,))
    row = cur.fetchone()
    if row is None or row[0] != "teacher":
        raise ValidationError("Teacher not found.")


def _assert_no_overlap(
    cur: sqlite3.Cursor,
    *,
    homeroom_id: int,
    day_of_week: int,
    start_time: str,
    end_time: str,
    exclude_slot_id: int | None = None,
) -> None:
    # Touching slots (one ends when the next starts) are allowed.
    cur.execute(
        """
        SELECT id, start_time, end_time
        FROM schedule_slots
        WHERE homeroom_id = ?
          AND day_of_week = ?
          AND deleted_at IS NULL
          AND start_time < ?
          AND ? < end_time
          AND id IS NOT ?
        LIMIT 1
        """,
        (homeroom_id, day_of_week, end_time, start_time, exclude_slot_id),
    )
    clash = cur.fetchone()
    if clash:
        raise ValidationError(
            f"Slot overlaps an existing slot ({clash[1]}-{clash[2]}) for this homeroom."
        )


def get_slot(slot_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(f"SELECT {SLOT_COLUMNS} FROM schedule_slots WHERE id = ?", (slot_id,))
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def add_slot(
    principal: Principal,
    *,
    homeroom_id: int,
    subject_id: int,
    teacher_id: int,
    day_of_week: int,
    start_time: str,
    end_time: str,
    conn: sqlite3.Connection | None = None,
) -> int:
    must_be_admin(principal)
    _validate_slot_times(day_of_week, start_time, end_time)

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        if get_homeroom(homeroom_id, conn=active_conn) is None:
            raise ValidationError("Homeroom not found.")
        _validate_references(cur, subject_id=subject_id, teacher_id=teacher_id)
        _assert_no_overlap(
            cur,
            homeroom_id=homeroom_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
        )
        cur.execute(
            """
            INSERT INTO schedule_slots (
                homeroom_id, subject_id, teacher_id, day_of_week, start_time, end_time
            )
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (homeroom_id, subject_id, teacher_id, day_of_week, start_time, end_time),
        )
        slot_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return slot_id
    finally:
        if owns_conn:
            active_conn.close()


def update_slot(principal: Principal, slot_id: int, patch: SlotPatch) -> dict[str, Any]:
    must_be_admin(principal)

    conn = connect_db()
    cur = conn.cursor()
    try:
        slot = get_slot(slot_id, conn=conn)
        if slot is None or slot["deleted_at"] is not None:
            raise NotFoundError("Schedule slot not found.")

        merged = {**slot, **{k: v for k, v in patch.items() if v is not None}}
        _validate_slot_times(merged["day_of_week"], merged["start_time"], merged["end_time"])
        _validate_references(cur, subject_id=merged["subject_id"], teacher_id=merged["teacher_id"])
        _assert_no_overlap(
            cur,
            homeroom_id=merged["homeroom_id"],
            day_of_week=merged["day_of_week"],
            start_time=merged["start_time"],
            end_time=merged["end_time"],
            exclude_slot_id=slot_id,
        )
        cur.execute(
            """
            UPDATE schedule_slots
            SET subject_id = ?, teacher_id = ?, day_of_week = ?, start_time = ?, end_time = ?
            WHERE id = ?
            """,
            (
                merged["subject_id"],
                merged["teacher_id"],
                merged["day_of_week"],
                merged["start_time"],
                merged["end_time"],
                slot_id,
            ),
        )
        conn.commit()
        return get_slot(slot_id, conn=conn) or merged
    finally:
        conn.close()


def delete_slot(principal: Principal, slot_id: int, *, now_ms: int | None = None) -> dict[str, int]:
    """
    Retire a slot and cancel its sessions dated today or later that are not
    closed. Past and closed sessions are left untouched.
    """
    must_be_admin(principal)
    now = clock.now_ms() if now_ms is None else now_ms
    today = clock.local_date(now)

    conn = connect_db()
    cur = conn.cursor()
    try:
        slot = get_slot(slot_id, conn=conn)
        if slot is None or slot["deleted_at"] is not None:
            raise NotFoundError("Schedule slot not found.")

        cur.execute(
            """
            UPDATE daily_sessions
            SET status = 'cancelled'
            WHERE schedule_slot_id = ?
              AND date >= ?
              AND status NOT IN ('closed', 'cancelled')
            """,
            (slot_id, today),
        )
        cancelled = cur.rowcount
        cur.execute("UPDATE schedule_slots SET deleted_at = ? WHERE id = ?", (now, slot_id))
        log_activity(
            actor_id=principal["user_id"],
            action="SLOT_DELETED",
            description=f"Deleted schedule slot {slot_id}, cancelled {cancelled} sessions",
            timestamp=now,
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Schedule slot %s deleted; cancelled %d future sessions", slot_id, cancelled)
    return {"slot_id": slot_id, "cancelled_sessions": cancelled}


def list_slots_for_day(day_of_week: int, *, semester_id: int, conn: sqlite3.Connection) -> list[dict[str, Any]]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT s.id, s.homeroom_id, s.subject_id, s.teacher_id, s.day_of_week,
               s.start_time, s.end_time
        FROM schedule_slots s
        JOIN homerooms h ON h.id = s.homeroom_id
        WHERE s.day_of_week = ?
          AND s.deleted_at IS NULL
          AND h.semester_id = ?
        ORDER BY s.start_time, s.id
        """,
        (day_of_week, semester_id),
    )
    return fetch_all_dicts(cur)


def find_slot_at(
    homeroom_id: int,
    day_of_week: int,
    hhmm: str,
    *,
    conn: sqlite3.Connection,
) -> dict[str, Any] | None:
    """
    The live slot of a homeroom covering ``hhmm`` (both ends inclusive).
    At a shared boundary the slot that is starting wins.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, homeroom_id, subject_id, teacher_id, day_of_week, start_time, end_time
        FROM schedule_slots
        WHERE homeroom_id = ?
          AND day_of_week = ?
          AND deleted_at IS NULL
          AND start_time <= ?
          AND end_time >= ?
        ORDER BY start_time DESC, id
        LIMIT 1
        """,
        (homeroom_id, day_of_week, hhmm, hhmm),
    )
    return fetch_one_dict(cur)


def list_homeroom_slots(homeroom_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {SLOT_COLUMNS}
        FROM schedule_slots
        WHERE homeroom_id = ? AND deleted_at IS NULL
        ORDER BY day_of_week, start_time
        """,
        (homeroom_id,),
    )
    rows = fetch_all_dicts(cur)
    conn.close()
    return rows
