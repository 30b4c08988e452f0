import sqlite3
from typing import Any, Literal, TypedDict

from backend.app_logger import get_logger
from backend.security import Principal, must_be_admin
from backend.services import clock
from database.academics import get_active_semester, get_semester
from database.db import connect_db, fetch_all_dicts, fetch_one_dict, log_activity
from database.errors import NotFoundError, ValidationError

logger = get_logger(__name__)

DayType = Literal["regular", "exam", "half_day", "holiday"]
DAY_TYPES: set[str] = {"regular", "exam", "half_day", "holiday"}


class SchoolDayCheck(TypedDict):
    is_school_day: bool
    reason: str


def create_school_day(
    semester_id: int,
    date: str,
    *,
    day_type: DayType = "regular",
    holiday_name: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    if not clock.is_valid_date(date):
        raise ValidationError("Date must be YYYY-MM-DD.")
    if day_type not in DAY_TYPES:
        raise ValidationError(f"Unknown day type {day_type!r}.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        if get_semester(semester_id, conn=active_conn) is None:
            raise ValidationError("Semester not found.")
        cur.execute(
            """
            INSERT INTO school_days (semester_id, date, day_type, holiday_name)
            VALUES (?, ?, ?, ?)
            """,
            (semester_id, date, day_type, holiday_name),
        )
        day_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return day_id
    finally:
        if owns_conn:
            active_conn.close()


def get_school_day(school_day_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT id, semester_id, date, day_type, holiday_name
            FROM school_days
            WHERE id = ?
            """,
            (school_day_id,),
        )
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def find_school_day(
    date: str,
    *,
    semester_id: int | None = None,
    conn: sqlite3.Connection,
) -> dict[str, Any] | None:
    cur = conn.cursor()
    if semester_id is None:
        cur.execute(
            """
            SELECT id, semester_id, date, day_type, holiday_name
            FROM school_days
            WHERE date = ?
            ORDER BY id
            LIMIT 1
            """,
            (date,),
        )
    else:
        cur.execute(
            """
            SELECT id, semester_id, date, day_type, holiday_name
            FROM school_days
            WHERE date = ? AND semester_id = ?
            """,
            (date, semester_id),
        )
    return fetch_one_dict(cur)


def get_or_create_school_day(semester_id: int, date: str, *, conn: sqlite3.Connection) -> dict[str, Any]:
    existing = find_school_day(date, semester_id=semester_id, conn=conn)
    if existing:
        return existing
    try:
        create_school_day(semester_id, date, conn=conn)
    except sqlite3.IntegrityError:
        # Lost a race with another writer; the row exists now.
        pass
    created = find_school_day(date, semester_id=semester_id, conn=conn)
    if created is None:
        raise NotFoundError("School day could not be created.")
    return created


def generate_school_days(principal: Principal, semester_id: int) -> dict[str, int]:
    """One regular school day per weekday of the semester; existing days are kept."""
    must_be_admin(principal)

    conn = connect_db()
    cur = conn.cursor()
    try:
        semester = get_semester(semester_id, conn=conn)
        if semester is None:
            raise NotFoundError("Semester not found.")

        created = 0
        skipped = 0
        for date in clock.iter_dates(semester["start_date"], semester["end_date"]):
            if clock.is_weekend(date):
                continue
            cur.execute(
                """
                INSERT OR IGNORE INTO school_days (semester_id, date, day_type)
                VALUES (?, ?, 'regular')
                """,
                (semester_id, date),
            )
            if cur.rowcount > 0:
                created += 1
            else:
                skipped += 1
        conn.commit()
    finally:
        conn.close()

    logger.info("Generated school days for semester %s: created=%d skipped=%d", semester_id, created, skipped)
    return {"created": created, "skipped": skipped}


def list_school_days(semester_id: int) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, semester_id, date, day_type, holiday_name
        FROM school_days
        WHERE semester_id = ?
        ORDER BY date
        """,
        (semester_id,),
    )
    rows = fetch_all_dicts(cur)
    conn.close()
    return rows


def mark_holiday(principal: Principal, date: str, name: str) -> dict[str, Any]:
    """
    Mark a date as a holiday and cancel every session already materialized
    for it. Attendance rows are left as they are.
    """
    must_be_admin(principal)
    if not clock.is_valid_date(date):
        raise ValidationError("Date must be YYYY-MM-DD.")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Holiday name is required.")

    conn = connect_db()
    cur = conn.cursor()
    try:
        school_day = find_school_day(date, conn=conn)
        if school_day is None:
            semester = get_active_semester(conn=conn)
            if semester is None:
                raise ValidationError("No active semester found to link holiday.")
            school_day_id = create_school_day(
                int(semester["id"]),
                date,
                day_type="holiday",
                holiday_name=name,
                conn=conn,
            )
        else:
            school_day_id = int(school_day["id"])
            cur.execute(
                """
                UPDATE school_days
                SET day_type = 'holiday', holiday_name = ?
                WHERE date = ?
                """,
                (name, date),
            )

        cur.execute(
            """
            UPDATE daily_sessions
            SET status = 'cancelled'
            WHERE date = ? AND status != 'cancelled'
            """,
            (date,),
        )
        cancelled = cur.rowcount

        log_activity(
            actor_id=principal["user_id"],
            action="HOLIDAY_MARKED",
            description=f"Marked {date} as holiday '{name}', cancelled {cancelled} sessions",
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Holiday %s (%s): cancelled %d sessions", date, name, cancelled)
    return {"school_day_id": school_day_id, "cancelled_sessions": cancelled}


def is_school_day(date: str) -> SchoolDayCheck:
    if not clock.is_valid_date(date):
        raise ValidationError("Date must be YYYY-MM-DD.")
    if clock.is_weekend(date):
        return {"is_school_day": False, "reason": "weekend"}

    conn = connect_db()
    try:
        school_day = find_school_day(date, conn=conn)
    finally:
        conn.close()

    if school_day is None:
        return {"is_school_day": True, "reason": "regular"}
    if school_day["day_type"] == "holiday":
        return {"is_school_day": False, "reason": school_day["holiday_name"] or "holiday"}
    return {"is_school_day": True, "reason": school_day["day_type"]}
