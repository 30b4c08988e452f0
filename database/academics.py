"""
Thin collaborator data the engine reads from: rooms, semesters, homerooms,
enrollments and subjects. No display joins live here.
"""

import sqlite3
from typing import Any, Literal

from backend.services import clock
from database.db import connect_db, fetch_one_dict, gps_from_row
from database.errors import ValidationError

SemesterStatus = Literal["active", "upcoming", "archived"]
SEMESTER_STATUSES: set[str] = {"active", "upcoming", "archived"}


# -----------------------------
# Rooms
# -----------------------------
def create_room(
    name: str,
    *,
    room_type: str | None = None,
    gps: dict[str, float] | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Room name is required.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO rooms (name, room_type, gps_lat, gps_lng, last_updated)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                name,
                room_type,
                gps["lat"] if gps else None,
                gps["lng"] if gps else None,
                clock.now_ms(),
            ),
        )
        room_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return room_id
    finally:
        if owns_conn:
            active_conn.close()


def get_room(room_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT id, name, room_type, gps_lat, gps_lng, last_updated
            FROM rooms
            WHERE id = ?
            """,
            (room_id,),
        )
        row = fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()
    if row is None:
        return None
    row["gps"] = gps_from_row(row)
    return row


def touch_room(room_id: int, *, now_ms: int | None = None, conn: sqlite3.Connection) -> None:
    """Bump the room's last_updated so its devices re-pull the whitelist."""
    conn.execute(
        "UPDATE rooms SET last_updated = ? WHERE id = ?",
        (clock.now_ms() if now_ms is None else now_ms, room_id),
    )


# -----------------------------
# Semesters
# -----------------------------
def create_semester(
    name: str,
    start_date: str,
    end_date: str,
    status: SemesterStatus,
    *,
    conn: sqlite3.Connection | None = None,
) -> int:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Semester name is required.")
    if status not in SEMESTER_STATUSES:
        raise ValidationError(f"Unknown semester status {status!r}.")
    if not clock.is_valid_date(start_date) or not clock.is_valid_date(end_date):
        raise ValidationError("Semester dates must be YYYY-MM-DD.")
    if start_date > end_date:
        raise ValidationError("Semester start date must not be after its end date.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        # Only one semester is active at a time.
        if status == "active":
            cur.execute("UPDATE semesters SET status = 'archived' WHERE status = 'active'")
        cur.execute(
            """
            INSERT INTO semesters (name, start_date, end_date, status)
            VALUES (?, ?, ?, ?)
            """,
            (name, start_date, end_date, status),
        )
        semester_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return semester_id
    finally:
        if owns_conn:
            active_conn.close()


def get_semester(semester_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            "SELECT id, name, start_date, end_date, status FROM semesters WHERE id = ?",
            (semester_id,),
        )
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def get_active_semester(*, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT id, name, start_date, end_date, status
            FROM semesters
            WHERE status = 'active'
            ORDER BY id DESC
            LIMIT 1
            """
        )
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


# -----------------------------
# Homerooms + enrollment
# -----------------------------
def create_homeroom(
    room_id: int,
    semester_id: int,
    name: str,
    *,
    grade_level: str | None = None,
    section: str | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Homeroom name is required.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        if get_room(room_id, conn=active_conn) is None:
            raise ValidationError("Room not found.")
        if get_semester(semester_id, conn=active_conn) is None:
            raise ValidationError("Semester not found.")

        cur.execute(
            """
            INSERT INTO homerooms (room_id, semester_id, name, grade_level, section)
            VALUES (?, ?, ?, ?, ?)
            """,
            (room_id, semester_id, name, grade_level, section),
        )
        homeroom_id = int(cur.lastrowid)
        touch_room(room_id, conn=active_conn)
        if owns_conn:
            active_conn.commit()
        return homeroom_id
    finally:
        if owns_conn:
            active_conn.close()


def get_homeroom(homeroom_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT id, room_id, semester_id, name, grade_level, section
            FROM homerooms
            WHERE id = ?
            """,
            (homeroom_id,),
        )
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def find_homeroom_for_room(room_id: int, *, conn: sqlite3.Connection) -> dict[str, Any] | None:
    """The homeroom bound to a physical room in the active semester, if any."""
    cur = conn.cursor()
    cur.execute(
        """
        SELECT h.id, h.room_id, h.semester_id, h.name
        FROM homerooms h
        JOIN semesters s ON s.id = h.semester_id
        WHERE h.room_id = ? AND s.status = 'active'
        ORDER BY h.id
        LIMIT 1
        """,
        (room_id,),
    )
    return fetch_one_dict(cur)


def enroll_student(
    homeroom_id: int,
    student_id: int,
    *,
    now_ms: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    """
    Enroll a student. Any other active enrollment of the same student in the
    same semester is marked transferred.
    """
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        homeroom = get_homeroom(homeroom_id, conn=active_conn)
        if homeroom is None:
            raise ValidationError("Homeroom not found.")
        cur.execute("SELECT role FROM users WHERE id = ?", (student_id,))
        row = cur.fetchone()
        if not row or row[0] != "student":
            raise ValidationError("Student not found.")

        cur.execute(
            """
            UPDATE homeroom_students
            SET status = 'transferred'
            WHERE student_id = ?
              AND status = 'active'
              AND homeroom_id IN (SELECT id FROM homerooms WHERE semester_id = ?)
            """,
            (student_id, homeroom["semester_id"]),
        )
        cur.execute(
            """
            INSERT INTO homeroom_students (homeroom_id, student_id, enrolled_at, status)
            VALUES (?, ?, ?, 'active')
            """,
            (homeroom_id, student_id, clock.now_ms() if now_ms is None else now_ms),
        )
        enrollment_id = int(cur.lastrowid)
        touch_room(int(homeroom["room_id"]), conn=active_conn)
        if owns_conn:
            active_conn.commit()
        return enrollment_id
    finally:
        if owns_conn:
            active_conn.close()


def get_active_student_ids(homeroom_id: int, *, conn: sqlite3.Connection) -> list[int]:
    cur = conn.cursor()
    cur.execute(
        """
        SELECT student_id
        FROM homeroom_students
        WHERE homeroom_id = ? AND status = 'active'
        ORDER BY student_id
        """,
        (homeroom_id,),
    )
    return [int(row[0]) for row in cur.fetchall()]


# -----------------------------
# Subjects
# -----------------------------
def create_subject(name: str, code: str | None = None) -> int:
    name = (name or "").strip()
    if not name:
        raise ValidationError("Subject name is required.")
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("INSERT INTO subjects (name, code) VALUES (?, ?)", (name, code))
    subject_id = int(cur.lastrowid)
    conn.commit()
    conn.close()
    return subject_id


