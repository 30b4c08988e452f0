from concurrent.futures import ThreadPoolExecutor

import pytest

import database.db as db
from backend.services import clock
from backend.services.window import window_for_slot
from database import academics, schedule, school_calendar, sessions
from database.errors import AuthorizationError, NotFoundError, ValidationError

MONDAY = "2026-03-02"
NEXT_MONDAY = "2026-03-09"
SATURDAY = "2026-03-07"


def _count(sql: str, params: tuple = ()) -> int:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute(sql, params)
    value = int(cur.fetchone()[0])
    conn.close()
    return value


def _session_statuses() -> dict[str, str]:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute("SELECT date, status FROM daily_sessions ORDER BY date")
    rows = dict(cur.fetchall())
    conn.close()
    return rows


def test_materialize_creates_session_and_absent_roster(school, admin):
    result = sessions.materialize_sessions(admin, school["school_day_id"])

    assert result["created_sessions"] == 1
    assert result["created_records"] == 2
    assert result["skipped_sessions"] == 0
    assert result["reason"] is None

    listed = sessions.list_sessions(MONDAY)
    assert len(listed) == 1
    session = listed[0]
    assert session["status"] == "upcoming"
    assert session["schedule_slot_id"] == school["slot_id"]

    start = clock.parse_time_for_date(MONDAY, "09:00")
    end = clock.parse_time_for_date(MONDAY, "10:00")
    assert (session["window_start"], session["window_end"]) == window_for_slot(start, end)
    assert session["window_start"] == start - 900_000

    roster = sessions.get_session_attendance(admin, session["id"])
    assert sorted(r["student_id"] for r in roster) == sorted(school["students"])
    assert {r["status"] for r in roster} == {"absent"}
    assert not any(r["marked_manually"] for r in roster)


def test_materialize_twice_is_idempotent(school, admin):
    sessions.materialize_sessions(admin, school["school_day_id"])
    again = sessions.materialize_sessions(admin, school["school_day_id"])

    assert again["created_sessions"] == 0
    assert again["skipped_sessions"] == 1
    assert again["created_records"] == 0
    assert _count("SELECT COUNT(*) FROM daily_sessions") == 1
    assert _count("SELECT COUNT(*) FROM attendance") == 2


def test_concurrent_materialization_creates_one_session(school, admin):
    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(
            pool.map(lambda _: sessions.materialize_sessions(admin, school["school_day_id"]), range(6))
        )

    assert sorted(result["created_sessions"] for result in results) == [0, 0, 0, 0, 0, 1]
    assert sum(result["skipped_sessions"] for result in results) == 5
    assert _count("SELECT COUNT(*) FROM daily_sessions") == 1
    assert _count("SELECT COUNT(*) FROM attendance") == 2


def test_materialize_skips_transferred_students(school, admin):
    other_homeroom = academics.create_homeroom(
        academics.create_room("Room 102"), school["semester_id"], "Grade 7B"
    )
    academics.enroll_student(other_homeroom, school["students"][1])

    result = sessions.materialize_sessions(admin, school["school_day_id"])
    assert result["created_records"] == 1


def test_materialize_holiday_is_a_noop(school, admin):
    school_calendar.mark_holiday(admin, MONDAY, "Founders Day")
    result = sessions.materialize_sessions(admin, school["school_day_id"])

    assert result["reason"] == "holiday"
    assert result["created_sessions"] == 0
    assert _count("SELECT COUNT(*) FROM daily_sessions") == 0


def test_materialize_weekend_is_a_noop(school, admin):
    saturday_id = school_calendar.create_school_day(school["semester_id"], SATURDAY)
    schedule.add_slot(
        admin,
        homeroom_id=school["homeroom_id"],
        subject_id=school["subject_id"],
        teacher_id=school["teacher_id"],
        day_of_week=6,
        start_time="09:00",
        end_time="10:00",
    )
    result = sessions.materialize_sessions(admin, saturday_id)

    assert result["reason"] == "weekend"
    assert _count("SELECT COUNT(*) FROM daily_sessions") == 0


def test_materialize_unknown_day(db_path, admin):
    with pytest.raises(NotFoundError):
        sessions.materialize_sessions(admin, 999)


def test_materialize_requires_admin(school):
    with pytest.raises(AuthorizationError):
        sessions.materialize_sessions({"user_id": school["teacher_id"], "role": "teacher"}, school["school_day_id"])


def test_materialize_ignores_other_semesters(school, admin):
    old_semester = academics.create_semester("Old Term", "2025-09-01", "2025-12-31", "archived")
    old_homeroom = academics.create_homeroom(academics.create_room("Annex"), old_semester, "Old 7A")
    schedule.add_slot(
        admin,
        homeroom_id=old_homeroom,
        subject_id=school["subject_id"],
        teacher_id=school["teacher_id"],
        day_of_week=1,
        start_time="09:00",
        end_time="10:00",
    )
    result = sessions.materialize_sessions(admin, school["school_day_id"])
    assert result["created_sessions"] == 1


def test_materialize_today_creates_school_day(school):
    now = clock.parse_time_for_date(NEXT_MONDAY, "00:05")
    result = sessions.materialize_today(now_ms=now)

    assert result["date"] == NEXT_MONDAY
    assert result["created_sessions"] == 1
    assert _count("SELECT COUNT(*) FROM school_days WHERE date = ?", (NEXT_MONDAY,)) == 1

    again = sessions.materialize_today(now_ms=now)
    assert again["skipped_sessions"] == 1


def test_materialize_today_skips_weekend(school):
    result = sessions.materialize_today(now_ms=clock.parse_time_for_date(SATURDAY, "00:05"))
    assert result["reason"] == "weekend"
    assert _count("SELECT COUNT(*) FROM school_days WHERE date = ?", (SATURDAY,)) == 0


def test_session_status_transitions(school, admin):
    sessions.materialize_sessions(admin, school["school_day_id"])

    sessions.update_session_statuses(now_ms=clock.parse_time_for_date(MONDAY, "08:40"))
    assert _session_statuses()[MONDAY] == "upcoming"

    stats = sessions.update_session_statuses(now_ms=clock.parse_time_for_date(MONDAY, "08:45"))
    assert stats == {"opened": 1, "closed": 0}
    assert _session_statuses()[MONDAY] == "ongoing"

    stats = sessions.update_session_statuses(now_ms=clock.parse_time_for_date(MONDAY, "09:30"))
    assert stats == {"opened": 0, "closed": 1}
    assert _session_statuses()[MONDAY] == "closed"


def test_holiday_cancels_existing_sessions_only(school, admin):
    sessions.materialize_sessions(admin, school["school_day_id"])
    before = _count("SELECT COUNT(*) FROM attendance WHERE status = 'absent'")

    result = school_calendar.mark_holiday(admin, MONDAY, "Founders Day")

    assert result["cancelled_sessions"] == 1
    assert _session_statuses()[MONDAY] == "cancelled"
    assert _count("SELECT COUNT(*) FROM attendance WHERE status = 'absent'") == before
    assert school_calendar.is_school_day(MONDAY) == {"is_school_day": False, "reason": "Founders Day"}


def test_holiday_without_active_semester(db_path, admin):
    with pytest.raises(ValidationError):
        school_calendar.mark_holiday(admin, MONDAY, "Founders Day")


def test_is_school_day(school):
    assert school_calendar.is_school_day(SATURDAY) == {"is_school_day": False, "reason": "weekend"}
    assert school_calendar.is_school_day(MONDAY) == {"is_school_day": True, "reason": "regular"}
    assert school_calendar.is_school_day("2026-03-10")["is_school_day"] is True


def test_generate_school_days_covers_weekdays_once(school, admin):
    first = school_calendar.generate_school_days(admin, school["semester_id"])
    again = school_calendar.generate_school_days(admin, school["semester_id"])

    days = school_calendar.list_school_days(school["semester_id"])
    assert all(not clock.is_weekend(day["date"]) for day in days)
    assert again["created"] == 0
    # MONDAY was already present from the fixture.
    assert first["skipped"] == 1
    assert len(days) == first["created"] + 1


def test_delete_slot_cancels_future_open_sessions(school, admin):
    later_monday = "2026-03-16"
    sessions.materialize_sessions(admin, school["school_day_id"])
    sessions.materialize_sessions(
        admin, school_calendar.create_school_day(school["semester_id"], NEXT_MONDAY)
    )
    sessions.materialize_sessions(
        admin, school_calendar.create_school_day(school["semester_id"], later_monday)
    )
    conn = db.connect_db()
    conn.execute("UPDATE daily_sessions SET status = 'closed' WHERE date = ?", (later_monday,))
    conn.commit()
    conn.close()

    result = schedule.delete_slot(admin, school["slot_id"], now_ms=clock.parse_time_for_date("2026-03-05", "12:00"))

    assert result["cancelled_sessions"] == 1
    assert _session_statuses() == {
        MONDAY: "upcoming",
        NEXT_MONDAY: "cancelled",
        later_monday: "closed",
    }
    assert schedule.get_slot(school["slot_id"])["deleted_at"] is not None

    # A retired slot is no longer expanded.
    fresh_day = school_calendar.create_school_day(school["semester_id"], "2026-03-23")
    assert sessions.materialize_sessions(admin, fresh_day)["created_sessions"] == 0


def test_add_slot_rejects_overlap_but_allows_touching(school, admin):
    base = {
        "homeroom_id": school["homeroom_id"],
        "subject_id": school["subject_id"],
        "teacher_id": school["teacher_id"],
        "day_of_week": 1,
    }
    with pytest.raises(ValidationError):
        schedule.add_slot(admin, **base, start_time="09:30", end_time="10:30")
    with pytest.raises(ValidationError):
        schedule.add_slot(admin, **base, start_time="08:00", end_time="11:00")

    assert schedule.add_slot(admin, **base, start_time="10:00", end_time="11:00") > 0
    assert schedule.add_slot(admin, **{**base, "day_of_week": 2}, start_time="09:30", end_time="10:30") > 0


@pytest.mark.parametrize(
    "start_time,end_time,day_of_week",
    [
        ("9:00", "10:00", 1),
        ("10:00", "10:00", 1),
        ("11:00", "10:00", 1),
        ("09:00", "10:00", 7),
    ],
)
def test_add_slot_validation(school, admin, start_time, end_time, day_of_week):
    with pytest.raises(ValidationError):
        schedule.add_slot(
            admin,
            homeroom_id=school["homeroom_id"],
            subject_id=school["subject_id"],
            teacher_id=school["teacher_id"],
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
        )


def test_add_slot_requires_a_teacher(school, admin):
    with pytest.raises(ValidationError):
        schedule.add_slot(
            admin,
            homeroom_id=school["homeroom_id"],
            subject_id=school["subject_id"],
            teacher_id=school["students"][0],
            day_of_week=3,
            start_time="09:00",
            end_time="10:00",
        )


def test_update_slot_checks_merged_result(school, admin):
    second = schedule.add_slot(
        admin,
        homeroom_id=school["homeroom_id"],
        subject_id=school["subject_id"],
        teacher_id=school["teacher_id"],
        day_of_week=1,
        start_time="10:00",
        end_time="11:00",
    )
    with pytest.raises(ValidationError):
        schedule.update_slot(admin, second, {"start_time": "09:45"})

    updated = schedule.update_slot(admin, second, {"start_time": "10:15", "end_time": "11:15"})
    assert (updated["start_time"], updated["end_time"]) == ("10:15", "11:15")
