import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import database.db as db
from database import academics, devices, schedule, school_calendar

MONDAY = "2026-03-02"
ROOM_GPS = {"lat": 11.5564, "lng": 104.9282}


@pytest.fixture()
def db_path(tmp_path, monkeypatch):
    test_db = tmp_path / "rollcall_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def client(db_path):
    with TestClient(main.app) as c:
        yield c


@pytest.fixture()
def auth_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def admin(db_path):
    user = db.verify_user_credentials(config.ADMIN_USERNAME, config.ADMIN_PASSWORD)
    assert user is not None
    return {"user_id": user["id"], "role": "admin"}


@pytest.fixture()
def school(db_path, admin):
    """
    One active semester with Room 101 bound to homeroom 7A, two enrolled
    students and a Monday 09:00-10:00 maths slot. Monday 2026-03-02 exists
    as a regular school day but is not materialized yet.
    """
    semester_id = academics.create_semester("Term 1", "2026-03-01", "2026-06-30", "active")
    room_id = academics.create_room("Room 101", room_type="classroom", gps=ROOM_GPS)
    homeroom_id = academics.create_homeroom(room_id, semester_id, "Grade 7A")
    teacher_id = db.create_user(
        full_name="Sok Dara",
        role="teacher",
        username="dara",
        password="teach-pass",
        card_uid="T-001",
    )
    students = [
        db.create_user(
            full_name=f"Student {n}",
            role="student",
            username=f"student{n}",
            password="student-pass",
            card_uid=f"S-00{n}",
            device_id=f"phone-{n}",
        )
        for n in (1, 2)
    ]
    for student_id in students:
        academics.enroll_student(homeroom_id, student_id)
    subject_id = academics.create_subject("Mathematics", "MATH")
    slot_id = schedule.add_slot(
        admin,
        homeroom_id=homeroom_id,
        subject_id=subject_id,
        teacher_id=teacher_id,
        day_of_week=1,
        start_time="09:00",
        end_time="10:00",
    )
    school_day_id = school_calendar.create_school_day(semester_id, MONDAY)
    return {
        "semester_id": semester_id,
        "room_id": room_id,
        "homeroom_id": homeroom_id,
        "teacher_id": teacher_id,
        "students": students,
        "subject_id": subject_id,
        "slot_id": slot_id,
        "school_day_id": school_day_id,
    }


@pytest.fixture()
def device(school, admin):
    """A registered device assigned to Room 101."""
    registered = devices.register_device("ESP32-00AB12")
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id FROM devices WHERE chip_id = ?", ("ESP32-00AB12",))
    device_id = int(cur.fetchone()[0])
    conn.close()
    devices.assign_device(admin, device_id, school["room_id"])
    return {"id": device_id, "chip_id": "ESP32-00AB12", "token": registered["token"]}
