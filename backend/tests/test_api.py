import backend.routers.core as core
import database.db as db
from backend.services import clock
from database import sessions

MONDAY = "2026-03-02"


def _login(client, username: str, password: str) -> dict:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200
    return {"Authorization": f"Bearer {res.json()['access_token']}"}


def _device_id(chip_id: str) -> int:
    conn = db.connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id FROM devices WHERE chip_id = ?", (chip_id,))
    device_id = int(cur.fetchone()[0])
    conn.close()
    return device_id


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, auth_headers):
    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, auth_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_attendance_config(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    body = res.json()
    assert body["pre_window_minutes"] == 15
    assert body["geofence_radius_meters"] == 100.0
    assert body["register_max_attempts"] == 5


def test_login_rejects_invalid_credentials(client):
    res = client.post("/auth/login", json={"username": "admin", "password": "definitely-wrong"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid credentials."


def test_login_requires_fields(client):
    res = client.post("/auth/login", json={"username": " ", "password": "x"})
    assert res.status_code == 400


def test_auth_me(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["role"] == "admin"
    assert body["full_name"] == "Administrator"


def test_auth_me_rejects_non_ascii_token(client):
    res = client.get("/auth/me", headers={"Authorization": "Bearer abc.é".encode("latin-1")})
    assert res.status_code == 401


def test_admin_routes_require_admin(client, school):
    teacher_headers = _login(client, "dara", "teach-pass")
    res = client.get("/admin/devices", headers=teacher_headers)
    assert res.status_code == 403

    res = client.get("/admin/devices")
    assert res.status_code == 401


def test_admin_can_seed_collaborator_data(client, auth_headers):
    res = client.post(
        "/admin/semesters",
        json={"name": "Term 1", "start_date": "2026-03-02", "end_date": "2026-03-13", "status": "active"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    semester_id = res.json()["id"]

    res = client.post(
        f"/admin/semesters/{semester_id}/school-days/generate",
        headers=auth_headers,
    )
    assert res.json() == {"created": 10, "skipped": 0}

    res = client.post(
        "/admin/rooms",
        json={"name": "Lab 1", "gps": {"lat": 11.55, "lng": 104.92}},
        headers=auth_headers,
    )
    room_id = res.json()["id"]

    res = client.post(
        "/admin/homerooms",
        json={"room_id": room_id, "semester_id": semester_id, "name": "Grade 8A"},
        headers=auth_headers,
    )
    assert res.status_code == 200

    user = {"full_name": "Kim", "role": "student", "card_uid": "S-777"}
    assert client.post("/admin/users", json=user, headers=auth_headers).status_code == 200
    res = client.post("/admin/users", json={**user, "full_name": "Kim Again"}, headers=auth_headers)
    assert res.status_code == 409


def test_slot_validation_maps_to_400(client, auth_headers, school):
    res = client.post(
        "/admin/slots",
        json={
            "homeroom_id": school["homeroom_id"],
            "subject_id": school["subject_id"],
            "teacher_id": school["teacher_id"],
            "day_of_week": 1,
            "start_time": "09:30",
            "end_time": "10:30",
        },
        headers=auth_headers,
    )
    assert res.status_code == 400
    assert "overlaps" in res.json()["detail"]


def test_materialize_and_roster_over_http(client, auth_headers, school):
    res = client.post(f"/admin/school-days/{school['school_day_id']}/materialize", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["created_sessions"] == 1

    res = client.post("/admin/school-days/999/materialize", headers=auth_headers)
    assert res.status_code == 404

    res = client.get("/sessions", params={"date": MONDAY}, headers=auth_headers)
    assert res.status_code == 200
    session_id = res.json()[0]["id"]

    res = client.get(f"/sessions/{session_id}/attendance", headers=auth_headers)
    assert res.status_code == 200
    assert len(res.json()) == 2

    student_headers = _login(client, "student1", "student-pass")
    res = client.get(f"/sessions/{session_id}/attendance", headers=student_headers)
    assert res.status_code == 403


def test_calendar_endpoint(client, auth_headers):
    res = client.get("/calendar/is-school-day", params={"date": "2026-03-07"}, headers=auth_headers)
    assert res.json() == {"is_school_day": False, "reason": "weekend"}

    res = client.get("/calendar/is-school-day", params={"date": "2026-13-01"}, headers=auth_headers)
    assert res.status_code == 400


def test_online_scan_and_teacher_override(client, auth_headers, school, admin, monkeypatch):
    sessions.materialize_sessions(admin, school["school_day_id"])
    scan_time = clock.parse_time_for_date(MONDAY, "09:10")
    monkeypatch.setattr(clock, "now_ms", lambda: scan_time)

    student_headers = _login(client, "student1", "student-pass")
    res = client.post(
        "/attendance/scan",
        json={
            "room_id": school["room_id"],
            "timestamp": scan_time,
            "method": "phone",
            "anti_cheat": {"device_id": "phone-1", "has_internet": True},
        },
        headers=student_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["matched"] is True
    assert body["status"] == "present"
    attendance_id = body["attendance_id"]

    res = client.post(
        f"/attendance/{attendance_id}/override",
        json={"status": "excused"},
        headers=student_headers,
    )
    assert res.status_code == 403

    teacher_headers = _login(client, "dara", "teach-pass")
    res = client.post(
        f"/attendance/{attendance_id}/override",
        json={"status": "excused", "note": "Sports day"},
        headers=teacher_headers,
    )
    assert res.status_code == 200
    assert res.json()["attendance"]["status"] == "excused"

    res = client.post(
        "/attendance/scan",
        json={"room_id": 999, "timestamp": scan_time, "method": "card"},
        headers=student_headers,
    )
    assert res.status_code == 400


def test_device_lifecycle_over_http(client, auth_headers, school):
    res = client.post("/api/register", json={"chip_id": "ESP32-HTTP01"})
    assert res.status_code == 200
    token = res.json()["token"]
    assert res.json()["status"] == "registered"

    res = client.post("/api/heartbeat", json={"chip_id": "ESP32-HTTP01", "token": token, "firmware": "2.0.1"})
    assert res.json()["activated"] is False

    res = client.get("/api/whitelist", params={"chip_id": "ESP32-HTTP01", "token": token})
    assert res.status_code == 401
    assert res.json()["detail"] == "Unauthorized hardware."

    device_id = _device_id("ESP32-HTTP01")
    res = client.post(
        f"/admin/devices/{device_id}/assign",
        json={"room_id": school["room_id"]},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["status"] == "active"

    res = client.get("/api/whitelist", params={"chip_id": "ESP32-HTTP01", "token": token})
    assert res.status_code == 200
    assert len(res.json()["entries"]) == 3

    res = client.post(
        "/api/logs",
        json={
            "chip_id": "ESP32-HTTP01",
            "token": token,
            "logs": [
                {
                    "user_id": school["students"][0],
                    "method": "card",
                    "action": "OPEN_GATE",
                    "timestamp": clock.parse_time_for_date(MONDAY, "07:30"),
                }
            ],
        },
    )
    assert res.status_code == 200
    assert res.json() == {"success": True, "accepted_count": 1, "received_count": 1}

    res = client.post(f"/admin/devices/{device_id}/reset-token", headers=auth_headers)
    new_token = res.json()["token"]
    res = client.post("/api/heartbeat", json={"chip_id": "ESP32-HTTP01", "token": token})
    assert res.status_code == 401
    res = client.post("/api/heartbeat", json={"chip_id": "ESP32-HTTP01", "token": new_token})
    assert res.status_code == 200


def test_register_rate_limit_over_http(client):
    for _ in range(5):
        assert client.post("/api/register", json={"chip_id": "ESP32-FLOOD"}).status_code == 200
    res = client.post("/api/register", json={"chip_id": "ESP32-FLOOD"})
    assert res.status_code == 429


def test_alerts_listing_and_resolve(client, auth_headers):
    conn = db.connect_db()
    alert_id = db.create_alert_once(
        alert_type="DEVICE_OFFLINE",
        severity="medium",
        message="Device gone quiet",
        timestamp=1,
        device_id=7,
        conn=conn,
    )
    conn.commit()
    conn.close()

    res = client.get("/admin/alerts", headers=auth_headers)
    assert [alert["id"] for alert in res.json()] == [alert_id]

    res = client.get("/admin/alerts", params={"alert_type": "BOGUS"}, headers=auth_headers)
    assert res.status_code == 400

    res = client.post(f"/admin/alerts/{alert_id}/resolve", headers=auth_headers)
    assert res.json() == {"ok": True}
    res = client.post(f"/admin/alerts/{alert_id}/resolve", headers=auth_headers)
    assert res.status_code == 404
    assert client.get("/admin/alerts", headers=auth_headers).json() == []


def test_maintenance_endpoint(client, auth_headers):
    res = client.post("/admin/maintenance", headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["ok"] is True
    assert set(body) >= {"sessions", "devices", "suspicious"}
