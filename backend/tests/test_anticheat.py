import pytest

from backend.services import anticheat

ROOM = {"lat": 11.5564, "lng": 104.9282}
# One degree of latitude is ~111,195 m on a 6,371 km sphere.
METERS_PER_DEGREE_LAT = 111_194.93


def _north_of_room(meters: float) -> dict:
    return {"lat": ROOM["lat"] + meters / METERS_PER_DEGREE_LAT, "lng": ROOM["lng"]}


def test_haversine_distance_along_meridian():
    point = _north_of_room(150)
    distance = anticheat.haversine_distance(ROOM["lat"], ROOM["lng"], point["lat"], point["lng"])
    assert distance == pytest.approx(150, abs=0.5)


def test_haversine_is_zero_for_same_point():
    assert anticheat.haversine_distance(1.0, 2.0, 1.0, 2.0) == 0


def test_points_150m_apart_are_flagged():
    flag = anticheat.check_geofence(_north_of_room(150), ROOM, room_label="Room 101")
    assert flag is not None
    assert flag["code"] == "SUSPECT_GPS"
    assert "150m" in flag["description"]
    assert "Room 101" in flag["description"]


def test_points_50m_apart_are_not_flagged():
    assert anticheat.check_geofence(_north_of_room(50), ROOM) is None


def test_geofence_skipped_without_both_points():
    assert anticheat.check_geofence(None, ROOM) is None
    assert anticheat.check_geofence(_north_of_room(500), None) is None


def test_device_binding():
    flag = anticheat.check_device_binding("phone-9", "phone-1")
    assert flag is not None
    assert flag["code"] == "SUSPECT_DEVICE"
    assert "phone-9" in flag["description"]

    assert anticheat.check_device_binding("phone-1", "phone-1") is None
    assert anticheat.check_device_binding("phone-9", None) is None
    assert anticheat.check_device_binding(None, "phone-1") is None


def test_clock_drift_tolerance():
    assert anticheat.check_clock_drift(0, 300_000) is None
    flag = anticheat.check_clock_drift(0, 301_000)
    assert flag is not None
    assert flag["code"] == "SUSPECT_TIME"
    assert "301s" in flag["description"]


def test_evaluate_collects_every_flag():
    flags = anticheat.evaluate(
        event_device_id="phone-9",
        bound_device_id="phone-1",
        event_gps=_north_of_room(300),
        room_gps=ROOM,
    )
    assert [flag["code"] for flag in flags] == ["SUSPECT_DEVICE", "SUSPECT_GPS"]


def test_evaluate_clean_event():
    assert (
        anticheat.evaluate(
            event_device_id="phone-1",
            bound_device_id="phone-1",
            event_gps=_north_of_room(20),
            room_gps=ROOM,
        )
        == []
    )
