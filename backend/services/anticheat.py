import math
from typing import Literal, TypedDict

from backend import config

EARTH_RADIUS_METERS = 6_371_000

FlagCode = Literal["SUSPECT_DEVICE", "SUSPECT_GPS", "SUSPECT_TIME"]


class GpsPoint(TypedDict):
    lat: float
    lng: float


class AntiCheatFlag(TypedDict):
    code: FlagCode
    description: str


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two GPS points, in meters."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_METERS * c


def check_device_binding(event_device_id: str | None, bound_device_id: str | None) -> AntiCheatFlag | None:
    if not event_device_id or not bound_device_id:
        return None
    if event_device_id == bound_device_id:
        return None
    return {
        "code": "SUSPECT_DEVICE",
        "description": f"Account used on unauthorized device: {event_device_id}",
    }


def check_geofence(
    event_gps: GpsPoint | None,
    room_gps: GpsPoint | None,
    *,
    room_label: str | None = None,
) -> AntiCheatFlag | None:
    if not event_gps or not room_gps:
        return None
    distance = haversine_distance(event_gps["lat"], event_gps["lng"], room_gps["lat"], room_gps["lng"])
    if distance <= config.GEOFENCE_RADIUS_METERS:
        return None
    where = f" from room {room_label}" if room_label else ""
    return {
        "code": "SUSPECT_GPS",
        "description": f"Scan recorded {round(distance)}m away{where}",
    }


def check_clock_drift(client_ms: int, server_ms: int) -> AntiCheatFlag | None:
    drift_ms = abs(client_ms - server_ms)
    if drift_ms <= config.CLOCK_DRIFT_TOLERANCE_SECONDS * 1000:
        return None
    return {
        "code": "SUSPECT_TIME",
        "description": f"Large clock drift detected: {round(drift_ms / 1000)}s",
    }


def evaluate(
    *,
    event_device_id: str | None,
    bound_device_id: str | None,
    event_gps: GpsPoint | None,
    room_gps: GpsPoint | None,
    room_label: str | None = None,
) -> list[AntiCheatFlag]:
    """
    Advisory scoring of one access event. Never rejects anything; the caller
    records the returned flags and carries on.
    """
    flags: list[AntiCheatFlag] = []
    device_flag = check_device_binding(event_device_id, bound_device_id)
    if device_flag:
        flags.append(device_flag)
    gps_flag = check_geofence(event_gps, room_gps, room_label=room_label)
    if gps_flag:
        flags.append(gps_flag)
    return flags
