import sqlite3
from typing import Any, Literal, TypedDict

from backend import config
from backend.app_logger import get_logger
from backend.security import Principal, generate_device_token, hash_token, must_be_admin, tokens_match
from backend.services import clock
from database.academics import find_homeroom_for_room, get_room, touch_room
from database.attendance import AccessEvent, apply_anticheat, reconcile_event, record_access_log
from database.db import STAFF_ROLES, connect_db, create_alert_once, fetch_all_dicts, fetch_one_dict, get_user, log_activity
from database.errors import DeviceAuthError, NotFoundError, ValidationError
from database.rate_limits import check_rate_limit

logger = get_logger(__name__)

ACTIVE_DEVICE_STATUSES: set[str] = {"active", "online", "offline"}

# Compared against when the chip is unknown so the failure path still hashes
# and compares a full-length digest.
UNKNOWN_DEVICE_HASH = "0" * 64

DEVICE_COLUMNS = "id, chip_id, room_id, name, firmware_version, last_seen, status"


class RegisterResult(TypedDict):
    status: Literal["registered", "already_registered"]
    chip_id: str
    token: str | None


class WhitelistEntry(TypedDict):
    card_uid: str | None
    user_id: int
    role: str
    biometric_id: str | None


class SyncResult(TypedDict):
    accepted_count: int
    received_count: int


# -----------------------------
# Authentication
# -----------------------------
def authenticate_device(
    chip_id: str,
    token: str,
    *,
    require_active: bool = True,
    conn: sqlite3.Connection,
) -> dict[str, Any]:
    """
    Resolve (chip_id, token) to a device row.

    Unknown chip, missing or wrong token, and an inactive device when
    ``require_active`` is set all raise the same DeviceAuthError.
    """
    cur = conn.cursor()
    cur.execute(f"SELECT {DEVICE_COLUMNS}, token_hash FROM devices WHERE chip_id = ?", ((chip_id or "").strip(),))
    device = fetch_one_dict(cur)

    presented = hash_token(token or "")
    stored = (device or {}).get("token_hash") or UNKNOWN_DEVICE_HASH
    token_ok = tokens_match(presented, stored)

    if device is None or not device["token_hash"] or not token_ok:
        logger.warning("Device authentication failed for chip %r", chip_id)
        raise DeviceAuthError()
    if require_active and device["status"] not in ACTIVE_DEVICE_STATUSES:
        logger.warning("Inactive device %r (status %s) rejected", chip_id, device["status"])
        raise DeviceAuthError()

    device.pop("token_hash")
    return device


# -----------------------------
# Hardware-facing operations
# -----------------------------
def register_device(chip_id: str, *, now_ms: int | None = None) -> RegisterResult:
    """
    First contact from a chip. The token is returned exactly once; a chip
    that is already known gets no token and must be reset by an admin.
    """
    chip_id = (chip_id or "").strip()
    if not chip_id:
        raise ValidationError("chip_id is required.")
    now = clock.now_ms() if now_ms is None else now_ms

    check_rate_limit(
        f"register:{chip_id}",
        max_attempts=config.REGISTER_MAX_ATTEMPTS,
        window_ms=config.REGISTER_WINDOW_SECONDS * 1000,
        now_ms=now,
    )

    already: RegisterResult = {"status": "already_registered", "chip_id": chip_id, "token": None}
    token = generate_device_token()

    conn = connect_db()
    cur = conn.cursor()
    try:
        # Concurrent registrations of one chip serialize here; only the first inserts.
        cur.execute("BEGIN IMMEDIATE")
        cur.execute("SELECT id FROM devices WHERE chip_id = ?", (chip_id,))
        if cur.fetchone():
            return already
        cur.execute(
            """
            INSERT INTO devices (chip_id, token_hash, name, status, last_seen)
            VALUES (?, ?, ?, 'pending', ?)
            """,
            (chip_id, hash_token(token), f"Unassigned Device ({chip_id[-4:]})", now),
        )
        log_activity(
            actor_id=None,
            action="DEVICE_REGISTERED",
            description=f"Registered device {chip_id}",
            timestamp=now,
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Registered new device %s", chip_id)
    return {"status": "registered", "chip_id": chip_id, "token": token}


def heartbeat(chip_id: str, token: str, firmware_version: str | None, *, now_ms: int | None = None) -> dict[str, Any]:
    """
    Liveness ping; allowed for pending devices so admins can see them.
    active and offline devices become online. pending stays pending.
    """
    now = clock.now_ms() if now_ms is None else now_ms

    conn = connect_db()
    try:
        device = authenticate_device(chip_id, token, require_active=False, conn=conn)
        new_status = "online" if device["status"] in ACTIVE_DEVICE_STATUSES else device["status"]
        conn.execute(
            """
            UPDATE devices
            SET last_seen = ?, firmware_version = ?, status = ?
            WHERE id = ?
            """,
            (now, firmware_version, new_status, device["id"]),
        )
        room = get_room(int(device["room_id"]), conn=conn) if device["room_id"] is not None else None
        conn.commit()
    finally:
        conn.close()

    return {
        "activated": new_status in ACTIVE_DEVICE_STATUSES,
        "room_name": room["name"] if room else "Unassigned",
        "last_updated": int(room["last_updated"]) if room else 0,
    }


def get_whitelist(chip_id: str, token: str) -> dict[str, Any]:
    """
    Identities the device may accept: every staff account plus the students
    actively enrolled in the room's homeroom for the active semester. No
    bound homeroom means staff only.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        device = authenticate_device(chip_id, token, require_active=True, conn=conn)
        room_id = device["room_id"]
        if room_id is None:
            return {"room_id": None, "room_name": None, "room_last_updated": 0, "entries": []}
        room = get_room(int(room_id), conn=conn)

        placeholders = ", ".join("?" for _ in STAFF_ROLES)
        cur.execute(
            f"""
            SELECT id, role, card_uid, biometric_id
            FROM users
            WHERE role IN ({placeholders})
              AND status = 'active'
              AND (card_uid IS NOT NULL OR biometric_id IS NOT NULL)
            ORDER BY id
            """,
            STAFF_ROLES,
        )
        rows = cur.fetchall()

        homeroom = find_homeroom_for_room(int(room_id), conn=conn)
        if homeroom is not None:
            cur.execute(
                """
                SELECT u.id, u.role, u.card_uid, u.biometric_id
                FROM homeroom_students hs
                JOIN users u ON u.id = hs.student_id
                WHERE hs.homeroom_id = ?
                  AND hs.status = 'active'
                  AND u.status = 'active'
                  AND (u.card_uid IS NOT NULL OR u.biometric_id IS NOT NULL)
                ORDER BY u.id
                """,
                (homeroom["id"],),
            )
            rows.extend(cur.fetchall())
    finally:
        conn.close()

    entries: list[WhitelistEntry] = [
        {"card_uid": row[2], "user_id": int(row[0]), "role": str(row[1]), "biometric_id": row[3]}
        for row in rows
    ]
    return {
        "room_id": int(room_id),
        "room_name": room["name"] if room else None,
        "room_last_updated": int(room["last_updated"]) if room else 0,
        "entries": entries,
    }


def _ordered_events(events: list[AccessEvent]) -> list[AccessEvent]:
    # Device-assigned scan_order first, then arrival position for the rest.
    indexed = list(enumerate(events))
    indexed.sort(
        key=lambda item: (
            item[1].get("scan_order") is None,
            item[1].get("scan_order") or 0,
            item[0],
        )
    )
    return [event for _, event in indexed]


def sync_logs(chip_id: str, token: str, events: list[AccessEvent], *, now_ms: int | None = None) -> SyncResult:
    """
    Ingest a buffered batch from a device. Each event is logged, scored and
    reconciled in its own transaction; a failing event is rolled back and
    skipped without affecting the rest of the batch.
    """
    now = clock.now_ms() if now_ms is None else now_ms

    conn = connect_db()
    try:
        device = authenticate_device(chip_id, token, require_active=True, conn=conn)
        if device["room_id"] is None:
            raise ValidationError("Device is not assigned to a room.")
        room_id = int(device["room_id"])
        room = get_room(room_id, conn=conn)

        accepted = 0
        for event in _ordered_events(events):
            try:
                user = get_user(int(event["user_id"]), conn=conn)
                if user is None:
                    raise ValidationError(f"Unknown user {event['user_id']}.")
                record_access_log(
                    event,
                    room_id=room_id,
                    received_at=now,
                    source_chip_id=device["chip_id"],
                    conn=conn,
                )
                flags = apply_anticheat(event, user=user, room=room, conn=conn)
                reconcile_event(event, room_id=room_id, flags=flags, conn=conn)
                conn.commit()
                accepted += 1
            except Exception:
                conn.rollback()
                logger.exception(
                    "Dropped event from %s (user=%s scan_order=%s)",
                    device["chip_id"],
                    event.get("user_id"),
                    event.get("scan_order"),
                )
    finally:
        conn.close()

    logger.info("Synced %d/%d events from %s", accepted, len(events), device["chip_id"])
    return {"accepted_count": accepted, "received_count": len(events)}


# -----------------------------
# Admin operations
# -----------------------------
def get_device(device_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(f"SELECT {DEVICE_COLUMNS} FROM devices WHERE id = ?", (device_id,))
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def list_devices(principal: Principal) -> list[dict[str, Any]]:
    must_be_admin(principal)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {DEVICE_COLUMNS} FROM devices ORDER BY id")
    rows = fetch_all_dicts(cur)
    conn.close()
    return rows


def assign_device(principal: Principal, device_id: int, room_id: int, *, now_ms: int | None = None) -> dict[str, Any]:
    must_be_admin(principal)
    now = clock.now_ms() if now_ms is None else now_ms

    conn = connect_db()
    try:
        device = get_device(device_id, conn=conn)
        if device is None:
            raise NotFoundError("Device not found.")
        room = get_room(room_id, conn=conn)
        if room is None:
            raise ValidationError("Room not found.")

        conn.execute("UPDATE devices SET room_id = ?, status = 'active' WHERE id = ?", (room_id, device_id))
        touch_room(room_id, now_ms=now, conn=conn)
        log_activity(
            actor_id=principal["user_id"],
            action="DEVICE_ASSIGN",
            description=f"Assigned device {device['chip_id']} to room {room['name']}",
            timestamp=now,
            conn=conn,
        )
        conn.commit()
        updated = get_device(device_id, conn=conn) or device
    finally:
        conn.close()

    logger.info("Device %s assigned to room %s", device["chip_id"], room_id)
    return updated


def reset_device_token(principal: Principal, device_id: int) -> dict[str, Any]:
    """Issue a fresh token. The previous one stops working immediately."""
    must_be_admin(principal)

    token = generate_device_token()
    conn = connect_db()
    try:
        device = get_device(device_id, conn=conn)
        if device is None:
            raise NotFoundError("Device not found.")
        conn.execute("UPDATE devices SET token_hash = ? WHERE id = ?", (hash_token(token), device_id))
        log_activity(
            actor_id=principal["user_id"],
            action="DEVICE_TOKEN_RESET",
            description=f"Reset token for device {device['chip_id']}",
            conn=conn,
        )
        conn.commit()
    finally:
        conn.close()

    logger.info("Token reset for device %s", device["chip_id"])
    return {"device_id": device_id, "chip_id": device["chip_id"], "token": token}


def monitor_device_health(*, now_ms: int | None = None, conn: sqlite3.Connection | None = None) -> dict[str, int]:
    """Mark silent active/online devices offline and raise one alert per device."""
    now = clock.now_ms() if now_ms is None else now_ms
    threshold = now - config.DEVICE_OFFLINE_AFTER_SECONDS * 1000

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            f"""
            SELECT {DEVICE_COLUMNS}
            FROM devices
            WHERE status IN ('active', 'online')
              AND last_seen IS NOT NULL
              AND last_seen < ?
            """,
            (threshold,),
        )
        stale = fetch_all_dicts(cur)
        alerts = 0
        for device in stale:
            cur.execute("UPDATE devices SET status = 'offline' WHERE id = ?", (device["id"],))
            minutes = config.DEVICE_OFFLINE_AFTER_SECONDS // 60
            alert_id = create_alert_once(
                alert_type="DEVICE_OFFLINE",
                severity="medium",
                message=f'Device "{device["name"]}" has been offline for > {minutes} minutes',
                timestamp=now,
                device_id=int(device["id"]),
                room_id=device["room_id"],
                conn=active_conn,
            )
            if alert_id is not None:
                alerts += 1
        if owns_conn:
            active_conn.commit()
        return {"marked_offline": len(stale), "alerts_created": alerts}
    finally:
        if owns_conn:
            active_conn.close()
