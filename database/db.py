import hashlib
import hmac
import secrets
import sqlite3
from pathlib import Path
from typing import Any, Literal

from backend.app_logger import get_logger
from backend.config import ADMIN_PASSWORD, ADMIN_USERNAME, DB_PATH
from backend.services import clock
from database.errors import ValidationError

logger = get_logger(__name__)

PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
SCHEMA_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_rollcall.sql"

CORE_TABLES = (
    "users",
    "rooms",
    "semesters",
    "school_days",
    "homerooms",
    "homeroom_students",
    "subjects",
    "schedule_slots",
    "daily_sessions",
    "attendance",
    "devices",
    "access_logs",
    "audit_logs",
    "admin_alerts",
    "rate_limits",
)

Role = Literal["student", "teacher", "admin", "staff"]
AlertType = Literal["DEVICE_OFFLINE", "SUSPECT_GPS", "SUSPECT_DEVICE", "SENSOR_MALFUNCTION"]
AlertSeverity = Literal["low", "medium", "high"]
USER_ROLES: set[str] = {"student", "teacher", "admin", "staff"}
STAFF_ROLES: tuple[str, ...] = ("admin", "teacher", "staff")


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError, AttributeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def fetch_one_dict(cur: sqlite3.Cursor) -> dict[str, Any] | None:
    row = cur.fetchone()
    if row is None:
        return None
    columns = [col[0] for col in cur.description]
    return dict(zip(columns, row))


def fetch_all_dicts(cur: sqlite3.Cursor) -> list[dict[str, Any]]:
    rows = cur.fetchall()
    columns = [col[0] for col in cur.description] if cur.description else []
    return [dict(zip(columns, row)) for row in rows]


def gps_from_row(row: dict[str, Any], prefix: str = "gps") -> dict[str, float] | None:
    lat = row.get(f"{prefix}_lat")
    lng = row.get(f"{prefix}_lng")
    if lat is None or lng is None:
        return None
    return {"lat": float(lat), "lng": float(lng)}


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO users (username, password_hash, full_name, role)
        VALUES (?, ?, ?, 'admin')
        """,
        (username, _hash_password(password), "Administrator"),
    )


def ensure_schema(conn: sqlite3.Connection) -> None:
    """
    Ensure every core table exists.

    SQL source: `database/migrations/001_rollcall.sql`. The script is
    idempotent, so it is only replayed when a table is missing.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE type='table'
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if not set(CORE_TABLES).issubset(existing):
        sql = SCHEMA_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    # Commit before the migration so it can manage its own transaction block.
    conn.commit()
    ensure_schema(conn)

    _ensure_default_admin(cursor)
    conn.commit()
    conn.close()


# -----------------------------
# Users
# -----------------------------
def create_user(
    *,
    full_name: str,
    role: Role,
    username: str | None = None,
    password: str | None = None,
    card_uid: str | None = None,
    device_id: str | None = None,
    biometric_id: str | None = None,
    status: str = "active",
    conn: sqlite3.Connection | None = None,
) -> int:
    full_name = (full_name or "").strip()
    if not full_name:
        raise ValidationError("Full name is required.")
    if role not in USER_ROLES:
        raise ValidationError(f"Unknown role {role!r}.")
    if password and not username:
        raise ValidationError("A password requires a username.")

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO users (
                username, password_hash, full_name, role, status,
                card_uid, device_id, biometric_id
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                (username or "").strip() or None,
                _hash_password(password) if password else None,
                full_name,
                role,
                status,
                (card_uid or "").strip() or None,
                (device_id or "").strip() or None,
                (biometric_id or "").strip() or None,
            ),
        )
        user_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return user_id
    finally:
        if owns_conn:
            active_conn.close()


def get_user(user_id: int, *, conn: sqlite3.Connection | None = None) -> dict[str, Any] | None:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            SELECT id, username, full_name, role, status, card_uid, device_id, biometric_id
            FROM users
            WHERE id = ?
            """,
            (user_id,),
        )
        return fetch_one_dict(cur)
    finally:
        if owns_conn:
            active_conn.close()


def verify_user_credentials(username: str, password: str) -> dict | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, role, password_hash
        FROM users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row or not row[3]:
        return None
    if not _verify_password(password, str(row[3])):
        return None
    return {"id": int(row[0]), "username": str(row[1]), "role": str(row[2])}


# -----------------------------
# Audit log + admin alerts
# -----------------------------
def log_activity(
    *,
    actor_id: int | None,
    action: str,
    description: str,
    timestamp: int | None = None,
    conn: sqlite3.Connection | None = None,
) -> int:
    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO audit_logs (actor_id, action, description, timestamp)
            VALUES (?, ?, ?, ?)
            """,
            (actor_id, action, description, clock.now_ms() if timestamp is None else timestamp),
        )
        entry_id = int(cur.lastrowid)
        if owns_conn:
            active_conn.commit()
        return entry_id
    finally:
        if owns_conn:
            active_conn.close()


def get_audit_logs(*, action: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    where = ["1=1"]
    params: list[Any] = []
    if action is not None:
        where.append("action = ?")
        params.append(action)
    params.append(max(1, min(int(limit), 500)))
    cur.execute(
        f"""
        SELECT id, actor_id, action, description, timestamp
        FROM audit_logs
        WHERE {" AND ".join(where)}
        ORDER BY timestamp DESC, id DESC
        LIMIT ?
        """,
        params,
    )
    rows = fetch_all_dicts(cur)
    conn.close()
    return rows


def create_alert_once(
    *,
    alert_type: AlertType,
    severity: AlertSeverity,
    message: str,
    timestamp: int,
    device_id: int | None = None,
    hardware_device_id: str | None = None,
    user_id: int | None = None,
    room_id: int | None = None,
    conn: sqlite3.Connection,
) -> int | None:
    """
    Insert an active alert unless one of the same type is already active for
    the same subject (device, hardware id or user). Returns the new id or None.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id
        FROM admin_alerts
        WHERE status = 'active'
          AND type = ?
          AND device_id IS ?
          AND hardware_device_id IS ?
          AND user_id IS ?
        LIMIT 1
        """,
        (alert_type, device_id, hardware_device_id, user_id),
    )
    if cur.fetchone():
        return None

    cur.execute(
        """
        INSERT INTO admin_alerts (
            type, severity, message, device_id, hardware_device_id,
            user_id, room_id, timestamp, status
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active')
        """,
        (alert_type, severity, message, device_id, hardware_device_id, user_id, room_id, timestamp),
    )
    logger.warning("Alert raised: %s (%s) %s", alert_type, severity, message)
    return int(cur.lastrowid)


def get_active_alerts(*, alert_type: AlertType | None = None) -> list[dict[str, Any]]:
    conn = connect_db()
    cur = conn.cursor()
    if alert_type is None:
        cur.execute(
            """
            SELECT id, type, severity, message, device_id, hardware_device_id,
                   user_id, room_id, timestamp, status
            FROM admin_alerts
            WHERE status = 'active'
            ORDER BY timestamp DESC, id DESC
            """
        )
    else:
        cur.execute(
            """
            SELECT id, type, severity, message, device_id, hardware_device_id,
                   user_id, room_id, timestamp, status
            FROM admin_alerts
            WHERE status = 'active' AND type = ?
            ORDER BY timestamp DESC, id DESC
            """,
            (alert_type,),
        )
    rows = fetch_all_dicts(cur)
    conn.close()
    return rows


def resolve_alert(alert_id: int, *, resolved_by: int, now_ms: int | None = None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        UPDATE admin_alerts
        SET status = 'resolved', resolved_at = ?, resolved_by = ?
        WHERE id = ? AND status = 'active'
        """,
        (clock.now_ms() if now_ms is None else now_ms, resolved_by, alert_id),
    )
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed
