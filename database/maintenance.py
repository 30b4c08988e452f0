"""
Periodic upkeep invoked by an external scheduler (or an admin by hand):
session status transitions, device health and suspicious-pattern alerts.
"""

import sqlite3
from typing import Any

from backend import config
from backend.app_logger import get_logger
from backend.services import clock
from database.db import connect_db, create_alert_once
from database.devices import monitor_device_health
from database.sessions import update_session_statuses

logger = get_logger(__name__)

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000


def analyze_suspicious_activity(*, now_ms: int | None = None, conn: sqlite3.Connection | None = None) -> dict[str, int]:
    now = clock.now_ms() if now_ms is None else now_ms
    since_scans = now - config.SUSPICIOUS_LOOKBACK_DAYS * DAY_MS
    since_logs = now - config.SHARED_DEVICE_LOOKBACK_HOURS * HOUR_MS

    owns_conn = conn is None
    active_conn = conn or connect_db()
    cur = active_conn.cursor()
    try:
        offline_alerts = 0
        cur.execute(
            """
            SELECT a.student_id,
                   u.full_name,
                   COUNT(*) AS total,
                   SUM(CASE WHEN a.has_internet = 0 THEN 1 ELSE 0 END) AS no_internet
            FROM attendance a
            JOIN users u ON u.id = a.student_id
            WHERE a.scan_time IS NOT NULL
              AND a.scan_time > ?
              AND u.role = 'student'
            GROUP BY a.student_id, u.full_name
            HAVING COUNT(*) >= ?
            """,
            (since_scans, config.SUSPICIOUS_MIN_SCANS),
        )
        for student_id, full_name, total, no_internet in cur.fetchall():
            ratio = no_internet / total
            if ratio <= config.SUSPICIOUS_OFFLINE_RATIO:
                continue
            alert_id = create_alert_once(
                alert_type="SUSPECT_DEVICE",
                severity="medium",
                message=(
                    f'Student "{full_name}" has {round(ratio * 100)}% "no internet" scans '
                    f"({no_internet}/{total}) in {config.SUSPICIOUS_LOOKBACK_DAYS} days"
                ),
                timestamp=now,
                user_id=int(student_id),
                conn=active_conn,
            )
            if alert_id is not None:
                offline_alerts += 1

        shared_alerts = 0
        cur.execute(
            """
            SELECT device_id, COUNT(DISTINCT user_id) AS users
            FROM access_logs
            WHERE device_id IS NOT NULL
              AND timestamp > ?
            GROUP BY device_id
            HAVING COUNT(DISTINCT user_id) >= 2
            """,
            (since_logs,),
        )
        for hardware_id, users in cur.fetchall():
            alert_id = create_alert_once(
                alert_type="SUSPECT_DEVICE",
                severity="high",
                message=(
                    f"Device {hardware_id} used by {users} accounts in the last "
                    f"{config.SHARED_DEVICE_LOOKBACK_HOURS} hours"
                ),
                timestamp=now,
                hardware_device_id=str(hardware_id),
                conn=active_conn,
            )
            if alert_id is not None:
                shared_alerts += 1

        if owns_conn:
            active_conn.commit()
        return {"offline_scan_alerts": offline_alerts, "shared_device_alerts": shared_alerts}
    finally:
        if owns_conn:
            active_conn.close()


def run_maintenance(*, now_ms: int | None = None) -> dict[str, Any]:
    now = clock.now_ms() if now_ms is None else now_ms

    conn = connect_db()
    try:
        sessions = update_session_statuses(now_ms=now, conn=conn)
        devices = monitor_device_health(now_ms=now, conn=conn)
        suspicious = analyze_suspicious_activity(now_ms=now, conn=conn)
        conn.commit()
    finally:
        conn.close()

    stats = {"sessions": sessions, "devices": devices, "suspicious": suspicious}
    logger.info("Maintenance run: %s", stats)
    return stats
