from backend.app_logger import get_logger
from backend.services import clock
from database.db import connect_db
from database.errors import RateLimitError

logger = get_logger(__name__)


def check_rate_limit(key: str, *, max_attempts: int, window_ms: int, now_ms: int | None = None) -> int:
    """
    Count one attempt against ``key`` and raise RateLimitError once the
    attempts in the current fixed window exceed ``max_attempts``.

    A window starts at the first attempt and is replaced only after it has
    fully elapsed. The counter is bumped with a single upsert under a write
    lock, so concurrent callers cannot lose increments. Attempts are counted
    even when rejected, and the count is committed before raising.
    """
    now = clock.now_ms() if now_ms is None else now_ms

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("BEGIN IMMEDIATE")
        cur.execute(
            """
            INSERT INTO rate_limits (key, attempts, window_start)
            VALUES (?, 1, ?)
            ON CONFLICT(key) DO UPDATE SET
                attempts = CASE
                    WHEN excluded.window_start - rate_limits.window_start >= ? THEN 1
                    ELSE rate_limits.attempts + 1
                END,
                window_start = CASE
                    WHEN excluded.window_start - rate_limits.window_start >= ? THEN excluded.window_start
                    ELSE rate_limits.window_start
                END
            """,
            (key, now, window_ms, window_ms),
        )
        cur.execute("SELECT attempts FROM rate_limits WHERE key = ?", (key,))
        attempts = int(cur.fetchone()[0])
        conn.commit()
    finally:
        conn.close()

    if attempts > max_attempts:
        logger.warning("Rate limit hit for %s (%d attempts)", key, attempts)
        raise RateLimitError()
    return attempts
