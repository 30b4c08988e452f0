from typing import Literal

from backend import config

ScanStatus = Literal["present", "late"]

MINUTE_MS = 60 * 1000


def attendance_window(session_start_ms: int, duration_ms: int) -> tuple[int, int]:
    """
    Scan window for a session.

    Students may scan in up to PRE_WINDOW_MINUTES before the start. The end
    of the window is the midpoint of the class; anything after it is late.
    Both the online path and hardware batch sync go through here.
    """
    window_start = session_start_ms - config.PRE_WINDOW_MINUTES * MINUTE_MS
    window_end = session_start_ms + duration_ms // 2
    return window_start, window_end


def window_for_slot(session_start_ms: int, session_end_ms: int) -> tuple[int, int]:
    return attendance_window(session_start_ms, session_end_ms - session_start_ms)


def scan_status(scan_time_ms: int, window_end_ms: int) -> ScanStatus:
    # Strict threshold: exactly at window_end is still present.
    return "late" if scan_time_ms > window_end_ms else "present"
