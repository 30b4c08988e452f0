from fastapi import APIRouter, Depends, HTTPException

from backend.http_errors import http_errors
from backend.security import Principal, require_principal
from backend.services import clock
from database.school_calendar import is_school_day
from database.sessions import get_session, get_session_attendance, list_sessions

router = APIRouter(dependencies=[Depends(require_principal)])


def _clean_date(date: str | None) -> str:
    if date is None:
        return clock.local_date(clock.now_ms())
    date = date.strip()
    if not clock.is_valid_date(date):
        raise HTTPException(status_code=400, detail="Invalid date format. Use YYYY-MM-DD.")
    return date


@router.get("/sessions")
def sessions(date: str | None = None):
    return list_sessions(_clean_date(date))


@router.get("/sessions/{session_id}")
def session_detail(session_id: int):
    session = get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found.")
    return session


@router.get("/sessions/{session_id}/attendance")
def session_attendance(session_id: int, principal: Principal = Depends(require_principal)):
    with http_errors():
        return get_session_attendance(principal, session_id)


@router.get("/calendar/is-school-day")
def school_day_check(date: str | None = None):
    return is_school_day(_clean_date(date))
