from fastapi import APIRouter, Depends

from backend.http_errors import http_errors
from backend.schemas import OverrideIn, ScanIn
from backend.security import Principal, require_principal
from database.attendance import override_attendance, record_online_scan

router = APIRouter()


@router.post("/attendance/scan")
def scan(payload: ScanIn, principal: Principal = Depends(require_principal)):
    anti_cheat = payload.anti_cheat.model_dump() if payload.anti_cheat else None
    with http_errors():
        return record_online_scan(
            principal,
            room_id=payload.room_id,
            timestamp=payload.timestamp,
            method=payload.method,
            anti_cheat=anti_cheat,
        )


@router.post("/attendance/{attendance_id}/override")
def override(attendance_id: int, payload: OverrideIn, principal: Principal = Depends(require_principal)):
    with http_errors():
        record = override_attendance(principal, attendance_id, payload.status, payload.note)
    return {"success": True, "attendance": record}
