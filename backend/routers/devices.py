"""
Hardware-facing routes. Devices authenticate with chip_id + token in the
request, never with a bearer session.
"""

from fastapi import APIRouter

from backend.http_errors import http_errors
from backend.schemas import HeartbeatIn, RegisterIn, SyncLogsIn
from database.devices import get_whitelist, heartbeat, register_device, sync_logs

router = APIRouter(prefix="/api")


@router.post("/register")
def register(payload: RegisterIn):
    with http_errors():
        return register_device(payload.chip_id)


@router.post("/heartbeat")
def device_heartbeat(payload: HeartbeatIn):
    with http_errors():
        return heartbeat(payload.chip_id, payload.token, payload.firmware)


@router.get("/whitelist")
def whitelist(chip_id: str, token: str):
    with http_errors():
        return get_whitelist(chip_id, token)


@router.post("/logs")
def sync(payload: SyncLogsIn):
    events = [log.model_dump() for log in payload.logs]
    with http_errors():
        result = sync_logs(payload.chip_id, payload.token, events)
    return {"success": True, **result}
