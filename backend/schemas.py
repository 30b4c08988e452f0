from typing import Literal

from pydantic import BaseModel

ScanMethod = Literal["card", "phone"]


class GpsIn(BaseModel):
    lat: float
    lng: float


class AntiCheatIn(BaseModel):
    device_time: int | None = None
    time_source: str | None = None
    has_internet: bool | None = None
    device_id: str | None = None
    gps: GpsIn | None = None


# -----------------------------
# Hardware
# -----------------------------
class RegisterIn(BaseModel):
    chip_id: str


class HeartbeatIn(BaseModel):
    chip_id: str
    token: str
    firmware: str | None = None


class AccessEventIn(BaseModel):
    user_id: int
    method: ScanMethod
    action: Literal["OPEN_GATE", "ATTENDANCE"]
    result: str = "granted"
    timestamp: int
    timestamp_type: Literal["server", "local"] = "local"
    scan_order: int | None = None
    device_time: int | None = None
    time_source: str | None = None
    has_internet: bool | None = None
    device_id: str | None = None
    gps: GpsIn | None = None


class SyncLogsIn(BaseModel):
    chip_id: str
    token: str
    logs: list[AccessEventIn]


# -----------------------------
# Attendance
# -----------------------------
class ScanIn(BaseModel):
    room_id: int
    timestamp: int
    method: ScanMethod
    anti_cheat: AntiCheatIn | None = None


class OverrideIn(BaseModel):
    status: Literal["present", "late", "absent", "excused"]
    note: str | None = None


# -----------------------------
# Admin
# -----------------------------
class UserCreate(BaseModel):
    full_name: str
    role: Literal["student", "teacher", "admin", "staff"]
    username: str | None = None
    password: str | None = None
    card_uid: str | None = None
    device_id: str | None = None
    biometric_id: str | None = None


class RoomCreate(BaseModel):
    name: str
    room_type: str | None = None
    gps: GpsIn | None = None


class SemesterCreate(BaseModel):
    name: str
    start_date: str
    end_date: str
    status: Literal["active", "upcoming", "archived"] = "upcoming"


class HomeroomCreate(BaseModel):
    room_id: int
    semester_id: int
    name: str
    grade_level: str | None = None
    section: str | None = None


class EnrollIn(BaseModel):
    student_id: int


class SubjectCreate(BaseModel):
    name: str
    code: str | None = None


class SlotCreate(BaseModel):
    homeroom_id: int
    subject_id: int
    teacher_id: int
    day_of_week: int
    start_time: str
    end_time: str


class SlotUpdate(BaseModel):
    subject_id: int | None = None
    teacher_id: int | None = None
    day_of_week: int | None = None
    start_time: str | None = None
    end_time: str | None = None


class HolidayIn(BaseModel):
    date: str
    name: str


class DeviceAssignIn(BaseModel):
    room_id: int
