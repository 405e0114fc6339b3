from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Coordinates(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)


class SubmitAttendanceRequest(BaseModel):
    # Bad field values come back as VALIDATION_ERROR results from the verify
    # route, never as 422s.
    class_id: Any = None
    coordinates: Any = None
    challenge_images: Any = Field(
        None,
        description="List of {challenge_type, image}; image is base64, data URL prefix allowed",
    )


class OfflineAttendanceRecord(BaseModel):
    session_id: str = Field(..., min_length=1)
    class_id: str = Field(..., min_length=1)
    schedule_id: str | None = None
    coordinates: Coordinates | None = None
    liveness_passed: bool = False
    timestamp: datetime


class SyncAttendanceRequest(BaseModel):
    records: list[dict[str, Any]] = Field(default_factory=list)


class ManualAttendanceCreate(BaseModel):
    student_id: str = Field(..., min_length=1)
    class_id: str = Field(..., min_length=1)
    session_id: str | None = None
    schedule_id: str | None = None
    status: str = "present"
    timestamp: datetime | None = None
    notes: str = ""


class AttendanceStatusUpdate(BaseModel):
    status: str


class SessionCreate(BaseModel):
    class_id: str = Field(..., min_length=1)
    schedule_id: str | None = None


class SessionValidate(BaseModel):
    token: str = ""


class StudentCreate(BaseModel):
    student_id: str
    full_name: str
    password: str
    enrollment_no: str | None = None


class AdminLogin(BaseModel):
    username: str
    password: str


class StudentLogin(BaseModel):
    student_id: str
    password: str
