import base64
import binascii
import logging
import math
import sqlite3
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse

from attendance_api.challenges import (
    CHALLENGE_INSTRUCTIONS,
    VerificationPolicy,
    parse_challenge_type,
    pick_challenges,
)
from attendance_api.config import CHALLENGE_COUNT
from attendance_api.deps import get_oracle, get_policy
from attendance_api.reasons import ReasonCode, http_status_for
from attendance_api.schemas import (
    AttendanceStatusUpdate,
    ManualAttendanceCreate,
    SubmitAttendanceRequest,
    SyncAttendanceRequest,
)
from attendance_api.security import require_admin, require_student
from attendance_api.services.sync import reconcile_offline_records
from attendance_api.services.verification import (
    AttendanceVerifier,
    ChallengeImage,
    rejection,
)
from attendance_db.db import (
    ATTENDANCE_STATUSES,
    DuplicateAttendanceError,
    get_student,
    insert_attendance_record,
    list_class_records,
    list_student_records,
    update_attendance_status,
)
from face_oracle.contract import FaceOracle

router = APIRouter()

logger = logging.getLogger(__name__)

STORAGE_UNAVAILABLE = "Attendance storage unavailable. Please retry."


def decode_image_payload(image: str | None) -> bytes:
    """Decode a base64 capture, accepting a `data:image/...;base64,` prefix."""
    if image is not None and not isinstance(image, str):
        raise ValueError("Image must be a base64 string.")
    data = (image or "").strip()
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    if not data:
        raise ValueError("Empty image payload.")
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Image is not valid base64.") from exc


def _decode_challenge_images(payloads: Any) -> list[ChallengeImage]:
    if payloads is None:
        return []
    if not isinstance(payloads, list):
        raise ValueError("Challenge images must be a list.")

    images = []
    for idx, item in enumerate(payloads, start=1):
        if not isinstance(item, dict):
            raise ValueError(f"Challenge image {idx} must be an object.")
        raw_type = item.get("challenge_type", "")
        try:
            challenge_type = parse_challenge_type(raw_type)
        except ValueError:
            raise ValueError(f"Unknown challenge type: {raw_type}")
        try:
            image_bytes = decode_image_payload(item.get("image"))
        except ValueError as exc:
            raise ValueError(f"Challenge image {idx}: {exc}")
        images.append(ChallengeImage(challenge_type=challenge_type, image_bytes=image_bytes))
    return images


def _pagination(total: int, page: int, limit: int) -> dict:
    return {
        "total_records": total,
        "total_pages": math.ceil(total / limit) if total else 0,
        "current_page": page,
        "limit": limit,
    }


@router.get("/attendance/liveness/challenges")
def liveness_challenges(_session: dict = Depends(require_student)):
    challenges = pick_challenges(CHALLENGE_COUNT)
    return {
        "challenges": [
            {
                "type": challenge.value,
                "instruction": CHALLENGE_INSTRUCTIONS[challenge][0],
                "icon": CHALLENGE_INSTRUCTIONS[challenge][1],
            }
            for challenge in challenges
        ]
    }


@router.post("/attendance/verify")
async def submit_attendance(
    payload: SubmitAttendanceRequest,
    session: dict = Depends(require_student),
    oracle: FaceOracle = Depends(get_oracle),
    policy: VerificationPolicy = Depends(get_policy),
):
    student_id = session["sub"]

    try:
        images = _decode_challenge_images(payload.challenge_images)
    except ValueError as exc:
        class_id = payload.class_id if isinstance(payload.class_id, str) else None
        result = rejection(ReasonCode.VALIDATION_ERROR, str(exc), class_id=class_id)
        return JSONResponse(status_code=400, content=result)

    verifier = AttendanceVerifier(oracle, policy)
    try:
        result = await verifier.submit(
            student_id=student_id,
            class_id=payload.class_id,
            coordinates=payload.coordinates,
            challenge_images=images,
        )
    except sqlite3.Error:
        logger.exception("Storage fault while verifying attendance for student=%s", student_id)
        raise HTTPException(status_code=503, detail=STORAGE_UNAVAILABLE)

    if result["success"]:
        return JSONResponse(status_code=201, content=result)
    return JSONResponse(status_code=http_status_for(ReasonCode(result["reason"])), content=result)


@router.post("/attendance/sync")
async def sync_attendance(payload: SyncAttendanceRequest, session: dict = Depends(require_student)):
    if not payload.records:
        raise HTTPException(status_code=400, detail="No records to sync.")

    try:
        results = await reconcile_offline_records(session["sub"], payload.records)
    except sqlite3.Error:
        logger.exception("Storage fault during offline sync for student=%s", session["sub"])
        raise HTTPException(status_code=503, detail=STORAGE_UNAVAILABLE)

    return {
        "message": "Sync completed",
        "results": results,
    }


@router.get("/attendance/records")
def my_records(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: dict = Depends(require_student),
):
    rows, total = list_student_records(session["sub"], page=page, limit=limit)
    return {"records": rows, "pagination": _pagination(total, page, limit)}


@router.get("/attendance/records/class/{class_id}")
def my_class_records(
    class_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    session: dict = Depends(require_student),
):
    rows, total = list_student_records(session["sub"], class_id=class_id, page=page, limit=limit)
    return {"class_id": class_id, "records": rows, "pagination": _pagination(total, page, limit)}


@router.get("/attendance/class/{class_id}")
def class_attendance(
    class_id: str,
    status: str | None = None,
    start: str | None = None,
    end: str | None = None,
    _session: dict = Depends(require_admin),
):
    if status and status != "all" and status not in ATTENDANCE_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status filter.")

    rows = list_class_records(class_id, status=status, start=start, end=end)
    counts = {key: 0 for key in ("present", "late", "absent")}
    for row in rows:
        counts[row["status"]] += 1
    return {
        "class_id": class_id,
        "total": len(rows),
        "counts": counts,
        "records": rows,
    }


@router.post("/attendance/manual", status_code=201)
def manual_attendance(payload: ManualAttendanceCreate, session: dict = Depends(require_admin)):
    if payload.status not in ATTENDANCE_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status. Use present, absent or late.")
    if not get_student(payload.student_id):
        raise HTTPException(status_code=404, detail="Student not found.")

    timestamp = payload.timestamp or datetime.now()
    try:
        record_id = insert_attendance_record(
            student_id=payload.student_id,
            class_id=payload.class_id,
            session_id=payload.session_id or None,
            schedule_id=payload.schedule_id,
            timestamp=timestamp,
            status=payload.status,
            manual_entry=True,
            notes=payload.notes,
            marked_by=session["sub"],
        )
    except DuplicateAttendanceError:
        raise HTTPException(status_code=409, detail="Attendance already marked for this session.")

    logger.info(
        "Manual attendance %s for student=%s class=%s by %s",
        payload.status,
        payload.student_id,
        payload.class_id,
        session["sub"],
    )
    return {"id": record_id, "message": "Attendance marked manually"}


@router.patch("/attendance/{record_id}/status")
def correct_status(record_id: int, payload: AttendanceStatusUpdate, session: dict = Depends(require_admin)):
    if payload.status not in ATTENDANCE_STATUSES:
        raise HTTPException(status_code=400, detail="Invalid status. Use present, absent or late.")

    record = update_attendance_status(record_id, payload.status)
    if not record:
        raise HTTPException(status_code=404, detail="Attendance record not found.")

    logger.info("Record %s status set to %s by %s", record_id, payload.status, session["sub"])
    return record
