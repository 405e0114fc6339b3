import logging
import sqlite3

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from attendance_api.deps import get_blob_store
from attendance_api.schemas import StudentCreate
from attendance_api.security import require_admin, require_self_or_admin, require_session
from attendance_db.db import add_student, get_student, set_reference_face_key
from face_oracle.blob_store import LocalBlobStore

router = APIRouter()

logger = logging.getLogger(__name__)

FACE_CONTENT_TYPES = {"image/jpeg": "jpg", "image/png": "png"}


def reference_face_key(student_id: str, ext: str) -> str:
    return f"faces/{student_id}/reference.{ext}"


@router.post("/students", status_code=201)
def create_student(payload: StudentCreate, _session: dict = Depends(require_admin)):
    student_id = payload.student_id.strip()
    full_name = payload.full_name.strip()
    enrollment_no = (payload.enrollment_no or "").strip() or None

    if not student_id or not full_name or not payload.password:
        raise HTTPException(status_code=400, detail="Student ID, name and password are required.")
    if "/" in student_id or student_id in {".", ".."}:
        raise HTTPException(status_code=400, detail="Student ID contains invalid characters.")

    try:
        return add_student(student_id, full_name, password=payload.password, enrollment_no=enrollment_no)
    except sqlite3.IntegrityError:
        raise HTTPException(status_code=409, detail="Student ID or enrollment number already exists.")


@router.get("/students/{student_id}")
def student_detail(student_id: str, session: dict = Depends(require_session)):
    require_self_or_admin(session, student_id)
    student = get_student(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")
    return {
        **student,
        "has_reference_face": bool(student["reference_face_key"]),
    }


# Stored as faces/<student_id>/reference.<ext>; replaces any earlier upload.
@router.put("/students/{student_id}/face")
async def upload_reference_face(
    student_id: str,
    session: dict = Depends(require_session),
    blob_store: LocalBlobStore = Depends(get_blob_store),
    file: UploadFile = File(...),
):
    require_self_or_admin(session, student_id)

    student = get_student(student_id)
    if not student:
        raise HTTPException(status_code=404, detail="Student not found.")

    ext = FACE_CONTENT_TYPES.get(file.content_type or "")
    if not ext:
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")

    key = reference_face_key(student_id, ext)
    previous = student["reference_face_key"]
    blob_store.put(key, data)
    if previous and previous != key:
        blob_store.delete(previous)
    set_reference_face_key(student_id, key)

    logger.info("Reference face stored for student=%s key=%s", student_id, key)
    return {"student_id": student_id, "reference_face_key": key, "size": len(data)}
