import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from attendance_api.schemas import SessionCreate, SessionValidate
from attendance_api.security import require_admin, require_session
from attendance_db.db import (
    deactivate_session,
    get_active_session,
    get_session,
    is_session_open,
    issue_session,
)

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/sessions", status_code=201)
def create_session(payload: SessionCreate, session: dict = Depends(require_admin)):
    class_id = payload.class_id.strip()
    if not class_id:
        raise HTTPException(status_code=400, detail="Class ID is required.")

    issued = issue_session(class_id, schedule_id=payload.schedule_id)
    logger.info("Session %s issued for class=%s by %s", issued["session_id"], class_id, session.get("sub"))
    return issued


@router.post("/sessions/validate")
def validate_session_token(payload: SessionValidate, session: dict = Depends(require_session)):
    """Resolve a scanned QR token (the issued session id) to its class."""
    token = payload.token.strip()
    if not token:
        raise HTTPException(status_code=400, detail="QR token is required.")

    found = get_session(token)
    if not found or not is_session_open(found):
        logger.info("Rejected QR token from %s", session.get("sub"))
        return JSONResponse(status_code=400, content={"valid": False, "message": "Invalid or expired QR code"})

    return {
        "valid": True,
        "session_id": found["session_id"],
        "class_id": found["class_id"],
        "schedule_id": found["schedule_id"],
        "expires_at": found["expires_at"],
        "message": "QR code validated",
    }


@router.post("/sessions/{session_id}/deactivate")
def close_session(session_id: str, _session: dict = Depends(require_admin)):
    if not deactivate_session(session_id):
        raise HTTPException(status_code=404, detail="Active session not found.")
    return {"session_id": session_id, "is_active": False}


@router.get("/sessions/status/{class_id}")
def session_status(class_id: str, _session: dict = Depends(require_session)):
    active = get_active_session(class_id)
    if not active:
        return {"is_active": False, "session": None, "message": "No active session"}
    return {"is_active": True, "session": active, "message": "Session active"}
