import logging
import sqlite3
import time

from fastapi import APIRouter, Depends, HTTPException

from attendance_api.schemas import AdminLogin, StudentLogin
from attendance_api.security import issue_session_token, require_session
from attendance_db.db import create_tables, verify_admin_credentials, verify_student_credentials

router = APIRouter()

security_log = logging.getLogger("security")


def _token_response(subject: str, role: str) -> dict:
    token, claims = issue_session_token(subject, role=role)
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "username": claims["sub"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


def _with_schema_retry(check, *args):
    try:
        return check(*args)
    except sqlite3.OperationalError:
        # Self-heal when the schema is missing (e.g. lifespan skipped).
        try:
            create_tables()
            return check(*args)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )


@router.post("/auth/login")
def admin_login(payload: AdminLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    admin = _with_schema_retry(verify_admin_credentials, username, password)
    if not admin:
        security_log.warning("Admin login failed for %s", username)
        raise HTTPException(status_code=401, detail="Invalid admin credentials.")

    security_log.info("Admin login succeeded for %s", admin["username"])
    return _token_response(admin["username"], "admin")


@router.post("/auth/student/login")
def student_login(payload: StudentLogin):
    student_id = payload.student_id.strip()
    if not student_id or not payload.password:
        raise HTTPException(status_code=400, detail="Student ID and password are required.")

    student = _with_schema_retry(verify_student_credentials, student_id, payload.password)
    if not student:
        security_log.warning("Student login failed for %s", student_id)
        raise HTTPException(status_code=401, detail="Invalid student credentials.")

    security_log.info("Student login succeeded for %s", student["student_id"])
    response = _token_response(student["student_id"], "student")
    response["full_name"] = student["full_name"]
    response["has_reference_face"] = bool(student["reference_face_key"])
    return response


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    return {
        "username": session.get("sub"),
        "role": session.get("role"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
