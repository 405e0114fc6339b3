import hashlib
import hmac
import secrets
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Literal, TypedDict

from attendance_api.config import (
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    DB_PATH,
    SESSION_EXPIRY_SECONDS,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
LEDGER_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_attendance_ledger.sql"

AttendanceStatus = Literal["present", "absent", "late"]
ATTENDANCE_STATUSES: set[str] = {"present", "absent", "late"}


class DuplicateAttendanceError(Exception):
    """A record for this (student_id, session_id) pair already exists."""


class AttendanceSession(TypedDict):
    session_id: str
    class_id: str
    schedule_id: str | None
    is_active: bool
    expires_at: str


class StudentProfile(TypedDict):
    student_id: str
    full_name: str
    enrollment_no: str | None
    reference_face_key: str | None


class AttendanceRecord(TypedDict):
    id: int
    student_id: str
    class_id: str
    session_id: str | None
    schedule_id: str | None
    coordinates: dict[str, float] | None
    timestamp: str
    status: AttendanceStatus
    liveness_passed: bool
    liveness_confidence: float | None
    face_similarity: float | None
    manual_entry: bool
    synced: bool
    notes: str
    marked_by: str | None


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError, AttributeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def _stamp(value: datetime | None = None) -> str:
    """Ledger timestamps are naive local time; aware values are converted first."""
    value = value or datetime.now()
    if value.tzinfo is not None:
        value = value.astimezone().replace(tzinfo=None)
    return value.isoformat(timespec="seconds")


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False, timeout=10)
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


def _ensure_default_admin(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO admin_users (username, password_hash)
        VALUES (?, ?)
        """,
        (username, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute(
        """
    CREATE TABLE IF NOT EXISTS admin_users (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT NOT NULL UNIQUE COLLATE NOCASE,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """
    )

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS students (
        student_id TEXT PRIMARY KEY,
        full_name TEXT NOT NULL,
        enrollment_no TEXT UNIQUE,
        password_hash TEXT,
        reference_face_key TEXT,         -- blob store key; NULL = not enrolled
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    # QR sessions (written by the issuer, read by verification)
    cursor.execute("""
    CREATE TABLE IF NOT EXISTS attendance_sessions (
        session_id TEXT PRIMARY KEY,
        class_id TEXT NOT NULL,
        schedule_id TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        expires_at TEXT NOT NULL,        -- ISO-8601
        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)
    cursor.execute("""
    CREATE INDEX IF NOT EXISTS ix_sessions_class_active
        ON attendance_sessions (class_id, is_active, expires_at)
    """)

    _ensure_default_admin(cursor)

    # Commit base schema first so the ledger migration can safely manage its
    # own transaction block.
    conn.commit()
    ensure_ledger_schema(conn)

    conn.commit()
    conn.close()


def ensure_ledger_schema(conn: sqlite3.Connection) -> None:
    """
    Ensure the ledger table and its unique (student_id, session_id) index exist.

    SQL source: `attendance_db/migrations/001_attendance_ledger.sql`.
    """
    cur = conn.cursor()
    cur.execute(
        """
        SELECT name
        FROM sqlite_master
        WHERE name IN ('attendance_records', 'ux_attendance_student_session')
        """
    )
    existing = {str(row[0]) for row in cur.fetchall()}
    if not {"attendance_records", "ux_attendance_student_session"}.issubset(existing):
        sql = LEDGER_MIGRATION_FILE.read_text(encoding="utf-8")
        conn.executescript(sql)


# -----------------------------
# Admin users
# -----------------------------
def verify_admin_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, password_hash
        FROM admin_users
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    admin_id, saved_username, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": admin_id, "username": saved_username}


# -----------------------------
# Students
# -----------------------------
def _student_from_row(row) -> StudentProfile:
    return {
        "student_id": str(row[0]),
        "full_name": str(row[1]),
        "enrollment_no": row[2],
        "reference_face_key": row[3] or None,
    }


def add_student(
    student_id: str,
    full_name: str,
    *,
    password: str,
    enrollment_no: str | None = None,
) -> StudentProfile:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        INSERT INTO students (student_id, full_name, enrollment_no, password_hash)
        VALUES (?, ?, ?, ?)
    """, (student_id, full_name, enrollment_no, _hash_password(password)))
    conn.commit()
    conn.close()
    return {
        "student_id": student_id,
        "full_name": full_name,
        "enrollment_no": enrollment_no,
        "reference_face_key": None,
    }


def get_student(student_id: str) -> StudentProfile | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, full_name, enrollment_no, reference_face_key
        FROM students
        WHERE student_id = ?
    """, (student_id,))
    row = cur.fetchone()
    conn.close()
    return _student_from_row(row) if row else None


def verify_student_credentials(student_id: str, password: str) -> StudentProfile | None:
    clean_id = student_id.strip()
    if not clean_id or not password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT student_id, full_name, enrollment_no, reference_face_key, password_hash
        FROM students
        WHERE student_id = ?
    """, (clean_id,))
    row = cur.fetchone()
    conn.close()

    if not row or not _verify_password(password, row[4]):
        return None
    return _student_from_row(row)


def set_reference_face_key(student_id: str, reference_face_key: str | None) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        UPDATE students
        SET reference_face_key = ?
        WHERE student_id = ?
    """, (reference_face_key, student_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# QR sessions
# -----------------------------
def _session_from_row(row) -> AttendanceSession:
    return {
        "session_id": str(row[0]),
        "class_id": str(row[1]),
        "schedule_id": row[2],
        "is_active": bool(row[3]),
        "expires_at": str(row[4]),
    }


def issue_session(
    class_id: str,
    *,
    schedule_id: str | None = None,
    ttl_seconds: int = SESSION_EXPIRY_SECONDS,
    now: datetime | None = None,
) -> AttendanceSession:
    """
    Open a new QR session for a class.

    Any session still active for the class is closed first, so at most one
    active session exists per class.
    """
    issued_at = now or datetime.now()
    session: AttendanceSession = {
        "session_id": secrets.token_hex(16),
        "class_id": class_id,
        "schedule_id": schedule_id,
        "is_active": True,
        "expires_at": _stamp(issued_at + timedelta(seconds=ttl_seconds)),
    }

    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute("""
            UPDATE attendance_sessions
            SET is_active = 0
            WHERE class_id = ? AND is_active = 1
        """, (class_id,))
        cur.execute("""
            INSERT INTO attendance_sessions (session_id, class_id, schedule_id, is_active, expires_at)
            VALUES (?, ?, ?, 1, ?)
        """, (session["session_id"], class_id, schedule_id, session["expires_at"]))
        conn.commit()
    finally:
        conn.close()
    return session


def get_session(session_id: str) -> AttendanceSession | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT session_id, class_id, schedule_id, is_active, expires_at
        FROM attendance_sessions
        WHERE session_id = ?
    """, (session_id,))
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def is_session_open(session: AttendanceSession, *, now: datetime | None = None) -> bool:
    return session["is_active"] and session["expires_at"] > _stamp(now)


def get_active_session(class_id: str, *, now: datetime | None = None) -> AttendanceSession | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT session_id, class_id, schedule_id, is_active, expires_at
        FROM attendance_sessions
        WHERE class_id = ?
          AND is_active = 1
          AND expires_at > ?
        ORDER BY expires_at DESC
        LIMIT 1
    """, (class_id, _stamp(now)))
    row = cur.fetchone()
    conn.close()
    return _session_from_row(row) if row else None


def deactivate_session(session_id: str) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        UPDATE attendance_sessions
        SET is_active = 0
        WHERE session_id = ? AND is_active = 1
    """, (session_id,))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    return changed


# -----------------------------
# Attendance ledger
# -----------------------------
RECORD_COLUMNS = """
    id, student_id, class_id, session_id, schedule_id, latitude, longitude,
    timestamp, status, liveness_passed, liveness_confidence, face_similarity,
    manual_entry, synced, notes, marked_by
"""


def _record_from_row(row) -> AttendanceRecord:
    (
        record_id, student_id, class_id, session_id, schedule_id, latitude, longitude,
        timestamp, status, liveness_passed, liveness_confidence, face_similarity,
        manual_entry, synced, notes, marked_by,
    ) = row
    coordinates = None
    if latitude is not None and longitude is not None:
        coordinates = {"latitude": float(latitude), "longitude": float(longitude)}
    return {
        "id": int(record_id),
        "student_id": str(student_id),
        "class_id": str(class_id),
        "session_id": session_id,
        "schedule_id": schedule_id,
        "coordinates": coordinates,
        "timestamp": str(timestamp),
        "status": status,
        "liveness_passed": bool(liveness_passed),
        "liveness_confidence": liveness_confidence,
        "face_similarity": face_similarity,
        "manual_entry": bool(manual_entry),
        "synced": bool(synced),
        "notes": notes or "",
        "marked_by": marked_by,
    }


def find_attendance_record(student_id: str, session_id: str) -> AttendanceRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {RECORD_COLUMNS}
        FROM attendance_records
        WHERE student_id = ? AND session_id = ?
        LIMIT 1
    """, (student_id, session_id))
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def get_attendance_record(record_id: int) -> AttendanceRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"""
        SELECT {RECORD_COLUMNS}
        FROM attendance_records
        WHERE id = ?
    """, (record_id,))
    row = cur.fetchone()
    conn.close()
    return _record_from_row(row) if row else None


def insert_attendance_record(
    *,
    student_id: str,
    class_id: str,
    session_id: str | None,
    schedule_id: str | None = None,
    coordinates: dict[str, float] | None = None,
    timestamp: datetime | str | None = None,
    status: AttendanceStatus = "present",
    liveness_passed: bool = False,
    liveness_confidence: float | None = None,
    face_similarity: float | None = None,
    manual_entry: bool = False,
    synced: bool = False,
    notes: str = "",
    marked_by: str | None = None,
) -> int:
    """
    Append one ledger row and return its id.

    The partial unique index on (student_id, session_id) is the only guard
    against concurrent double inserts; a violation is raised as
    `DuplicateAttendanceError`.
    """
    if status not in ATTENDANCE_STATUSES:
        raise ValueError(f"Invalid attendance status: {status}")

    stamp = timestamp if isinstance(timestamp, str) else _stamp(timestamp)
    latitude = coordinates["latitude"] if coordinates else None
    longitude = coordinates["longitude"] if coordinates else None

    conn = connect_db()
    ensure_ledger_schema(conn)
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance_records (
                student_id,
                class_id,
                session_id,
                schedule_id,
                latitude,
                longitude,
                timestamp,
                status,
                liveness_passed,
                liveness_confidence,
                face_similarity,
                manual_entry,
                synced,
                notes,
                marked_by
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                student_id,
                class_id,
                session_id,
                schedule_id,
                latitude,
                longitude,
                stamp,
                status,
                1 if liveness_passed else 0,
                liveness_confidence,
                face_similarity,
                1 if manual_entry else 0,
                1 if synced else 0,
                notes or "",
                marked_by,
            ),
        )
        record_id = int(cur.lastrowid)
        conn.commit()
        return record_id
    except sqlite3.IntegrityError as exc:
        # Release the write lock before the connection is closed.
        conn.rollback()
        if "UNIQUE" in str(exc).upper():
            raise DuplicateAttendanceError(
                f"Attendance already recorded for student {student_id} in session {session_id}."
            ) from exc
        raise
    finally:
        conn.close()


def update_attendance_status(record_id: int, status: str) -> AttendanceRecord | None:
    if status not in ATTENDANCE_STATUSES:
        raise ValueError(f"Invalid attendance status: {status}")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        UPDATE attendance_records
        SET status = ?,
            updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
    """, (status, record_id))
    changed = cur.rowcount > 0
    conn.commit()
    conn.close()
    if not changed:
        return None
    return get_attendance_record(record_id)


def list_student_records(
    student_id: str,
    *,
    class_id: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[AttendanceRecord], int]:
    """Newest first. Returns (page_rows, total_rows)."""
    where = ["student_id = ?"]
    params: list[Any] = [student_id]
    if class_id:
        where.append("class_id = ?")
        params.append(class_id)
    where_sql = " AND ".join(where)

    safe_limit = max(1, min(int(limit), 100))
    offset = (max(1, int(page)) - 1) * safe_limit

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT COUNT(1) FROM attendance_records WHERE {where_sql}", params)
    total = int(cur.fetchone()[0] or 0)
    cur.execute(
        f"""
        SELECT {RECORD_COLUMNS}
        FROM attendance_records
        WHERE {where_sql}
        ORDER BY timestamp DESC, id DESC
        LIMIT ? OFFSET ?
        """,
        [*params, safe_limit, offset],
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows], total


def list_class_records(
    class_id: str,
    *,
    status: str | None = None,
    start: str | None = None,
    end: str | None = None,
) -> list[AttendanceRecord]:
    where = ["class_id = ?"]
    params: list[Any] = [class_id]
    if status and status != "all":
        where.append("status = ?")
        params.append(status)
    if start:
        where.append("timestamp >= ?")
        params.append(start)
    if end:
        where.append("timestamp <= ?")
        params.append(end)

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {RECORD_COLUMNS}
        FROM attendance_records
        WHERE {" AND ".join(where)}
        ORDER BY timestamp DESC, id DESC
        """,
        params,
    )
    rows = cur.fetchall()
    conn.close()
    return [_record_from_row(r) for r in rows]
