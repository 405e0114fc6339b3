import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

import attendance_db.db as db
from attendance_api.tests.fakes import count_session_records


def test_unique_student_session_pair(temp_db):
    db.insert_attendance_record(student_id="S1", class_id="C1", session_id="sess-1")
    with pytest.raises(db.DuplicateAttendanceError):
        db.insert_attendance_record(student_id="S1", class_id="C1", session_id="sess-1")

    # Other students and other sessions are unaffected.
    db.insert_attendance_record(student_id="S2", class_id="C1", session_id="sess-1")
    db.insert_attendance_record(student_id="S1", class_id="C1", session_id="sess-2")
    assert count_session_records("S1", "sess-1") == 1


def test_duplicate_insert_releases_write_lock(temp_db):
    db.insert_attendance_record(student_id="S1", class_id="C1", session_id="sess-1")
    with pytest.raises(db.DuplicateAttendanceError) as excinfo:
        db.insert_attendance_record(student_id="S1", class_id="C1", session_id="sess-1")
    assert excinfo.traceback

    # Another writer must get the lock at once, without waiting on a busy timeout.
    other = sqlite3.connect(str(db.DB_PATH), timeout=0)
    try:
        other.execute("BEGIN IMMEDIATE")
        other.rollback()
    finally:
        other.close()
    db.insert_attendance_record(student_id="S2", class_id="C1", session_id="sess-1")


def test_aware_timestamps_are_stored_as_local_time(temp_db):
    utc_time = datetime(2026, 3, 2, 8, 15, tzinfo=timezone.utc)
    record_id = db.insert_attendance_record(student_id="S1", class_id="C1", session_id="s", timestamp=utc_time)

    expected = utc_time.astimezone().replace(tzinfo=None).isoformat(timespec="seconds")
    assert db.get_attendance_record(record_id)["timestamp"] == expected


def test_manual_rows_without_session_are_not_unique(temp_db):
    db.insert_attendance_record(student_id="S1", class_id="C1", session_id=None, manual_entry=True)
    db.insert_attendance_record(student_id="S1", class_id="C1", session_id=None, manual_entry=True)
    rows, total = db.list_student_records("S1")
    assert total == 2
    assert all(r["session_id"] is None for r in rows)


def test_invalid_status_is_rejected(temp_db):
    with pytest.raises(ValueError):
        db.insert_attendance_record(student_id="S1", class_id="C1", session_id="s", status="excused")


def test_status_correction(temp_db):
    record_id = db.insert_attendance_record(student_id="S1", class_id="C1", session_id="s")
    updated = db.update_attendance_status(record_id, "late")
    assert updated["status"] == "late"
    assert db.update_attendance_status(9999, "late") is None
    with pytest.raises(ValueError):
        db.update_attendance_status(record_id, "gone")


def test_student_records_are_paginated_newest_first(temp_db):
    base = datetime(2026, 1, 5, 8, 0, 0)
    for day in range(5):
        db.insert_attendance_record(
            student_id="S1",
            class_id="C1" if day % 2 == 0 else "C2",
            session_id=f"sess-{day}",
            timestamp=base + timedelta(days=day),
        )

    rows, total = db.list_student_records("S1", page=1, limit=2)
    assert total == 5
    assert [r["session_id"] for r in rows] == ["sess-4", "sess-3"]

    rows, _ = db.list_student_records("S1", page=3, limit=2)
    assert [r["session_id"] for r in rows] == ["sess-0"]

    rows, total = db.list_student_records("S1", class_id="C2")
    assert total == 2
    assert {r["class_id"] for r in rows} == {"C2"}


def test_class_records_filters(temp_db):
    db.insert_attendance_record(student_id="S1", class_id="C1", session_id="a", timestamp="2026-02-01T09:00:00")
    db.insert_attendance_record(
        student_id="S2", class_id="C1", session_id="a", status="late", timestamp="2026-02-02T09:00:00"
    )
    db.insert_attendance_record(student_id="S3", class_id="C2", session_id="b", timestamp="2026-02-02T09:00:00")

    assert len(db.list_class_records("C1")) == 2
    assert [r["student_id"] for r in db.list_class_records("C1", status="late")] == ["S2"]
    assert [r["student_id"] for r in db.list_class_records("C1", start="2026-02-02")] == ["S2"]
    assert [r["student_id"] for r in db.list_class_records("C1", end="2026-02-01T23:59:59")] == ["S1"]


def test_issue_session_keeps_one_active_per_class(temp_db):
    first = db.issue_session("C1")
    second = db.issue_session("C1")
    other = db.issue_session("C2")

    assert db.get_session(first["session_id"])["is_active"] is False
    assert db.get_active_session("C1")["session_id"] == second["session_id"]
    assert db.get_active_session("C2")["session_id"] == other["session_id"]


def test_expired_session_is_not_active(temp_db):
    issued_at = datetime(2026, 1, 1, 9, 0, 0)
    session = db.issue_session("C1", ttl_seconds=300, now=issued_at)

    assert db.get_active_session("C1", now=issued_at + timedelta(seconds=299))["session_id"] == session["session_id"]
    assert db.get_active_session("C1", now=issued_at + timedelta(seconds=300)) is None

    stored = db.get_session(session["session_id"])
    assert db.is_session_open(stored, now=issued_at + timedelta(seconds=299))
    assert not db.is_session_open(stored, now=issued_at + timedelta(seconds=300))


def test_latest_expiry_wins_when_several_are_active(temp_db):
    # Rows written directly, bypassing the issuer's deactivation.
    conn = db.connect_db()
    conn.executemany(
        """
        INSERT INTO attendance_sessions (session_id, class_id, is_active, expires_at)
        VALUES (?, 'C1', 1, ?)
        """,
        [("early", "2099-01-01T09:00:00"), ("late", "2099-01-01T10:00:00")],
    )
    conn.commit()
    conn.close()

    assert db.get_active_session("C1")["session_id"] == "late"


def test_student_credentials(temp_db):
    db.add_student("S1", "Ada", password="pw-1")
    assert db.verify_student_credentials("S1", "pw-1")["full_name"] == "Ada"
    assert db.verify_student_credentials("S1", "nope") is None
    assert db.verify_student_credentials("S404", "pw-1") is None


def test_ledger_migration_is_idempotent(temp_db):
    conn = db.connect_db()
    db.ensure_ledger_schema(conn)
    db.ensure_ledger_schema(conn)
    names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master")}
    conn.close()
    assert {"attendance_records", "ux_attendance_student_session"} <= names
