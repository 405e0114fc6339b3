import base64
import sqlite3
from datetime import datetime

import pytest

import attendance_api.config as config
import attendance_api.main as main
import attendance_api.routers.core as core
import attendance_db.db as db
from attendance_api.deps import get_oracle
from attendance_api.tests.fakes import REFERENCE_KEY, STUDENT_ID, FakeOracle, count_session_records
from face_oracle.contract import OracleUnavailableError


def _b64(raw: bytes, *, data_url: bool = False) -> str:
    encoded = base64.b64encode(raw).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}" if data_url else encoded


def _verify_payload(class_id="C1", frames=((b"neutral", "neutral"), (b"smile", "smile"))):
    return {
        "class_id": class_id,
        "coordinates": {"latitude": 14.6, "longitude": 121.0},
        "challenge_images": [
            {"challenge_type": challenge, "image": _b64(raw, data_url=idx == 0)}
            for idx, (raw, challenge) in enumerate(frames)
        ],
    }


def _open_session(client, admin_headers, class_id="C1"):
    res = client.post("/sessions", json={"class_id": class_id, "schedule_id": "SCH-1"}, headers=admin_headers)
    assert res.status_code == 201
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_verification_config_reflects_settings(client, monkeypatch):
    monkeypatch.setattr(core, "FACE_SIMILARITY_THRESHOLD", 92.5)
    res = client.get("/config/verification")
    assert res.status_code == 200
    body = res.json()
    assert body["face_similarity_threshold"] == 92.5
    assert body["min_challenge_images"] == config.MIN_CHALLENGE_IMAGES


# -----------------------------
# Auth
# -----------------------------
def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid admin credentials."


def test_student_login_and_me(client, student_headers):
    res = client.get("/auth/me", headers=student_headers)
    assert res.status_code == 200
    assert res.json()["username"] == STUDENT_ID
    assert res.json()["role"] == "student"


def test_student_login_rejects_wrong_password(client, enrolled_student):
    res = client.post("/auth/student/login", json={"student_id": STUDENT_ID, "password": "nope"})
    assert res.status_code == 401


def test_roles_are_enforced(client, admin_headers, student_headers):
    assert client.post("/sessions", json={"class_id": "C1"}).status_code == 401
    assert client.post("/sessions", json={"class_id": "C1"}, headers=student_headers).status_code == 403
    assert client.get("/attendance/records", headers=admin_headers).status_code == 403
    assert client.get("/attendance/records", headers={"Authorization": "Bearer forged.token"}).status_code == 401


# -----------------------------
# Students and reference faces
# -----------------------------
def test_create_student_and_duplicate(client, admin_headers):
    payload = {"student_id": "S2000", "full_name": "Grace", "password": "pw", "enrollment_no": "EN-2000"}
    res = client.post("/students", json=payload, headers=admin_headers)
    assert res.status_code == 201
    assert res.json()["reference_face_key"] is None

    res = client.post("/students", json=payload, headers=admin_headers)
    assert res.status_code == 409


def test_student_can_only_read_self(client, admin_headers, student_headers):
    db.add_student("S3000", "Other", password="pw")
    assert client.get(f"/students/{STUDENT_ID}", headers=student_headers).status_code == 200
    assert client.get("/students/S3000", headers=student_headers).status_code == 403
    assert client.get("/students/S3000", headers=admin_headers).json()["has_reference_face"] is False


def test_upload_reference_face(client, admin_headers):
    db.add_student("S4000", "Photo", password="pw")
    res = client.put(
        "/students/S4000/face",
        files={"file": ("me.png", b"\x89PNG fake", "image/png")},
        headers=admin_headers,
    )
    assert res.status_code == 200
    assert res.json()["reference_face_key"] == "faces/S4000/reference.png"

    assert db.get_student("S4000")["reference_face_key"] == "faces/S4000/reference.png"
    assert main.app.state.blob_store.get("faces/S4000/reference.png") == b"\x89PNG fake"


def test_upload_reference_face_rejects_other_types(client, admin_headers):
    db.add_student("S5000", "Gif", password="pw")
    res = client.put(
        "/students/S5000/face",
        files={"file": ("me.gif", b"GIF89a", "image/gif")},
        headers=admin_headers,
    )
    assert res.status_code == 400
    assert db.get_student("S5000")["reference_face_key"] is None


# -----------------------------
# Sessions
# -----------------------------
def test_session_status_lifecycle(client, admin_headers, student_headers):
    assert client.get("/sessions/status/C1").status_code == 401
    assert client.get("/sessions/status/C1", headers=student_headers).json() == {
        "is_active": False,
        "session": None,
        "message": "No active session",
    }

    issued = _open_session(client, admin_headers)
    status = client.get("/sessions/status/C1", headers=student_headers).json()
    assert status["is_active"] is True
    assert status["session"]["session_id"] == issued["session_id"]

    res = client.post(f"/sessions/{issued['session_id']}/deactivate", headers=admin_headers)
    assert res.status_code == 200
    assert client.get("/sessions/status/C1", headers=student_headers).json()["is_active"] is False

    res = client.post(f"/sessions/{issued['session_id']}/deactivate", headers=admin_headers)
    assert res.status_code == 404


def test_validate_qr_token(client, admin_headers, student_headers):
    issued = _open_session(client, admin_headers)

    assert client.post("/sessions/validate", json={"token": issued["session_id"]}).status_code == 401
    res = client.post("/sessions/validate", json={"token": issued["session_id"]}, headers=student_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["valid"] is True
    assert body["session_id"] == issued["session_id"]
    assert body["class_id"] == "C1"
    assert body["schedule_id"] == "SCH-1"
    assert body["expires_at"] == issued["expires_at"]


def test_validate_rejects_unknown_and_empty_tokens(client, student_headers):
    res = client.post("/sessions/validate", json={"token": "no-such-token"}, headers=student_headers)
    assert res.status_code == 400
    assert res.json() == {"valid": False, "message": "Invalid or expired QR code"}

    assert client.post("/sessions/validate", json={"token": "  "}, headers=student_headers).status_code == 400


def test_validate_rejects_expired_token(client, student_headers):
    expired = db.issue_session("C1", ttl_seconds=300, now=datetime(2020, 1, 1, 9, 0, 0))

    res = client.post("/sessions/validate", json={"token": expired["session_id"]}, headers=student_headers)
    assert res.status_code == 400
    assert res.json()["valid"] is False


def test_validate_rejects_deactivated_token(client, admin_headers, student_headers):
    issued = _open_session(client, admin_headers)
    client.post(f"/sessions/{issued['session_id']}/deactivate", headers=admin_headers)

    res = client.post("/sessions/validate", json={"token": issued["session_id"]}, headers=student_headers)
    assert res.status_code == 400
    assert res.json()["valid"] is False

    # Reissuing for the class supersedes the old token as well.
    first = _open_session(client, admin_headers)
    _open_session(client, admin_headers)
    res = client.post("/sessions/validate", json={"token": first["session_id"]}, headers=student_headers)
    assert res.status_code == 400


# -----------------------------
# Submission
# -----------------------------
def test_liveness_challenges(client, student_headers):
    res = client.get("/attendance/liveness/challenges", headers=student_headers)
    assert res.status_code == 200
    challenges = res.json()["challenges"]
    assert len(challenges) == config.CHALLENGE_COUNT
    assert challenges[0]["type"] == "neutral"
    assert all(c["instruction"] for c in challenges)


def test_verify_marks_attendance(client, admin_headers, student_headers, fake_oracle):
    session = _open_session(client, admin_headers)

    res = client.post("/attendance/verify", json=_verify_payload(), headers=student_headers)
    assert res.status_code == 201
    body = res.json()
    assert body["success"] is True
    assert body["face_similarity"] == 95.0
    assert fake_oracle.compare_calls == [(REFERENCE_KEY, b"smile", config.FACE_SIMILARITY_THRESHOLD)]

    res = client.post("/attendance/verify", json=_verify_payload(), headers=student_headers)
    assert res.status_code == 409
    assert res.json()["reason"] == "DUPLICATE_SUBMISSION"
    assert count_session_records(STUDENT_ID, session["session_id"]) == 1


def test_verify_without_session(client, student_headers):
    res = client.post("/attendance/verify", json=_verify_payload(), headers=student_headers)
    assert res.status_code == 400
    assert res.json()["reason"] == "NO_ACTIVE_SESSION"


def test_verify_rejects_bad_base64(client, admin_headers, student_headers, fake_oracle):
    _open_session(client, admin_headers)
    payload = _verify_payload()
    payload["challenge_images"][1]["image"] = "%%%not-base64%%%"

    res = client.post("/attendance/verify", json=payload, headers=student_headers)
    assert res.status_code == 400
    assert res.json()["reason"] == "VALIDATION_ERROR"
    assert fake_oracle.detect_calls == []


def test_verify_rejects_missing_fields(client, admin_headers, student_headers):
    _open_session(client, admin_headers)
    res = client.post("/attendance/verify", json={"class_id": "C1"}, headers=student_headers)
    assert res.status_code == 400
    assert res.json()["reason"] == "VALIDATION_ERROR"


@pytest.mark.parametrize(
    "field, value",
    [
        ("coordinates", "abc"),
        ("class_id", 123),
        ("challenge_images", "x"),
        ("challenge_images", ["not-an-object", "x"]),
        ("challenge_images", [{"challenge_type": "neutral", "image": 42}, {"challenge_type": "smile", "image": 7}]),
    ],
)
def test_verify_wrongly_typed_fields_are_validation_errors(
    client, admin_headers, student_headers, fake_oracle, field, value
):
    _open_session(client, admin_headers)
    payload = _verify_payload()
    payload[field] = value

    res = client.post("/attendance/verify", json=payload, headers=student_headers)
    assert res.status_code == 400
    body = res.json()
    assert body["success"] is False
    assert body["reason"] == "VALIDATION_ERROR"
    assert body["message"]
    assert fake_oracle.detect_calls == []


def test_verify_liveness_failure(client, admin_headers, student_headers):
    _open_session(client, admin_headers)
    payload = _verify_payload(frames=((b"neutral", "neutral"), (b"neutral", "smile")))

    res = client.post("/attendance/verify", json=payload, headers=student_headers)
    assert res.status_code == 400
    body = res.json()
    assert body["reason"] == "LIVENESS_FAILED"
    assert "smile" in body["message"]


def test_verify_oracle_down_is_503(client, admin_headers, student_headers):
    _open_session(client, admin_headers)
    main.app.dependency_overrides[get_oracle] = lambda: FakeOracle(detect_error=OracleUnavailableError("x"))

    res = client.post("/attendance/verify", json=_verify_payload(), headers=student_headers)
    assert res.status_code == 503
    assert res.json()["reason"] == "ORACLE_ERROR"


def test_verify_storage_fault_is_503(client, admin_headers, student_headers, monkeypatch):
    _open_session(client, admin_headers)

    def broken(*_args, **_kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "find_attendance_record", broken)
    res = client.post("/attendance/verify", json=_verify_payload(), headers=student_headers)
    assert res.status_code == 503
    assert res.json()["detail"] == "Attendance storage unavailable. Please retry."


# -----------------------------
# Sync and records
# -----------------------------
def test_sync_endpoint(client, student_headers):
    db.insert_attendance_record(student_id=STUDENT_ID, class_id="C1", session_id="sess-3")
    records = [
        {"session_id": sid, "class_id": "C1", "timestamp": "2026-03-02T08:15:00", "liveness_passed": True}
        for sid in ("sess-1", "sess-2", "sess-3")
    ]
    res = client.post("/attendance/sync", json={"records": records}, headers=student_headers)
    assert res.status_code == 200
    assert [r["status"] for r in res.json()["results"]] == ["success", "success", "skipped"]


def test_sync_requires_records(client, student_headers):
    res = client.post("/attendance/sync", json={"records": []}, headers=student_headers)
    assert res.status_code == 400


def test_my_records_pagination(client, student_headers):
    for idx in range(3):
        db.insert_attendance_record(
            student_id=STUDENT_ID,
            class_id="C1" if idx < 2 else "C2",
            session_id=f"sess-{idx}",
            timestamp=f"2026-03-0{idx + 1}T08:00:00",
        )
    db.insert_attendance_record(student_id="someone-else", class_id="C1", session_id="sess-0")

    res = client.get("/attendance/records", params={"page": 1, "limit": 2}, headers=student_headers)
    assert res.status_code == 200
    body = res.json()
    assert [r["session_id"] for r in body["records"]] == ["sess-2", "sess-1"]
    assert body["pagination"] == {"total_records": 3, "total_pages": 2, "current_page": 1, "limit": 2}

    res = client.get("/attendance/records/class/C1", headers=student_headers)
    assert [r["session_id"] for r in res.json()["records"]] == ["sess-1", "sess-0"]


# -----------------------------
# Staff operations
# -----------------------------
def test_manual_entry_and_class_report(client, admin_headers, enrolled_student):
    res = client.post(
        "/attendance/manual",
        json={"student_id": STUDENT_ID, "class_id": "C1", "status": "late", "notes": "Phone died"},
        headers=admin_headers,
    )
    assert res.status_code == 201
    record = db.get_attendance_record(res.json()["id"])
    assert record["manual_entry"] is True
    assert record["session_id"] is None
    assert record["marked_by"] == config.ADMIN_USERNAME

    db.insert_attendance_record(student_id="S9", class_id="C1", session_id="x")
    report = client.get("/attendance/class/C1", headers=admin_headers).json()
    assert report["total"] == 2
    assert report["counts"] == {"present": 1, "late": 1, "absent": 0}

    report = client.get("/attendance/class/C1", params={"status": "late"}, headers=admin_headers).json()
    assert report["total"] == 1


def test_manual_entry_conflicts_with_existing_session_record(client, admin_headers, enrolled_student):
    db.insert_attendance_record(student_id=STUDENT_ID, class_id="C1", session_id="sess-1")
    res = client.post(
        "/attendance/manual",
        json={"student_id": STUDENT_ID, "class_id": "C1", "session_id": "sess-1"},
        headers=admin_headers,
    )
    assert res.status_code == 409


def test_manual_entry_validation(client, admin_headers, enrolled_student):
    res = client.post(
        "/attendance/manual",
        json={"student_id": STUDENT_ID, "class_id": "C1", "status": "excused"},
        headers=admin_headers,
    )
    assert res.status_code == 400

    res = client.post("/attendance/manual", json={"student_id": "ghost", "class_id": "C1"}, headers=admin_headers)
    assert res.status_code == 404


def test_manual_entry_converts_offset_timestamp(client, admin_headers, enrolled_student):
    res = client.post(
        "/attendance/manual",
        json={"student_id": STUDENT_ID, "class_id": "C1", "timestamp": "2026-03-02T08:15:00+05:30"},
        headers=admin_headers,
    )
    assert res.status_code == 201

    local = datetime.fromisoformat("2026-03-02T08:15:00+05:30").astimezone().replace(tzinfo=None)
    assert db.get_attendance_record(res.json()["id"])["timestamp"] == local.isoformat(timespec="seconds")


def test_status_correction(client, admin_headers):
    record_id = db.insert_attendance_record(student_id="S1", class_id="C1", session_id="s")

    res = client.patch(f"/attendance/{record_id}/status", json={"status": "absent"}, headers=admin_headers)
    assert res.status_code == 200
    assert res.json()["status"] == "absent"

    assert client.patch(f"/attendance/{record_id}/status", json={"status": "?"}, headers=admin_headers).status_code == 400
    assert client.patch("/attendance/9999/status", json={"status": "late"}, headers=admin_headers).status_code == 404
