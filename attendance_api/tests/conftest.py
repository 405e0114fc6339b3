import pytest
from fastapi.testclient import TestClient

import attendance_api.config as config
import attendance_api.main as main
import attendance_db.db as db
from attendance_api.deps import get_oracle
from attendance_api.tests.fakes import REFERENCE_KEY, STUDENT_ID, STUDENT_PASSWORD, FakeOracle


@pytest.fixture()
def temp_db(tmp_path, monkeypatch):
    test_db = tmp_path / "attendance_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def enrolled_student(temp_db):
    db.add_student(STUDENT_ID, "Ada Student", password=STUDENT_PASSWORD, enrollment_no="EN-1")
    db.set_reference_face_key(STUDENT_ID, REFERENCE_KEY)
    return db.get_student(STUDENT_ID)


@pytest.fixture()
def active_session(temp_db):
    return db.issue_session("C1", schedule_id="SCH-1")


@pytest.fixture()
def fake_oracle():
    return FakeOracle()


@pytest.fixture()
def client(temp_db, tmp_path, monkeypatch, fake_oracle):
    monkeypatch.setattr(main, "BLOB_DIR", tmp_path / "blobs")

    main.app.dependency_overrides[get_oracle] = lambda: fake_oracle
    with TestClient(main.app) as c:
        yield c
    main.app.dependency_overrides.clear()


@pytest.fixture()
def admin_headers(client):
    res = client.post(
        "/auth/login",
        json={
            "username": config.ADMIN_USERNAME,
            "password": config.ADMIN_PASSWORD,
        },
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def student_headers(client, enrolled_student):
    res = client.post(
        "/auth/student/login",
        json={"student_id": STUDENT_ID, "password": STUDENT_PASSWORD},
    )
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}
