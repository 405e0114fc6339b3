import logging
from typing import Any, TypedDict

from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from attendance_api.schemas import OfflineAttendanceRecord
from attendance_db import db

logger = logging.getLogger(__name__)

SYNC_NOTE = "Synced from offline data"


class SyncOutcome(TypedDict, total=False):
    session_id: str | None
    status: str          # success | skipped | failed
    record_id: int
    message: str


def _describe_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "Invalid record."


async def reconcile_offline_records(student_id: str, records: list[Any]) -> list[SyncOutcome]:
    """
    Merge client-buffered attendance into the ledger, one record at a time.

    Records are trusted as already verified on the device: no liveness or
    session-store check runs here. Existing (student, session) rows are
    skipped, and a malformed record is reported as failed without stopping
    the rest of the batch.
    """
    outcomes: list[SyncOutcome] = []
    for raw in records:
        raw_session = raw.get("session_id") if isinstance(raw, dict) else None
        try:
            record = OfflineAttendanceRecord.model_validate(raw)
        except ValidationError as exc:
            message = _describe_validation_error(exc)
            logger.info("Rejected offline record for student=%s: %s", student_id, message)
            outcomes.append({
                "session_id": raw_session if isinstance(raw_session, str) else None,
                "status": "failed",
                "message": message,
            })
            continue

        existing = await run_in_threadpool(db.find_attendance_record, student_id, record.session_id)
        if existing is not None:
            outcomes.append({
                "session_id": record.session_id,
                "status": "skipped",
                "message": "Attendance already recorded.",
            })
            continue

        try:
            record_id = await run_in_threadpool(
                lambda: db.insert_attendance_record(
                    student_id=student_id,
                    class_id=record.class_id,
                    session_id=record.session_id,
                    schedule_id=record.schedule_id,
                    coordinates=record.coordinates.model_dump() if record.coordinates else None,
                    timestamp=record.timestamp,
                    status="present",
                    liveness_passed=record.liveness_passed,
                    synced=True,
                    notes=SYNC_NOTE,
                )
            )
        except db.DuplicateAttendanceError:
            outcomes.append({
                "session_id": record.session_id,
                "status": "skipped",
                "message": "Attendance already recorded.",
            })
            continue

        outcomes.append({"session_id": record.session_id, "status": "success", "record_id": record_id})

    synced = sum(1 for o in outcomes if o["status"] == "success")
    logger.info("Offline sync for student=%s: %d/%d records stored", student_id, synced, len(outcomes))
    return outcomes
