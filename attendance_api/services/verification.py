"""
Attendance verification pipeline.

One submission goes through, in order:

  1. input validation              -> VALIDATION_ERROR
  2. active QR session for class   -> NO_ACTIVE_SESSION
  3. no ledger row for the session -> DUPLICATE_SUBMISSION
  4. enrolled reference face       -> STUDENT_NOT_FOUND / NO_PROFILE_IMAGE
  5. challenge frames, in order    -> quality gate codes / LIVENESS_FAILED
  6. last frame vs reference       -> FACE_NOT_MATCHED / PROFILE_IMAGE_NOT_FOUND
  7. ledger insert                 -> DUPLICATE_SUBMISSION on a lost race

Every oracle failure or timeout ends in ORACLE_ERROR and nothing is written.
Business rejections are returned as `SubmissionResult` values; only storage
faults escape as exceptions.
"""

import asyncio
import logging
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, TypeVar, TypedDict

from fastapi.concurrency import run_in_threadpool

from attendance_api.challenges import (
    ChallengeType,
    VerificationPolicy,
    check_quality,
    evaluate_challenge,
    parse_challenge_type,
)
from attendance_api.reasons import ReasonCode, message_for
from attendance_db import db
from face_oracle.contract import (
    FaceOracle,
    InvalidImageError,
    OracleError,
    ReferenceNotFoundError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChallengeResult(TypedDict):
    challenge_type: str
    passed: bool
    message: str


class SubmissionResult(TypedDict):
    success: bool
    reason: str | None
    message: str
    record_id: int | None
    class_id: str | None
    timestamp: str | None
    liveness_score: float | None
    face_similarity: float | None
    challenge_results: list[ChallengeResult]


@dataclass(frozen=True)
class ChallengeImage:
    challenge_type: ChallengeType
    image_bytes: bytes


class SubmissionValidationError(ValueError):
    pass


def rejection(
    reason: ReasonCode,
    message: str | None = None,
    *,
    class_id: str | None = None,
    challenge_results: list[ChallengeResult] | None = None,
) -> SubmissionResult:
    return {
        "success": False,
        "reason": reason.value,
        "message": message or message_for(reason),
        "record_id": None,
        "class_id": class_id,
        "timestamp": None,
        "liveness_score": None,
        "face_similarity": None,
        "challenge_results": list(challenge_results or []),
    }


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def normalize_coordinates(coordinates: Mapping[str, Any] | None) -> dict[str, float]:
    if not isinstance(coordinates, Mapping):
        raise SubmissionValidationError("Student coordinates are required.")
    latitude = coordinates.get("latitude")
    longitude = coordinates.get("longitude")
    if not _is_number(latitude) or not _is_number(longitude):
        raise SubmissionValidationError("Student coordinates are required.")
    if not -90.0 <= float(latitude) <= 90.0 or not -180.0 <= float(longitude) <= 180.0:
        raise SubmissionValidationError("Student coordinates are out of range.")
    return {"latitude": float(latitude), "longitude": float(longitude)}


def normalize_challenge_images(
    challenge_images: Sequence[ChallengeImage | tuple[str, bytes]] | None,
    *,
    minimum: int,
) -> list[ChallengeImage]:
    if not challenge_images or len(challenge_images) < minimum:
        raise SubmissionValidationError(f"At least {minimum} challenge images are required.")

    normalized: list[ChallengeImage] = []
    for idx, item in enumerate(challenge_images, start=1):
        if isinstance(item, ChallengeImage):
            raw_type, image_bytes = item.challenge_type, item.image_bytes
        else:
            raw_type, image_bytes = item
        try:
            challenge_type = parse_challenge_type(raw_type)
        except ValueError:
            raise SubmissionValidationError(f"Unknown challenge type: {raw_type}")
        if not image_bytes:
            raise SubmissionValidationError(f"Challenge image {idx} is empty.")
        normalized.append(ChallengeImage(challenge_type=challenge_type, image_bytes=bytes(image_bytes)))
    return normalized


class AttendanceVerifier:
    """Decides one attendance submission and commits at most one ledger row."""

    def __init__(self, oracle: FaceOracle, policy: VerificationPolicy | None = None):
        self.oracle = oracle
        self.policy = policy or VerificationPolicy.from_config()

    async def _ask_oracle(self, call: Awaitable[T]) -> T:
        return await asyncio.wait_for(call, timeout=self.policy.oracle_timeout_seconds)

    async def submit(
        self,
        *,
        student_id: str,
        class_id: str | None,
        coordinates: Mapping[str, Any] | None,
        challenge_images: Sequence[ChallengeImage | tuple[str, bytes]] | None,
    ) -> SubmissionResult:
        # --- 1. Input validation ---
        if class_id is not None and not isinstance(class_id, str):
            return rejection(ReasonCode.VALIDATION_ERROR, "Class ID must be a string.")
        if not class_id or not class_id.strip():
            return rejection(ReasonCode.VALIDATION_ERROR, "Class ID is required.")
        class_id = class_id.strip()
        try:
            clean_coordinates = normalize_coordinates(coordinates)
            frames = normalize_challenge_images(
                challenge_images,
                minimum=self.policy.min_challenge_images,
            )
        except SubmissionValidationError as exc:
            return rejection(ReasonCode.VALIDATION_ERROR, str(exc), class_id=class_id)

        # --- 2. Active QR session ---
        session = await run_in_threadpool(db.get_active_session, class_id)
        if session is None:
            logger.info("No active session: student=%s class=%s", student_id, class_id)
            return rejection(ReasonCode.NO_ACTIVE_SESSION, class_id=class_id)
        session_id = session["session_id"]

        # --- 3. Duplicate check ---
        existing = await run_in_threadpool(db.find_attendance_record, student_id, session_id)
        if existing is not None:
            logger.info("Duplicate submission: student=%s session=%s", student_id, session_id)
            return rejection(ReasonCode.DUPLICATE_SUBMISSION, class_id=class_id)

        # --- 4. Reference face ---
        student = await run_in_threadpool(db.get_student, student_id)
        if student is None:
            return rejection(ReasonCode.STUDENT_NOT_FOUND, class_id=class_id)
        reference_key = student["reference_face_key"]
        if not reference_key:
            logger.info("Student %s has no reference face", student_id)
            return rejection(ReasonCode.NO_PROFILE_IMAGE, class_id=class_id)

        # --- 5. Liveness challenges ---
        challenge_results: list[ChallengeResult] = []
        frame_confidences: list[float] = []
        for frame in frames:
            try:
                detection = await self._ask_oracle(self.oracle.detect_face(frame.image_bytes))
            except InvalidImageError:
                return rejection(ReasonCode.INVALID_IMAGE, class_id=class_id, challenge_results=challenge_results)
            except (OracleError, asyncio.TimeoutError):
                logger.warning(
                    "Oracle detection failed: student=%s challenge=%s",
                    student_id,
                    frame.challenge_type.value,
                    exc_info=True,
                )
                return rejection(ReasonCode.ORACLE_ERROR, class_id=class_id, challenge_results=challenge_results)

            gate = check_quality(detection, self.policy)
            if gate is not None:
                challenge_results.append({
                    "challenge_type": frame.challenge_type.value,
                    "passed": False,
                    "message": message_for(gate),
                })
                logger.info(
                    "Quality gate %s: student=%s challenge=%s",
                    gate.value,
                    student_id,
                    frame.challenge_type.value,
                )
                return rejection(gate, class_id=class_id, challenge_results=challenge_results)

            passed, challenge_message = evaluate_challenge(frame.challenge_type, detection, self.policy)
            challenge_results.append({
                "challenge_type": frame.challenge_type.value,
                "passed": passed,
                "message": challenge_message,
            })
            if not passed:
                logger.info(
                    "Liveness challenge failed: student=%s challenge=%s (%s)",
                    student_id,
                    frame.challenge_type.value,
                    challenge_message,
                )
                return rejection(
                    ReasonCode.LIVENESS_FAILED,
                    f"Liveness check failed: {challenge_message}",
                    class_id=class_id,
                    challenge_results=challenge_results,
                )
            frame_confidences.append(float(detection.confidence))

        # --- 6. Identity comparison on the last (freshest) frame ---
        try:
            comparison = await self._ask_oracle(
                self.oracle.compare_faces(
                    reference_key,
                    frames[-1].image_bytes,
                    self.policy.similarity_threshold,
                )
            )
        except ReferenceNotFoundError:
            logger.warning("Reference face missing for student=%s key=%s", student_id, reference_key)
            return rejection(ReasonCode.PROFILE_IMAGE_NOT_FOUND, class_id=class_id, challenge_results=challenge_results)
        except InvalidImageError:
            return rejection(ReasonCode.INVALID_IMAGE, class_id=class_id, challenge_results=challenge_results)
        except (OracleError, asyncio.TimeoutError):
            logger.warning("Oracle comparison failed: student=%s", student_id, exc_info=True)
            return rejection(ReasonCode.ORACLE_ERROR, class_id=class_id, challenge_results=challenge_results)

        similarity = round(float(comparison.similarity), 2)
        if not comparison.matched or not self.policy.is_match(similarity):
            logger.info("Face not matched: student=%s similarity=%.2f", student_id, similarity)
            return rejection(ReasonCode.FACE_NOT_MATCHED, class_id=class_id, challenge_results=challenge_results)

        # --- 7. Commit ---
        liveness_score = round(min(frame_confidences), 2)
        committed_at = datetime.now().isoformat(timespec="seconds")
        try:
            record_id = await run_in_threadpool(
                lambda: db.insert_attendance_record(
                    student_id=student_id,
                    class_id=class_id,
                    session_id=session_id,
                    schedule_id=session["schedule_id"],
                    coordinates=clean_coordinates,
                    timestamp=committed_at,
                    status="present",
                    liveness_passed=True,
                    liveness_confidence=liveness_score,
                    face_similarity=similarity,
                    manual_entry=False,
                )
            )
        except db.DuplicateAttendanceError:
            logger.info("Lost insert race: student=%s session=%s", student_id, session_id)
            return rejection(ReasonCode.DUPLICATE_SUBMISSION, class_id=class_id, challenge_results=challenge_results)

        logger.info(
            "Attendance marked: student=%s class=%s session=%s liveness=%.2f similarity=%.2f",
            student_id,
            class_id,
            session_id,
            liveness_score,
            similarity,
        )
        return {
            "success": True,
            "reason": None,
            "message": "Attendance marked successfully!",
            "record_id": record_id,
            "class_id": class_id,
            "timestamp": committed_at,
            "liveness_score": liveness_score,
            "face_similarity": similarity,
            "challenge_results": challenge_results,
        }
