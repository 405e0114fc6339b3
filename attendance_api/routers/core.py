from fastapi import APIRouter

from attendance_api.config import (
    CHALLENGE_COUNT,
    EYES_OPEN_MIN_CONFIDENCE,
    FACE_SIMILARITY_THRESHOLD,
    LOOK_UP_MIN_PITCH,
    MIN_BRIGHTNESS,
    MIN_CHALLENGE_IMAGES,
    MIN_FACE_CONFIDENCE,
    MIN_SHARPNESS,
    NEUTRAL_MAX_ANGLE,
    ORACLE_TIMEOUT_SECONDS,
    SESSION_EXPIRY_SECONDS,
    SMILE_MIN_CONFIDENCE,
    TURN_LEFT_MAX_YAW,
    TURN_RIGHT_MIN_YAW,
)

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/verification")
def verification_config():
    return {
        "face_similarity_threshold": FACE_SIMILARITY_THRESHOLD,
        "min_face_confidence": MIN_FACE_CONFIDENCE,
        "min_brightness": MIN_BRIGHTNESS,
        "min_sharpness": MIN_SHARPNESS,
        "neutral_max_angle": NEUTRAL_MAX_ANGLE,
        "smile_min_confidence": SMILE_MIN_CONFIDENCE,
        "eyes_open_min_confidence": EYES_OPEN_MIN_CONFIDENCE,
        "turn_left_max_yaw": TURN_LEFT_MAX_YAW,
        "turn_right_min_yaw": TURN_RIGHT_MIN_YAW,
        "look_up_min_pitch": LOOK_UP_MIN_PITCH,
        "min_challenge_images": MIN_CHALLENGE_IMAGES,
        "challenge_count": CHALLENGE_COUNT,
        "session_expiry_seconds": SESSION_EXPIRY_SECONDS,
        "oracle_timeout_seconds": ORACLE_TIMEOUT_SECONDS,
    }
