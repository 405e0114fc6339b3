from enum import Enum


class ReasonCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_ACTIVE_SESSION = "NO_ACTIVE_SESSION"
    DUPLICATE_SUBMISSION = "DUPLICATE_SUBMISSION"
    STUDENT_NOT_FOUND = "STUDENT_NOT_FOUND"
    NO_PROFILE_IMAGE = "NO_PROFILE_IMAGE"
    INVALID_IMAGE = "INVALID_IMAGE"
    NO_FACE_DETECTED = "NO_FACE_DETECTED"
    MULTIPLE_FACES = "MULTIPLE_FACES"
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    LOW_BRIGHTNESS = "LOW_BRIGHTNESS"
    LOW_SHARPNESS = "LOW_SHARPNESS"
    LIVENESS_FAILED = "LIVENESS_FAILED"
    FACE_NOT_MATCHED = "FACE_NOT_MATCHED"
    PROFILE_IMAGE_NOT_FOUND = "PROFILE_IMAGE_NOT_FOUND"
    ORACLE_ERROR = "ORACLE_ERROR"


REASON_MESSAGES: dict[ReasonCode, str] = {
    ReasonCode.VALIDATION_ERROR: "Invalid attendance submission.",
    ReasonCode.NO_ACTIVE_SESSION: "No active attendance session. QR code may have expired.",
    ReasonCode.DUPLICATE_SUBMISSION: "Attendance already marked for this session.",
    ReasonCode.STUDENT_NOT_FOUND: "Student not found.",
    ReasonCode.NO_PROFILE_IMAGE: "No profile photo registered. Please upload your face photo first.",
    ReasonCode.INVALID_IMAGE: "Invalid image captured. Please try again.",
    ReasonCode.NO_FACE_DETECTED: "No face detected. Please position your face clearly.",
    ReasonCode.MULTIPLE_FACES: "Multiple faces detected. Only your face should be visible.",
    ReasonCode.LOW_CONFIDENCE: "Face not clear. Please improve lighting.",
    ReasonCode.LOW_BRIGHTNESS: "Image too dark. Please improve lighting.",
    ReasonCode.LOW_SHARPNESS: "Image blurry. Please hold steady.",
    ReasonCode.LIVENESS_FAILED: "Liveness check failed. Please follow the on-screen instructions.",
    ReasonCode.FACE_NOT_MATCHED: "Face does not match your registered profile.",
    ReasonCode.PROFILE_IMAGE_NOT_FOUND: "Profile image not found. Please re-upload your photo.",
    ReasonCode.ORACLE_ERROR: "Face verification is temporarily unavailable. Please try again.",
}

REASON_HTTP_STATUS: dict[ReasonCode, int] = {
    ReasonCode.DUPLICATE_SUBMISSION: 409,
    ReasonCode.STUDENT_NOT_FOUND: 404,
    ReasonCode.ORACLE_ERROR: 503,
}


def message_for(reason: ReasonCode) -> str:
    return REASON_MESSAGES[reason]


def http_status_for(reason: ReasonCode) -> int:
    return REASON_HTTP_STATUS.get(reason, 400)
