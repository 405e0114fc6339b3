import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

ASSETS_DIR = Path(os.getenv("ATTEND_ASSETS_DIR", BASE_DIR / "assets"))
BLOB_DIR = Path(os.getenv("ATTEND_BLOB_DIR", ASSETS_DIR / "blobs"))
DB_PATH = Path(os.getenv("ATTEND_DB_PATH", BASE_DIR / "attendance_db" / "attendance.db"))
ADMIN_USERNAME = os.getenv("ATTEND_ADMIN_USERNAME", "admin").strip() or "admin"
ADMIN_PASSWORD = os.getenv("ATTEND_ADMIN_PASSWORD", "admin123").strip() or "admin123"
SIGNING_KEY = os.getenv("ATTEND_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ATTEND_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_score(value: str | None, fallback: float) -> float:
    """Parse a 0-100 score, clamping out-of-range values."""
    if not value:
        return fallback
    try:
        parsed = float(value)
    except ValueError:
        return fallback
    return min(100.0, max(0.0, parsed))


def _parse_optional_path(value: str | None) -> Path | None:
    if not value or not value.strip():
        return None
    return Path(value.strip())


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ATTEND_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ATTEND_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ATTEND_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ATTEND_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = os.getenv("ATTEND_LOG_LEVEL", "INFO").strip().upper() or "INFO"
LOG_DIR = _parse_optional_path(os.getenv("ATTEND_LOG_DIR"))

# Identity match: similarity >= threshold is a match.
FACE_SIMILARITY_THRESHOLD = _parse_score(os.getenv("ATTEND_FACE_SIMILARITY_THRESHOLD"), 90.0)

# Detection-quality gates (applied to every challenge frame)
MIN_FACE_CONFIDENCE = _parse_score(os.getenv("ATTEND_MIN_FACE_CONFIDENCE"), 90.0)
MIN_BRIGHTNESS = _parse_score(os.getenv("ATTEND_MIN_BRIGHTNESS"), 20.0)
MIN_SHARPNESS = _parse_score(os.getenv("ATTEND_MIN_SHARPNESS"), 20.0)

# Challenge predicates. Turn thresholds are signed and not
# symmetric around zero (front camera frames are mirrored).
NEUTRAL_MAX_ANGLE = float(os.getenv("ATTEND_NEUTRAL_MAX_ANGLE", "20"))
SMILE_MIN_CONFIDENCE = _parse_score(os.getenv("ATTEND_SMILE_MIN_CONFIDENCE"), 50.0)
EYES_OPEN_MIN_CONFIDENCE = _parse_score(os.getenv("ATTEND_EYES_OPEN_MIN_CONFIDENCE"), 80.0)
TURN_LEFT_MAX_YAW = float(os.getenv("ATTEND_TURN_LEFT_MAX_YAW", "20"))
TURN_RIGHT_MIN_YAW = float(os.getenv("ATTEND_TURN_RIGHT_MIN_YAW", "-20"))
LOOK_UP_MIN_PITCH = float(os.getenv("ATTEND_LOOK_UP_MIN_PITCH", "-10"))

MIN_CHALLENGE_IMAGES = max(1, int(os.getenv("ATTEND_MIN_CHALLENGE_IMAGES", "2")))
CHALLENGE_COUNT = max(MIN_CHALLENGE_IMAGES, int(os.getenv("ATTEND_CHALLENGE_COUNT", "3")))

SESSION_EXPIRY_SECONDS = max(1, int(os.getenv("ATTEND_SESSION_EXPIRY_SECONDS", "300")))
ORACLE_TIMEOUT_SECONDS = max(0.1, float(os.getenv("ATTEND_ORACLE_TIMEOUT_SECONDS", "10")))

# OpenCV adapter: similarity = 100 - distance * scale
LBPH_DISTANCE_SCALE = max(0.0, float(os.getenv("ATTEND_LBPH_DISTANCE_SCALE", "0.25")))
