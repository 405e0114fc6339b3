"""
Liveness challenge policy.

A challenge is judged from a single frame's detection signals. Quality
gates run first and apply to every frame regardless of challenge type;
only a frame that clears them is judged against its challenge predicate.
"""

import random
from dataclasses import dataclass
from enum import Enum

from attendance_api import config
from attendance_api.reasons import ReasonCode
from face_oracle.contract import FaceDetection


class ChallengeType(str, Enum):
    NEUTRAL = "neutral"
    SMILE = "smile"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    EYES_OPEN = "eyes_open"
    LOOK_UP = "look_up"


# (passed message, failure hint)
CHALLENGE_HINTS: dict[ChallengeType, tuple[str, str]] = {
    ChallengeType.NEUTRAL: ("Neutral face detected", "Please look straight at the camera"),
    ChallengeType.SMILE: ("Smile detected", "Please smile at the camera"),
    ChallengeType.TURN_LEFT: ("Left turn detected", "Please turn your head to the left"),
    ChallengeType.TURN_RIGHT: ("Right turn detected", "Please turn your head to the right"),
    ChallengeType.EYES_OPEN: ("Eyes open detected", "Please open your eyes wide"),
    ChallengeType.LOOK_UP: ("Look up detected", "Please look slightly upward"),
}

# (instruction, icon) shown by the client
CHALLENGE_INSTRUCTIONS: dict[ChallengeType, tuple[str, str]] = {
    ChallengeType.NEUTRAL: ("Look straight at the camera", "face-man"),
    ChallengeType.SMILE: ("Smile at the camera", "emoticon-happy"),
    ChallengeType.TURN_LEFT: ("Turn your head slightly left", "arrow-left"),
    ChallengeType.TURN_RIGHT: ("Turn your head slightly right", "arrow-right"),
    ChallengeType.EYES_OPEN: ("Open your eyes wide", "eye"),
    ChallengeType.LOOK_UP: ("Look slightly upward", "arrow-up"),
}

# Handed out after the mandatory neutral frame.
ROTATING_CHALLENGES: tuple[ChallengeType, ...] = (
    ChallengeType.SMILE,
    ChallengeType.TURN_LEFT,
    ChallengeType.TURN_RIGHT,
    ChallengeType.EYES_OPEN,
)


@dataclass(frozen=True)
class VerificationPolicy:
    similarity_threshold: float = 90.0
    min_face_confidence: float = 90.0
    min_brightness: float = 20.0
    min_sharpness: float = 20.0
    neutral_max_angle: float = 20.0
    smile_min_confidence: float = 50.0
    eyes_open_min_confidence: float = 80.0
    turn_left_max_yaw: float = 20.0
    turn_right_min_yaw: float = -20.0
    look_up_min_pitch: float = -10.0
    min_challenge_images: int = 2
    oracle_timeout_seconds: float = 10.0

    @classmethod
    def from_config(cls) -> "VerificationPolicy":
        return cls(
            similarity_threshold=config.FACE_SIMILARITY_THRESHOLD,
            min_face_confidence=config.MIN_FACE_CONFIDENCE,
            min_brightness=config.MIN_BRIGHTNESS,
            min_sharpness=config.MIN_SHARPNESS,
            neutral_max_angle=config.NEUTRAL_MAX_ANGLE,
            smile_min_confidence=config.SMILE_MIN_CONFIDENCE,
            eyes_open_min_confidence=config.EYES_OPEN_MIN_CONFIDENCE,
            turn_left_max_yaw=config.TURN_LEFT_MAX_YAW,
            turn_right_min_yaw=config.TURN_RIGHT_MIN_YAW,
            look_up_min_pitch=config.LOOK_UP_MIN_PITCH,
            min_challenge_images=config.MIN_CHALLENGE_IMAGES,
            oracle_timeout_seconds=config.ORACLE_TIMEOUT_SECONDS,
        )

    def is_match(self, similarity: float) -> bool:
        # Inclusive: a score exactly at the threshold matches.
        return similarity >= self.similarity_threshold


def parse_challenge_type(value: str | ChallengeType) -> ChallengeType:
    if isinstance(value, ChallengeType):
        return value
    return ChallengeType(str(value or "").strip().lower())


def check_quality(detection: FaceDetection, policy: VerificationPolicy) -> ReasonCode | None:
    """Return the first failing quality gate, or None if the frame is usable."""
    if detection.face_count <= 0:
        return ReasonCode.NO_FACE_DETECTED
    if detection.face_count > 1:
        return ReasonCode.MULTIPLE_FACES
    if detection.confidence < policy.min_face_confidence:
        return ReasonCode.LOW_CONFIDENCE
    if detection.brightness < policy.min_brightness:
        return ReasonCode.LOW_BRIGHTNESS
    if detection.sharpness < policy.min_sharpness:
        return ReasonCode.LOW_SHARPNESS
    return None


def evaluate_challenge(
    challenge: ChallengeType,
    detection: FaceDetection,
    policy: VerificationPolicy,
) -> tuple[bool, str]:
    """
    Judge one frame against its challenge.

    Returns:
      (passed, message)
    """
    current_yaw = f" (current: {detection.yaw:.0f}°)"

    if challenge is ChallengeType.NEUTRAL:
        passed = (
            abs(detection.yaw) < policy.neutral_max_angle
            and abs(detection.pitch) < policy.neutral_max_angle
        )
        detail = ""
    elif challenge is ChallengeType.SMILE:
        passed = detection.smile and detection.smile_confidence > policy.smile_min_confidence
        detail = ""
    elif challenge is ChallengeType.EYES_OPEN:
        passed = detection.eyes_open and detection.eyes_open_confidence > policy.eyes_open_min_confidence
        detail = ""
    elif challenge is ChallengeType.TURN_LEFT:
        passed = detection.yaw < policy.turn_left_max_yaw
        detail = current_yaw
    elif challenge is ChallengeType.TURN_RIGHT:
        passed = detection.yaw > policy.turn_right_min_yaw
        detail = current_yaw
    elif challenge is ChallengeType.LOOK_UP:
        passed = detection.pitch > policy.look_up_min_pitch
        detail = ""
    else:
        raise ValueError(f"Unhandled challenge type: {challenge!r}")

    passed_message, hint = CHALLENGE_HINTS[challenge]
    if passed:
        return True, passed_message
    return False, f"{hint}{detail}"


def pick_challenges(count: int, rng: random.Random | None = None) -> list[ChallengeType]:
    """Neutral first, then distinct random rotating challenges."""
    picker = rng or random.SystemRandom()
    extra = max(0, min(count - 1, len(ROTATING_CHALLENGES)))
    return [ChallengeType.NEUTRAL, *picker.sample(ROTATING_CHALLENGES, extra)]
