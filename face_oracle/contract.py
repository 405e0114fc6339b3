"""
Contract for the face verification oracle.

The attendance pipeline only depends on the shapes defined here. Any
backend (the bundled OpenCV adapter, a hosted vision API, a test fake)
implements `FaceOracle`; every method is a coroutine because each call is
a network or thread-pool suspension point.
"""

from dataclasses import dataclass
from typing import Protocol


class OracleError(Exception):
    """Transient oracle failure. Callers must fail closed."""


class OracleUnavailableError(OracleError):
    """Backend unreachable, crashed, or returned garbage."""


class ReferenceNotFoundError(OracleError):
    """The stored reference image is missing or cannot be decoded."""


class InvalidImageError(OracleError):
    """The submitted capture is not a decodable image."""


@dataclass(frozen=True)
class FaceDetection:
    face_count: int
    confidence: float = 0.0
    brightness: float = 0.0
    sharpness: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    smile: bool = False
    smile_confidence: float = 0.0
    eyes_open: bool = False
    eyes_open_confidence: float = 0.0


@dataclass(frozen=True)
class FaceComparison:
    matched: bool
    similarity: float


class FaceOracle(Protocol):
    async def detect_face(self, image_bytes: bytes) -> FaceDetection:
        ...

    async def compare_faces(
        self,
        reference_key: str,
        image_bytes: bytes,
        threshold: float,
    ) -> FaceComparison:
        ...
