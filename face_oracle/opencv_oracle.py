import logging
import math
from pathlib import Path

import cv2  # type: ignore
import numpy as np  # type: ignore
from fastapi.concurrency import run_in_threadpool

from attendance_api.config import LBPH_DISTANCE_SCALE
from face_oracle.blob_store import BlobNotFoundError, LocalBlobStore
from face_oracle.contract import (
    FaceComparison,
    FaceDetection,
    InvalidImageError,
    OracleUnavailableError,
    ReferenceNotFoundError,
)

logger = logging.getLogger(__name__)

# Haar cascades for detection (simple + offline)
CASCADE_DIR = Path(cv2.data.haarcascades)
FACE_CASCADE = cv2.CascadeClassifier(str(CASCADE_DIR / "haarcascade_frontalface_default.xml"))
EYE_CASCADE = cv2.CascadeClassifier(str(CASCADE_DIR / "haarcascade_eye.xml"))
SMILE_CASCADE = cv2.CascadeClassifier(str(CASCADE_DIR / "haarcascade_smile.xml"))

FACE_SIZE = 200
# Eye line sits at roughly 38% of the face box height when looking straight.
NEUTRAL_EYE_LINE = 0.38


def _missing_cascades() -> list[str]:
    cascades = {"face": FACE_CASCADE, "eye": EYE_CASCADE, "smile": SMILE_CASCADE}
    return [name for name, cascade in cascades.items() if cascade.empty()]


def _decode_gray(image_bytes: bytes):
    if not image_bytes:
        return None
    img_array = np.frombuffer(image_bytes, np.uint8)
    frame = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
    if frame is None:
        return None
    return cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)


def _detect_faces(gray):
    """
    Returns:
      list of ((x, y, w, h), weight) sorted largest first
    """
    faces, _, weights = FACE_CASCADE.detectMultiScale3(
        gray,
        scaleFactor=1.2,
        minNeighbors=5,
        minSize=(80, 80),
        outputRejectLevels=True,
    )
    if len(faces) == 0:
        return []
    flat_weights = np.ravel(np.asarray(weights, dtype=float))
    pairs = [(tuple(int(v) for v in box), float(w)) for box, w in zip(faces, flat_weights)]
    return sorted(pairs, key=lambda p: p[0][2] * p[0][3], reverse=True)


def _crop_face(gray, box):
    x, y, w, h = box
    face = gray[y:y + h, x:x + w]
    return cv2.resize(face, (FACE_SIZE, FACE_SIZE))


def _weight_to_confidence(weight: float) -> float:
    # Cascade level weights are unbounded; squash them into 0-100.
    return float(100.0 * (1.0 - math.exp(-max(weight, 0.0))))


def _estimate_pose(face) -> tuple[float, float, float, int]:
    """
    Rough head pose from the eye line.

    Returns:
      (yaw, pitch, roll, eyes_found)
    """
    upper = face[0:int(FACE_SIZE * 0.55), :]
    eyes = EYE_CASCADE.detectMultiScale(upper, scaleFactor=1.1, minNeighbors=6, minSize=(20, 20))
    eyes_found = len(eyes)
    if eyes_found < 2:
        return 0.0, 0.0, 0.0, eyes_found

    pair = sorted(eyes, key=lambda r: r[2] * r[3], reverse=True)[:2]
    (x1, y1, w1, h1), (x2, y2, w2, h2) = sorted(pair, key=lambda r: r[0])
    cx1, cy1 = x1 + w1 / 2.0, y1 + h1 / 2.0
    cx2, cy2 = x2 + w2 / 2.0, y2 + h2 / 2.0

    half = FACE_SIZE / 2.0
    mid_x = (cx1 + cx2) / 2.0
    mid_y = (cy1 + cy2) / 2.0
    yaw = ((mid_x - half) / half) * 60.0
    pitch = ((FACE_SIZE * NEUTRAL_EYE_LINE - mid_y) / FACE_SIZE) * 120.0
    roll = math.degrees(math.atan2(cy2 - cy1, cx2 - cx1))
    return float(yaw), float(pitch), float(roll), eyes_found


def _detect_smile(face) -> int:
    lower = face[int(FACE_SIZE * 0.6):, :]
    smiles = SMILE_CASCADE.detectMultiScale(lower, scaleFactor=1.7, minNeighbors=22, minSize=(25, 25))
    return len(smiles)


class OpenCVFaceOracle:
    """
    Offline oracle built on OpenCV Haar cascades and LBPH.

    Pose, smile and eye signals are geometric heuristics; they are good
    enough for a kiosk or dev setup and the thresholds that judge them live
    in the verification policy, not here.
    """

    def __init__(self, blob_store: LocalBlobStore, *, distance_scale: float = LBPH_DISTANCE_SCALE):
        missing = _missing_cascades()
        if missing:
            logger.error("Haar cascades failed to load from %s: %s", CASCADE_DIR, ", ".join(missing))
            raise OracleUnavailableError(f"Haar cascades not loaded: {', '.join(missing)}")
        self.blob_store = blob_store
        self.distance_scale = distance_scale

    async def detect_face(self, image_bytes: bytes) -> FaceDetection:
        return await run_in_threadpool(self._detect_sync, image_bytes)

    async def compare_faces(self, reference_key: str, image_bytes: bytes, threshold: float) -> FaceComparison:
        return await run_in_threadpool(self._compare_sync, reference_key, image_bytes, threshold)

    def _detect_sync(self, image_bytes: bytes) -> FaceDetection:
        gray = _decode_gray(image_bytes)
        if gray is None:
            raise InvalidImageError("Capture is not a decodable image.")

        try:
            faces = _detect_faces(gray)
            if len(faces) != 1:
                return FaceDetection(face_count=len(faces))

            box, weight = faces[0]
            face = _crop_face(gray, box)

            brightness = float(face.mean()) / 255.0 * 100.0
            blur_score = float(cv2.Laplacian(face, cv2.CV_64F).var())
            sharpness = min(100.0, blur_score / 5.0)

            yaw, pitch, roll, eyes_found = _estimate_pose(face)
            smiles = _detect_smile(face)
        except cv2.error as exc:
            raise OracleUnavailableError(f"OpenCV detection failed: {exc}") from exc

        eyes_open = eyes_found >= 2
        detection = FaceDetection(
            face_count=1,
            confidence=_weight_to_confidence(weight),
            brightness=brightness,
            sharpness=sharpness,
            yaw=yaw,
            pitch=pitch,
            roll=roll,
            smile=smiles > 0,
            smile_confidence=min(100.0, 60.0 + 10.0 * smiles) if smiles else 0.0,
            eyes_open=eyes_open,
            eyes_open_confidence=90.0 if eyes_open else (50.0 if eyes_found == 1 else 0.0),
        )
        logger.debug("Face detected: %s", detection)
        return detection

    def _load_reference_face(self, reference_key: str):
        try:
            raw = self.blob_store.get(reference_key)
        except (BlobNotFoundError, ValueError) as exc:
            raise ReferenceNotFoundError(f"Reference image not found: {reference_key}") from exc

        gray = _decode_gray(raw)
        if gray is None:
            raise ReferenceNotFoundError(f"Reference image is corrupt: {reference_key}")
        faces = _detect_faces(gray)
        if not faces:
            raise ReferenceNotFoundError(f"Reference image has no face: {reference_key}")
        return _crop_face(gray, faces[0][0])

    def _compare_sync(self, reference_key: str, image_bytes: bytes, threshold: float) -> FaceComparison:
        gray = _decode_gray(image_bytes)
        if gray is None:
            raise InvalidImageError("Capture is not a decodable image.")

        try:
            reference = self._load_reference_face(reference_key)
            faces = _detect_faces(gray)
            if not faces:
                return FaceComparison(matched=False, similarity=0.0)
            captured = _crop_face(gray, faces[0][0])

            recognizer = cv2.face.LBPHFaceRecognizer_create()
            recognizer.train([reference], np.array([0]))
            _, distance = recognizer.predict(captured)
        except cv2.error as exc:
            raise OracleUnavailableError(f"OpenCV comparison failed: {exc}") from exc

        # LBPH: lower distance = better match
        similarity = min(100.0, max(0.0, 100.0 - float(distance) * self.distance_scale))
        return FaceComparison(matched=similarity >= threshold, similarity=similarity)
