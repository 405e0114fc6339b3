from fastapi import HTTPException, Request

from attendance_api.challenges import VerificationPolicy
from face_oracle.blob_store import LocalBlobStore
from face_oracle.contract import FaceOracle


def get_oracle(request: Request) -> FaceOracle:
    oracle = getattr(request.app.state, "oracle", None)
    if oracle is None:
        raise HTTPException(status_code=503, detail="Face verification is not available.")
    return oracle


def get_blob_store(request: Request) -> LocalBlobStore:
    blob_store = getattr(request.app.state, "blob_store", None)
    if blob_store is None:
        raise HTTPException(status_code=503, detail="Blob storage is not available.")
    return blob_store


def get_policy() -> VerificationPolicy:
    return VerificationPolicy.from_config()
