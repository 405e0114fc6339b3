import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from attendance_api.config import (
    BLOB_DIR,
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_DIR,
    LOG_LEVEL,
)
from attendance_api.logging_config import setup_logging
from attendance_api.routers import attendance, auth, core, sessions, students
from attendance_db.db import create_tables
from face_oracle.blob_store import LocalBlobStore
from face_oracle.opencv_oracle import OpenCVFaceOracle

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(LOG_LEVEL, LOG_DIR)
    create_tables()

    blob_store = LocalBlobStore(BLOB_DIR)
    app.state.blob_store = blob_store
    app.state.oracle = OpenCVFaceOracle(blob_store)
    logger.info("Attendance API started (blob store at %s)", BLOB_DIR)
    yield
    logger.info("Attendance API shutting down")


app = FastAPI(title="Attendance Verification API", lifespan=lifespan)

# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(students.router)
app.include_router(sessions.router)
app.include_router(attendance.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("attendance_api.main:app", host="0.0.0.0", port=8000)
