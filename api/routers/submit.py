import logging
import os
import uuid
from datetime import datetime, timezone

from database import db
from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)
router = APIRouter()

MEDIA_DIR = os.environ.get("MEDIA_DIR", "/media")
ALLOWED_EXTENSIONS = {".mp3", ".wav", ".flac", ".m4a", ".ogg", ".opus"}
MAX_FILE_SIZE = 200 * 1024 * 1024  # 200MB
MAX_PENDING_PER_SUBMITTER = 5
READ_CHUNK = 64 * 1024


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_track_and_job(conn, track_id: str, title: str, artist: str, submitter: str):
    """Register an uploaded track and queue it for fingerprinting."""
    submitted_at = _now()
    conn.execute(
        """
        INSERT INTO tracks (id, title, artist, submitter, status, submitted_at)
        VALUES (?, ?, ?, ?, 'pending', ?)
        """,
        (track_id, title, artist, submitter, submitted_at),
    )
    conn.execute(
        "INSERT INTO jobs (track_id, status, created_at) VALUES (?, 'pending', ?)",
        (track_id, submitted_at),
    )


def _unfinished_uploads(submitter: str) -> int:
    with db() as conn:
        return conn.execute(
            "SELECT COUNT(*) FROM tracks WHERE submitter=? AND status IN ('pending', 'processing')",
            (submitter,),
        ).fetchone()[0]


async def _save_upload(file: UploadFile, dest: str) -> int:
    """Stream the upload to dest. Removes the partial file and raises 413 past MAX_FILE_SIZE."""
    size = 0
    with open(dest, "wb") as f_out:
        while chunk := await file.read(READ_CHUNK):
            size += len(chunk)
            if size > MAX_FILE_SIZE:
                break
            f_out.write(chunk)
    if size > MAX_FILE_SIZE:
        os.unlink(dest)
        raise HTTPException(413, "File too large (max 200MB)")
    return size


@router.post("/submit")
async def submit_track(
    submitter: str = Form(...),
    title: str = Form(None),
    artist: str = Form(None),
    file: UploadFile = File(...),
):
    submitter = (submitter or "").strip()[:50]
    if not submitter:
        raise HTTPException(400, "submitter is required")

    pending = _unfinished_uploads(submitter)
    if pending >= MAX_PENDING_PER_SUBMITTER:
        raise HTTPException(
            429,
            f"You already have {pending} songs being fingerprinted. Please wait for them to finish before adding more.",
        )

    if not file.filename:
        raise HTTPException(400, "file is required")
    stem, ext = os.path.splitext(file.filename)
    ext = ext.lower()
    if ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(400, f"Unsupported file type: {ext or 'none'}")

    track_id = str(uuid.uuid4())
    raw_dir = os.path.join(MEDIA_DIR, "raw")
    os.makedirs(raw_dir, exist_ok=True)
    dest = os.path.join(raw_dir, f"{track_id}{ext}")

    if await _save_upload(file, dest) == 0:
        os.unlink(dest)
        raise HTTPException(400, "Uploaded file is empty")

    with db() as conn:
        create_track_and_job(conn, track_id, (title or stem)[:200], (artist or submitter)[:200], submitter)

    logger.info(f"Upload queued for fingerprinting: track_id={track_id} file={dest}")
    return JSONResponse({"track_id": track_id, "status": "pending"})
