import logging
import os

from database import db, get_config, set_config
from errors import NotFoundError
from fastapi import APIRouter, Depends, Header, HTTPException
from matches import DuplicateMatchManager
from pydantic import BaseModel
from routers.fingerprinting import get_manager
from worker import cancel_job, find_upload

logger = logging.getLogger(__name__)
router = APIRouter()

ADMIN_TOKEN = os.environ.get("ADMIN_TOKEN", "")


def require_admin(x_admin_token: str = Header(None)):
    if not ADMIN_TOKEN:
        raise HTTPException(500, "ADMIN_TOKEN not configured")
    if x_admin_token != ADMIN_TOKEN:
        raise HTTPException(403, "Invalid admin token")


class ConfigUpdate(BaseModel):
    duplicate_threshold: float | None = None


class ReviewRequest(BaseModel):
    status: str
    reviewer_id: str
    note: str | None = None


@router.get("/admin/config")
def get_admin_config(auth=Depends(require_admin)):
    return {
        "duplicate_threshold": float(get_config("duplicate_threshold")),
    }


@router.post("/admin/config")
def update_admin_config(update: ConfigUpdate, auth=Depends(require_admin)):
    if update.duplicate_threshold is not None:
        if not (0 <= update.duplicate_threshold <= 100):
            raise HTTPException(400, "duplicate_threshold must be 0-100")
        set_config("duplicate_threshold", str(update.duplicate_threshold))
        logger.info(f"Duplicate threshold set to: {update.duplicate_threshold}")

    return {"ok": True}


@router.get("/admin/duplicates")
def list_pending_duplicates(auth=Depends(require_admin), manager: DuplicateMatchManager = Depends(get_manager)):
    """Pending duplicate matches with both tracks' details, newest first."""
    matches = manager.pending_matches()
    track_ids = {m.original_track_id for m in matches} | {m.candidate_track_id for m in matches}
    tracks = {}
    if track_ids:
        q_marks = ",".join("?" for _ in track_ids)
        with db() as conn:
            rows = conn.execute(
                f"SELECT id, title, artist, submitter FROM tracks WHERE id IN ({q_marks})",
                list(track_ids),
            ).fetchall()
        tracks = {r["id"]: dict(r) for r in rows}

    out = []
    for m in matches:
        item = m.to_dict()
        item["original_track"] = tracks.get(m.original_track_id)
        item["candidate_track"] = tracks.get(m.candidate_track_id)
        out.append(item)
    return {"matches": out}


@router.post("/admin/duplicates/{match_id}/review")
def review_duplicate(
    match_id: str,
    req: ReviewRequest,
    auth=Depends(require_admin),
    manager: DuplicateMatchManager = Depends(get_manager),
):
    try:
        match = manager.review(match_id, req.status, req.reviewer_id.strip(), req.note)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except NotFoundError:
        raise HTTPException(404, "Duplicate match not found")
    return match.to_dict()


@router.delete("/admin/track/{track_id}")
def delete_track(track_id: str, auth=Depends(require_admin)):
    """Remove a track, its fingerprint and match records, and its uploaded file."""
    cancel_job(track_id)
    with db() as conn:
        row = conn.execute("SELECT id FROM tracks WHERE id=?", (track_id,)).fetchone()
        if not row:
            raise HTTPException(404, "Track not found")

        conn.execute(
            "DELETE FROM duplicate_matches WHERE original_track_id=? OR candidate_track_id=?",
            (track_id, track_id),
        )
        conn.execute("DELETE FROM fingerprints WHERE track_id=?", (track_id,))
        conn.execute("DELETE FROM jobs WHERE track_id=?", (track_id,))
        conn.execute("DELETE FROM tracks WHERE id=?", (track_id,))

    file_path = find_upload(track_id)
    if file_path:
        os.unlink(file_path)
        logger.info(f"Deleted file: {file_path}")

    logger.info(f"Deleted track: {track_id}")
    return {"ok": True}
