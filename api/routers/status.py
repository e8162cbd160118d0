import logging

from fastapi import APIRouter, HTTPException

from database import db
from models import MatchStatus

logger = logging.getLogger(__name__)
router = APIRouter()

TRACK_STATUSES = ("pending", "processing", "ready", "failed")

_TRACK_FIELDS = (
    "id",
    "title",
    "artist",
    "submitter",
    "duration_s",
    "landmark_count",
    "status",
    "error_msg",
    "submitted_at",
    "ready_at",
)


def _track_to_dict(row) -> dict:
    return {name: row[name] for name in _TRACK_FIELDS}


@router.get("/library")
def get_library(status: str | None = None):
    """Tracks newest first, optionally only those in one processing state."""
    if status is not None and status not in TRACK_STATUSES:
        raise HTTPException(400, f"status must be one of {', '.join(TRACK_STATUSES)}")
    query = "SELECT * FROM tracks"
    params: tuple = ()
    if status is not None:
        query += " WHERE status=?"
        params = (status,)
    with db() as conn:
        rows = conn.execute(query + " ORDER BY submitted_at DESC", params).fetchall()
    return {"tracks": [_track_to_dict(r) for r in rows]}


@router.get("/stats")
def get_stats():
    with db() as conn:
        by_status = {
            r["status"]: r["n"]
            for r in conn.execute("SELECT status, COUNT(*) AS n FROM tracks GROUP BY status").fetchall()
        }
        fingerprints = conn.execute(
            "SELECT COUNT(*) AS n, COALESCE(SUM(landmark_count), 0) AS landmarks FROM fingerprints"
        ).fetchone()
        by_match_status = {
            r["status"]: r["n"]
            for r in conn.execute("SELECT status, COUNT(*) AS n FROM duplicate_matches GROUP BY status").fetchall()
        }
    return {
        "tracks": {s: by_status.get(s, 0) for s in TRACK_STATUSES},
        "fingerprints": fingerprints["n"],
        "landmarks": fingerprints["landmarks"],
        "matches": {s.value: by_match_status.get(s.value, 0) for s in MatchStatus},
    }


@router.get("/track/{track_id}")
def get_track(track_id: str):
    """Single track, for polling an upload until its fingerprint is ready."""
    with db() as conn:
        row = conn.execute("SELECT * FROM tracks WHERE id=?", (track_id,)).fetchone()
        if not row:
            raise HTTPException(404, "Track not found")
        pending = conn.execute(
            "SELECT COUNT(*) AS n FROM duplicate_matches WHERE candidate_track_id=? AND status=?",
            (track_id, MatchStatus.PENDING.value),
        ).fetchone()["n"]
    track = _track_to_dict(row)
    track["pending_duplicates"] = pending
    return track
