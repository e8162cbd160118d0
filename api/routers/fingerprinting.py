import logging

from errors import NotFoundError
from fastapi import APIRouter, Depends, HTTPException
from matches import DuplicateMatchManager
from worker import get_service

logger = logging.getLogger(__name__)
router = APIRouter()


def get_manager() -> DuplicateMatchManager:
    return get_service().matches


@router.get("/fingerprinting/matches/{track_id}")
def get_matches(track_id: str, manager: DuplicateMatchManager = Depends(get_manager)):
    """Duplicate matches where the track is either the original or the candidate."""
    try:
        matches = manager.matches_for_track(track_id)
    except NotFoundError:
        raise HTTPException(404, "Track not found")
    return {"matches": [m.to_dict() for m in matches]}


@router.get("/fingerprinting/pending")
def get_pending_matches(manager: DuplicateMatchManager = Depends(get_manager)):
    return {"matches": [m.to_dict() for m in manager.pending_matches()]}
