import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from errors import NotFoundError
from models import TERMINAL_STATUSES, DuplicateCandidate, DuplicateMatch, MatchStatus
from store import FingerprintStore

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DuplicateMatchManager:
    """Lifecycle of detected duplicates: created PENDING, then reviewed.

    A review moves a match to one of the terminal statuses. Reviewing an
    already reviewed match overwrites the previous decision.
    """

    def __init__(self, store: FingerprintStore):
        self.store = store

    def create_matches(self, candidate_track_id: str, matches: Iterable[DuplicateCandidate]) -> list[DuplicateMatch]:
        created = []
        for m in matches:
            record = DuplicateMatch(
                id=str(uuid.uuid4()),
                original_track_id=m.track_id,
                candidate_track_id=candidate_track_id,
                similarity=m.similarity,
                matching_landmarks=m.matching_landmarks,
                status=MatchStatus.PENDING,
                created_at=_now(),
            )
            self.store.create_match(record)
            created.append(record)
        logger.info(f"Created {len(created)} duplicate match records for track {candidate_track_id}")
        return created

    def review(
        self,
        match_id: str,
        new_status: Union[MatchStatus, str],
        reviewer_id: str,
        note: Optional[str] = None,
    ) -> DuplicateMatch:
        try:
            status = MatchStatus(new_status)
        except ValueError:
            raise ValueError(f"Unknown match status: {new_status}") from None
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"A review must set one of {', '.join(s.value for s in TERMINAL_STATUSES)}")

        updated = self.store.update_match_status(match_id, status, reviewer_id, note)
        if updated is None:
            raise NotFoundError(f"Duplicate match {match_id} not found")
        logger.info(f"Match {match_id} reviewed by {reviewer_id}: {status.value}")
        return updated

    def get(self, match_id: str) -> DuplicateMatch:
        match = self.store.get_match(match_id)
        if match is None:
            raise NotFoundError(f"Duplicate match {match_id} not found")
        return match

    def matches_for_track(self, track_id: str) -> list[DuplicateMatch]:
        if not self.store.track_exists(track_id):
            raise NotFoundError(f"Track {track_id} not found")
        return self.store.find_matches_for_track(track_id)

    def pending_matches(self) -> list[DuplicateMatch]:
        return self.store.find_pending_matches()
