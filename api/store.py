import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Protocol

from database import db
from errors import StorageError
from models import DuplicateMatch, Fingerprint, MatchStatus, StoredFingerprint

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class FingerprintStore(Protocol):
    """Persistence contract the fingerprinting core relies on."""

    def get_all_fingerprints(self) -> list[StoredFingerprint]: ...

    def save_fingerprint(self, track_id: str, fingerprint: Fingerprint) -> None: ...

    def track_exists(self, track_id: str) -> bool: ...

    def create_match(self, match: DuplicateMatch) -> None: ...

    def get_match(self, match_id: str) -> Optional[DuplicateMatch]: ...

    def find_matches_for_track(self, track_id: str) -> list[DuplicateMatch]: ...

    def find_pending_matches(self) -> list[DuplicateMatch]: ...

    def update_match_status(
        self, match_id: str, status: MatchStatus, reviewer_id: str, note: Optional[str] = None
    ) -> Optional[DuplicateMatch]: ...


def _row_to_match(row) -> DuplicateMatch:
    return DuplicateMatch(
        id=row["id"],
        original_track_id=row["original_track_id"],
        candidate_track_id=row["candidate_track_id"],
        similarity=row["similarity"],
        matching_landmarks=row["matching_landmarks"],
        status=MatchStatus(row["status"]),
        created_at=row["created_at"],
        reviewer_id=row["reviewer_id"],
        reviewed_at=row["reviewed_at"],
        resolution_note=row["resolution_note"],
    )


class SQLiteFingerprintStore:
    def __init__(self, db_path: Optional[str] = None):
        self.db_path = db_path

    @contextmanager
    def _conn(self, action: str):
        """db() connection with sqlite failures surfaced as StorageError."""
        try:
            with db(self.db_path) as conn:
                yield conn
        except sqlite3.Error as e:
            raise StorageError(f"Failed to {action}: {e}") from e

    def get_all_fingerprints(self) -> list[StoredFingerprint]:
        with self._conn("load fingerprints") as conn:
            rows = conn.execute(
                """
                SELECT f.track_id, f.data, t.title, t.artist
                FROM fingerprints f
                JOIN tracks t ON f.track_id = t.id
                ORDER BY f.created_at ASC
                """
            ).fetchall()
        return [
            StoredFingerprint(track_id=r["track_id"], title=r["title"], artist=r["artist"], data=r["data"])
            for r in rows
        ]

    def save_fingerprint(self, track_id: str, fingerprint: Fingerprint) -> None:
        with self._conn(f"store fingerprint for track {track_id}") as conn:
            conn.execute(
                """
                INSERT INTO fingerprints (track_id, data, landmark_count, duration_s, sample_rate, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    track_id,
                    fingerprint.to_json(),
                    len(fingerprint.landmarks),
                    fingerprint.duration_s,
                    fingerprint.sample_rate,
                    _now(),
                ),
            )
        logger.info(f"Fingerprint stored for track {track_id}")

    def get_fingerprint(self, track_id: str) -> Optional[Fingerprint]:
        with self._conn(f"load fingerprint for track {track_id}") as conn:
            row = conn.execute("SELECT data FROM fingerprints WHERE track_id=?", (track_id,)).fetchone()
        return Fingerprint.from_json(row["data"]) if row else None

    def track_exists(self, track_id: str) -> bool:
        with self._conn(f"look up track {track_id}") as conn:
            return conn.execute("SELECT 1 FROM tracks WHERE id=?", (track_id,)).fetchone() is not None

    def create_match(self, match: DuplicateMatch) -> None:
        with self._conn(f"create duplicate match {match.id}") as conn:
            conn.execute(
                """
                INSERT INTO duplicate_matches
                    (id, original_track_id, candidate_track_id, similarity,
                     matching_landmarks, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    match.id,
                    match.original_track_id,
                    match.candidate_track_id,
                    match.similarity,
                    match.matching_landmarks,
                    match.status.value,
                    match.created_at,
                ),
            )

    def get_match(self, match_id: str) -> Optional[DuplicateMatch]:
        with self._conn(f"load duplicate match {match_id}") as conn:
            row = conn.execute("SELECT * FROM duplicate_matches WHERE id=?", (match_id,)).fetchone()
        return _row_to_match(row) if row else None

    def find_matches_for_track(self, track_id: str) -> list[DuplicateMatch]:
        with self._conn(f"load duplicate matches for track {track_id}") as conn:
            rows = conn.execute(
                """
                SELECT * FROM duplicate_matches
                WHERE original_track_id=? OR candidate_track_id=?
                ORDER BY created_at DESC, rowid DESC
                """,
                (track_id, track_id),
            ).fetchall()
        return [_row_to_match(r) for r in rows]

    def find_pending_matches(self) -> list[DuplicateMatch]:
        with self._conn("load pending duplicate matches") as conn:
            rows = conn.execute(
                "SELECT * FROM duplicate_matches WHERE status=? ORDER BY created_at DESC, rowid DESC",
                (MatchStatus.PENDING.value,),
            ).fetchall()
        return [_row_to_match(r) for r in rows]

    def update_match_status(
        self, match_id: str, status: MatchStatus, reviewer_id: str, note: Optional[str] = None
    ) -> Optional[DuplicateMatch]:
        with self._conn(f"review duplicate match {match_id}") as conn:
            cur = conn.execute(
                """
                UPDATE duplicate_matches
                SET status=?, reviewer_id=?, reviewed_at=?, resolution_note=?
                WHERE id=?
                """,
                (status.value, reviewer_id, _now(), note, match_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM duplicate_matches WHERE id=?", (match_id,)).fetchone()
        return _row_to_match(row)
