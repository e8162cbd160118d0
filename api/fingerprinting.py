import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from decoder import DecoderConfig, decode
from errors import FingerprintCancelled
from landmarks import ExtractorConfig, LandmarkExtractor
from matches import DuplicateMatchManager
from models import DuplicateCandidate, DuplicateCheckResult, DuplicateMatch, Fingerprint
from similarity import DEFAULT_THRESHOLD, compare_all, filter_matches
from store import FingerprintStore

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    fingerprint: Fingerprint
    duplicates: DuplicateCheckResult
    matches: list[DuplicateMatch] = field(default_factory=list)


class FingerprintingService:
    """Caller-facing fingerprinting and duplicate detection.

    Generating and storing a fingerprint either succeed or raise. Duplicate
    detection is advisory: check_for_duplicates and create_duplicate_matches
    log their failures and never raise, so they cannot make an upload fail.
    """

    def __init__(
        self,
        store: FingerprintStore,
        decoder_config: DecoderConfig = DecoderConfig(),
        extractor_config: ExtractorConfig = ExtractorConfig(),
        compare_workers: int = 1,
    ):
        self.store = store
        self.decoder_config = decoder_config
        self.extractor = LandmarkExtractor(extractor_config)
        self.matches = DuplicateMatchManager(store)
        self.compare_workers = compare_workers

    def generate_fingerprint(self, audio_bytes: bytes, cancel_event: Optional[threading.Event] = None) -> Fingerprint:
        """Decode and fingerprint raw audio. Raises DecodeError or ExtractionError."""
        logger.info("Starting fingerprint generation...")
        stream = decode(audio_bytes, self.decoder_config)
        return self.extractor.extract(stream, cancel_event)

    def store_fingerprint(self, track_id: str, fingerprint: Fingerprint) -> None:
        if not fingerprint.landmarks:
            raise ValueError("Refusing to store a fingerprint with no landmarks")
        self.store.save_fingerprint(track_id, fingerprint)

    def check_for_duplicates(
        self,
        fingerprint: Fingerprint,
        threshold: float = DEFAULT_THRESHOLD,
        exclude_track_id: Optional[str] = None,
    ) -> DuplicateCheckResult:
        logger.info("Checking for duplicates...")
        try:
            corpus = self.store.get_all_fingerprints()
            owners = {e.track_id: e for e in corpus}
            results = compare_all(
                fingerprint,
                [(e.track_id, e.data) for e in corpus],
                workers=self.compare_workers,
                exclude_track_id=exclude_track_id,
            )
            matches = [
                DuplicateCandidate(
                    track_id=r.track_id,
                    title=owners[r.track_id].title,
                    artist=owners[r.track_id].artist,
                    similarity=r.similarity,
                    matching_landmarks=r.matching_landmarks,
                )
                for r in filter_matches(results, threshold)
            ]
        except Exception as e:
            # Duplicate detection must never block an upload
            logger.error(f"Duplicate check failed: {e}", exc_info=True)
            return DuplicateCheckResult(matches=[], threshold=threshold)

        logger.info(f"Found {len(matches)} potential duplicates (threshold {threshold})")
        return DuplicateCheckResult(matches=matches, threshold=threshold)

    def create_duplicate_matches(self, candidate_track_id: str, matches: list[DuplicateCandidate]) -> list[DuplicateMatch]:
        try:
            return self.matches.create_matches(candidate_track_id, matches)
        except Exception as e:
            logger.error(f"Failed to create duplicate matches for track {candidate_track_id}: {e}", exc_info=True)
            return []

    def process_upload(
        self,
        track_id: str,
        audio_bytes: bytes,
        threshold: float = DEFAULT_THRESHOLD,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """Fingerprint an upload, persist it, then look for duplicates.

        Storing before the scan means two copies processed at the same time
        still see each other: whichever scans last finds the other's row. The
        upload's own row is excluded from its scan. A failed store raises
        StorageError; a failed scan leaves the upload intact with zero
        duplicates.
        """
        fingerprint = self.generate_fingerprint(audio_bytes, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise FingerprintCancelled("Fingerprinting cancelled")
        self.store_fingerprint(track_id, fingerprint)
        duplicates = self.check_for_duplicates(fingerprint, threshold, exclude_track_id=track_id)
        created = self.create_duplicate_matches(track_id, duplicates.matches) if duplicates.matches else []
        return UploadResult(fingerprint=fingerprint, duplicates=duplicates, matches=created)
