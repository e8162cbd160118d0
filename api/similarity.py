"""Set-similarity between fingerprints.

Fingerprints are compared as sets of landmark keys (time, frequency zone,
spectral peak) using the Jaccard index, expressed as a percentage rounded to
two decimals. The anchor time is part of the key, so two otherwise identical
recordings that differ by a lead-in or trim only match on the overlapping,
identically aligned landmarks.

Comparisons against the stored corpus are best effort: a stored fingerprint
that cannot be parsed or compared is logged and skipped, and the scan carries
on with the remaining entries.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, Optional, Union

from errors import ComparisonError
from models import Fingerprint, Landmark, SimilarityResult

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 80.0

CorpusEntry = tuple[str, Union[Fingerprint, str]]


def landmark_key(landmark: Landmark) -> tuple[int, int, int]:
    return (landmark.time, landmark.frequency_zone, landmark.spectral_peak)


def landmark_set(fingerprint: Fingerprint) -> frozenset:
    return frozenset(landmark_key(lm) for lm in fingerprint.landmarks)


def _jaccard(a: frozenset, b: frozenset) -> tuple[float, int]:
    if not a or not b:
        return 0.0, 0
    shared = len(a & b)
    union = len(a) + len(b) - shared
    return round(shared / union * 100.0, 2), shared


def compare_one(a: Fingerprint, b: Fingerprint) -> float:
    """Jaccard similarity in percent. Either fingerprint empty gives 0."""
    similarity, _ = _jaccard(landmark_set(a), landmark_set(b))
    return similarity


def count_matching_landmarks(a: Fingerprint, b: Fingerprint) -> int:
    return len(landmark_set(a) & landmark_set(b))


def _entry_set(entry: Union[Fingerprint, str]) -> frozenset:
    try:
        fingerprint = Fingerprint.from_json(entry) if isinstance(entry, (str, bytes)) else entry
        return landmark_set(fingerprint)
    except Exception as e:
        raise ComparisonError(f"{type(e).__name__}: {e}") from e


def _compare_entry(candidate: frozenset, track_id: str, entry: Union[Fingerprint, str]) -> Optional[SimilarityResult]:
    stored = _entry_set(entry)
    if not stored:
        return None
    try:
        similarity, shared = _jaccard(candidate, stored)
    except Exception as e:
        raise ComparisonError(f"{type(e).__name__}: {e}") from e
    return SimilarityResult(track_id=track_id, similarity=similarity, matching_landmarks=shared)


def _scan(candidate: frozenset, corpus: list[CorpusEntry], exclude_track_id: Optional[str]) -> list[SimilarityResult]:
    results = []
    for track_id, entry in corpus:
        if track_id == exclude_track_id:
            continue
        try:
            result = _compare_entry(candidate, track_id, entry)
        except ComparisonError as e:
            logger.warning(f"Skipping stored fingerprint for track {track_id}: {e}")
            continue
        if result is not None:
            results.append(result)
    return results


def rank(results: Iterable[SimilarityResult]) -> list[SimilarityResult]:
    return sorted(results, key=lambda r: (-r.similarity, -r.matching_landmarks, r.track_id))


def compare_all(
    candidate: Fingerprint,
    corpus: Iterable[CorpusEntry],
    workers: int = 1,
    exclude_track_id: Optional[str] = None,
) -> list[SimilarityResult]:
    """Score the candidate against every stored fingerprint, best match first.

    The corpus is only read, so with workers > 1 it is split into contiguous
    partitions scanned on a thread pool and the partial results are merged.
    """
    candidate_set = landmark_set(candidate)
    corpus = list(corpus)
    if workers <= 1 or len(corpus) < 2:
        return rank(_scan(candidate_set, corpus, exclude_track_id))

    size = -(-len(corpus) // workers)
    partitions = [corpus[i : i + size] for i in range(0, len(corpus), size)]
    with ThreadPoolExecutor(max_workers=len(partitions), thread_name_prefix="compare") as pool:
        parts = pool.map(lambda part: _scan(candidate_set, part, exclude_track_id), partitions)
        merged = [r for part in parts for r in part]
    return rank(merged)


def filter_matches(results: Iterable[SimilarityResult], threshold: float = DEFAULT_THRESHOLD) -> list[SimilarityResult]:
    return [r for r in results if r.similarity >= threshold]
