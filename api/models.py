import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


def _as_int(value) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected an integer, got {value!r}")
    if isinstance(value, float) and not (math.isfinite(value) and value.is_integer()):
        raise ValueError(f"expected an integer, got {value!r}")
    return int(value)


@dataclass
class Track:
    id: str
    title: str
    artist: str
    submitter: str
    file_path: Optional[str]
    duration_s: Optional[float]
    landmark_count: Optional[int]
    status: str  # 'pending' | 'processing' | 'ready' | 'failed'
    error_msg: Optional[str]
    submitted_at: str
    ready_at: Optional[str]


@dataclass
class Job:
    id: int
    track_id: str
    status: str  # 'pending' | 'processing' | 'done' | 'failed'
    created_at: str
    started_at: Optional[str]
    finished_at: Optional[str]
    error_msg: Optional[str]


@dataclass(frozen=True)
class Landmark:
    time: int  # anchor frame index
    frequency_zone: int  # anchor_band * n_bands + target_band
    spectral_peak: int  # packed (anchor_bin, target_bin, frame_delta)

    def key(self) -> tuple[int, int, int]:
        return (self.time, self.frequency_zone, self.spectral_peak)


@dataclass
class Fingerprint:
    landmarks: list[Landmark]
    duration_s: float
    sample_rate: int

    def to_json(self) -> str:
        return json.dumps(
            {
                "landmarks": [list(lm.key()) for lm in self.landmarks],
                "duration_s": self.duration_s,
                "sample_rate": self.sample_rate,
            },
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, data: str) -> "Fingerprint":
        """Parse the at-rest representation. Raises ValueError on malformed input."""
        try:
            obj = json.loads(data)
            landmarks = [Landmark(_as_int(t), _as_int(z), _as_int(p)) for t, z, p in obj["landmarks"]]
            duration_s = float(obj["duration_s"])
            if not math.isfinite(duration_s):
                raise ValueError(f"duration_s is not finite: {duration_s}")
            return cls(landmarks=landmarks, duration_s=duration_s, sample_rate=_as_int(obj["sample_rate"]))
        except (KeyError, TypeError, ValueError, OverflowError) as e:
            raise ValueError(f"Malformed fingerprint data: {e}") from e


@dataclass
class StoredFingerprint:
    track_id: str
    title: str
    artist: str
    data: str  # Fingerprint.to_json() output, parsed lazily


@dataclass
class SimilarityResult:
    track_id: str
    similarity: float  # 0-100, two decimals
    matching_landmarks: int


@dataclass
class DuplicateCandidate:
    track_id: str
    title: str
    artist: str
    similarity: float
    matching_landmarks: int


@dataclass
class DuplicateCheckResult:
    matches: list[DuplicateCandidate] = field(default_factory=list)
    threshold: float = 80.0


class MatchStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED_DUPLICATE = "CONFIRMED_DUPLICATE"
    FALSE_POSITIVE = "FALSE_POSITIVE"
    REMIX = "REMIX"


TERMINAL_STATUSES = (MatchStatus.CONFIRMED_DUPLICATE, MatchStatus.FALSE_POSITIVE, MatchStatus.REMIX)


@dataclass
class DuplicateMatch:
    id: str
    original_track_id: str
    candidate_track_id: str
    similarity: float
    matching_landmarks: int
    status: MatchStatus
    created_at: str
    reviewer_id: Optional[str] = None
    reviewed_at: Optional[str] = None
    resolution_note: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "original_track_id": self.original_track_id,
            "candidate_track_id": self.candidate_track_id,
            "similarity": self.similarity,
            "matching_landmarks": self.matching_landmarks,
            "status": self.status.value,
            "created_at": self.created_at,
            "reviewer_id": self.reviewer_id,
            "reviewed_at": self.reviewed_at,
            "resolution_note": self.resolution_note,
        }
