import logging
import math
import threading
from collections import deque
from dataclasses import dataclass
from typing import Iterable, Iterator, NamedTuple, Optional

import librosa  # ty: ignore[unresolved-import]
import numpy as np
from decoder import CANONICAL_SAMPLE_RATE, AudioStream
from errors import ExtractionError, FingerprintCancelled
from models import Fingerprint, Landmark

logger = logging.getLogger(__name__)

DEFAULT_BAND_EDGES = (200, 400, 800, 1600, 3200, 6400)


@dataclass(frozen=True)
class ExtractorConfig:
    frequency_band_edges: tuple = DEFAULT_BAND_EDGES
    sample_rate: int = CANONICAL_SAMPLE_RATE
    n_fft: int = 1024
    hop_length: int = 512
    fanout: int = 3  # max targets paired with each anchor
    min_dt: int = 1  # frames
    max_dt: int = 32  # frames (~0.74s at the defaults)
    floor_db: float = -30.0  # peaks below this are treated as silence
    mask_boost_db: float = 3.0
    mask_decay_db: float = 0.5  # per frame


class Peak(NamedTuple):
    frame: int
    band: int
    bin: int
    level: float


def pack_spectral_peak(anchor_bin: int, target_bin: int, dt: int) -> int:
    return ((anchor_bin & 0x3FF) << 18) | ((target_bin & 0x3FF) << 8) | (dt & 0xFF)


def unpack_spectral_peak(value: int) -> tuple[int, int, int]:
    return (value >> 18) & 0x3FF, (value >> 8) & 0x3FF, value & 0xFF


class LandmarkExtractor:
    """Streaming combinatorial-hash landmark extractor.

    Frames are analysed as they arrive. Each frequency band contributes at
    most one peak per frame, gated by a decaying masking threshold so that a
    sustained tone does not flood the fingerprint. Every peak is then paired
    with the next few peaks in other bands within a short target zone.
    """

    def __init__(self, config: ExtractorConfig = ExtractorConfig()):
        self.config = config
        edges = [float(e) for e in config.frequency_band_edges]
        if len(edges) < 2:
            raise ValueError("frequency_band_edges needs at least two edges")
        if any(hi <= lo for lo, hi in zip(edges, edges[1:])):
            raise ValueError("frequency_band_edges must be strictly increasing")
        if edges[-1] > config.sample_rate / 2:
            raise ValueError(f"Top band edge {edges[-1]} Hz is above Nyquist for {config.sample_rate} Hz")
        if config.hop_length <= 0 or config.hop_length > config.n_fft:
            raise ValueError("hop_length must be in (0, n_fft]")
        if config.max_dt < config.min_dt or config.min_dt < 1:
            raise ValueError("Need 1 <= min_dt <= max_dt")
        if config.max_dt > 0xFF:
            raise ValueError("max_dt does not fit the spectral_peak encoding")

        freqs = librosa.fft_frequencies(sr=config.sample_rate, n_fft=config.n_fft)
        self._bands: list[tuple[int, int]] = []
        for lo, hi in zip(edges, edges[1:]):
            idx = np.flatnonzero((freqs >= lo) & (freqs < hi))
            if idx.size == 0:
                raise ValueError(f"Band {lo}-{hi} Hz contains no FFT bins at n_fft={config.n_fft}")
            self._bands.append((int(idx[0]), int(idx[-1]) + 1))
        self._n_bins = freqs.shape[0]
        self._window = librosa.filters.get_window("hann", config.n_fft, fftbins=True)

    @property
    def n_bands(self) -> int:
        return len(self._bands)

    def _frames(self, blocks: Iterable[np.ndarray], cancel_event: Optional[threading.Event]) -> Iterator[np.ndarray]:
        """Yield one magnitude spectrum per frame, regardless of how blocks are sized."""
        n_fft = self.config.n_fft
        hop = self.config.hop_length
        buf = np.zeros(0, dtype=np.float64)
        for block in blocks:
            if cancel_event is not None and cancel_event.is_set():
                raise FingerprintCancelled("Fingerprinting cancelled")
            buf = np.concatenate([buf, np.asarray(block, dtype=np.float64) / 32768.0])
            if buf.shape[0] < n_fft:
                continue
            frames = librosa.util.frame(buf, frame_length=n_fft, hop_length=hop, axis=0)
            # One transform per frame keeps results bit-identical across chunkings
            for frame in frames:
                yield np.abs(np.fft.rfft(frame * self._window))
            buf = buf[frames.shape[0] * hop :].copy()

    def _peaks(self, spectra: Iterable[np.ndarray]) -> Iterator[list[Peak]]:
        cfg = self.config
        floor = 10.0 ** (cfg.floor_db / 20.0)
        mask = [-math.inf] * self.n_bands
        for frame_idx, mag in enumerate(spectra):
            picked = []
            for band, (lo, hi) in enumerate(self._bands):
                mask[band] -= cfg.mask_decay_db
                k = lo + int(np.argmax(mag[lo:hi]))
                value = float(mag[k])
                if value < floor:
                    continue
                if (k > 0 and value < mag[k - 1]) or (k + 1 < self._n_bins and value < mag[k + 1]):
                    continue
                level = 20.0 * math.log10(value)
                if level <= mask[band]:
                    continue
                mask[band] = level + cfg.mask_boost_db
                picked.append(Peak(frame_idx, band, k, level))
            yield picked

    def _pair(self, anchor: Peak, window: deque) -> list[Landmark]:
        cfg = self.config
        out = []
        for target in window:
            dt = target.frame - anchor.frame
            if dt < cfg.min_dt or target.band == anchor.band:
                continue
            if dt > cfg.max_dt or len(out) >= cfg.fanout:
                break
            out.append(
                Landmark(
                    time=anchor.frame,
                    frequency_zone=anchor.band * self.n_bands + target.band,
                    spectral_peak=pack_spectral_peak(anchor.bin, target.bin, dt),
                )
            )
        return out

    def iter_landmarks(
        self, blocks: Iterable[np.ndarray], cancel_event: Optional[threading.Event] = None
    ) -> Iterator[Landmark]:
        """Emit landmarks in anchor-time order as soon as each target zone is complete."""
        pending: deque = deque()
        for frame_idx, peaks in enumerate(self._peaks(self._frames(blocks, cancel_event))):
            pending.extend(peaks)
            while pending and pending[0].frame + self.config.max_dt < frame_idx:
                anchor = pending.popleft()
                yield from self._pair(anchor, pending)
        while pending:
            anchor = pending.popleft()
            yield from self._pair(anchor, pending)

    def extract(self, stream: AudioStream, cancel_event: Optional[threading.Event] = None) -> Fingerprint:
        if stream.sample_rate != self.config.sample_rate:
            raise ExtractionError(
                f"Stream sample rate {stream.sample_rate} Hz does not match extractor rate {self.config.sample_rate} Hz"
            )
        try:
            landmarks = list(self.iter_landmarks(stream, cancel_event))
        finally:
            stream.close()

        duration_s = stream.samples_read / float(stream.sample_rate)
        if not landmarks:
            raise ExtractionError(
                f"No landmarks generated from {duration_s:.2f}s of audio - it may be silent or too short"
            )

        logger.info(f"Fingerprint generated with {len(landmarks)} landmarks ({duration_s:.1f}s)")
        return Fingerprint(landmarks=landmarks, duration_s=round(duration_s, 3), sample_rate=stream.sample_rate)


def extract(stream: AudioStream, config: ExtractorConfig = ExtractorConfig(), cancel_event=None) -> Fingerprint:
    return LandmarkExtractor(config).extract(stream, cancel_event)
