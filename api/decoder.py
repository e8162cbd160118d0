import io
import logging
import subprocess
import threading
from dataclasses import dataclass
from typing import Iterator, Optional

import librosa  # ty: ignore[unresolved-import]
import numpy as np
from errors import DecodeError

logger = logging.getLogger(__name__)

CANONICAL_SAMPLE_RATE = 22050


@dataclass(frozen=True)
class DecoderConfig:
    sample_rate: int = CANONICAL_SAMPLE_RATE
    backend: str = "ffmpeg"  # 'ffmpeg' | 'librosa'
    ffmpeg_bin: str = "ffmpeg"
    chunk_samples: int = 8192
    timeout_s: Optional[float] = None


class AudioStream:
    """Canonical waveform: int16 mono blocks at a fixed sample rate.

    Iterating pulls blocks from the underlying decoder one at a time. The
    stream can only be consumed once.
    """

    def __init__(self, blocks: Iterator[np.ndarray], sample_rate: int):
        self._blocks = blocks
        self.sample_rate = sample_rate
        self.samples_read = 0

    def __iter__(self) -> Iterator[np.ndarray]:
        for block in self._blocks:
            self.samples_read += block.shape[0]
            yield block

    def close(self):
        close = getattr(self._blocks, "close", None)
        if close is not None:
            close()

    @classmethod
    def from_array(cls, samples: np.ndarray, sample_rate: int, chunk_samples: int = 8192) -> "AudioStream":
        samples = np.asarray(samples, dtype=np.int16)

        def _blocks():
            for start in range(0, samples.shape[0], chunk_samples):
                yield samples[start : start + chunk_samples]

        return cls(_blocks(), sample_rate)


def decode(raw_bytes: bytes, config: DecoderConfig = DecoderConfig()) -> AudioStream:
    """Normalize arbitrary audio bytes to a mono 16-bit stream at config.sample_rate."""
    if not raw_bytes:
        raise DecodeError("Empty audio input")

    if config.backend == "ffmpeg":
        return AudioStream(_ffmpeg_blocks(raw_bytes, config), config.sample_rate)
    if config.backend == "librosa":
        return AudioStream(_librosa_blocks(raw_bytes, config), config.sample_rate)
    raise ValueError(f"Unknown decoder backend: {config.backend}")


def _ffmpeg_blocks(raw_bytes: bytes, config: DecoderConfig) -> Iterator[np.ndarray]:
    cmd = [
        config.ffmpeg_bin,
        "-hide_banner",
        "-loglevel", "error",
        "-i", "pipe:0",
        "-vn",
        "-f", "s16le",
        "-acodec", "pcm_s16le",
        "-ac", "1",
        "-ar", str(config.sample_rate),
        "pipe:1",
    ]

    try:
        proc = subprocess.Popen(cmd, stdin=subprocess.PIPE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    except OSError as e:
        raise DecodeError(f"Could not start ffmpeg ({config.ffmpeg_bin}): {e}") from e

    logger.info(f"Audio decoding started ({len(raw_bytes)} bytes)")

    def _feed():
        try:
            proc.stdin.write(raw_bytes)
        except (BrokenPipeError, ValueError):
            pass  # ffmpeg exited early; its stderr carries the reason
        finally:
            try:
                proc.stdin.close()
            except OSError:
                pass

    stderr_chunks: list[bytes] = []

    def _drain_stderr():
        stderr_chunks.append(proc.stderr.read())

    timed_out = threading.Event()

    def _kill():
        timed_out.set()
        proc.kill()

    feeder = threading.Thread(target=_feed, daemon=True, name="ffmpeg-feed")
    drainer = threading.Thread(target=_drain_stderr, daemon=True, name="ffmpeg-stderr")
    feeder.start()
    drainer.start()
    watchdog = None
    if config.timeout_s:
        watchdog = threading.Timer(config.timeout_s, _kill)
        watchdog.daemon = True
        watchdog.start()

    block_bytes = config.chunk_samples * 2
    leftover = b""
    finished = False
    try:
        while True:
            data = proc.stdout.read(block_bytes)
            if not data:
                break
            data = leftover + data
            usable = len(data) - (len(data) % 2)
            leftover = data[usable:]
            if usable:
                yield np.frombuffer(data[:usable], dtype="<i2").astype(np.int16)

        returncode = proc.wait()
        feeder.join(timeout=5)
        drainer.join(timeout=5)
        if timed_out.is_set():
            raise DecodeError(f"Audio decoding timed out after {config.timeout_s}s")
        if returncode != 0:
            stderr = b"".join(stderr_chunks).decode("utf-8", errors="replace").strip()
            raise DecodeError(f"Audio decoding failed: {stderr[-500:] or f'ffmpeg exit code {returncode}'}")
        finished = True
    finally:
        if watchdog is not None:
            watchdog.cancel()
        if not finished and proc.poll() is None:
            # Consumer stopped early (cancellation or error downstream)
            proc.kill()
            proc.wait()
        proc.stdout.close()
        drainer.join(timeout=5)
        proc.stderr.close()


def _librosa_blocks(raw_bytes: bytes, config: DecoderConfig) -> Iterator[np.ndarray]:
    try:
        y, _sr = librosa.load(io.BytesIO(raw_bytes), sr=config.sample_rate, mono=True)
    except Exception as e:
        raise DecodeError(f"Audio decoding failed: {e}") from e

    samples = (np.clip(y, -1.0, 1.0) * 32767.0).astype(np.int16)
    logger.info(f"Decoded {samples.shape[0]} samples at {config.sample_rate} Hz")
    for start in range(0, samples.shape[0], config.chunk_samples):
        yield samples[start : start + config.chunk_samples]
