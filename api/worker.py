import logging
import os
import threading
from datetime import datetime, timezone

from database import db, get_config
from decoder import DecoderConfig
from errors import DecodeError, ExtractionError, FingerprintCancelled
from fingerprinting import FingerprintingService
from similarity import DEFAULT_THRESHOLD
from store import SQLiteFingerprintStore

logger = logging.getLogger(__name__)

MEDIA_DIR = os.environ.get("MEDIA_DIR", "/media")
WORKER_THREADS = int(os.environ.get("WORKER_THREADS", "2"))
COMPARE_WORKERS = int(os.environ.get("COMPARE_WORKERS", "1"))
DECODE_TIMEOUT_S = float(os.environ.get("DECODE_TIMEOUT_S", "300"))
UPLOAD_EXTENSIONS = ["mp3", "wav", "flac", "m4a", "ogg", "opus"]

_worker_threads: list[threading.Thread] = []
_stop_event = threading.Event()
_cancel_events: dict[str, threading.Event] = {}
_cancel_lock = threading.Lock()
_service: FingerprintingService | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def build_service(db_path: str | None = None) -> FingerprintingService:
    decoder_config = DecoderConfig(
        backend=os.environ.get("DECODER_BACKEND", "ffmpeg"),
        ffmpeg_bin=os.environ.get("FFMPEG_BIN", "ffmpeg"),
        timeout_s=DECODE_TIMEOUT_S or None,
    )
    return FingerprintingService(
        SQLiteFingerprintStore(db_path),
        decoder_config=decoder_config,
        compare_workers=COMPARE_WORKERS,
    )


def get_service() -> FingerprintingService:
    global _service
    if _service is None:
        _service = build_service()
    return _service


def _duplicate_threshold() -> float:
    try:
        return float(get_config("duplicate_threshold"))
    except ValueError:
        logger.warning("Invalid duplicate_threshold in config, using default")
        return DEFAULT_THRESHOLD


def find_upload(track_id: str) -> str | None:
    upload_dir = os.path.join(MEDIA_DIR, "raw")
    for ext in UPLOAD_EXTENSIONS:
        candidate = os.path.join(upload_dir, f"{track_id}.{ext}")
        if os.path.exists(candidate):
            return candidate
    return None


def cancel_job(track_id: str) -> bool:
    """Stop fingerprinting for a track if it is in flight."""
    with _cancel_lock:
        event = _cancel_events.get(track_id)
    if event is None:
        return False
    event.set()
    logger.info(f"Cancellation requested for track {track_id}")
    return True


def _fail(job_id: int, track_id: str, error_msg: str, job_status: str = "failed"):
    with db() as conn:
        conn.execute(
            "UPDATE jobs SET status=?, finished_at=?, error_msg=? WHERE id=?",
            (job_status, _now(), error_msg, job_id),
        )
        conn.execute(
            "UPDATE tracks SET status='failed', error_msg=? WHERE id=?",
            (error_msg, track_id),
        )


def _process_job(job_id: int, track_id: str, service: FingerprintingService):
    """Process a single job: read upload, fingerprint, check duplicates, store."""
    logger.info(f"Processing job {job_id} for track {track_id}")

    with db() as conn:
        conn.execute("UPDATE tracks SET status='processing' WHERE id=?", (track_id,))

    cancel_event = threading.Event()
    with _cancel_lock:
        _cancel_events[track_id] = cancel_event

    try:
        raw_path = find_upload(track_id)
        if not raw_path:
            raise RuntimeError(f"Uploaded file not found for track {track_id}")
        with open(raw_path, "rb") as f:
            audio_bytes = f.read()

        result = service.process_upload(track_id, audio_bytes, _duplicate_threshold(), cancel_event)

        with db() as conn:
            conn.execute(
                """
                UPDATE tracks SET
                    file_path=?, duration_s=?, landmark_count=?,
                    status='ready', ready_at=?, error_msg=NULL
                WHERE id=?
                """,
                (
                    raw_path,
                    result.fingerprint.duration_s,
                    len(result.fingerprint.landmarks),
                    _now(),
                    track_id,
                ),
            )
            conn.execute(
                "UPDATE jobs SET status='done', finished_at=? WHERE id=?",
                (_now(), job_id),
            )

        logger.info(
            f"Job {job_id} completed: track {track_id} has {len(result.fingerprint.landmarks)} landmarks, "
            f"{len(result.duplicates.matches)} potential duplicate(s)"
        )

    except FingerprintCancelled:
        logger.info(f"Job {job_id} cancelled for track {track_id}")
        _fail(job_id, track_id, "Fingerprinting cancelled", job_status="cancelled")
    except DecodeError as e:
        logger.warning(f"Job {job_id} rejected: {e}")
        _fail(job_id, track_id, f"Unsupported or unreadable audio: {e}")
    except ExtractionError as e:
        logger.warning(f"Job {job_id} rejected: {e}")
        _fail(job_id, track_id, f"Audio too quiet or too short: {e}")
    except Exception as e:
        logger.error(f"Job {job_id} failed: {e}", exc_info=True)
        _fail(job_id, track_id, str(e))
    finally:
        with _cancel_lock:
            _cancel_events.pop(track_id, None)


def _claim_next_job():
    """Atomically move the oldest pending job to 'processing'. Returns the row or None."""
    with db() as conn:
        row = conn.execute(
            "SELECT id, track_id FROM jobs WHERE status='pending' ORDER BY created_at ASC, id ASC LIMIT 1"
        ).fetchone()
        if not row:
            return None
        cur = conn.execute(
            "UPDATE jobs SET status='processing', started_at=? WHERE id=? AND status='pending'",
            (_now(), row["id"]),
        )
        if cur.rowcount == 0:
            return None  # another worker thread took it
    return row


def reset_stuck_jobs():
    """Reset any jobs left in 'processing' state by a previous crash/restart.

    Called from the main thread during startup, before the worker threads
    start, so it is guaranteed to run against the correct DB and see
    committed state.
    """
    with db() as conn:
        stuck = conn.execute("SELECT id, track_id FROM jobs WHERE status='processing'").fetchall()
        for row in stuck:
            conn.execute(
                "UPDATE jobs SET status='pending', started_at=NULL WHERE id=?",
                (row["id"],),
            )
            conn.execute(
                "UPDATE tracks SET status='pending' WHERE id=?",
                (row["track_id"],),
            )
    if stuck:
        logger.warning(f"Reset {len(stuck)} stuck processing job(s) to pending on startup")
    else:
        logger.info("No stuck processing jobs found on startup")


def _worker_loop(service: FingerprintingService):
    """Background worker: poll for pending jobs and process them."""
    logger.info("Worker thread started")
    while not _stop_event.is_set():
        try:
            row = _claim_next_job()
            if row:
                _process_job(row["id"], row["track_id"], service)
            else:
                # No pending jobs; wait before polling again
                _stop_event.wait(timeout=5.0)

        except Exception as e:
            logger.error(f"Worker loop error: {e}", exc_info=True)
            _stop_event.wait(timeout=10.0)

    logger.info("Worker thread stopped")


def start_worker(service: FingerprintingService | None = None):
    service = service or get_service()
    _stop_event.clear()
    for i in range(max(1, WORKER_THREADS)):
        thread = threading.Thread(target=_worker_loop, args=(service,), daemon=True, name=f"fingerprint-worker-{i}")
        thread.start()
        _worker_threads.append(thread)


def stop_worker():
    _stop_event.set()
    with _cancel_lock:
        for event in _cancel_events.values():
            event.set()
    for thread in _worker_threads:
        thread.join(timeout=30)
    _worker_threads.clear()
