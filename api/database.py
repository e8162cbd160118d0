import os
import sqlite3
from contextlib import contextmanager
from typing import Optional

DB_PATH = os.environ.get("DB_PATH", "/data/fingerprints.db")

SCHEMA = """
PRAGMA journal_mode = WAL;

CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    artist TEXT NOT NULL,
    submitter TEXT NOT NULL,
    file_path TEXT,
    duration_s REAL,
    landmark_count INTEGER,
    status TEXT NOT NULL DEFAULT 'pending',
    error_msg TEXT,
    submitted_at TEXT NOT NULL,
    ready_at TEXT
);

CREATE TABLE IF NOT EXISTS jobs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    track_id TEXT NOT NULL REFERENCES tracks(id),
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    started_at TEXT,
    finished_at TEXT,
    error_msg TEXT
);

CREATE TABLE IF NOT EXISTS fingerprints (
    track_id TEXT PRIMARY KEY REFERENCES tracks(id),
    data TEXT NOT NULL,
    landmark_count INTEGER NOT NULL,
    duration_s REAL NOT NULL,
    sample_rate INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS duplicate_matches (
    id TEXT PRIMARY KEY,
    original_track_id TEXT NOT NULL REFERENCES tracks(id),
    candidate_track_id TEXT NOT NULL REFERENCES tracks(id),
    similarity REAL NOT NULL,
    matching_landmarks INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    reviewer_id TEXT,
    reviewed_at TEXT,
    resolution_note TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_matches_original ON duplicate_matches(original_track_id);
CREATE INDEX IF NOT EXISTS idx_matches_candidate ON duplicate_matches(candidate_track_id);
CREATE INDEX IF NOT EXISTS idx_matches_status ON duplicate_matches(status, created_at);

CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

CONFIG_DEFAULTS = {
    "duplicate_threshold": "80.0",
}


def get_connection(path: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(path or DB_PATH, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def db(path: Optional[str] = None):
    conn = get_connection(path)
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(path: Optional[str] = None):
    target = path or DB_PATH
    directory = os.path.dirname(target)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = get_connection(target)
    try:
        conn.executescript(SCHEMA)
        for key, value in CONFIG_DEFAULTS.items():
            conn.execute(
                "INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)",
                (key, value),
            )
        conn.commit()
    finally:
        conn.close()


def get_config(key: str, path: Optional[str] = None) -> str:
    with db(path) as conn:
        row = conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        if row:
            return row["value"]
        return CONFIG_DEFAULTS.get(key, "")


def set_config(key: str, value: str, path: Optional[str] = None):
    with db(path) as conn:
        conn.execute(
            "INSERT OR REPLACE INTO config (key, value) VALUES (?, ?)",
            (key, value),
        )
