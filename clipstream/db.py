"""
SQLite persistence for the ClipStream pipeline.
Videos, jobs, streams and the derived relation tables live in one WAL-mode database.
"""

import sqlite3
from datetime import datetime, timezone

import numpy as np

from clipstream import config

TS_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE,
    name TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS streams (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    created_by TEXT NOT NULL,
    is_private INTEGER NOT NULL DEFAULT 1,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS stream_members (
    stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('owner', 'admin', 'creator', 'viewer')),
    joined_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    PRIMARY KEY (stream_id, user_id)
);

CREATE TABLE IF NOT EXISTS invites (
    code TEXT PRIMARY KEY,
    stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
    role TEXT NOT NULL,
    expires_at TEXT,
    max_uses INTEGER,
    use_count INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS videos (
    id TEXT PRIMARY KEY,
    stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
    uploader_id TEXT,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    storage_key TEXT NOT NULL,
    playback_key TEXT,
    thumbnail_key TEXT,
    duration_seconds REAL,
    width INTEGER,
    height INTEGER,
    file_size_bytes INTEGER,
    uploaded_at TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'uploading',
    processing_index INTEGER NOT NULL DEFAULT 0,
    duplicate_of TEXT,
    duplicate_reviewed INTEGER NOT NULL DEFAULT 0,
    duplicate_exempt INTEGER NOT NULL DEFAULT 0,
    embedding BLOB,
    transcript TEXT,
    tags TEXT DEFAULT '[]',
    trimmed_clips TEXT,
    pov_group_id TEXT,
    like_count INTEGER NOT NULL DEFAULT 0,
    share_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    CHECK ((processing_index = -1) = (duplicate_of IS NOT NULL)),
    CHECK ((status = 'duplicate') = (processing_index = -1)),
    CHECK (processing_index >= -1)
);

CREATE INDEX IF NOT EXISTS idx_videos_stream_id ON videos(stream_id);
CREATE INDEX IF NOT EXISTS idx_videos_status ON videos(status);
CREATE INDEX IF NOT EXISTS idx_videos_duplicate_of ON videos(duplicate_of);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL,
    stage TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 0,
    attempt_count INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL DEFAULT 5,
    last_error TEXT,
    worker_id TEXT,
    lease_expiry TEXT,
    run_after TEXT,
    hold_kind TEXT,
    wait_seconds REAL,
    enqueued_at TEXT NOT NULL,
    seq INTEGER NOT NULL DEFAULT 0,
    leased_at TEXT,
    completed_at TEXT
);

-- at most one non-terminal job per video
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_active_video
    ON jobs(video_id) WHERE status IN ('pending', 'leased');
-- seq orders the queue; re-queued jobs take a fresh one and go to the tail
CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, priority, seq);

CREATE TABLE IF NOT EXISTS stage_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id TEXT NOT NULL,
    job_id TEXT,
    stage TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    duration_seconds REAL,
    ok INTEGER,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_stage_runs_video ON stage_runs(video_id);

CREATE TABLE IF NOT EXISTS pov_groups (
    group_id TEXT PRIMARY KEY,
    parent TEXT NOT NULL,
    sort_key TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS similar_links (
    video_id TEXT NOT NULL,
    other_id TEXT NOT NULL,
    score REAL NOT NULL,
    PRIMARY KEY (video_id, other_id)
);

CREATE TABLE IF NOT EXISTS share_links (
    code TEXT PRIMARY KEY,
    video_id TEXT NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
    created_by TEXT,
    expires_at TEXT,
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS video_likes (
    video_id TEXT NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    PRIMARY KEY (video_id, user_id)
);
"""


def open_db(path: str = None):
    """Open a SQLite connection with WAL mode and row factory."""
    db = sqlite3.connect(path or config.DB_PATH, isolation_level=None, check_same_thread=False)
    db.execute("PRAGMA journal_mode=WAL")
    db.execute("PRAGMA busy_timeout=5000")
    db.execute("PRAGMA foreign_keys=ON")
    db.execute("PRAGMA synchronous=NORMAL")
    db.row_factory = sqlite3.Row
    return db


def init_schema(path: str = None):
    db = open_db(path)
    try:
        db.executescript(SCHEMA)
    finally:
        db.close()


def rollback_quietly(db):
    try:
        db.execute("ROLLBACK")
    except sqlite3.Error:
        pass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def fmt_ts(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime(TS_FORMAT)


def parse_ts(ts: str | None) -> datetime | None:
    """Parse ISO timestamp to datetime. Returns None if invalid."""
    if not ts:
        return None
    try:
        dt = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def encode_vector(vec) -> bytes:
    return np.asarray(vec, dtype=np.float32).tobytes()


def decode_vector(blob: bytes | None):
    if not blob or len(blob) % 4 != 0:
        return None
    return np.frombuffer(blob, dtype=np.float32).copy()
