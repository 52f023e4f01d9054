"""Shared fixtures for the clipstream unit tests: temp database, fake clock, vectors."""

import os
import shutil
import tempfile
import unittest
from datetime import datetime, timedelta, timezone

import numpy as np

from clipstream.db import fmt_ts, init_schema, open_db

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


def unit(dim: int, axis: int) -> np.ndarray:
    vec = np.zeros(dim, dtype=np.float32)
    vec[axis] = 1.0
    return vec


def at_angle(dim: int, cosine: float, base: int = 0, other: int = 1) -> np.ndarray:
    """A unit vector whose cosine similarity with unit(dim, base) is `cosine`."""
    vec = np.zeros(dim, dtype=np.float32)
    vec[base] = cosine
    vec[other] = np.sqrt(max(0.0, 1.0 - cosine ** 2))
    return vec


class DatabaseTestCase(unittest.TestCase):
    """Creates a fresh schema in a temp SQLite file for each test."""

    def setUp(self):
        self.db_fd, self.db_path = tempfile.mkstemp(suffix=".db")
        init_schema(self.db_path)
        self.clock = FakeClock()
        self.work_dir = tempfile.mkdtemp(prefix="clipstream-test-")

    def tearDown(self):
        os.close(self.db_fd)
        for suffix in ("", "-wal", "-shm"):
            if os.path.exists(self.db_path + suffix):
                os.unlink(self.db_path + suffix)
        shutil.rmtree(self.work_dir, ignore_errors=True)

    def _db(self):
        return open_db(self.db_path)

    def insert_stream(self, stream_id="s1", owner="owner", is_private=1, members=None):
        db = self._db()
        try:
            db.execute(
                "INSERT INTO streams (id, name, created_by, is_private) VALUES (?, ?, ?, ?)",
                (stream_id, f"Stream {stream_id}", owner, is_private),
            )
            db.execute(
                "INSERT INTO stream_members (stream_id, user_id, role) VALUES (?, ?, 'owner')",
                (stream_id, owner),
            )
            for user_id, role in (members or {}).items():
                db.execute(
                    "INSERT INTO stream_members (stream_id, user_id, role) VALUES (?, ?, ?)",
                    (stream_id, user_id, role),
                )
        finally:
            db.close()

    def insert_video(self, video_id, stream_id="s1", title=None, uploaded_at=None, status="queued",
                     processing_index=0, **columns):
        db = self._db()
        try:
            if not db.execute("SELECT 1 FROM streams WHERE id = ?", (stream_id,)).fetchone():
                db.execute(
                    "INSERT INTO streams (id, name, created_by) VALUES (?, ?, 'owner')",
                    (stream_id, f"Stream {stream_id}"),
                )
            fields = {
                "id": video_id,
                "stream_id": stream_id,
                "title": title or f"Video {video_id}",
                "storage_key": f"uploads/{video_id}/raw.mp4",
                "uploaded_at": fmt_ts(uploaded_at or self.clock()),
                "status": status,
                "processing_index": processing_index,
                **columns,
            }
            names = ", ".join(fields)
            marks = ", ".join("?" for _ in fields)
            db.execute(f"INSERT INTO videos ({names}) VALUES ({marks})", tuple(fields.values()))
        finally:
            db.close()

    def video_row(self, video_id):
        db = self._db()
        try:
            return db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
        finally:
            db.close()

    def job_rows(self, video_id):
        db = self._db()
        try:
            return db.execute(
                "SELECT * FROM jobs WHERE video_id = ? ORDER BY rowid", (video_id,)
            ).fetchall()
        finally:
            db.close()
