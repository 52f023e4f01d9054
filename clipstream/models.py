"""
Domain records for videos and jobs, built from sqlite3.Row.
"""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from clipstream.db import decode_vector, parse_ts


class VideoStatus(str, Enum):
    UPLOADING = "uploading"
    QUEUED = "queued"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"
    DUPLICATE = "duplicate"


class JobStatus(str, Enum):
    PENDING = "pending"
    LEASED = "leased"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ABANDONED = "abandoned"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.LEASED.value)

# Persisted value of processing_index for a flagged duplicate.
DUPLICATE_INDEX = -1


@dataclass(frozen=True)
class InPipeline:
    next_stage: int


@dataclass(frozen=True)
class Duplicate:
    canonical_id: str


@dataclass(frozen=True)
class Failed:
    last_completed: int


@dataclass
class TrimmedClip:
    start: float
    end: float
    label: str

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "label": self.label}


@dataclass
class Video:
    id: str
    stream_id: str
    title: str
    storage_key: str
    uploaded_at: datetime
    status: VideoStatus
    processing_index: int
    uploader_id: str | None = None
    description: str = ""
    duplicate_of: str | None = None
    duplicate_exempt: bool = False
    playback_key: str | None = None
    thumbnail_key: str | None = None
    duration_seconds: float | None = None
    embedding: object = None
    transcript: list = field(default_factory=list)
    tags: list = field(default_factory=list)
    trimmed_clips: list = field(default_factory=list)
    pov_group_id: str | None = None
    like_count: int = 0
    share_count: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Video":
        return cls(
            id=row["id"],
            stream_id=row["stream_id"],
            title=row["title"],
            storage_key=row["storage_key"],
            uploaded_at=parse_ts(row["uploaded_at"]),
            status=VideoStatus(row["status"]),
            processing_index=row["processing_index"],
            uploader_id=row["uploader_id"],
            description=row["description"] or "",
            duplicate_of=row["duplicate_of"],
            duplicate_exempt=bool(row["duplicate_exempt"]),
            playback_key=row["playback_key"],
            thumbnail_key=row["thumbnail_key"],
            duration_seconds=row["duration_seconds"],
            embedding=decode_vector(row["embedding"]),
            transcript=_load_json(row["transcript"]),
            tags=_load_json(row["tags"]),
            trimmed_clips=_load_json(row["trimmed_clips"]),
            pov_group_id=row["pov_group_id"],
            like_count=row["like_count"] or 0,
            share_count=row["share_count"] or 0,
        )

    @property
    def state(self):
        """Explicit pipeline position; callers match on this instead of the -1 sentinel."""
        if self.status == VideoStatus.DUPLICATE:
            return Duplicate(self.duplicate_of)
        if self.status == VideoStatus.FAILED:
            return Failed(self.processing_index)
        return InPipeline(self.processing_index)

    @property
    def transcript_text(self) -> str:
        return " ".join((seg.get("text") or "").strip() for seg in self.transcript).strip()

    @property
    def sort_key(self) -> tuple:
        """Earliest upload first, then lowest id."""
        return (self.uploaded_at, self.id)


@dataclass
class Job:
    id: str
    video_id: str
    status: JobStatus
    attempt_count: int
    max_attempts: int
    stage: str | None = None
    last_error: str | None = None
    worker_id: str | None = None
    lease_expiry: datetime | None = None
    run_after: datetime | None = None
    enqueued_at: datetime | None = None
    leased_at: datetime | None = None
    priority: int = 0
    hold_kind: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        return cls(
            id=row["id"],
            video_id=row["video_id"],
            status=JobStatus(row["status"]),
            attempt_count=row["attempt_count"],
            max_attempts=row["max_attempts"],
            stage=row["stage"],
            last_error=row["last_error"],
            worker_id=row["worker_id"],
            lease_expiry=parse_ts(row["lease_expiry"]),
            run_after=parse_ts(row["run_after"]),
            enqueued_at=parse_ts(row["enqueued_at"]),
            leased_at=parse_ts(row["leased_at"]),
            priority=row["priority"],
            hold_kind=row["hold_kind"],
        )


def _load_json(raw):
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return value if isinstance(value, list) else []
