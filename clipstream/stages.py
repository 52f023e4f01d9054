"""
Pipeline stages, in execution order.

A stage computes its artifacts and returns them in a StageResult; the executor
commits them together with the processing_index checkpoint. Writes a stage
makes on its own (index publication, relation tables) are idempotent so a
retried stage can repeat them safely.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from clipstream import media
from clipstream.db import encode_vector, open_db, rollback_quietly
from clipstream.errors import PermanentError
from clipstream.inference import normalize_embedding, validate_segments
from clipstream.models import DUPLICATE_INDEX, TrimmedClip, Video
from clipstream.search import SearchDocument
from clipstream.similarity import DisjointSet, sort_key

log = logging.getLogger("clipstream.stages")


@dataclass
class StageContext:
    video: Video
    job_id: str
    work_path: Path
    storage: object
    inference: object
    similarity: object
    search: object
    db_path: str

    def playback_file(self) -> Path:
        """The transcoded rendition on local disk, fetched once per job."""
        path = self.work_path / "video.mp4"
        if not path.exists():
            self.storage.fetch(self.video.playback_key, path)
        return path


@dataclass
class StageResult:
    updates: dict = field(default_factory=dict)
    duplicate_of: str | None = None
    absorb: list = field(default_factory=list)
    after_commit: list = field(default_factory=list)


class Stage:
    name = ""
    requires = ()
    deadline = None

    def check(self, video: Video):
        """Fail permanently if an artifact from an earlier stage is missing."""
        for attr in self.requires:
            value = getattr(video, attr)
            if value is None or (isinstance(value, (list, str)) and not value):
                raise PermanentError(f"{self.name} requires {attr}, which is missing")

    def run(self, ctx: StageContext) -> StageResult:
        raise NotImplementedError


class TranscodeStage(Stage):
    name = "transcode"

    def run(self, ctx):
        video = ctx.video
        source = ctx.storage.fetch(video.storage_key, ctx.work_path / "source")
        media.extract_metadata(source)

        output = ctx.work_path / "video.mp4"
        media.transcode(source, output)
        meta = media.extract_metadata(output)

        playback_key = f"videos/{video.id}/video.mp4"
        ctx.storage.put(playback_key, output, content_type="video/mp4")

        thumbnail_key = None
        thumb_path = ctx.work_path / "thumbnail.jpg"
        if media.generate_thumbnail(output, thumb_path):
            thumbnail_key = f"videos/{video.id}/thumbnail.jpg"
            ctx.storage.put(thumbnail_key, thumb_path, content_type="image/jpeg")

        return StageResult(updates={
            "playback_key": playback_key,
            "thumbnail_key": thumbnail_key,
            "duration_seconds": meta["duration"],
            "width": meta["width"],
            "height": meta["height"],
            "file_size_bytes": output.stat().st_size,
        })


class TranscriptStage(Stage):
    name = "transcript"
    requires = ("playback_key",)

    def run(self, ctx):
        result = ctx.inference.transcribe(ctx.playback_file())
        if not isinstance(result, dict):
            raise PermanentError("transcription returned no result")
        segments = validate_segments(result.get("segments"))
        tags = [t.strip() for t in result.get("tags") or [] if isinstance(t, str) and t.strip()]
        return StageResult(updates={
            "transcript": json.dumps(segments),
            "tags": json.dumps(tags[:10]),
        })


class EmbeddingStage(Stage):
    name = "embedding"
    requires = ("playback_key",)

    def run(self, ctx):
        raw = ctx.inference.embed(ctx.playback_file())
        vec = normalize_embedding(raw, ctx.similarity.dim)
        return StageResult(updates={"embedding": encode_vector(vec)})


class DuplicateDetectionStage(Stage):
    name = "duplicate_detection"
    requires = ("embedding",)

    def run(self, ctx):
        video = ctx.video
        ctx.similarity.add(video.id, video.embedding, video.stream_id, video.uploaded_at)
        matches = live_matches(ctx.db_path, ctx.similarity.duplicate_matches(video.id, video.embedding))
        own_key = sort_key(video.uploaded_at, video.id)
        earlier = [m for m in matches if sort_key(m.uploaded_at, m.video_id) < own_key]
        later = [m.video_id for m in matches if sort_key(m.uploaded_at, m.video_id) > own_key]

        if earlier:
            if video.duplicate_exempt:
                log.info(f"Video {video.id} is exempt from duplicate flagging")
                return StageResult()
            match = min(earlier, key=lambda m: sort_key(m.uploaded_at, m.video_id))
            canonical = resolve_canonical(ctx.db_path, match.video_id)
            if canonical != video.id:
                log.info(f"Video {video.id} duplicates {canonical} (similarity {match.score:.4f})")
                return StageResult(duplicate_of=canonical)

        if later:
            # Later uploads that got here first are flagged against this video.
            log.info(f"Video {video.id} predates its duplicate(s) {later}")
        return StageResult(absorb=later)


class PovClusteringStage(Stage):
    name = "pov_clustering"
    requires = ("embedding",)

    def run(self, ctx):
        video = ctx.video
        matches = ctx.similarity.pov_matches(video.id, video.embedding, video.stream_id, video.uploaded_at)
        if not matches:
            return StageResult()
        root = merge_pov_group(ctx.db_path, video, matches)
        log.info(f"Video {video.id} joined POV group {root} ({len(matches)} match(es))")
        return StageResult()


class SimilarLinkingStage(Stage):
    name = "similar_linking"
    requires = ("embedding",)

    def run(self, ctx):
        video = ctx.video
        pov_ids = {
            m.video_id
            for m in ctx.similarity.pov_matches(video.id, video.embedding, video.stream_id, video.uploaded_at)
        }
        matches = ctx.similarity.similar_matches(video.id, video.embedding, exclude=pov_ids)

        db = open_db(ctx.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            db.execute("DELETE FROM similar_links WHERE video_id = ?", (video.id,))
            for m in matches:
                for a, b in ((video.id, m.video_id), (m.video_id, video.id)):
                    db.execute(
                        "INSERT OR REPLACE INTO similar_links (video_id, other_id, score) VALUES (?, ?, ?)",
                        (a, b, round(m.score, 6)),
                    )
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()
        return StageResult()


class AutoTrimStage(Stage):
    name = "auto_trim"
    requires = ("playback_key", "duration_seconds")

    def run(self, ctx):
        video = ctx.video
        segments = media.detect_segments(ctx.playback_file(), video.duration_seconds)
        clips = [
            TrimmedClip(
                seg["start"], seg["end"],
                media.label_segment(video.transcript, seg["start"], seg["end"], video.title, i),
            )
            for i, seg in enumerate(segments)
        ]
        return StageResult(updates={"trimmed_clips": json.dumps([c.to_dict() for c in clips])})


class SearchIndexStage(Stage):
    name = "search_index"

    def run(self, ctx):
        doc = SearchDocument.from_video(ctx.video)
        return StageResult(after_commit=[lambda: ctx.search.upsert_document(doc)])


STAGES = (
    TranscodeStage(),
    TranscriptStage(),
    EmbeddingStage(),
    DuplicateDetectionStage(),
    PovClusteringStage(),
    SimilarLinkingStage(),
    AutoTrimStage(),
    SearchIndexStage(),
)

STAGE_NAMES = tuple(s.name for s in STAGES)
EMBEDDING_STAGE_INDEX = STAGE_NAMES.index("embedding")


def resolve_canonical(db_path: str, video_id: str) -> str:
    """Follow duplicate_of links to the root video."""
    db = open_db(db_path)
    try:
        seen = set()
        current = video_id
        while current not in seen:
            seen.add(current)
            row = db.execute("SELECT duplicate_of FROM videos WHERE id = ?", (current,)).fetchone()
            if row is None or row["duplicate_of"] is None:
                return current
            current = row["duplicate_of"]
        return current
    finally:
        db.close()


def live_matches(db_path: str, matches: list) -> list:
    """Drop matches whose video has since failed, been flagged or been deleted."""
    if not matches:
        return []
    ids = [m.video_id for m in matches]
    db = open_db(db_path)
    try:
        rows = db.execute(
            f"SELECT id FROM videos WHERE id IN ({', '.join('?' for _ in ids)}) "
            "AND status NOT IN ('duplicate', 'failed')",
            ids,
        ).fetchall()
    finally:
        db.close()
    live = {row["id"] for row in rows}
    return [m for m in matches if m.video_id in live]


def flag_duplicate(db, video_id: str, canonical_id: str, now: str, reviewed: bool = False):
    """
    Inside the caller's transaction: turn video_id into a duplicate of canonical_id,
    move anything that pointed at it over to canonical_id and drop its similar links.
    """
    db.execute(
        """
        UPDATE videos
        SET status = 'duplicate', processing_index = ?, duplicate_of = ?,
            duplicate_reviewed = ?, embedding = NULL, transcript = NULL,
            tags = '[]', trimmed_clips = NULL, pov_group_id = NULL, updated_at = ?
        WHERE id = ?
        """,
        (DUPLICATE_INDEX, canonical_id, int(reviewed), now, video_id),
    )
    db.execute(
        "UPDATE videos SET duplicate_of = ?, updated_at = ? WHERE duplicate_of = ?",
        (canonical_id, now, video_id),
    )
    db.execute("DELETE FROM similar_links WHERE video_id = ? OR other_id = ?", (video_id, video_id))


def merge_pov_group(db_path: str, video: Video, matches: list) -> str:
    """
    Union the video with its POV matches in the persisted disjoint set and
    point every member of the merged group at the new root.
    """
    db = open_db(db_path)
    try:
        db.execute("BEGIN IMMEDIATE")
        ds = DisjointSet()
        before = {}
        for row in db.execute("SELECT group_id, parent, sort_key FROM pov_groups").fetchall():
            ds.parent[row["group_id"]] = row["parent"]
            ds.keys[row["group_id"]] = row["sort_key"]
            before[row["group_id"]] = row["parent"]

        ds.add(video.id, sort_key(video.uploaded_at, video.id))
        for m in matches:
            ds.add(m.video_id, sort_key(m.uploaded_at, m.video_id))
            ds.union(video.id, m.video_id)
        root = ds.find(video.id)
        members = ds.members(root)

        for node in members:
            if before.get(node) != ds.parent[node]:
                db.execute(
                    "INSERT OR REPLACE INTO pov_groups (group_id, parent, sort_key) VALUES (?, ?, ?)",
                    (node, ds.parent[node], ds.keys[node]),
                )
        placeholders = ",".join("?" for _ in members)
        db.execute(
            f"UPDATE videos SET pov_group_id = ? WHERE id IN ({placeholders}) AND status != 'duplicate'",
            (root, *members),
        )
        db.execute("COMMIT")
        return root
    except Exception:
        rollback_quietly(db)
        raise
    finally:
        db.close()
