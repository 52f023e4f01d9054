"""
Service facade: the semantics behind the public HTTP surface.

Callers pass an already-authenticated user id; stream membership decides what
that user may see. Failed videos only ever expose a generic failure flag.
"""

import logging
import secrets
import uuid
from datetime import timedelta

from clipstream import config
from clipstream.db import fmt_ts, open_db, parse_ts, rollback_quietly, utcnow
from clipstream.errors import AccessDenied, InvalidTransition, NotFound
from clipstream.jobs import JobQueue
from clipstream.models import Duplicate, Failed, Video, VideoStatus
from clipstream.stages import STAGE_NAMES

log = logging.getLogger("clipstream.service")

UPLOAD_ROLES = ("owner", "admin", "creator")
ROLE_RANK = {"viewer": 0, "creator": 1, "admin": 2, "owner": 3}


class ClipstreamService:
    def __init__(self, queue: JobQueue, storage, similarity, search, db_path: str = None, clock=None,
                 hold_timeout: float = None):
        self.queue = queue
        self.storage = storage
        self.similarity = similarity
        self.search_index = search
        self.db_path = db_path or config.DB_PATH
        self.clock = clock or utcnow
        self.hold_timeout = hold_timeout

    def _load(self, db, video_id: str) -> Video:
        row = db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
        if row is None:
            raise NotFound(f"video {video_id} not found")
        return Video.from_row(row)

    def get_video(self, video_id: str) -> Video:
        db = open_db(self.db_path)
        try:
            return self._load(db, video_id)
        finally:
            db.close()

    # --- Uploads ---

    def create_video(self, stream_id: str, uploader_id: str, title: str, storage_key: str,
                     description: str = "", video_id: str = None, enqueue: bool = True) -> str:
        """POST /streams/:id/videos. Records the upload and, once the bytes are in storage, queues it."""
        video_id = video_id or str(uuid.uuid4())
        db = open_db(self.db_path)
        try:
            role = self._role(db, stream_id, uploader_id)
            if role not in UPLOAD_ROLES:
                raise AccessDenied(f"user {uploader_id} cannot upload to stream {stream_id}")
            db.execute(
                """
                INSERT INTO videos (id, stream_id, uploader_id, title, description, storage_key,
                                    uploaded_at, status, processing_index)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'uploading', 0)
                """,
                (video_id, stream_id, uploader_id, title, description or "", storage_key,
                 fmt_ts(self.clock())),
            )
        finally:
            db.close()
        log.info(f"Video {video_id} created in stream {stream_id} by {uploader_id}")
        if enqueue:
            self.queue.enqueue(video_id)
        return video_id

    def request_upload(self, stream_id: str, uploader_id: str, title: str, filename: str,
                       description: str = "") -> dict:
        video_id = str(uuid.uuid4())
        storage_key = f"uploads/{video_id}/{filename}"
        self.create_video(stream_id, uploader_id, title, storage_key, description, video_id, enqueue=False)
        return {"video_id": video_id, "storage_key": storage_key,
                "upload_url": self.storage.presigned_put(storage_key)}

    def confirm_upload(self, video_id: str) -> str:
        video = self.get_video(video_id)
        if video.status != VideoStatus.UPLOADING:
            raise InvalidTransition(f"video {video_id} is {video.status.value}, upload already confirmed")
        return self.queue.enqueue(video_id)

    # --- Per-video projections ---

    def processing_status(self, video_id: str) -> dict:
        """GET /videos/:id/processing"""
        video = self.get_video(video_id)
        state = video.state
        total = len(STAGE_NAMES)
        result = {
            "video_id": video.id,
            "status": video.status.value,
            "processing_index": video.processing_index,
            "total_stages": total,
            "stage": None,
            "progress": 0.0,
            "estimated_completion": None,
            "failed": isinstance(state, Failed),
        }
        if isinstance(state, Duplicate):
            result["duplicate_of"] = state.canonical_id
            return result
        done = min(video.processing_index, total)
        result["progress"] = round(done / total, 3)
        if done < total:
            result["stage"] = STAGE_NAMES[done]
            if not isinstance(state, Failed):
                remaining = self._estimate_remaining(STAGE_NAMES[done:])
                if remaining is not None:
                    result["estimated_completion"] = fmt_ts(self.clock() + timedelta(seconds=remaining))
        return result

    def _estimate_remaining(self, stages) -> float | None:
        db = open_db(self.db_path)
        try:
            rows = db.execute(
                "SELECT stage, AVG(duration_seconds) AS mean FROM stage_runs WHERE ok = 1 GROUP BY stage"
            ).fetchall()
        finally:
            db.close()
        means = {r["stage"]: r["mean"] for r in rows}
        if any(means.get(s) is None for s in stages):
            return None
        return sum(means[s] for s in stages)

    def duplicates(self, video_id: str) -> dict:
        """GET /videos/:id/duplicates"""
        db = open_db(self.db_path)
        try:
            video = self._load(db, video_id)
            rows = db.execute(
                "SELECT id FROM videos WHERE duplicate_of = ? ORDER BY uploaded_at, id", (video_id,)
            ).fetchall()
        finally:
            db.close()
        return {
            "video_id": video.id,
            "processing_index": video.processing_index,
            "duplicate_of": video.duplicate_of,
            "duplicates": [r["id"] for r in rows],
        }

    def similar(self, video_id: str, limit: int = 20) -> list:
        """GET /videos/:id/similar"""
        db = open_db(self.db_path)
        try:
            self._load(db, video_id)
            rows = db.execute(
                """
                SELECT s.other_id, s.score, v.title
                FROM similar_links s JOIN videos v ON v.id = s.other_id
                WHERE s.video_id = ?
                ORDER BY s.score DESC, s.other_id ASC
                LIMIT ?
                """,
                (video_id, limit),
            ).fetchall()
        finally:
            db.close()
        return [{"video_id": r["other_id"], "title": r["title"], "score": r["score"]} for r in rows]

    def pov(self, video_id: str) -> dict:
        """GET /videos/:id/pov"""
        db = open_db(self.db_path)
        try:
            video = self._load(db, video_id)
            members = []
            if video.pov_group_id:
                members = [
                    r["id"] for r in db.execute(
                        "SELECT id FROM videos WHERE pov_group_id = ? ORDER BY uploaded_at, id",
                        (video.pov_group_id,),
                    ).fetchall()
                ]
        finally:
            db.close()
        return {"video_id": video.id, "pov_group_id": video.pov_group_id, "members": members}

    def trimmed(self, video_id: str) -> list:
        """GET /videos/:id/trimmed"""
        return self.get_video(video_id).trimmed_clips

    def transcript(self, video_id: str) -> dict:
        """GET /videos/:id/transcript"""
        video = self.get_video(video_id)
        return {"video_id": video.id, "segments": video.transcript, "text": video.transcript_text}

    def embeddings(self, video_id: str) -> dict:
        """GET /videos/:id/embeddings"""
        video = self.get_video(video_id)
        vector = video.embedding
        return {
            "video_id": video.id,
            "dimension": int(vector.shape[0]) if vector is not None else None,
            "vector": vector.tolist() if vector is not None else None,
        }

    def timeline(self, video_id: str) -> list:
        """GET /videos/:id/timeline: every stage attempt, oldest first, without error detail."""
        db = open_db(self.db_path)
        try:
            self._load(db, video_id)
            rows = db.execute(
                """
                SELECT stage, attempt, started_at, finished_at, duration_seconds, ok
                FROM stage_runs WHERE video_id = ? ORDER BY id ASC
                """,
                (video_id,),
            ).fetchall()
        finally:
            db.close()
        return [
            {
                "stage": r["stage"],
                "attempt": r["attempt"],
                "started_at": r["started_at"],
                "finished_at": r["finished_at"],
                "duration_seconds": r["duration_seconds"],
                "ok": None if r["ok"] is None else bool(r["ok"]),
            }
            for r in rows
        ]

    def playback_urls(self, video_id: str) -> dict:
        video = self.get_video(video_id)
        if not video.playback_key:
            raise NotFound(f"video {video_id} has no playback rendition yet")
        return {
            "video_id": video.id,
            "stream_url": self.storage.presigned_get(video.playback_key),
            "thumbnail_url": self.storage.presigned_get(video.thumbnail_key) if video.thumbnail_key else None,
        }

    # --- Scheduler introspection ---

    def queue_status(self) -> dict:
        """GET /processing/queue"""
        stats = self.queue.stats()
        return {k: stats[k] for k in ("depth", "leased", "mean_wait_seconds", "oldest_pending_seconds")}

    def processing_stats(self) -> dict:
        """GET /processing/stats"""
        db = open_db(self.db_path)
        try:
            videos = {
                r["status"]: r["cnt"]
                for r in db.execute("SELECT status, COUNT(*) AS cnt FROM videos GROUP BY status").fetchall()
            }
            means = {
                r["stage"]: r["mean"]
                for r in db.execute(
                    "SELECT stage, AVG(duration_seconds) AS mean FROM stage_runs WHERE ok = 1 GROUP BY stage"
                ).fetchall()
            }
        finally:
            db.close()
        return {
            "videos_by_status": videos,
            "mean_stage_seconds": {
                s: round(means[s], 3) if means.get(s) is not None else None for s in STAGE_NAMES
            },
            "queue": self.queue_status(),
        }

    # --- Search ---

    def search(self, query: str, user_id: str = None, stream_id: str = None, limit: int = None) -> list:
        """GET /search, restricted to streams the caller can see."""
        visible = self.visible_streams(user_id)
        if stream_id is not None:
            visible = visible & {stream_id}
        if not visible:
            return []
        hits = self.search_index.search(query, stream_ids=visible, limit=limit)
        return [
            {
                "video_id": h.video_id,
                "stream_id": h.stream_id,
                "title": h.title,
                "score": h.score,
                "uploaded_at": fmt_ts(h.uploaded_at),
                "snippet": h.snippet,
            }
            for h in hits
        ]

    def suggestions(self, prefix: str, limit: int = None) -> list:
        """GET /search/suggestions"""
        return self.search_index.suggest(prefix, limit)

    # --- Engagement ---

    def like_video(self, video_id: str, user_id: str) -> int:
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            video = self._load(db, video_id)
            cur = db.execute(
                "INSERT OR IGNORE INTO video_likes (video_id, user_id) VALUES (?, ?)", (video_id, user_id)
            )
            if cur.rowcount:
                db.execute("UPDATE videos SET like_count = like_count + 1 WHERE id = ?", (video_id,))
            row = db.execute("SELECT like_count, share_count FROM videos WHERE id = ?", (video_id,)).fetchone()
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()
        if video.status == VideoStatus.READY:
            self.search_index.update_engagement(video_id, row["like_count"], row["share_count"])
        return row["like_count"]

    def share_video(self, video_id: str, user_id: str, expires_in_hours: int = None) -> str:
        code = secrets.token_urlsafe(8)
        expires_at = None
        if expires_in_hours:
            expires_at = fmt_ts(self.clock() + timedelta(hours=expires_in_hours))
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            video = self._load(db, video_id)
            db.execute(
                "INSERT INTO share_links (code, video_id, created_by, expires_at) VALUES (?, ?, ?, ?)",
                (code, video_id, user_id, expires_at),
            )
            db.execute("UPDATE videos SET share_count = share_count + 1 WHERE id = ?", (video_id,))
            row = db.execute("SELECT like_count, share_count FROM videos WHERE id = ?", (video_id,)).fetchone()
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()
        if video.status == VideoStatus.READY:
            self.search_index.update_engagement(video_id, row["like_count"], row["share_count"])
        return code

    def resolve_share(self, code: str) -> str:
        db = open_db(self.db_path)
        try:
            row = db.execute("SELECT video_id, expires_at FROM share_links WHERE code = ?", (code,)).fetchone()
        finally:
            db.close()
        if row is None:
            raise NotFound(f"share link {code} not found")
        expires = parse_ts(row["expires_at"])
        if expires is not None and expires <= self.clock():
            raise NotFound(f"share link {code} has expired")
        return row["video_id"]

    # --- Streams & access ---

    def _role(self, db, stream_id: str, user_id: str) -> str | None:
        if not db.execute("SELECT 1 FROM streams WHERE id = ?", (stream_id,)).fetchone():
            raise NotFound(f"stream {stream_id} not found")
        row = db.execute(
            "SELECT role FROM stream_members WHERE stream_id = ? AND user_id = ?", (stream_id, user_id)
        ).fetchone()
        return row["role"] if row else None

    def redeem_invite(self, code: str, user_id: str) -> dict:
        now_dt = self.clock()
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            invite = db.execute("SELECT * FROM invites WHERE code = ?", (code,)).fetchone()
            if invite is None:
                raise NotFound(f"invite {code} not found")
            expires = parse_ts(invite["expires_at"])
            if expires is not None and expires <= now_dt:
                raise InvalidTransition(f"invite {code} has expired")
            if invite["max_uses"] is not None and invite["use_count"] >= invite["max_uses"]:
                raise InvalidTransition(f"invite {code} has no uses left")

            current = self._role(db, invite["stream_id"], user_id)
            role = invite["role"]
            if current is not None and ROLE_RANK.get(current, 0) >= ROLE_RANK.get(role, 0):
                role = current
            else:
                db.execute(
                    "INSERT OR REPLACE INTO stream_members (stream_id, user_id, role) VALUES (?, ?, ?)",
                    (invite["stream_id"], user_id, role),
                )
            db.execute("UPDATE invites SET use_count = use_count + 1 WHERE code = ?", (code,))
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()
        log.info(f"User {user_id} joined stream {invite['stream_id']} as {role} via invite")
        return {"stream_id": invite["stream_id"], "role": role}

    def visible_streams(self, user_id: str = None) -> set:
        db = open_db(self.db_path)
        try:
            rows = db.execute(
                """
                SELECT id FROM streams WHERE is_private = 0
                UNION
                SELECT stream_id FROM stream_members WHERE user_id = ?
                """,
                (user_id,),
            ).fetchall()
        finally:
            db.close()
        return {r[0] for r in rows}

    def can_view(self, user_id: str, video_id: str) -> bool:
        video = self.get_video(video_id)
        return video.stream_id in self.visible_streams(user_id)

    # --- Deletion ---

    def delete_video(self, video_id: str, holder: str = "delete") -> list:
        """
        Take the video's lease, then drop it from both indexes, its job, its
        storage objects and the database. Duplicates that pointed at it run
        again from stage 0. Returns the ids of those requeued duplicates.
        """
        with self.queue.video_lease(video_id, holder, timeout=self.hold_timeout) as hold:
            db = open_db(self.db_path)
            try:
                db.execute("BEGIN IMMEDIATE")
                video = self._load(db, video_id)
                orphans = [
                    r["id"] for r in db.execute(
                        "SELECT id FROM videos WHERE duplicate_of = ? ORDER BY uploaded_at, id", (video_id,)
                    ).fetchall()
                ]
                db.execute(
                    """
                    UPDATE videos
                    SET status = 'queued', processing_index = 0, duplicate_of = NULL,
                        duplicate_reviewed = 0, updated_at = ?
                    WHERE duplicate_of = ?
                    """,
                    (fmt_ts(self.clock()), video_id),
                )
                db.execute("DELETE FROM similar_links WHERE video_id = ? OR other_id = ?", (video_id, video_id))
                db.execute("DELETE FROM stage_runs WHERE video_id = ?", (video_id,))
                db.execute("DELETE FROM videos WHERE id = ?", (video_id,))
                db.execute("COMMIT")
            except Exception:
                rollback_quietly(db)
                raise
            finally:
                db.close()

            self.similarity.remove(video_id)
            self.search_index.remove(video_id)
            hold.abandon()

        for key in (video.storage_key, video.playback_key, video.thumbnail_key):
            if key:
                self.storage.remove(key)
        for orphan in orphans:
            self.queue.enqueue(orphan)
        log.info(f"Deleted video {video_id}; requeued {len(orphans)} duplicate(s) of it")
        return orphans
