"""
Operator-facing control surface: retries, duplicate review and pipeline statistics.
The only place where a job's last_error is exposed.
"""

import logging

from clipstream import config
from clipstream.db import fmt_ts, open_db, rollback_quietly, utcnow
from clipstream.errors import InvalidTransition, NotFound
from clipstream.jobs import JobQueue
from clipstream.models import DUPLICATE_INDEX, Job, Video
from clipstream.stages import STAGE_NAMES, flag_duplicate, resolve_canonical

log = logging.getLogger("clipstream.admin")

DUPLICATE_ACTIONS = ("confirm", "unflag", "merge")
DETECTION_INDEX = STAGE_NAMES.index("duplicate_detection")

# Artifacts cleared when a video restarts from stage 0.
RESET_COLUMNS = """
    processing_index = 0, duplicate_of = NULL, playback_key = NULL, thumbnail_key = NULL,
    duration_seconds = NULL, width = NULL, height = NULL, file_size_bytes = NULL,
    embedding = NULL, transcript = NULL, tags = '[]', trimmed_clips = NULL, pov_group_id = NULL
"""


class AdminController:
    def __init__(self, queue: JobQueue, similarity, search, db_path: str = None, clock=None,
                 holder: str = "admin", hold_timeout: float = None):
        self.queue = queue
        self.similarity = similarity
        self.search = search
        self.db_path = db_path or config.DB_PATH
        self.clock = clock or utcnow
        self.holder = holder
        self.hold_timeout = hold_timeout

    # --- Retry ---

    def retry(self, job_id: str) -> Job:
        """Requeue a failed job at the tail with a fresh attempt budget."""
        job = self.queue.retry_failed(job_id)
        self._republish(job.video_id)
        log.info(f"Admin retry of job {job_id} for video {job.video_id}")
        return job

    def retry_all_failed(self, limit: int = 100) -> list:
        retried = []
        for job in self.queue.list_jobs("failed", limit=limit):
            try:
                self.queue.retry_failed(job.id)
            except InvalidTransition as e:
                log.warning(f"Skipping retry of job {job.id}: {e}")
                continue
            self._republish(job.video_id)
            retried.append(job.id)
        log.info(f"Admin retried {len(retried)} failed job(s)")
        return retried

    def _republish(self, video_id: str):
        """A failed video leaves the similarity index; once retried past detection it goes back in."""
        db = open_db(self.db_path)
        try:
            row = db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
        finally:
            db.close()
        if row is None:
            return
        video = Video.from_row(row)
        if video.embedding is not None and video.processing_index > DETECTION_INDEX:
            self.similarity.add(video.id, video.embedding, video.stream_id, video.uploaded_at)

    def reset_video(self, video_id: str) -> str:
        """Throw away every artifact and run the video again from stage 0."""
        with self.queue.video_lease(video_id, self.holder, timeout=self.hold_timeout) as hold:
            db = open_db(self.db_path)
            try:
                db.execute("BEGIN IMMEDIATE")
                db.execute(
                    f"UPDATE videos SET status = 'queued', {RESET_COLUMNS}, updated_at = ? WHERE id = ?",
                    (fmt_ts(self.clock()), video_id),
                )
                db.execute("DELETE FROM similar_links WHERE video_id = ? OR other_id = ?", (video_id, video_id))
                db.execute("COMMIT")
            except Exception:
                rollback_quietly(db)
                raise
            finally:
                db.close()
            self.similarity.remove(video_id)
            self.search.remove(video_id)
            hold.requeue(reset_attempts=True)
        log.info(f"Admin reset video {video_id} to stage 0")
        return hold.job_id

    # --- Duplicate review ---

    def list_duplicates(self, include_reviewed: bool = False) -> list:
        sql = """
            SELECT v.id, v.title, v.stream_id, v.thumbnail_key, v.uploaded_at,
                   v.processing_index, v.duplicate_of, v.duplicate_reviewed,
                   c.title AS canonical_title
            FROM videos v
            LEFT JOIN videos c ON c.id = v.duplicate_of
            WHERE v.status = 'duplicate'
        """
        if not include_reviewed:
            sql += " AND v.duplicate_reviewed = 0"
        sql += " ORDER BY v.uploaded_at ASC, v.id ASC"
        db = open_db(self.db_path)
        try:
            rows = db.execute(sql).fetchall()
        finally:
            db.close()
        return [
            {
                "video_id": r["id"],
                "title": r["title"],
                "stream_id": r["stream_id"],
                "thumbnail_key": r["thumbnail_key"],
                "uploaded_at": r["uploaded_at"],
                "processing_index": r["processing_index"],
                "duplicate_of": r["duplicate_of"],
                "canonical_title": r["canonical_title"],
                "reviewed": bool(r["duplicate_reviewed"]),
            }
            for r in rows
        ]

    def override_duplicate(self, video_id: str, action: str, target: str = None) -> dict:
        """
        confirm: keep the flag and mark it reviewed.
        unflag: clear the flag, exempt the video from re-flagging and requeue from stage 0.
        merge: point the video, and anything pointing at it, at the target's canonical root.
        """
        if action not in DUPLICATE_ACTIONS:
            raise InvalidTransition(f"unknown duplicate action {action!r}")
        if action == "merge" and not target:
            raise InvalidTransition("merge needs a target video")

        with self.queue.video_lease(video_id, self.holder, timeout=self.hold_timeout) as hold:
            db = open_db(self.db_path)
            try:
                db.execute("BEGIN IMMEDIATE")
                row = db.execute("SELECT status, duplicate_of FROM videos WHERE id = ?", (video_id,)).fetchone()
                if row is None:
                    raise NotFound(f"video {video_id} not found")
                now = fmt_ts(self.clock())

                if action == "confirm":
                    self._require_duplicate(row, video_id)
                    db.execute(
                        "UPDATE videos SET duplicate_reviewed = 1, updated_at = ? WHERE id = ?",
                        (now, video_id),
                    )
                    result = {"video_id": video_id, "duplicate_of": row["duplicate_of"], "reviewed": True}

                elif action == "unflag":
                    self._require_duplicate(row, video_id)
                    db.execute(
                        f"UPDATE videos SET status = 'queued', {RESET_COLUMNS}, "
                        "duplicate_exempt = 1, duplicate_reviewed = 1, updated_at = ? WHERE id = ?",
                        (now, video_id),
                    )
                    hold.requeue(reset_attempts=True)
                    result = {"video_id": video_id, "duplicate_of": None, "processing_index": 0}

                else:
                    root = self._merge_root(db, video_id, target)
                    flag_duplicate(db, video_id, root, now, reviewed=True)
                    if row["status"] != "duplicate":
                        hold.abandon()
                    result = {"video_id": video_id, "duplicate_of": root, "processing_index": DUPLICATE_INDEX}
                db.execute("COMMIT")
            except Exception:
                rollback_quietly(db)
                raise
            finally:
                db.close()

        if action == "merge":
            self.similarity.remove(video_id)
            self.search.remove(video_id)
        log.info(f"Admin {action} on duplicate video {video_id}: {result}")
        return result

    @staticmethod
    def _require_duplicate(row, video_id: str):
        if row["status"] != "duplicate":
            raise InvalidTransition(f"video {video_id} is {row['status']}, not a duplicate")

    def _merge_root(self, db, video_id: str, target: str) -> str:
        if not db.execute("SELECT 1 FROM videos WHERE id = ?", (target,)).fetchone():
            raise NotFound(f"video {target} not found")
        root = resolve_canonical(self.db_path, target)
        if root == video_id:
            raise InvalidTransition(f"cannot merge {video_id} into its own duplicate {target}")
        return root

    # --- Introspection ---

    def list_failed(self, limit: int = 100) -> list:
        db = open_db(self.db_path)
        try:
            rows = db.execute(
                """
                SELECT j.id, j.video_id, j.stage, j.attempt_count, j.max_attempts,
                       j.last_error, j.completed_at, v.title, v.processing_index
                FROM jobs j
                LEFT JOIN videos v ON v.id = j.video_id
                WHERE j.status = 'failed'
                ORDER BY j.completed_at DESC, j.rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        finally:
            db.close()
        return [
            {
                "job_id": r["id"],
                "video_id": r["video_id"],
                "title": r["title"],
                "stage": r["stage"],
                "processing_index": r["processing_index"],
                "attempt_count": r["attempt_count"],
                "max_attempts": r["max_attempts"],
                "last_error": r["last_error"],
                "failed_at": r["completed_at"],
            }
            for r in rows
        ]

    def queue_status(self) -> dict:
        status = self.queue.stats()
        db = open_db(self.db_path)
        try:
            rows = db.execute(
                "SELECT id, video_id, stage, worker_id, attempt_count, lease_expiry, hold_kind "
                "FROM jobs WHERE status = 'leased' ORDER BY leased_at ASC"
            ).fetchall()
        finally:
            db.close()
        status["leases"] = [dict(r) for r in rows]
        return status

    def processing_stats(self) -> dict:
        db = open_db(self.db_path)
        try:
            stage_rows = db.execute(
                """
                SELECT stage,
                       COUNT(*) AS runs,
                       SUM(CASE WHEN ok = 1 THEN 1 ELSE 0 END) AS succeeded,
                       SUM(CASE WHEN ok = 0 THEN 1 ELSE 0 END) AS failed,
                       AVG(CASE WHEN ok = 1 THEN duration_seconds END) AS mean_seconds
                FROM stage_runs
                GROUP BY stage
                """
            ).fetchall()
            videos = {
                r["status"]: r["cnt"]
                for r in db.execute("SELECT status, COUNT(*) AS cnt FROM videos GROUP BY status").fetchall()
            }
            errors = db.execute(
                """
                SELECT stage, error, COUNT(*) AS cnt FROM stage_runs
                WHERE ok = 0 AND error IS NOT NULL
                GROUP BY stage, error ORDER BY cnt DESC LIMIT 10
                """
            ).fetchall()
        finally:
            db.close()

        by_stage = {r["stage"]: r for r in stage_rows}
        stages = []
        for name in STAGE_NAMES:
            r = by_stage.get(name)
            stages.append({
                "stage": name,
                "runs": r["runs"] if r else 0,
                "succeeded": r["succeeded"] if r else 0,
                "failed": r["failed"] if r else 0,
                "mean_seconds": round(r["mean_seconds"], 3) if r and r["mean_seconds"] is not None else None,
            })
        return {
            "stages": stages,
            "videos_by_status": videos,
            "top_errors": [dict(r) for r in errors],
            "queue": self.queue.stats(),
        }

    def storage_stats(self) -> dict:
        db = open_db(self.db_path)
        try:
            rows = db.execute(
                """
                SELECT status, COUNT(*) AS videos, COALESCE(SUM(file_size_bytes), 0) AS bytes
                FROM videos GROUP BY status
                """
            ).fetchall()
        finally:
            db.close()
        by_status = {r["status"]: {"videos": r["videos"], "bytes": r["bytes"]} for r in rows}
        total = sum(v["bytes"] for v in by_status.values())
        return {
            "total_bytes": total,
            "total_gb": round(total / (1024 ** 3), 3),
            "by_status": by_status,
            "indexed_vectors": len(self.similarity),
            "indexed_documents": len(self.search),
        }
