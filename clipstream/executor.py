"""
Stage executor: runs a leased video through the remaining pipeline stages.

Processing resumes at the video's processing_index. After each stage the
artifacts and the index bump are committed in one transaction, and only while
the caller still holds the job's lease and the index is where it was read.
"""

import logging
import shutil
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from pathlib import Path

from clipstream import config
from clipstream.db import fmt_ts, open_db, rollback_quietly, utcnow
from clipstream.errors import LeaseLost, NotFound, PipelineError, StageFailure, StageTimeout, TransientError
from clipstream.models import DUPLICATE_INDEX, Duplicate, Failed, Job, Video, VideoStatus
from clipstream.stages import STAGES, StageContext, flag_duplicate

log = logging.getLogger("clipstream.executor")

COMPLETED = "completed"
DUPLICATE = "duplicate"

# Columns a stage may write as part of its checkpoint.
STAGE_COLUMNS = frozenset({
    "playback_key", "thumbnail_key", "duration_seconds", "width", "height",
    "file_size_bytes", "transcript", "tags", "embedding", "trimmed_clips",
})


class StageExecutor:
    def __init__(
        self,
        queue,
        storage,
        inference,
        similarity,
        search,
        db_path: str = None,
        stages=None,
        deadline: float = None,
        lease_seconds: int = None,
        work_dir: Path = None,
        clock=None,
        max_workers: int = None,
        hold_timeout: float = None,
    ):
        self.queue = queue
        self.storage = storage
        self.inference = inference
        self.similarity = similarity
        self.search = search
        self.db_path = db_path or config.DB_PATH
        self.stages = tuple(stages or STAGES)
        self.deadline = deadline or config.STAGE_DEADLINE_SECONDS
        self.lease_seconds = lease_seconds or config.LEASE_SECONDS
        self.work_dir = Path(work_dir or config.WORK_DIR)
        self.clock = clock or utcnow
        self.hold_timeout = hold_timeout
        # A stage that blew its deadline keeps its thread until it returns.
        self._runner = ThreadPoolExecutor(
            max_workers=max_workers or max(4, config.MAX_CONCURRENT * 2),
            thread_name_prefix="stage",
        )

    def shutdown(self):
        self._runner.shutdown(wait=False)

    def forget(self, video_id: str):
        """Drop a video that failed for good from the live indexes."""
        self.similarity.remove(video_id)
        self.search.remove(video_id)

    def load_video(self, video_id: str) -> Video:
        db = open_db(self.db_path)
        try:
            row = db.execute("SELECT * FROM videos WHERE id = ?", (video_id,)).fetchone()
        finally:
            db.close()
        if row is None:
            raise NotFound(f"video {video_id} not found")
        return Video.from_row(row)

    def run(self, job: Job) -> str:
        """
        Drive the job's video to the end of the pipeline or to a duplicate flag.
        Raises StageFailure for stage errors and LeaseLost if another owner took over.
        """
        worker_id = job.worker_id
        video = self.load_video(job.video_id)
        if isinstance(video.state, Duplicate):
            log.info(f"Video {video.id} is already a duplicate of {video.duplicate_of}, nothing to do")
            return DUPLICATE

        work_path = self.work_dir / job.id
        work_path.mkdir(parents=True, exist_ok=True)
        ctx = StageContext(
            video=video,
            job_id=job.id,
            work_path=work_path,
            storage=self.storage,
            inference=self.inference,
            similarity=self.similarity,
            search=self.search,
            db_path=self.db_path,
        )
        try:
            while True:
                video = self.load_video(job.video_id)
                state = video.state
                if isinstance(state, Duplicate):
                    return DUPLICATE
                if isinstance(state, Failed):
                    raise LeaseLost(f"video {video.id} was failed while job {job.id} held it")
                index = state.next_stage
                if index >= len(self.stages):
                    self._mark_ready(video)
                    return COMPLETED

                stage = self.stages[index]
                self.queue.renew(job.id, worker_id, self.lease_seconds)
                self.queue.set_stage(job.id, stage.name)
                ctx.video = video

                attempt = job.attempt_count + 1
                run_id = self._record_start(video.id, job.id, stage.name, attempt)
                started = time.monotonic()
                try:
                    stage.check(video)
                    result = self._call_with_deadline(stage, ctx)
                    if result.duplicate_of:
                        self._commit_duplicate(video, index, result.duplicate_of, job.id, worker_id)
                    else:
                        for other_id in result.absorb:
                            self._absorb(video, other_id, job.id, worker_id)
                        self._commit(video, index, result.updates, job.id, worker_id)
                except LeaseLost:
                    self._record_finish(run_id, started, False, "lease lost")
                    raise
                except Exception as e:
                    self._record_finish(run_id, started, False, str(e))
                    cause = e if isinstance(e, PipelineError) else TransientError(f"{type(e).__name__}: {e}")
                    raise StageFailure(video.id, stage.name, attempt, cause) from e

                self._record_finish(run_id, started, True, None)
                if result.duplicate_of:
                    self.similarity.remove(video.id)
                    self.search.remove(video.id)
                    return DUPLICATE

                for hook in result.after_commit:
                    hook()
                log.info(
                    f"Video {video.id}: stage {index + 1}/{len(self.stages)} {stage.name} done "
                    f"in {time.monotonic() - started:.1f}s"
                )
        finally:
            shutil.rmtree(work_path, ignore_errors=True)

    def _call_with_deadline(self, stage, ctx):
        deadline = stage.deadline or self.deadline
        future = self._runner.submit(stage.run, ctx)
        try:
            return future.result(timeout=deadline)
        except FutureTimeout as e:
            future.cancel()
            raise StageTimeout(f"{stage.name} exceeded its {deadline}s deadline") from e

    def _commit(self, video: Video, index: int, updates: dict, job_id: str, worker_id: str):
        unknown = set(updates) - STAGE_COLUMNS
        if unknown:
            raise ValueError(f"stage wrote unknown columns: {sorted(unknown)}")

        final = index + 1 == len(self.stages)
        now = fmt_ts(self.clock())
        columns = list(updates)
        assignments = "".join(f"{c} = ?, " for c in columns)
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            self._check_lease(db, job_id, worker_id)
            cur = db.execute(
                f"""
                UPDATE videos
                SET {assignments}processing_index = processing_index + 1,
                    status = ?, updated_at = ?
                WHERE id = ? AND processing_index = ? AND status = 'processing'
                """,
                (*(updates[c] for c in columns), "ready" if final else "processing", now, video.id, index),
            )
            if cur.rowcount == 0:
                raise LeaseLost(f"video {video.id} moved past stage {index} under job {job_id}")
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    def _commit_duplicate(self, video: Video, index: int, canonical_id: str, job_id: str, worker_id: str):
        now = fmt_ts(self.clock())
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            self._check_lease(db, job_id, worker_id)
            cur = db.execute(
                """
                UPDATE videos
                SET status = 'duplicate', processing_index = ?, duplicate_of = ?,
                    duplicate_reviewed = 0, embedding = NULL, transcript = NULL,
                    tags = '[]', trimmed_clips = NULL, pov_group_id = NULL, updated_at = ?
                WHERE id = ? AND processing_index = ? AND status = 'processing'
                """,
                (DUPLICATE_INDEX, canonical_id, now, video.id, index),
            )
            if cur.rowcount == 0:
                raise LeaseLost(f"video {video.id} moved past stage {index} under job {job_id}")
            db.execute("DELETE FROM similar_links WHERE video_id = ? OR other_id = ?", (video.id, video.id))
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()
        log.info(f"Video {video.id} flagged as duplicate of {canonical_id}")

    def _absorb(self, canonical: Video, video_id: str, job_id: str, worker_id: str):
        """Flag a later upload that cleared duplicate detection first as a duplicate of `canonical`."""
        with self.queue.video_lease(video_id, f"{worker_id}:dedupe", timeout=self.hold_timeout) as hold:
            db = open_db(self.db_path)
            try:
                db.execute("BEGIN IMMEDIATE")
                self._check_lease(db, job_id, worker_id)
                row = db.execute(
                    "SELECT status, duplicate_exempt FROM videos WHERE id = ?", (video_id,)
                ).fetchone()
                if row is None or row["status"] in ("duplicate", "failed") or row["duplicate_exempt"]:
                    db.execute("COMMIT")
                    return
                flag_duplicate(db, video_id, canonical.id, fmt_ts(self.clock()))
                db.execute("COMMIT")
            except Exception:
                rollback_quietly(db)
                raise
            finally:
                db.close()
            hold.abandon()

        self.similarity.remove(video_id)
        self.search.remove(video_id)
        log.info(f"Video {video_id} flagged as duplicate of earlier upload {canonical.id}")

    def _mark_ready(self, video: Video):
        """A re-enqueued video that already finished every stage goes straight back to ready."""
        if video.status == VideoStatus.READY:
            return
        db = open_db(self.db_path)
        try:
            db.execute(
                "UPDATE videos SET status = 'ready', updated_at = ? WHERE id = ? AND processing_index = ?",
                (fmt_ts(self.clock()), video.id, len(self.stages)),
            )
        finally:
            db.close()

    def _check_lease(self, db, job_id: str, worker_id: str):
        row = db.execute(
            "SELECT 1 FROM jobs WHERE id = ? AND status = 'leased' AND worker_id = ?",
            (job_id, worker_id),
        ).fetchone()
        if row is None:
            raise LeaseLost(f"job {job_id} is no longer leased by {worker_id}")

    def _record_start(self, video_id: str, job_id: str, stage: str, attempt: int) -> int:
        db = open_db(self.db_path)
        try:
            cur = db.execute(
                "INSERT INTO stage_runs (video_id, job_id, stage, attempt, started_at) VALUES (?, ?, ?, ?, ?)",
                (video_id, job_id, stage, attempt, fmt_ts(self.clock())),
            )
            return cur.lastrowid
        finally:
            db.close()

    def _record_finish(self, run_id: int, started: float, ok: bool, error: str | None):
        db = open_db(self.db_path)
        try:
            db.execute(
                "UPDATE stage_runs SET finished_at = ?, duration_seconds = ?, ok = ?, error = ? WHERE id = ?",
                (fmt_ts(self.clock()), round(time.monotonic() - started, 3), int(ok),
                 error[:500] if error else None, run_id),
            )
        finally:
            db.close()
