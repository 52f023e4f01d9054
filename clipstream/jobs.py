"""
ClipStream job queue.
One job per video, leased to a single worker at a time, retried with exponential backoff.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from clipstream import config
from clipstream.db import fmt_ts, open_db, parse_ts, rollback_quietly, utcnow
from clipstream.errors import InvalidTransition, LeaseLost, NotFound, TransientError
from clipstream.models import ACTIVE_JOB_STATUSES, Job

log = logging.getLogger("clipstream.jobs")

HOLD_EXISTING = "existing"
HOLD_SYNTHETIC = "synthetic"

# Queue position for a job entering (or re-entering) the queue; callers hold the write lock.
NEXT_SEQ = "(SELECT COALESCE(MAX(seq), 0) + 1 FROM jobs)"


def backoff_delay(attempt: int, base: float = None, factor: float = None, cap: float = None) -> float:
    """Seconds to wait before retry number `attempt` (1-based): base * factor^(attempt-1), capped."""
    base = config.RETRY_BASE_DELAY if base is None else base
    factor = config.RETRY_FACTOR if factor is None else factor
    cap = config.RETRY_MAX_DELAY if cap is None else cap
    return min(base * (factor ** max(0, attempt - 1)), cap)


@dataclass
class Hold:
    """A lease taken on a video by an admin or delete action."""
    job_id: str
    video_id: str
    holder: str
    kind: str
    action: str = "release"
    reset_attempts: bool = False

    def requeue(self, reset_attempts: bool = True):
        self.action = "requeue"
        self.reset_attempts = reset_attempts

    def abandon(self):
        self.action = "abandon"


class JobQueue:
    def __init__(
        self,
        db_path: str = None,
        clock=None,
        max_attempts: int = None,
        base_delay: float = None,
        factor: float = None,
        max_delay: float = None,
        hold_poll_seconds: float = 0.5,
    ):
        self.db_path = db_path or config.DB_PATH
        self.clock = clock or utcnow
        self.max_attempts = max_attempts or config.MAX_ATTEMPTS
        self.base_delay = config.RETRY_BASE_DELAY if base_delay is None else base_delay
        self.factor = config.RETRY_FACTOR if factor is None else factor
        self.max_delay = config.RETRY_MAX_DELAY if max_delay is None else max_delay
        self.hold_poll_seconds = hold_poll_seconds

    def _now(self) -> str:
        return fmt_ts(self.clock())

    # --- Producer side ---

    def enqueue(self, video_id: str, boost: bool = False) -> str:
        """Add a pending job for the video unless one is already active. Returns the job id."""
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            if not db.execute("SELECT 1 FROM videos WHERE id = ?", (video_id,)).fetchone():
                rollback_quietly(db)
                raise NotFound(f"video {video_id} not found")

            row = db.execute(
                "SELECT id FROM jobs WHERE video_id = ? AND status IN (?, ?)",
                (video_id, *ACTIVE_JOB_STATUSES),
            ).fetchone()
            if row:
                db.execute("COMMIT")
                return row["id"]

            job_id = str(uuid.uuid4())
            db.execute(
                f"""
                INSERT INTO jobs (id, video_id, status, priority, max_attempts, enqueued_at, seq)
                VALUES (?, ?, 'pending', ?, ?, ?, {NEXT_SEQ})
                """,
                (job_id, video_id, 1 if boost else 0, self.max_attempts, self._now()),
            )
            db.execute(
                "UPDATE videos SET status = 'queued', updated_at = ? "
                "WHERE id = ? AND status IN ('uploading', 'queued', 'failed', 'ready')",
                (self._now(), video_id),
            )
            db.execute("COMMIT")
            log.info(f"Enqueued job {job_id} for video {video_id}{' (boosted)' if boost else ''}")
            return job_id
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    # --- Worker side ---

    def lease(self, worker_id: str, timeout: int = None) -> Job | None:
        """Atomically claim the oldest eligible pending job. Returns None if nothing is due."""
        timeout = timeout or config.LEASE_SECONDS
        now_dt = self.clock()
        now = fmt_ts(now_dt)
        expiry = fmt_ts(now_dt + timedelta(seconds=timeout))
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute(
                """
                UPDATE jobs
                SET status = 'leased',
                    worker_id = ?,
                    lease_expiry = ?,
                    leased_at = ?,
                    wait_seconds = COALESCE(
                        wait_seconds, (julianday(?) - julianday(enqueued_at)) * 86400.0
                    )
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE status = 'pending'
                      AND hold_kind IS NULL
                      AND (run_after IS NULL OR run_after <= ?)
                    ORDER BY priority DESC, seq ASC
                    LIMIT 1
                )
                RETURNING *
                """,
                (worker_id, expiry, now, now, now),
            ).fetchone()
            if row is None:
                db.execute("COMMIT")
                return None
            db.execute(
                "UPDATE videos SET status = 'processing', updated_at = ? "
                "WHERE id = ? AND status IN ('uploading', 'queued', 'processing')",
                (now, row["video_id"]),
            )
            db.execute("COMMIT")
            return Job.from_row(row)
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    def renew(self, job_id: str, worker_id: str, timeout: int = None):
        """Extend a held, unexpired lease. Raises LeaseLost otherwise."""
        timeout = timeout or config.LEASE_SECONDS
        now_dt = self.clock()
        db = open_db(self.db_path)
        try:
            cur = db.execute(
                """
                UPDATE jobs SET lease_expiry = ?
                WHERE id = ? AND status = 'leased' AND worker_id = ? AND lease_expiry > ?
                """,
                (fmt_ts(now_dt + timedelta(seconds=timeout)), job_id, worker_id, fmt_ts(now_dt)),
            )
            if cur.rowcount == 0:
                raise LeaseLost(f"job {job_id} is no longer leased by {worker_id}")
        finally:
            db.close()

    def set_stage(self, job_id: str, stage: str):
        db = open_db(self.db_path)
        try:
            db.execute("UPDATE jobs SET stage = ? WHERE id = ?", (stage, job_id))
        finally:
            db.close()

    def complete(self, job_id: str, worker_id: str = None):
        db = open_db(self.db_path)
        try:
            sql = (
                "UPDATE jobs SET status = 'succeeded', completed_at = ?, lease_expiry = NULL "
                "WHERE id = ? AND status = 'leased'"
            )
            params = [self._now(), job_id]
            if worker_id is not None:
                sql += " AND worker_id = ?"
                params.append(worker_id)
            if db.execute(sql, params).rowcount == 0:
                raise LeaseLost(f"job {job_id} cannot complete: lease not held")
            log.info(f"Job {job_id} succeeded")
        finally:
            db.close()

    def fail(self, job_id: str, error: str, worker_id: str = None, permanent: bool = False) -> Job:
        """
        Record one failed attempt.
        - attempt_count goes up by exactly one; processing_index is never touched
        - permanent errors and exhausted attempts fail the job and the video
        - otherwise the job goes back to pending behind an exponential backoff
        """
        now_dt = self.clock()
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                rollback_quietly(db)
                raise NotFound(f"job {job_id} not found")
            if row["status"] != "leased" or (worker_id is not None and row["worker_id"] != worker_id):
                rollback_quietly(db)
                raise LeaseLost(f"job {job_id} cannot fail: lease not held")

            attempts = row["attempt_count"] + 1
            video_id = row["video_id"]
            now = fmt_ts(now_dt)

            if permanent or attempts >= row["max_attempts"]:
                db.execute(
                    """
                    UPDATE jobs
                    SET status = 'failed', attempt_count = ?, last_error = ?,
                        lease_expiry = NULL, completed_at = ?
                    WHERE id = ?
                    """,
                    (attempts, error, now, job_id),
                )
                db.execute(
                    "UPDATE videos SET status = 'failed', updated_at = ? "
                    "WHERE id = ? AND status != 'duplicate'",
                    (now, video_id),
                )
                log.error(
                    f"Job {job_id} (video {video_id}) permanently failed after "
                    f"{attempts} attempt(s): {error}"
                )
            else:
                delay = backoff_delay(attempts, self.base_delay, self.factor, self.max_delay)
                db.execute(
                    """
                    UPDATE jobs
                    SET status = 'pending', attempt_count = ?, last_error = ?,
                        worker_id = NULL, lease_expiry = NULL, run_after = ?
                    WHERE id = ?
                    """,
                    (attempts, error, fmt_ts(now_dt + timedelta(seconds=delay)), job_id),
                )
                db.execute(
                    "UPDATE videos SET status = 'queued', updated_at = ? "
                    "WHERE id = ? AND status = 'processing'",
                    (now, video_id),
                )
                log.warning(
                    f"Job {job_id} (video {video_id}) attempt {attempts}/{row['max_attempts']} "
                    f"failed, retrying in {delay:.0f}s: {error}"
                )
            updated = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            db.execute("COMMIT")
            return Job.from_row(updated)
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    def reclaim_expired(self) -> int:
        """
        Return expired worker leases to pending without charging an attempt.
        Expired admin holds are released the same way they would be on exit.
        """
        now = self._now()
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            reclaimed = db.execute(
                """
                UPDATE jobs
                SET status = 'pending', worker_id = NULL, lease_expiry = NULL, hold_kind = NULL
                WHERE status = 'leased'
                  AND lease_expiry <= ?
                  AND (hold_kind IS NULL OR hold_kind = ?)
                RETURNING id, video_id
                """,
                (now, HOLD_EXISTING),
            ).fetchall()
            db.execute(
                "DELETE FROM jobs WHERE status = 'leased' AND hold_kind = ? AND lease_expiry <= ?",
                (HOLD_SYNTHETIC, now),
            )
            for row in reclaimed:
                db.execute(
                    "UPDATE videos SET status = 'queued', updated_at = ? "
                    "WHERE id = ? AND status = 'processing'",
                    (now, row["video_id"]),
                )
            db.execute("COMMIT")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

        if reclaimed:
            log.warning(f"Reclaimed {len(reclaimed)} expired lease(s): {[r['id'] for r in reclaimed]}")
        return len(reclaimed)

    # --- Admin side ---

    def retry_failed(self, job_id: str) -> Job:
        """Put a failed job back at the tail of the queue with a fresh attempt budget."""
        now = self._now()
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            if row is None:
                rollback_quietly(db)
                raise NotFound(f"job {job_id} not found")
            if row["status"] != "failed":
                rollback_quietly(db)
                raise InvalidTransition(f"job {job_id} is {row['status']}, only failed jobs can be retried")
            active = db.execute(
                "SELECT id FROM jobs WHERE video_id = ? AND status IN (?, ?)",
                (row["video_id"], *ACTIVE_JOB_STATUSES),
            ).fetchone()
            if active:
                rollback_quietly(db)
                raise InvalidTransition(f"video {row['video_id']} already has active job {active['id']}")

            db.execute(
                f"""
                UPDATE jobs
                SET status = 'pending', attempt_count = 0, last_error = NULL,
                    worker_id = NULL, lease_expiry = NULL, run_after = NULL,
                    completed_at = NULL, priority = 0, enqueued_at = ?, seq = {NEXT_SEQ}
                WHERE id = ?
                """,
                (now, job_id),
            )
            db.execute(
                "UPDATE videos SET status = 'processing', updated_at = ? WHERE id = ? AND status = 'failed'",
                (now, row["video_id"]),
            )
            updated = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
            db.execute("COMMIT")
            log.info(f"Job {job_id} (video {row['video_id']}) requeued by admin retry")
            return Job.from_row(updated)
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    def acquire_video(self, video_id: str, holder: str, wait: bool = True, timeout: float = None) -> Hold:
        """
        Take the video's lease for an out-of-band mutation.
        Blocks while a worker holds an unexpired lease; gives up after `timeout` seconds.
        """
        timeout = config.HOLD_WAIT_SECONDS if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            hold = self._try_acquire(video_id, holder)
            if hold is not None:
                log.info(f"{holder} acquired lease on video {video_id} ({hold.kind})")
                return hold
            if not wait or time.monotonic() >= deadline:
                raise TransientError(f"lease contention on video {video_id}")
            time.sleep(self.hold_poll_seconds)

    def _try_acquire(self, video_id: str, holder: str) -> Hold | None:
        now_dt = self.clock()
        now = fmt_ts(now_dt)
        expiry = fmt_ts(now_dt + timedelta(seconds=config.LEASE_SECONDS))
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            if not db.execute("SELECT 1 FROM videos WHERE id = ?", (video_id,)).fetchone():
                rollback_quietly(db)
                raise NotFound(f"video {video_id} not found")

            row = db.execute(
                "SELECT * FROM jobs WHERE video_id = ? AND status IN (?, ?)",
                (video_id, *ACTIVE_JOB_STATUSES),
            ).fetchone()

            if row is None:
                job_id = str(uuid.uuid4())
                db.execute(
                    """
                    INSERT INTO jobs (id, video_id, stage, status, worker_id, lease_expiry,
                                      hold_kind, max_attempts, enqueued_at, leased_at)
                    VALUES (?, ?, 'admin_hold', 'leased', ?, ?, ?, ?, ?, ?)
                    """,
                    (job_id, video_id, holder, expiry, HOLD_SYNTHETIC, self.max_attempts, now, now),
                )
                db.execute("COMMIT")
                return Hold(job_id, video_id, holder, HOLD_SYNTHETIC)

            expired = row["status"] == "leased" and (parse_ts(row["lease_expiry"]) or now_dt) <= now_dt
            if row["status"] == "pending" or expired:
                kind = row["hold_kind"] or HOLD_EXISTING
                db.execute(
                    """
                    UPDATE jobs SET status = 'leased', worker_id = ?, lease_expiry = ?, hold_kind = ?
                    WHERE id = ?
                    """,
                    (holder, expiry, kind, row["id"]),
                )
                db.execute("COMMIT")
                return Hold(row["id"], video_id, holder, kind)

            db.execute("COMMIT")
            return None
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    def release_video(self, hold: Hold):
        now = self._now()
        db = open_db(self.db_path)
        try:
            db.execute("BEGIN IMMEDIATE")
            row = db.execute("SELECT * FROM jobs WHERE id = ?", (hold.job_id,)).fetchone()
            if row is None or row["status"] != "leased" or row["worker_id"] != hold.holder:
                rollback_quietly(db)
                raise LeaseLost(f"{hold.holder} no longer holds video {hold.video_id}")

            if hold.action == "abandon":
                if hold.kind == HOLD_SYNTHETIC:
                    db.execute("DELETE FROM jobs WHERE id = ?", (hold.job_id,))
                else:
                    db.execute(
                        "UPDATE jobs SET status = 'abandoned', hold_kind = NULL, lease_expiry = NULL, "
                        "completed_at = ? WHERE id = ?",
                        (now, hold.job_id),
                    )
            elif hold.action == "requeue":
                db.execute(
                    f"""
                    UPDATE jobs
                    SET status = 'pending', hold_kind = NULL, worker_id = NULL, lease_expiry = NULL,
                        run_after = NULL, stage = NULL, priority = 0, enqueued_at = ?, seq = {NEXT_SEQ},
                        attempt_count = CASE WHEN ? THEN 0 ELSE attempt_count END,
                        last_error = CASE WHEN ? THEN NULL ELSE last_error END
                    WHERE id = ?
                    """,
                    (now, hold.reset_attempts, hold.reset_attempts, hold.job_id),
                )
            elif hold.kind == HOLD_SYNTHETIC:
                db.execute("DELETE FROM jobs WHERE id = ?", (hold.job_id,))
            else:
                db.execute(
                    "UPDATE jobs SET status = 'pending', hold_kind = NULL, worker_id = NULL, "
                    "lease_expiry = NULL WHERE id = ?",
                    (hold.job_id,),
                )
            db.execute("COMMIT")
            log.info(f"{hold.holder} released video {hold.video_id} ({hold.action})")
        except Exception:
            rollback_quietly(db)
            raise
        finally:
            db.close()

    @contextmanager
    def video_lease(self, video_id: str, holder: str, timeout: float = None):
        """Hold the video's lease for the duration of the block; release per hold.action."""
        hold = self.acquire_video(video_id, holder, timeout=timeout)
        try:
            yield hold
        except BaseException:
            hold.action = "release"
            self.release_video(hold)
            raise
        self.release_video(hold)

    # --- Introspection ---

    def get_job(self, job_id: str) -> Job:
        db = open_db(self.db_path)
        try:
            row = db.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        finally:
            db.close()
        if row is None:
            raise NotFound(f"job {job_id} not found")
        return Job.from_row(row)

    def active_job(self, video_id: str) -> Job | None:
        db = open_db(self.db_path)
        try:
            row = db.execute(
                "SELECT * FROM jobs WHERE video_id = ? AND status IN (?, ?)",
                (video_id, *ACTIVE_JOB_STATUSES),
            ).fetchone()
        finally:
            db.close()
        return Job.from_row(row) if row else None

    def latest_job(self, video_id: str) -> Job | None:
        db = open_db(self.db_path)
        try:
            row = db.execute(
                "SELECT * FROM jobs WHERE video_id = ? AND hold_kind IS NULL "
                "ORDER BY seq DESC, rowid DESC LIMIT 1",
                (video_id,),
            ).fetchone()
        finally:
            db.close()
        return Job.from_row(row) if row else None

    def list_jobs(self, status: str, limit: int = 100) -> list[Job]:
        db = open_db(self.db_path)
        try:
            rows = db.execute(
                "SELECT * FROM jobs WHERE status = ? AND hold_kind IS NULL "
                "ORDER BY priority DESC, seq ASC LIMIT ?",
                (status, limit),
            ).fetchall()
        finally:
            db.close()
        return [Job.from_row(r) for r in rows]

    def stats(self) -> dict:
        """Queue depth, leased count and wait times for the queue-status views."""
        now_dt = self.clock()
        db = open_db(self.db_path)
        try:
            by_status = {
                r["status"]: r["cnt"]
                for r in db.execute(
                    "SELECT status, COUNT(*) AS cnt FROM jobs WHERE hold_kind IS NULL GROUP BY status"
                ).fetchall()
            }
            mean_wait = db.execute(
                "SELECT AVG(wait_seconds) FROM jobs WHERE wait_seconds IS NOT NULL"
            ).fetchone()[0]
            oldest = db.execute(
                "SELECT MIN(enqueued_at) FROM jobs WHERE status = 'pending' AND hold_kind IS NULL"
            ).fetchone()[0]
            held = db.execute(
                "SELECT COUNT(*) FROM jobs WHERE hold_kind IS NOT NULL AND status = 'leased'"
            ).fetchone()[0]
        finally:
            db.close()

        oldest_dt = parse_ts(oldest)
        return {
            "depth": by_status.get("pending", 0),
            "leased": by_status.get("leased", 0),
            "held": held,
            "mean_wait_seconds": round(mean_wait, 2) if mean_wait is not None else None,
            "oldest_pending_seconds": (now_dt - oldest_dt).total_seconds() if oldest_dt else None,
            "by_status": by_status,
            "max_attempts": self.max_attempts,
        }
