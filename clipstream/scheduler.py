#!/usr/bin/env python3
"""
ClipStream Worker
Leases video jobs and runs them through: transcode -> transcript -> embedding ->
duplicate detection -> POV clustering -> similar linking -> auto-trim -> search index
"""

import logging
import os
import signal
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from clipstream import config
from clipstream.admin import AdminController
from clipstream.db import init_schema
from clipstream.errors import LeaseLost, NotFound, StageFailure
from clipstream.executor import StageExecutor
from clipstream.inference import build_inference_client
from clipstream.jobs import JobQueue
from clipstream.models import Job, JobStatus
from clipstream.search import SearchIndex
from clipstream.service import ClipstreamService
from clipstream.similarity import SimilarityIndex
from clipstream.storage import MinioStorage

log = logging.getLogger("clipstream.worker")


class Scheduler:
    def __init__(
        self,
        queue: JobQueue,
        executor: StageExecutor,
        max_concurrent: int = None,
        lease_seconds: int = None,
        reclaim_interval: float = None,
        poll_interval: float = 2.0,
        worker_id: str = None,
    ):
        self.queue = queue
        self.executor = executor
        self.max_concurrent = max_concurrent or config.MAX_CONCURRENT
        self.lease_seconds = lease_seconds or config.LEASE_SECONDS
        self.reclaim_interval = config.RECLAIM_INTERVAL if reclaim_interval is None else reclaim_interval
        self.poll_interval = poll_interval
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self._stop = threading.Event()
        self._thread = None
        self._pool = None
        self._inflight = set()

    def _lease_owner(self) -> str:
        """Every lease gets its own owner token so a reclaimed job cannot be committed by a stale thread."""
        return f"{self.worker_id}/{uuid.uuid4().hex[:8]}"

    def start(self):
        if self._thread is not None:
            return
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="job")
        self._thread = threading.Thread(target=self.run, name="scheduler", daemon=True)
        self._thread.start()

    def run_forever(self):
        """Run the lease loop on the calling thread until stop() is called."""
        self._stop.clear()
        self._pool = ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="job")
        try:
            self.run()
        finally:
            self._pool.shutdown(wait=True)
            self._pool = None
            self.executor.shutdown()

    def stop(self):
        self._stop.set()

    def drain(self, timeout: float = None) -> bool:
        """Stop leasing and wait for in-flight jobs. Returns False if they outlived the timeout."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            finished = not self._thread.is_alive()
            self._thread = None
        else:
            finished = True
        if self._pool is not None:
            self._pool.shutdown(wait=finished)
            self._pool = None
        self.executor.shutdown()
        log.info(f"Worker drained ({'clean' if finished else 'timed out'})")
        return finished

    def run(self):
        log.info(f"Worker {self.worker_id} started (max_concurrent={self.max_concurrent})")
        last_reclaim_at = 0.0

        while not self._stop.is_set():
            try:
                self._reap()

                now = time.monotonic()
                if now - last_reclaim_at >= self.reclaim_interval:
                    self.queue.reclaim_expired()
                    last_reclaim_at = now

                if len(self._inflight) >= self.max_concurrent:
                    self._stop.wait(1)
                    continue

                job = self.queue.lease(self._lease_owner(), self.lease_seconds)
                if job is None:
                    self._stop.wait(self.poll_interval)
                    continue
                log.info(f"Leased job {job.id} for video {job.video_id} (attempt {job.attempt_count + 1})")
                self._inflight.add(self._pool.submit(self.process_job, job))
            except Exception as e:
                log.error(f"Job lease failed: {e}")
                self._stop.wait(5)

        for fut in list(self._inflight):
            fut.result()
        self._reap()
        log.info("Worker shut down")

    def _reap(self):
        for fut in [f for f in self._inflight if f.done()]:
            self._inflight.discard(fut)
            exc = fut.exception()
            if exc is not None:
                log.error(f"Background job crashed: {exc}")

    def run_once(self) -> Job | None:
        """Lease and process a single job on the calling thread."""
        job = self.queue.lease(self._lease_owner(), self.lease_seconds)
        if job is not None:
            self.process_job(job)
        return job

    def process_job(self, job: Job):
        try:
            outcome = self.executor.run(job)
        except LeaseLost as e:
            log.warning(f"Job {job.id} lost its lease, abandoning this run: {e}")
            return
        except StageFailure as e:
            log.warning(f"Job {job.id} failed: {e}")
            self._fail(job, str(e), e.permanent)
            return
        except NotFound as e:
            self._fail(job, str(e), True)
            return
        except Exception as e:
            log.error(f"Unexpected error processing job {job.id}: {e}")
            self._fail(job, f"{type(e).__name__}: {e}", False)
            return

        try:
            self.queue.complete(job.id, job.worker_id)
        except LeaseLost as e:
            log.warning(f"Job {job.id} finished after losing its lease: {e}")
            return
        log.info(f"Job {job.id} done: video {job.video_id} {outcome}")

    def _fail(self, job: Job, error: str, permanent: bool):
        try:
            failed = self.queue.fail(job.id, error, worker_id=job.worker_id, permanent=permanent)
        except (LeaseLost, NotFound) as e:
            log.warning(f"Could not record failure for job {job.id}: {e}")
            return
        if failed.status == JobStatus.FAILED:
            self.executor.forget(job.video_id)


@dataclass
class App:
    """One process: the worker, the user-facing service and the admin surface over shared indexes."""
    queue: JobQueue
    similarity: SimilarityIndex
    search: SearchIndex
    scheduler: Scheduler
    service: ClipstreamService
    admin: AdminController


def build_app(db_path: str = None, storage=None, inference=None, clock=None, work_dir=None) -> App:
    db_path = db_path or config.DB_PATH
    init_schema(db_path)

    if storage is None:
        storage = MinioStorage()
    storage.ensure_bucket()
    if inference is None:
        inference = build_inference_client()

    similarity = SimilarityIndex()
    similarity.rebuild(db_path)
    search = SearchIndex(clock=clock)
    search.rebuild(db_path)

    queue = JobQueue(db_path, clock=clock)
    executor = StageExecutor(queue, storage, inference, similarity, search, db_path=db_path,
                             work_dir=work_dir, clock=clock)
    return App(
        queue=queue,
        similarity=similarity,
        search=search,
        scheduler=Scheduler(queue, executor),
        service=ClipstreamService(queue, storage, similarity, search, db_path=db_path, clock=clock),
        admin=AdminController(queue, similarity, search, db_path=db_path, clock=clock),
    )


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s"
    )
    config.WORK_DIR.mkdir(parents=True, exist_ok=True)
    scheduler = build_app().scheduler

    def signal_handler(sig, frame):
        log.info("Shutdown signal received, finishing current jobs...")
        scheduler.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    scheduler.run_forever()


if __name__ == "__main__":
    main()
