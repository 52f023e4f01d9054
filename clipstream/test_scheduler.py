"""Tests for the worker scheduler: outcome handling and the lease loop."""

import time
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

from clipstream import config, media
from clipstream.errors import LeaseLost, NotFound, PermanentError, StageFailure, TransientError
from clipstream.executor import COMPLETED
from clipstream.jobs import JobQueue
from clipstream.models import JobStatus
from clipstream.scheduler import Scheduler, build_app
from clipstream.testutil import DatabaseTestCase, unit


def _fake_fetch(key, dest):
    Path(dest).write_bytes(b"raw bytes")
    return dest


class SchedulerTestBase(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.queue = JobQueue(self.db_path, clock=self.clock)
        self.executor = MagicMock()
        self.executor.run.return_value = COMPLETED
        self.scheduler = Scheduler(self.queue, self.executor, max_concurrent=2, lease_seconds=60,
                                   reclaim_interval=0, poll_interval=0.01, worker_id="w1")

    def upload(self, video_id):
        self.insert_video(video_id, status="uploading")
        return self.queue.enqueue(video_id)


class TestProcessJob(SchedulerTestBase):
    def test_success_completes_job(self):
        job_id = self.upload("v1")
        job = self.scheduler.run_once()
        self.assertEqual(job.id, job_id)
        self.assertTrue(job.worker_id.startswith("w1/"))
        self.executor.run.assert_called_once_with(job)
        self.assertEqual(self.queue.get_job(job_id).status, JobStatus.SUCCEEDED)

    def test_empty_queue(self):
        self.assertIsNone(self.scheduler.run_once())
        self.executor.run.assert_not_called()

    def test_each_lease_gets_its_own_owner(self):
        self.upload("v1")
        self.upload("v2")
        first = self.scheduler.run_once()
        second = self.scheduler.run_once()
        self.assertNotEqual(first.worker_id, second.worker_id)

    def test_transient_stage_failure_backs_off(self):
        job_id = self.upload("v1")
        self.executor.run.side_effect = StageFailure("v1", "embedding", 1, TransientError("503"))
        self.scheduler.run_once()
        job = self.queue.get_job(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.attempt_count, 1)
        self.assertIn("stage=embedding", job.last_error)
        self.assertIsNone(self.scheduler.run_once())
        self.executor.forget.assert_not_called()

    def test_permanent_stage_failure(self):
        job_id = self.upload("v1")
        self.executor.run.side_effect = StageFailure("v1", "transcode", 1, PermanentError("corrupt"))
        self.scheduler.run_once()
        self.assertEqual(self.queue.get_job(job_id).status, JobStatus.FAILED)
        self.assertEqual(self.video_row("v1")["status"], "failed")
        self.executor.forget.assert_called_once_with("v1")

    def test_lease_lost_leaves_job_alone(self):
        job_id = self.upload("v1")
        self.executor.run.side_effect = LeaseLost("taken over")
        self.scheduler.run_once()
        job = self.queue.get_job(job_id)
        self.assertEqual(job.status, JobStatus.LEASED)
        self.assertEqual(job.attempt_count, 0)

    def test_missing_video_is_permanent(self):
        job_id = self.upload("v1")
        self.executor.run.side_effect = NotFound("video v1 not found")
        self.scheduler.run_once()
        self.assertEqual(self.queue.get_job(job_id).status, JobStatus.FAILED)

    def test_unexpected_error_is_retried(self):
        job_id = self.upload("v1")
        self.executor.run.side_effect = RuntimeError("boom")
        self.scheduler.run_once()
        job = self.queue.get_job(job_id)
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertIn("RuntimeError", job.last_error)


class TestLoop(SchedulerTestBase):
    def test_start_processes_queue_then_drains(self):
        job_ids = [self.upload(f"v{i}") for i in range(3)]
        self.scheduler.start()

        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            if all(self.queue.get_job(j).status == JobStatus.SUCCEEDED for j in job_ids):
                break
            time.sleep(0.02)

        self.assertTrue(self.scheduler.drain(timeout=5))
        self.assertEqual(self.executor.run.call_count, 3)
        self.assertEqual({self.queue.get_job(j).status for j in job_ids}, {JobStatus.SUCCEEDED})
        self.executor.shutdown.assert_called_once_with()

    def test_drain_without_start(self):
        self.assertTrue(self.scheduler.drain(timeout=1))


class TestBuildApp(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.insert_stream("s1", members={"carol": "creator"})
        self.storage = MagicMock()
        self.storage.fetch.side_effect = _fake_fetch
        self.inference = MagicMock()
        self.inference.transcribe.return_value = {
            "segments": [{"start": 0.0, "end": 4.0, "text": "sunrise over the harbor"}],
            "tags": [],
        }
        self.inference.embed.return_value = unit(config.EMBEDDING_DIM, 0).tolist()

        for name, kwargs in (
            ("extract_metadata", {"return_value": {"duration": 30.0, "width": 640, "height": 360}}),
            ("transcode", {"side_effect": lambda src, out: Path(out).write_bytes(b"x" * 64)}),
            ("generate_thumbnail", {"return_value": False}),
        ):
            patcher = patch.object(media, name, **kwargs)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.app = build_app(self.db_path, storage=self.storage, inference=self.inference,
                             clock=self.clock, work_dir=Path(self.work_dir))
        self.addCleanup(self.app.scheduler.executor.shutdown)

    def test_components_share_one_pair_of_indexes(self):
        app = self.app
        self.assertIs(app.service.similarity, app.similarity)
        self.assertIs(app.service.search_index, app.search)
        self.assertIs(app.admin.similarity, app.similarity)
        self.assertIs(app.admin.search, app.search)
        self.assertIs(app.scheduler.executor.similarity, app.similarity)
        self.assertIs(app.scheduler.executor.search, app.search)
        self.storage.ensure_bucket.assert_called_once_with()

    def test_processed_video_is_searchable_through_the_service(self):
        video_id = self.app.service.create_video("s1", "carol", "Harbor sunrise", "uploads/x/raw.mp4")
        job = self.app.scheduler.run_once()
        self.assertEqual(job.video_id, video_id)
        self.assertEqual(self.video_row(video_id)["status"], "ready")

        hits = self.app.service.search("harbor", user_id="carol")
        self.assertEqual([h["video_id"] for h in hits], [video_id])

        self.app.service.delete_video(video_id)
        self.assertNotIn(video_id, self.app.similarity)
        self.assertEqual(self.app.service.search("harbor", user_id="carol"), [])


if __name__ == "__main__":
    unittest.main()
