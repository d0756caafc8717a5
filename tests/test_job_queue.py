#!/usr/bin/env python3
"""
Unit tests for the job engine: claiming, dispatch, outcome mapping,
progress, cancellation, recovery and retries.
"""

import sys
import time
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from lectures.core.constants import JobStatus, ErrorCode
from lectures.core.db_sqlite import Database
from lectures.core.error_codes import JobError
from lectures.core.job_queue import JobQueueManager
from lectures.core.llm_provider import Usage


@dataclass
class EchoPayload:
    value: str


def wait_for_status(manager, job_id, statuses, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = manager.get_job(job_id)
        if job.status in statuses:
            return job
        time.sleep(0.02)
    raise AssertionError(f"job {job_id} never reached {statuses}")


class QueueTestCase(unittest.TestCase):

    config = {"workers": 1, "max_retries": 2}

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db = Database(Path(self.tmpdir.name) / "jobs.db")
        self.manager = JobQueueManager(self.db, dict(self.config), poll_interval=0.02)

    def tearDown(self):
        self.manager.stop(cancel_running=True, timeout=5)
        self.db.close()
        self.tmpdir.cleanup()

    def run_next(self):
        """Claim and process one job on the test thread."""
        job = self.db.claim_next_pending()
        self.assertIsNotNone(job)
        self.manager._process_job(job)
        return self.db.get_job(job.id)


class TestDispatch(QueueTestCase):

    def test_completed_job_stores_result_and_100(self):
        def handler(ctx, job, payload, update_progress):
            update_progress(30, "working")
            return {"echo": payload.value}

        self.manager.register_handler("ECHO", handler, EchoPayload)
        job = self.manager.enqueue("ECHO", {"value": "hi"})
        done = self.run_next()
        self.assertEqual(done.id, job.id)
        self.assertEqual(done.status, JobStatus.COMPLETED)
        self.assertEqual(done.progress, 100)
        self.assertEqual(done.result_dict(), {"echo": "hi"})

    def test_unknown_job_type_fails(self):
        self.manager.enqueue("NOPE", {})
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.FAILED)
        self.assertEqual(done.error_code, ErrorCode.UNKNOWN_JOB_TYPE)
        self.assertIn("unknown job type", done.error)

    def test_bad_payload_fails_before_handler(self):
        calls = []
        self.manager.register_handler("ECHO", lambda *a: calls.append(a), EchoPayload)
        self.manager.enqueue("ECHO", '{"other": 1}')
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.FAILED)
        self.assertEqual(done.error_code, ErrorCode.BAD_PAYLOAD)
        self.assertEqual(calls, [])

    def test_job_error_maps_to_failed(self):
        def handler(ctx, job, payload, update_progress):
            raise JobError(ErrorCode.FFMPEG, "ffmpeg failed (rc=1): bad input")

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.FAILED)
        self.assertEqual(done.error_code, ErrorCode.FFMPEG)
        self.assertIn("bad input", done.error)
        self.assertFalse(done.retryable)

    def test_unexpected_exception_is_recorded(self):
        def handler(ctx, job, payload, update_progress):
            raise ValueError("kaboom")

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.FAILED)
        self.assertEqual(done.error_code, ErrorCode.UNEXPECTED)
        self.assertIn("kaboom", done.error)
        self.assertTrue(done.retryable)

    def test_usage_stored_on_failure(self):
        def handler(ctx, job, payload, update_progress):
            update_progress.add_usage(Usage(input_tokens=10, output_tokens=5, cost=0.02))
            raise JobError(ErrorCode.PROVIDER, "stream broke")

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.FAILED)
        self.assertEqual(done.input_tokens, 10)
        self.assertEqual(done.output_tokens, 5)
        self.assertAlmostEqual(done.estimated_cost, 0.02)


class TestProgress(QueueTestCase):

    def test_progress_is_monotonic_and_clamped(self):
        observed = []

        def on_update(job):
            if job.status == JobStatus.RUNNING:
                observed.append(job.progress)

        def handler(ctx, job, payload, update_progress):
            for value in (10, 50, 30, 150, -5):
                update_progress(value)

        self.manager.on_job_updated = on_update
        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertEqual(observed, sorted(observed))
        self.assertLessEqual(max(observed), 100)
        self.assertEqual(done.progress, 100)

    def test_progress_after_external_cancel_cancels_context(self):
        seen = {}

        def handler(ctx, job, payload, update_progress):
            self.db.cancel_job(job.id)
            update_progress(50)
            seen["cancelled"] = ctx.cancelled
            ctx.check()

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertTrue(seen["cancelled"])
        self.assertEqual(done.status, JobStatus.CANCELLED)


class TestCostLimit(QueueTestCase):

    config = {"workers": 1, "max_cost_per_job": 0.01}

    def test_cost_above_limit_fails(self):
        def handler(ctx, job, payload, update_progress):
            update_progress.add_usage(Usage(input_tokens=1000, output_tokens=100, cost=0.05))
            return {"never": True}

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.FAILED)
        self.assertEqual(done.error_code, ErrorCode.COST_LIMIT)
        self.assertAlmostEqual(done.estimated_cost, 0.05)


class TestDeadline(QueueTestCase):

    config = {"workers": 1, "job_timeout_sec": 0.2}

    def test_deadline_cancels_job(self):
        def handler(ctx, job, payload, update_progress):
            ctx.wait(5)
            ctx.check()

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {})
        done = self.run_next()
        self.assertEqual(done.status, JobStatus.CANCELLED)
        self.assertIn("deadline", done.error)


class TestWorkerPool(QueueTestCase):

    config = {"workers": 4}

    def test_no_job_runs_twice(self):
        seen = []
        lock = threading.Lock()

        def handler(ctx, job, payload, update_progress):
            with lock:
                seen.append(job.id)
            time.sleep(0.001)

        self.manager.register_handler("ECHO", handler)
        ids = [self.manager.enqueue("ECHO", {}).id for _ in range(40)]
        self.manager.start()
        for job_id in ids:
            wait_for_status(self.manager, job_id, (JobStatus.COMPLETED,))
        self.assertEqual(len(seen), 40)
        self.assertEqual(sorted(seen), sorted(ids))

    def test_cancel_running_job(self):
        started = threading.Event()
        finished = threading.Event()

        def handler(ctx, job, payload, update_progress):
            started.set()
            try:
                while not ctx.wait(0.02):
                    pass
                ctx.check()
            finally:
                finished.set()

        self.manager.register_handler("ECHO", handler)
        job = self.manager.enqueue("ECHO", {})
        self.manager.start()
        self.assertTrue(started.wait(5))
        self.assertTrue(self.manager.cancel_job(job.id))
        self.assertTrue(finished.wait(5))
        done = wait_for_status(self.manager, job.id, (JobStatus.CANCELLED,))
        self.assertEqual(done.error_code, ErrorCode.CANCELLED)
        self.assertFalse(self.manager.cancel_job(job.id))

    def test_cancel_pending_job_never_runs(self):
        calls = []
        self.manager.register_handler("ECHO", lambda *a: calls.append(a))
        job = self.manager.enqueue("ECHO", {})
        self.assertTrue(self.manager.cancel_job(job.id))
        self.manager.start()
        time.sleep(0.1)
        self.assertEqual(calls, [])
        self.assertEqual(self.manager.get_job(job.id).status, JobStatus.CANCELLED)

    def test_start_fails_interrupted_jobs(self):
        job = self.manager.enqueue("ECHO", {})
        self.db.claim_next_pending()
        self.manager.start()
        fetched = self.manager.get_job(job.id)
        self.assertEqual(fetched.status, JobStatus.FAILED)
        self.assertEqual(fetched.error_code, ErrorCode.INTERRUPTED)
        self.assertTrue(fetched.retryable)


class TestRetry(QueueTestCase):

    def _failed_job(self):
        def handler(ctx, job, payload, update_progress):
            raise JobError(ErrorCode.NETWORK_TRANSIENT, "offline")

        self.manager.register_handler("ECHO", handler)
        self.manager.enqueue("ECHO", {"value": "x"}, user_id="u1")
        return self.run_next()

    def test_retry_creates_new_row(self):
        failed = self._failed_job()
        retry = self.manager.retry_job(failed.id)
        self.assertNotEqual(retry.id, failed.id)
        self.assertEqual(retry.status, JobStatus.PENDING)
        self.assertEqual(retry.retry_of, failed.id)
        self.assertEqual(retry.payload_dict(), {"value": "x"})
        self.assertEqual(retry.user_id, "u1")
        # Source row is untouched
        self.assertEqual(self.manager.get_job(failed.id).status, JobStatus.FAILED)

    def test_retry_refused_for_completed(self):
        self.manager.register_handler("OK", lambda *a: None)
        self.manager.enqueue("OK", {})
        done = self.run_next()
        with self.assertRaises(JobError):
            self.manager.retry_job(done.id)

    def test_retry_limit(self):
        failed = self._failed_job()
        first = self.manager.retry_job(failed.id)
        self.run_next()
        second = self.manager.retry_job(first.id)
        self.run_next()
        with self.assertRaises(JobError) as cm:
            self.manager.retry_job(second.id)
        self.assertIn("Retry limit", cm.exception.message)

    def test_retry_missing_job(self):
        with self.assertRaises(JobError) as cm:
            self.manager.retry_job("does-not-exist")
        self.assertEqual(cm.exception.code, ErrorCode.NOT_FOUND)


if __name__ == "__main__":
    unittest.main()
