"""
Job Queue Manager and worker pool.

N worker threads claim PENDING jobs atomically and run the handler
registered for the job's type.  Handlers receive
``(ctx, job, payload, update_progress)`` and return a result dict or raise.
The engine maps the outcome to a terminal status and always stores the
usage figures the handler reported.
"""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from lectures.core.constants import (
    JobStatus, ErrorCode, DEFAULT_WORKERS, DEFAULT_MAX_RETRIES,
    WORKER_POLL_INTERVAL_SEC,
)
from lectures.core.db_sqlite import Database
from lectures.core.models_sqlite import Job
from lectures.core.error_codes import JobError, JobCancelled
from lectures.core.job_context import JobContext
from lectures.core.llm_provider import Usage
from lectures.core.payloads import decode_payload

logger = logging.getLogger(__name__)

Handler = Callable[[JobContext, Job, object, "ProgressReporter"], Optional[dict]]


@dataclass
class _Registration:
    handler: Handler
    payload_cls: type | None


class ProgressReporter:
    """
    The ``update_progress`` callable handed to handlers.
    Progress is clamped to 0..100 and never moves backwards; every call is
    persisted at once.  If the job has left RUNNING (cancelled from outside)
    the job context is cancelled so the handler stops at its next check.
    """

    def __init__(self, manager: "JobQueueManager", job: Job, ctx: JobContext,
                 max_cost: float = 0.0):
        self._manager = manager
        self._job_id = job.id
        self._ctx = ctx
        self._last = 0
        self._max_cost = max_cost
        self.usage = Usage()

    @property
    def progress(self) -> int:
        return self._last

    def __call__(self, percent: float, message: str | None = None,
                 metadata: dict | None = None):
        percent = max(self._last, min(100, int(percent)))
        self._last = percent
        still_running = self._manager.db.update_job_progress(
            self._job_id, percent, message, metadata)
        if not still_running:
            self._ctx.cancel("Job is no longer running")
        self._manager._notify_job_updated(self._job_id)

    def add_usage(self, usage: Usage):
        """Accumulate tokens/cost; exceeding the per-job budget fails the job."""
        self.usage.add(usage)
        if self._max_cost > 0 and self.usage.cost > self._max_cost:
            raise JobError(ErrorCode.COST_LIMIT,
                           f"Estimated cost ${self.usage.cost:.4f} exceeds the "
                           f"per-job limit of ${self._max_cost:.4f}")


class JobQueueManager:
    """
    Manages the persisted job queue and a fixed-size worker pool.
    Emits ``on_job_updated(job)`` for live observers.
    """

    def __init__(self, db: Database, config=None,
                 poll_interval: float = WORKER_POLL_INTERVAL_SEC):
        self.db = db
        self.config = config if config is not None else {}
        self.poll_interval = poll_interval
        self._handlers: dict[str, _Registration] = {}
        self._threads: list[threading.Thread] = []
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._contexts: dict[str, JobContext] = {}
        self._contexts_lock = threading.Lock()
        self._running = False

        # Callbacks
        self.on_job_updated: Optional[Callable[[Job], None]] = None

    # ── Config helpers ────────────────────────────────────────────────

    @property
    def worker_count(self) -> int:
        return max(1, int(self.config.get('workers', DEFAULT_WORKERS)))

    @property
    def max_retries(self) -> int:
        return int(self.config.get('max_retries', DEFAULT_MAX_RETRIES))

    @property
    def max_cost_per_job(self) -> float:
        return float(self.config.get('max_cost_per_job', 0.0) or 0.0)

    @property
    def job_timeout_sec(self) -> float | None:
        return self.config.get('job_timeout_sec') or None

    # ── Registration ──────────────────────────────────────────────────

    def register_handler(self, job_type: str, handler: Handler, payload_cls: type | None = None):
        """Register ``handler`` for ``job_type``; the payload is decoded into ``payload_cls``."""
        self._handlers[job_type] = _Registration(handler, payload_cls)

    # ── Queue API ─────────────────────────────────────────────────────

    def enqueue(self, job_type: str, payload: dict | str | None = None,
                user_id: str | None = None) -> Job:
        job = self.db.create_job(job_type, payload, user_id=user_id)
        logger.info("Enqueued job %s (%s)", job.id, job_type)
        self._wake_event.set()
        self._notify_job_updated(job.id)
        return job

    def get_job(self, job_id: str) -> Job | None:
        return self.db.get_job(job_id)

    def list_jobs(self, user_id: str | None = None, status: str | None = None,
                  job_type: str | None = None, limit: int = 100) -> list[Job]:
        return self.db.list_jobs(user_id=user_id, status=status, job_type=job_type, limit=limit)

    def cancel_job(self, job_id: str) -> bool:
        """Cancel a PENDING or RUNNING job. Returns False if it was already terminal."""
        if not self.db.cancel_job(job_id):
            return False
        with self._contexts_lock:
            ctx = self._contexts.get(job_id)
        if ctx is not None:
            ctx.cancel("Job cancelled by user")
        logger.info("Cancelled job %s", job_id)
        self._notify_job_updated(job_id)
        return True

    def retry_job(self, job_id: str) -> Job:
        """
        Create a new PENDING job with the same type and payload.
        Only FAILED or CANCELLED jobs can be retried, up to ``max_retries`` times.
        """
        source = self.db.get_job(job_id)
        if source is None:
            raise JobError(ErrorCode.NOT_FOUND, f"Job {job_id} not found")
        if source.status not in (JobStatus.FAILED, JobStatus.CANCELLED):
            raise JobError(ErrorCode.INVALID_REQUEST,
                           f"Only failed or cancelled jobs can be retried (status is {source.status})")
        depth = self.db.retry_depth(job_id)
        if depth >= self.max_retries:
            raise JobError(ErrorCode.INVALID_REQUEST,
                           f"Retry limit reached ({self.max_retries}) for job {job_id}")

        job = self.db.create_job(source.type, source.payload,
                                 user_id=source.user_id, retry_of=source.id)
        logger.info("Retrying job %s as %s (attempt %d)", job_id, job.id, depth + 1)
        self._wake_event.set()
        self._notify_job_updated(job.id)
        return job

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self):
        """Fail jobs interrupted by a previous run, then start the worker pool."""
        if self._running:
            return
        for job_id in self.db.fail_stale_running():
            logger.warning("Job %s was RUNNING at startup; marked %s", job_id, ErrorCode.INTERRUPTED)
            self._notify_job_updated(job_id)

        self._stop_event.clear()
        self._running = True
        self._threads = []
        for idx in range(self.worker_count):
            thread = threading.Thread(target=self._worker_loop, name=f"job-worker-{idx}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info("Started %d job workers", len(self._threads))

    def stop(self, cancel_running: bool = False, timeout: float | None = None):
        """
        Stop claiming new jobs and wait for workers to exit.
        With ``cancel_running`` the jobs in progress are cancelled first.
        """
        self._stop_event.set()
        self._wake_event.set()
        if cancel_running:
            with self._contexts_lock:
                contexts = list(self._contexts.values())
            for ctx in contexts:
                ctx.cancel("Engine shutting down")
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        self._running = False
        logger.info("Job workers stopped")

    # ── Worker loop ───────────────────────────────────────────────────

    def _worker_loop(self):
        """Claim and run jobs until stopped."""
        while not self._stop_event.is_set():
            try:
                job = self.db.claim_next_pending()
            except sqlite3.Error as e:
                logger.error("Failed to claim job: %s", e, exc_info=True)
                self._stop_event.wait(self.poll_interval)
                continue

            if job is None:
                self._wake_event.wait(self.poll_interval)
                self._wake_event.clear()
                continue

            try:
                self._process_job(job)
            except Exception as e:
                logger.error("Worker error on job %s: %s", job.id, e, exc_info=True)

    def _notify_job_updated(self, job_id: str):
        """Notify observers of a job update."""
        if self.on_job_updated:
            job = self.db.get_job(job_id)
            if job:
                try:
                    self.on_job_updated(job)
                except Exception as e:
                    logger.warning("on_job_updated callback failed: %s", e)

    # ── Job processing ────────────────────────────────────────────────

    def _process_job(self, job: Job):
        """Run one claimed job and record its terminal status."""
        ctx = JobContext(job.id, timeout_sec=self.job_timeout_sec)
        with self._contexts_lock:
            self._contexts[job.id] = ctx
        reporter = ProgressReporter(self, job, ctx, self.max_cost_per_job)
        logger.info("Running job %s (%s)", job.id, job.type)
        self._notify_job_updated(job.id)

        status, result = JobStatus.COMPLETED, None
        error, error_code, retryable = None, None, False
        try:
            registration = self._handlers.get(job.type)
            if registration is None:
                raise JobError(ErrorCode.UNKNOWN_JOB_TYPE, f"unknown job type: {job.type}")
            if registration.payload_cls is not None:
                payload = decode_payload(job.payload, registration.payload_cls)
            else:
                payload = job.payload_dict()
            result = registration.handler(ctx, job, payload, reporter)

        except JobCancelled as e:
            status, error, error_code = JobStatus.CANCELLED, e.message, e.code
        except JobError as e:
            status, error, error_code, retryable = JobStatus.FAILED, e.message, e.code, e.retryable
        except Exception as e:
            logger.error("Unexpected error processing job %s: %s", job.id, e, exc_info=True)
            status, error, error_code, retryable = (
                JobStatus.FAILED, f"{type(e).__name__}: {e}", ErrorCode.UNEXPECTED, True)
        finally:
            with self._contexts_lock:
                self._contexts.pop(job.id, None)

        usage = reporter.usage
        finalized = self.db.finalize_job(
            job.id, status, result=result, error=error, error_code=error_code,
            retryable=retryable, input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens, estimated_cost=usage.cost,
        )
        if finalized:
            if status == JobStatus.FAILED:
                logger.warning("Job %s failed [%s]: %s", job.id, error_code, error)
            else:
                logger.info("Job %s %s", job.id, status.lower())
        else:
            # Cancelled from outside while running; keep its usage anyway
            self.db.record_job_usage(job.id, usage.input_tokens, usage.output_tokens, usage.cost)
            logger.info("Job %s ended after leaving RUNNING", job.id)
        self._notify_job_updated(job.id)
