"""
Execution context handed to every job handler.
Carries cancellation and an optional deadline down into subprocesses
and provider streams.
"""

import threading
import time

from lectures.core.error_codes import JobCancelled


class JobContext:
    """Cancellation token with an optional monotonic deadline."""

    def __init__(self, job_id: str = "", timeout_sec: float | None = None,
                 parent: "JobContext | None" = None):
        self.job_id = job_id
        self._event = threading.Event()
        self._reason = ""
        self._parent = parent
        self._deadline = time.monotonic() + timeout_sec if timeout_sec else None

    def cancel(self, reason: str = "Job cancelled"):
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._parent is not None and self._parent.cancelled:
            self.cancel(self._parent.reason)
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("Job deadline exceeded")
            return True
        return False

    @property
    def reason(self) -> str:
        return self._reason

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def check(self):
        """Raise JobCancelled if the context is done."""
        if self.cancelled:
            raise JobCancelled(self._reason or "Job cancelled")

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return True if cancelled meanwhile."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled



def run_cancellable(ctx, func, *args, poll_interval: float = 0.1, **kwargs):
    """
    Run a blocking call (an HTTP upload, say) on a helper thread while
    watching ``ctx``.  Raises JobCancelled as soon as the context is done;
    the abandoned call is left to finish on its own and its result dropped.
    """
    if ctx is None:
        return func(*args, **kwargs)

    outcome = {}
    done = threading.Event()

    def target():
        try:
            outcome['value'] = func(*args, **kwargs)
        except Exception as e:
            outcome['error'] = e
        finally:
            done.set()

    threading.Thread(target=target, name=f"blocking-call-{ctx.job_id}", daemon=True).start()
    while not done.wait(poll_interval):
        ctx.check()
    ctx.check()
    if 'error' in outcome:
        raise outcome['error']
    return outcome['value']
