"""
Standardised error handling for the job engine.
"""

from lectures.core.constants import ErrorCode, RETRYABLE_ERRORS


class JobError(Exception):
    """Raised when a job encounters a known error condition."""

    def __init__(self, code: str, message: str, retryable: bool | None = None):
        self.code = code
        self.message = message
        # auto-detect retryable from code if not explicitly set
        self.retryable = retryable if retryable is not None else (code in RETRYABLE_ERRORS)
        super().__init__(f"[{code}] {message}")


class JobCancelled(JobError):
    """Raised inside a handler once its job context has been cancelled."""

    def __init__(self, message: str = "Job cancelled"):
        super().__init__(ErrorCode.CANCELLED, message, retryable=False)


class ProviderError(JobError):
    """Transport, API or decoding failure reported by an AI backend."""

    def __init__(self, message: str, code: str = ErrorCode.PROVIDER,
                 status_code: int | None = None):
        self.status_code = status_code
        super().__init__(code, message)


def is_retryable(code: str) -> bool:
    return code in RETRYABLE_ERRORS
