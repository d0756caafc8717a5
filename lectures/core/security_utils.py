"""
Security utilities for the Lecture Assistant.
- Path traversal protection
- Filename sanitization
- Safe subprocess execution (argument arrays only)
- Cancellable subprocesses bound to a job context
"""

import re
import subprocess
import pathlib
import logging

from lectures.core.constants import (
    UNSAFE_FILENAME_CHARS,
    MAX_FILENAME_LEN,
)
from lectures.core.error_codes import JobCancelled

logger = logging.getLogger(__name__)

_POLL_INTERVAL_SEC = 0.5


# ── Filename / path safety ────────────────────────────────────────────

def sanitize_title(title: str) -> str:
    """Sanitize a material title for use as a file name."""
    if not title:
        return ""
    # Replace unsafe characters with underscore
    safe = re.sub(UNSAFE_FILENAME_CHARS, '_', title)
    # Remove path traversal sequences
    safe = safe.replace('..', '')
    safe = safe.replace('/', '_').replace('\\', '_')
    # Collapse multiple underscores/spaces
    safe = re.sub(r'[_\s]+', ' ', safe).strip()
    if len(safe) > MAX_FILENAME_LEN:
        safe = safe[:MAX_FILENAME_LEN].rstrip()
    # Leading/trailing dots would hide the file or confuse extensions
    safe = safe.strip('.')
    return safe if safe else ""


def safe_output_path(output_root: pathlib.Path, title: str, fallback: str) -> pathlib.Path:
    """
    Build a safe path below ``output_root``.  Enforces that realpath(result)
    starts with realpath(output_root).  Falls back to ``fallback`` on failure.
    """
    sanitized = sanitize_title(title) or fallback

    candidate = output_root / sanitized
    try:
        real_root = output_root.resolve(strict=False)
        real_candidate = candidate.resolve(strict=False)
        if not str(real_candidate).startswith(str(real_root)):
            raise ValueError("Path traversal detected")
    except (OSError, ValueError):
        candidate = output_root / fallback

    return candidate


# ── Subprocess safety ─────────────────────────────────────────────────

def _check_args(args):
    if not isinstance(args, (list, tuple)):
        raise TypeError("Subprocess args must be a list/tuple, not a string")


def run_subprocess(args: list[str], **kwargs) -> subprocess.CompletedProcess:
    """
    Execute a subprocess using argument arrays only.
    shell=True is explicitly forbidden.
    """
    _check_args(args)
    kwargs.pop('shell', None)

    logger.debug("Running subprocess: %s", ' '.join(str(a) for a in args))
    return subprocess.run(args, shell=False, **kwargs)


def run_subprocess_capture(args: list[str], timeout: int = 300, **kwargs) -> subprocess.CompletedProcess:
    """Run subprocess and capture stdout/stderr."""
    return run_subprocess(
        args,
        capture_output=True,
        text=True,
        timeout=timeout,
        **kwargs,
    )


def run_job_subprocess(ctx, args: list[str], timeout: float = 600,
                       **kwargs) -> subprocess.CompletedProcess:
    """
    Run a subprocess for a job, capturing output.
    The child is killed when ``ctx`` is cancelled (JobCancelled is raised)
    or when ``timeout`` elapses (subprocess.TimeoutExpired is raised).
    """
    _check_args(args)
    kwargs.pop('shell', None)

    logger.debug("Running job subprocess: %s", ' '.join(str(a) for a in args))
    proc = subprocess.Popen(
        args, shell=False,
        stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True,
        **kwargs,
    )
    waited = 0.0
    try:
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=_POLL_INTERVAL_SEC)
                return subprocess.CompletedProcess(args, proc.returncode, stdout, stderr)
            except subprocess.TimeoutExpired:
                waited += _POLL_INTERVAL_SEC
            if ctx is not None and ctx.cancelled:
                raise JobCancelled(ctx.reason or "Job cancelled")
            if waited >= timeout:
                raise subprocess.TimeoutExpired(args, timeout)
    finally:
        if proc.poll() is None:
            proc.kill()
            proc.communicate()
