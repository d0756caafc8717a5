"""
Cleanup: scoped per-job workspaces removed on every exit path.
"""

import shutil
import logging
from contextlib import contextmanager
from pathlib import Path

from lectures.core.constants import JOBS_CACHE_DIR

logger = logging.getLogger(__name__)


def cleanup_job_artifacts(job_workspace: Path, keep_debug: bool = False):
    """
    Delete a job workspace after completion (success or failure).
    If keep_debug is True, only the bulky media artifacts are removed.
    """
    if not job_workspace.exists():
        return

    if not keep_debug:
        try:
            shutil.rmtree(job_workspace)
            logger.debug("Removed workspace: %s", job_workspace)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", job_workspace, e)
        return

    for pattern in ('*.mp3', '*.wav', '*.pdf', 'chunks_*'):
        for path in job_workspace.glob(pattern):
            try:
                if path.is_dir():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as e:
                logger.warning("Failed to delete %s: %s", path, e)


def remove_dir(path: Path):
    """Best-effort recursive delete."""
    if path.exists():
        try:
            shutil.rmtree(path)
            logger.debug("Deleted: %s", path)
        except OSError as e:
            logger.warning("Failed to delete %s: %s", path, e)


@contextmanager
def job_workspace(job_id: str, root: Path | None = None, keep_debug: bool = False):
    """Yield a fresh workspace directory for one job; removed on exit."""
    workspace = (root or JOBS_CACHE_DIR) / job_id
    workspace.mkdir(parents=True, exist_ok=True)
    try:
        yield workspace
    finally:
        cleanup_job_artifacts(workspace, keep_debug)
