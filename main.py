#!/usr/bin/env python3
"""
Lecture Assistant job worker: main entry point.
Runs the background job engine until interrupted.
"""

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import datetime
from pathlib import Path

# ── Determine project root ────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent

if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from lectures.core.constants import APP_NAME, APP_VERSION
from lectures.core.config import AppConfig

logger = logging.getLogger("lectures")


def setup_logging(log_dir: Path, level: int = logging.INFO) -> Path:
    """Log to <data>/logs/worker.log and stderr."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "worker.log"
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding="utf-8"),
            logging.StreamHandler(sys.stderr),
        ],
    )
    return log_file


def check_prerequisites() -> bool:
    """ffmpeg/ffprobe are required; document and local-whisper tools only warn."""
    from lectures.core.diagnostics import check_dependencies

    result = check_dependencies()
    for name in result["missing_optional"]:
        logger.warning("Optional tool not found: %s (related jobs will fail)", name)
    if result["missing_required"]:
        logger.error("Missing required tools: %s. PATH = %s",
                     ", ".join(result["missing_required"]), os.environ.get("PATH", ""))
        return False
    return True


def build_engine(config: AppConfig):
    """Wire the database, providers, services and handlers into a queue."""
    from lectures.core.db_sqlite import Database
    from lectures.core.document_processor import DocumentProcessor
    from lectures.core.job_handlers import JobHandlers
    from lectures.core.job_queue import JobQueueManager
    from lectures.core.llm_routing import build_routing_provider, bind_config
    from lectures.core.tool_generator import ToolGenerator
    from lectures.core.transcription_service import (
        TranscriptionService, build_transcription_provider,
    )

    data_dir = config.data_dir
    db = Database(data_dir / "lectures.db")

    llm = build_routing_provider(config)
    default_model = config.get('default_model')
    transcription = TranscriptionService(
        build_transcription_provider(config, llm),
        chunk_sec=config.get('audio_chunk_sec'),
        llm=llm if config.get('transcript_cleanup') else None,
        polishing_model=config.get('polishing_model') or default_model,
        cleanup_batch_size=config.get('cleanup_batch_size'),
    )
    bind_config(config, llm, transcription.provider)

    documents = DocumentProcessor(llm, config.get('ocr_model') or default_model,
                                  dpi=config.get('render_dpi'),
                                  max_pages=config.get('max_pages'))
    generator = ToolGenerator(db, llm, config.get('generation_model') or default_model)

    queue = JobQueueManager(db, config)
    handlers = JobHandlers(
        db, llm, transcription, documents, generator, config,
        pages_root=data_dir / "files" / "pages",
        exports_root=data_dir / "files" / "exports",
        workspace_root=data_dir / "cache" / "jobs",
    )
    handlers.register(queue)
    return queue


def main(argv=None):
    parser = argparse.ArgumentParser(description=f"{APP_NAME} background job worker")
    parser.add_argument("--config", type=Path, default=None,
                        help="Path to config.json (default: ~/.lectures/config.json)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args(argv)

    config = AppConfig(args.config)

    log_file = setup_logging(config.data_dir / "logs",
                             logging.DEBUG if args.debug else logging.INFO)
    logger.info("=" * 60)
    logger.info("%s v%s starting at %s", APP_NAME, APP_VERSION, datetime.now().isoformat())
    logger.info("Python: %s", sys.executable)
    logger.info("Data dir: %s", config.data_dir)
    logger.info("Log file: %s", log_file)
    logger.info("=" * 60)

    if args.debug:
        from lectures.core.diagnostics import get_diagnostics
        for key, value in get_diagnostics().items():
            logger.debug("%s: %s", key, value)

    if not check_prerequisites():
        sys.exit(1)

    try:
        queue = build_engine(config)
        queue.start()
    except Exception as e:
        logger.critical("Fatal error: %s: %s", type(e).__name__, e, exc_info=True)
        sys.exit(1)

    stop_requested = threading.Event()

    def request_stop(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop_requested.set()

    signal.signal(signal.SIGTERM, request_stop)
    try:
        while not stop_requested.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
    finally:
        queue.stop(cancel_running=True)


if __name__ == "__main__":
    main()
