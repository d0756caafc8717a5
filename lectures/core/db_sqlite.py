"""
SQLite database layer for the Lecture Assistant.
Thread-safe via check_same_thread=False + explicit locking.

Job rows only change through compare-and-swap updates (claim, progress,
terminal); domain results are written in one transaction per job run.
"""

import json
import sqlite3
import threading
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from lectures.core.constants import (
    DB_PATH, JobStatus, ErrorCode, ExtractionStatus, MAX_ERROR_MESSAGE_LEN,
)
from lectures.core.error_codes import JobCancelled
from lectures.core.models_sqlite import (
    Job, Lecture, LectureMedia, Transcript, TranscriptSegment,
    ReferenceDocument, ReferencePage, Tool,
)

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    user_id TEXT,
    type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING',
    progress INTEGER DEFAULT 0,
    progress_message TEXT,
    payload TEXT NOT NULL DEFAULT '{}',
    metadata TEXT,
    result TEXT,
    error TEXT,
    error_code TEXT,
    retryable INTEGER DEFAULT 0,
    input_tokens INTEGER DEFAULT 0,
    output_tokens INTEGER DEFAULT 0,
    estimated_cost REAL DEFAULT 0,
    retry_of TEXT REFERENCES jobs(id),
    created_at TEXT,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs(status, created_at);
CREATE INDEX IF NOT EXISTS idx_jobs_user ON jobs(user_id, created_at DESC);

CREATE TABLE IF NOT EXISTS lectures (
    id TEXT PRIMARY KEY,
    exam_id TEXT,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    status TEXT DEFAULT 'pending',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS lecture_media (
    id TEXT PRIMARY KEY,
    lecture_id TEXT NOT NULL REFERENCES lectures(id) ON DELETE CASCADE,
    media_type TEXT NOT NULL DEFAULT 'audio',
    sequence_order INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    duration_milliseconds INTEGER DEFAULT 0,
    created_at TEXT,
    UNIQUE(lecture_id, sequence_order)
);

CREATE TABLE IF NOT EXISTS transcripts (
    id TEXT PRIMARY KEY,
    lecture_id TEXT NOT NULL UNIQUE REFERENCES lectures(id) ON DELETE CASCADE,
    language TEXT,
    status TEXT DEFAULT 'pending',
    confidence REAL,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS transcript_segments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    transcript_id TEXT NOT NULL REFERENCES transcripts(id) ON DELETE CASCADE,
    media_id TEXT REFERENCES lecture_media(id) ON DELETE SET NULL,
    start_millisecond INTEGER NOT NULL,
    end_millisecond INTEGER NOT NULL,
    original_start_milliseconds INTEGER,
    original_end_milliseconds INTEGER,
    text TEXT NOT NULL,
    confidence REAL,
    speaker TEXT
);

CREATE INDEX IF NOT EXISTS idx_segments_transcript
    ON transcript_segments(transcript_id, start_millisecond);

CREATE TABLE IF NOT EXISTS reference_documents (
    id TEXT PRIMARY KEY,
    lecture_id TEXT NOT NULL REFERENCES lectures(id) ON DELETE CASCADE,
    document_type TEXT NOT NULL DEFAULT 'other',
    title TEXT NOT NULL,
    file_path TEXT NOT NULL,
    page_count INTEGER NOT NULL DEFAULT 0,
    extraction_status TEXT DEFAULT 'pending',
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS reference_pages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id TEXT NOT NULL REFERENCES reference_documents(id) ON DELETE CASCADE,
    page_number INTEGER NOT NULL,
    image_path TEXT NOT NULL,
    extracted_text TEXT,
    UNIQUE(document_id, page_number)
);

CREATE TABLE IF NOT EXISTS tools (
    id TEXT PRIMARY KEY,
    exam_id TEXT,
    lecture_id TEXT REFERENCES lectures(id) ON DELETE SET NULL,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    language_code TEXT,
    content TEXT NOT NULL,
    created_at TEXT,
    updated_at TEXT
);
"""


class Database:
    """SQLite database wrapper for the Lecture Assistant."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or DB_PATH
        self._ensure_dirs()
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA foreign_keys=ON")
        self._migrate()

    def _ensure_dirs(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        cur = self.conn.cursor()
        cur.executescript(_CREATE_TABLES)
        cur.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (_SCHEMA_VERSION,),
        )
        self.conn.commit()

    def close(self):
        if self.conn:
            with self._lock:
                self.conn.close()

    @contextmanager
    def transaction(self):
        """
        Hold the connection lock for a unit of work; commit on success,
        roll back on any exception.
        """
        with self._lock:
            try:
                yield self.conn
            except BaseException:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _new_id() -> str:
        return str(uuid.uuid4())

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job(**dict(row))

    @staticmethod
    def _require_running(conn: sqlite3.Connection, job_id: str | None):
        """Raise JobCancelled if ``job_id`` names a job that has left RUNNING."""
        if not job_id:
            return
        row = conn.execute("SELECT status FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is not None and row['status'] != JobStatus.RUNNING:
            raise JobCancelled("Job is no longer running")

    def _fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    # ── Job CRUD ──────────────────────────────────────────────────────

    def create_job(self, job_type: str, payload: dict | str | None = None,
                   user_id: str | None = None, retry_of: str | None = None) -> Job:
        if payload is None:
            payload = {}
        if not isinstance(payload, str):
            payload = json.dumps(payload)
        job = Job(
            id=self._new_id(),
            type=job_type,
            user_id=user_id,
            payload=payload,
            retry_of=retry_of,
            created_at=self._now(),
        )
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO jobs
                   (id, user_id, type, status, progress, payload, retry_of, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (job.id, job.user_id, job.type, job.status, job.progress,
                 job.payload, job.retry_of, job.created_at),
            )
        return job

    def get_job(self, job_id: str) -> Job | None:
        row = self._fetchone("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    def list_jobs(self, user_id: str | None = None, status: str | None = None,
                  job_type: str | None = None, limit: int = 100) -> list[Job]:
        clauses, params = [], []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        if job_type is not None:
            clauses.append("type = ?")
            params.append(job_type)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        rows = self._fetchall(
            f"SELECT * FROM jobs {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
            tuple(params),
        )
        return [self._row_to_job(r) for r in rows]

    def claim_next_pending(self) -> Job | None:
        """
        Atomically move the oldest PENDING job to RUNNING.
        Returns the claimed job, or None when the queue is empty.
        """
        with self.transaction() as conn:
            while True:
                row = conn.execute(
                    "SELECT id FROM jobs WHERE status = ? ORDER BY created_at ASC, rowid ASC LIMIT 1",
                    (JobStatus.PENDING,),
                ).fetchone()
                if row is None:
                    return None
                cur = conn.execute(
                    "UPDATE jobs SET status = ?, started_at = ? WHERE id = ? AND status = ?",
                    (JobStatus.RUNNING, self._now(), row['id'], JobStatus.PENDING),
                )
                if cur.rowcount == 1:
                    claimed = conn.execute(
                        "SELECT * FROM jobs WHERE id = ?", (row['id'],)
                    ).fetchone()
                    return self._row_to_job(claimed)

    def update_job_progress(self, job_id: str, progress: int, message: str | None = None,
                            metadata: dict | None = None) -> bool:
        """
        Persist progress for a RUNNING job. Progress never moves backwards.
        Returns False when the job is no longer RUNNING (e.g. cancelled).
        """
        meta_json = json.dumps(metadata) if metadata is not None else None
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE jobs
                   SET progress = MAX(progress, ?),
                       progress_message = COALESCE(?, progress_message),
                       metadata = COALESCE(?, metadata)
                   WHERE id = ? AND status = ?""",
                (int(progress), message, meta_json, job_id, JobStatus.RUNNING),
            )
            return cur.rowcount == 1

    def finalize_job(self, job_id: str, status: str, result: dict | None = None,
                     error: str | None = None, error_code: str | None = None,
                     retryable: bool = False, input_tokens: int = 0,
                     output_tokens: int = 0, estimated_cost: float = 0.0) -> bool:
        """
        Move a RUNNING job to a terminal status, storing usage figures.
        Returns False if the job had already left RUNNING.
        """
        fields = {
            'status': status,
            'completed_at': self._now(),
            'result': json.dumps(result) if result is not None else None,
            'error': error[:MAX_ERROR_MESSAGE_LEN] if error else None,
            'error_code': error_code,
            'retryable': 1 if retryable else 0,
            'input_tokens': int(input_tokens),
            'output_tokens': int(output_tokens),
            'estimated_cost': float(estimated_cost),
        }
        if status == JobStatus.COMPLETED:
            fields['progress'] = 100
        sets = ', '.join(f"{k} = ?" for k in fields)
        vals = list(fields.values()) + [job_id, JobStatus.RUNNING]
        with self.transaction() as conn:
            cur = conn.execute(
                f"UPDATE jobs SET {sets} WHERE id = ? AND status = ?", vals
            )
            return cur.rowcount == 1

    def record_job_usage(self, job_id: str, input_tokens: int, output_tokens: int,
                         estimated_cost: float):
        """Store usage on a job that was finalized elsewhere (e.g. cancelled)."""
        with self.transaction() as conn:
            conn.execute(
                """UPDATE jobs SET input_tokens = ?, output_tokens = ?, estimated_cost = ?
                   WHERE id = ?""",
                (int(input_tokens), int(output_tokens), float(estimated_cost), job_id),
            )

    def cancel_job(self, job_id: str) -> bool:
        """PENDING or RUNNING → CANCELLED. Returns False for terminal or missing jobs."""
        with self.transaction() as conn:
            cur = conn.execute(
                """UPDATE jobs SET status = ?, error_code = ?, error = ?,
                          retryable = 0, completed_at = ?
                   WHERE id = ? AND status IN (?, ?)""",
                (JobStatus.CANCELLED, ErrorCode.CANCELLED, "Job cancelled",
                 self._now(), job_id, JobStatus.PENDING, JobStatus.RUNNING),
            )
            return cur.rowcount == 1

    def fail_stale_running(self) -> list[str]:
        """Fail every RUNNING job left behind by a previous process."""
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM jobs WHERE status = ?", (JobStatus.RUNNING,)
            ).fetchall()
            ids = [r['id'] for r in rows]
            for job_id in ids:
                conn.execute(
                    """UPDATE jobs SET status = ?, error_code = ?, error = ?,
                              retryable = 1, completed_at = ?
                       WHERE id = ? AND status = ?""",
                    (JobStatus.FAILED, ErrorCode.INTERRUPTED,
                     "Job interrupted by engine restart", self._now(),
                     job_id, JobStatus.RUNNING),
                )
        return ids

    def retry_depth(self, job_id: str) -> int:
        """Number of retries that precede ``job_id`` in its retry chain."""
        depth = 0
        current = self.get_job(job_id)
        seen = set()
        while current is not None and current.retry_of and current.id not in seen:
            seen.add(current.id)
            depth += 1
            current = self.get_job(current.retry_of)
        return depth

    # ── Lectures & media ──────────────────────────────────────────────

    def create_lecture(self, title: str, exam_id: str | None = None,
                       description: str = "") -> Lecture:
        now = self._now()
        lecture = Lecture(id=self._new_id(), exam_id=exam_id, title=title,
                          description=description, created_at=now, updated_at=now)
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO lectures (id, exam_id, title, description, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (lecture.id, lecture.exam_id, lecture.title, lecture.description,
                 lecture.status, lecture.created_at, lecture.updated_at),
            )
        return lecture

    def get_lecture(self, lecture_id: str) -> Lecture | None:
        row = self._fetchone("SELECT * FROM lectures WHERE id = ?", (lecture_id,))
        return Lecture(**dict(row)) if row else None

    def set_lecture_status(self, lecture_id: str, status: str):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE lectures SET status = ?, updated_at = ? WHERE id = ?",
                (status, self._now(), lecture_id),
            )

    def add_lecture_media(self, lecture_id: str, file_path: str, sequence_order: int,
                          media_type: str = "audio") -> LectureMedia:
        media = LectureMedia(id=self._new_id(), lecture_id=lecture_id, media_type=media_type,
                             sequence_order=sequence_order, file_path=str(file_path),
                             created_at=self._now())
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO lecture_media
                   (id, lecture_id, media_type, sequence_order, file_path, duration_milliseconds, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (media.id, media.lecture_id, media.media_type, media.sequence_order,
                 media.file_path, media.duration_milliseconds, media.created_at),
            )
        return media

    def get_lecture_media(self, lecture_id: str) -> list[LectureMedia]:
        rows = self._fetchall(
            "SELECT * FROM lecture_media WHERE lecture_id = ? ORDER BY sequence_order ASC",
            (lecture_id,),
        )
        return [LectureMedia(**dict(r)) for r in rows]

    # ── Transcripts ───────────────────────────────────────────────────

    def ensure_transcript(self, lecture_id: str, language: str | None = None) -> Transcript:
        """Create the lecture's transcript on first use and mark it processing."""
        now = self._now()
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR IGNORE INTO transcripts (id, lecture_id, language, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (self._new_id(), lecture_id, language, ExtractionStatus.PENDING, now, now),
            )
            conn.execute(
                "UPDATE transcripts SET status = ?, updated_at = ? WHERE lecture_id = ?",
                (ExtractionStatus.PROCESSING, now, lecture_id),
            )
            row = conn.execute(
                "SELECT * FROM transcripts WHERE lecture_id = ?", (lecture_id,)
            ).fetchone()
        return Transcript(**dict(row))

    def get_transcript(self, lecture_id: str) -> Transcript | None:
        row = self._fetchone("SELECT * FROM transcripts WHERE lecture_id = ?", (lecture_id,))
        return Transcript(**dict(row)) if row else None

    def set_transcript_status(self, transcript_id: str, status: str):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE transcripts SET status = ?, updated_at = ? WHERE id = ?",
                (status, self._now(), transcript_id),
            )

    def replace_transcript_segments(self, transcript_id: str,
                                    segments: list[TranscriptSegment],
                                    media_durations: dict[str, int] | None = None,
                                    language: str | None = None, job_id: str | None = None):
        """
        Delete prior segments, insert the new ones, record media durations
        and mark the transcript completed, all in one transaction.
        With ``job_id`` nothing is written unless that job is still RUNNING.
        """
        confidences = [s.confidence for s in segments if s.confidence]
        avg_confidence = sum(confidences) / len(confidences) if confidences else None
        now = self._now()
        with self.transaction() as conn:
            self._require_running(conn, job_id)
            conn.execute("DELETE FROM transcript_segments WHERE transcript_id = ?", (transcript_id,))
            conn.executemany(
                """INSERT INTO transcript_segments
                   (transcript_id, media_id, start_millisecond, end_millisecond,
                    original_start_milliseconds, original_end_milliseconds,
                    text, confidence, speaker)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [(transcript_id, s.media_id, s.start_millisecond, s.end_millisecond,
                  s.original_start_milliseconds, s.original_end_milliseconds,
                  s.text, s.confidence, s.speaker) for s in segments],
            )
            for media_id, duration_ms in (media_durations or {}).items():
                conn.execute(
                    "UPDATE lecture_media SET duration_milliseconds = ? WHERE id = ?",
                    (int(duration_ms), media_id),
                )
            conn.execute(
                """UPDATE transcripts
                   SET status = ?, confidence = ?, language = COALESCE(?, language), updated_at = ?
                   WHERE id = ?""",
                (ExtractionStatus.COMPLETED, avg_confidence, language, now, transcript_id),
            )

    def get_transcript_segments(self, transcript_id: str) -> list[TranscriptSegment]:
        rows = self._fetchall(
            """SELECT * FROM transcript_segments WHERE transcript_id = ?
               ORDER BY start_millisecond ASC, id ASC""",
            (transcript_id,),
        )
        return [TranscriptSegment(**dict(r)) for r in rows]

    # ── Reference documents ───────────────────────────────────────────

    def add_reference_document(self, lecture_id: str, title: str, file_path: str,
                               document_type: str = "other") -> ReferenceDocument:
        now = self._now()
        doc = ReferenceDocument(id=self._new_id(), lecture_id=lecture_id,
                                document_type=document_type, title=title,
                                file_path=str(file_path), created_at=now, updated_at=now)
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO reference_documents
                   (id, lecture_id, document_type, title, file_path, page_count,
                    extraction_status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (doc.id, doc.lecture_id, doc.document_type, doc.title, doc.file_path,
                 doc.page_count, doc.extraction_status, doc.created_at, doc.updated_at),
            )
        return doc

    def get_reference_documents(self, lecture_id: str) -> list[ReferenceDocument]:
        rows = self._fetchall(
            "SELECT * FROM reference_documents WHERE lecture_id = ? ORDER BY created_at ASC, rowid ASC",
            (lecture_id,),
        )
        return [ReferenceDocument(**dict(r)) for r in rows]

    def get_reference_document(self, document_id: str) -> ReferenceDocument | None:
        row = self._fetchone("SELECT * FROM reference_documents WHERE id = ?", (document_id,))
        return ReferenceDocument(**dict(row)) if row else None

    def set_document_status(self, document_id: str, status: str):
        with self.transaction() as conn:
            conn.execute(
                "UPDATE reference_documents SET extraction_status = ?, updated_at = ? WHERE id = ?",
                (status, self._now(), document_id),
            )

    def replace_reference_pages(self, document_id: str, pages: list[ReferencePage]):
        self.replace_document_pages({document_id: pages})

    def replace_document_pages(self, pages_by_document: dict[str, list[ReferencePage]],
                               job_id: str | None = None):
        """
        Replace every page of each document and mark it completed, in one
        transaction.  With ``job_id`` nothing is written unless that job is
        still RUNNING.
        """
        now = self._now()
        with self.transaction() as conn:
            self._require_running(conn, job_id)
            for document_id, pages in pages_by_document.items():
                conn.execute("DELETE FROM reference_pages WHERE document_id = ?", (document_id,))
                conn.executemany(
                    """INSERT INTO reference_pages (document_id, page_number, image_path, extracted_text)
                       VALUES (?, ?, ?, ?)""",
                    [(document_id, p.page_number, p.image_path, p.extracted_text) for p in pages],
                )
                conn.execute(
                    """UPDATE reference_documents
                       SET extraction_status = ?, page_count = ?, updated_at = ?
                       WHERE id = ?""",
                    (ExtractionStatus.COMPLETED, len(pages), now, document_id),
                )

    def get_reference_pages(self, document_id: str) -> list[ReferencePage]:
        rows = self._fetchall(
            "SELECT * FROM reference_pages WHERE document_id = ? ORDER BY page_number ASC",
            (document_id,),
        )
        return [ReferencePage(**dict(r)) for r in rows]

    # ── Tools ─────────────────────────────────────────────────────────

    def insert_tool(self, tool: Tool) -> Tool:
        now = self._now()
        tool.created_at = tool.created_at or now
        tool.updated_at = now
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO tools
                   (id, exam_id, lecture_id, type, title, language_code, content, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (tool.id, tool.exam_id, tool.lecture_id, tool.type, tool.title,
                 tool.language_code, tool.content, tool.created_at, tool.updated_at),
            )
        return tool

    def get_tool(self, tool_id: str) -> Tool | None:
        row = self._fetchone("SELECT * FROM tools WHERE id = ?", (tool_id,))
        return Tool(**dict(row)) if row else None
