"""
Handlers for the four job types.

Each handler validates its inputs before touching external tools, works in a
per-job workspace that is removed on every exit path, and commits its durable
rows in a single transaction at the end.
"""

import logging
from pathlib import Path

from lectures.core.cleanup import job_workspace, remove_dir
from lectures.core.constants import (
    JobType, ErrorCode, ExtractionStatus, PAGES_DIR, EXPORTS_DIR, JOBS_CACHE_DIR,
    PROGRESS_MATERIAL_STORE, PROGRESS_PUBLISH_ABSTRACT, PROGRESS_PUBLISH_WRITE,
)
from lectures.core.document_processor import DocumentProcessor
from lectures.core.db_sqlite import Database
from lectures.core.error_codes import JobError, JobCancelled
from lectures.core.llm_provider import (
    ChatRequest, ContentPart, Provider, Usage, collect_text, user_message,
)
from lectures.core.models_sqlite import Job
from lectures.core.output_writer import render_markdown, add_abstract, write_export
from lectures.core.payloads import (
    TranscribeMediaPayload, IngestDocumentsPayload, BuildMaterialPayload,
    PublishMaterialPayload,
)
from lectures.core.prompts import GENERATE_DOCUMENT_DESCRIPTION, render_prompt, language_requirement
from lectures.core.tool_generator import ToolGenerator
from lectures.core.transcription_service import TranscriptionService

logger = logging.getLogger(__name__)


def _record_failed_usage(update_progress, error: Exception):
    """Keep the usage an error carries; never raises."""
    usage = getattr(error, 'usage', None)
    if usage is not None:
        update_progress.usage.add(usage)


class JobHandlers:
    """Binds the services to the job engine, one method per job type."""

    def __init__(self, db: Database, llm: Provider, transcription: TranscriptionService,
                 documents: DocumentProcessor, generator: ToolGenerator, config=None,
                 pages_root: Path = PAGES_DIR, exports_root: Path = EXPORTS_DIR,
                 workspace_root: Path = JOBS_CACHE_DIR):
        self.db = db
        self.llm = llm
        self.transcription = transcription
        self.documents = documents
        self.generator = generator
        self.config = config if config is not None else {}
        self.pages_root = Path(pages_root)
        self.exports_root = Path(exports_root)
        self.workspace_root = Path(workspace_root)

    def register(self, queue):
        queue.register_handler(JobType.TRANSCRIBE_MEDIA, self.transcribe_media, TranscribeMediaPayload)
        queue.register_handler(JobType.INGEST_DOCUMENTS, self.ingest_documents, IngestDocumentsPayload)
        queue.register_handler(JobType.BUILD_MATERIAL, self.build_material, BuildMaterialPayload)
        queue.register_handler(JobType.PUBLISH_MATERIAL, self.publish_material, PublishMaterialPayload)

    @property
    def keep_debug(self) -> bool:
        return bool(self.config.get('keep_debug_artifacts', False))

    # ── TRANSCRIBE_MEDIA ──────────────────────────────────────────────

    def transcribe_media(self, ctx, job: Job, payload: TranscribeMediaPayload, update_progress) -> dict:
        lecture = self.db.get_lecture(payload.lecture_id)
        if lecture is None:
            raise JobError(ErrorCode.NOT_FOUND, f"Lecture {payload.lecture_id} not found")
        media = self.db.get_lecture_media(lecture.id)
        if not media:
            raise JobError(ErrorCode.NOT_FOUND, f"Lecture {lecture.id} has no media files")
        self.transcription.check_dependencies()

        language = self.config.get('language') or None
        previous = self.db.get_transcript(lecture.id)
        previous_status = previous.status if previous else ExtractionStatus.PENDING
        transcript = self.db.ensure_transcript(lecture.id, language)
        self.db.set_lecture_status(lecture.id, ExtractionStatus.PROCESSING)
        try:
            with job_workspace(job.id, self.workspace_root, self.keep_debug) as workspace:
                result = self.transcription.transcribe_lecture(
                    ctx, media, workspace, update_progress, update_progress.add_usage)
            ctx.check()
            self.db.replace_transcript_segments(transcript.id, result.segments,
                                                result.media_durations, language, job_id=job.id)
        except JobCancelled:
            # Earlier segments are untouched, so their status still applies
            self.db.set_transcript_status(transcript.id, previous_status)
            self.db.set_lecture_status(lecture.id, lecture.status)
            raise
        except Exception as e:
            _record_failed_usage(update_progress, e)
            self.db.set_transcript_status(transcript.id, ExtractionStatus.FAILED)
            self.db.set_lecture_status(lecture.id, ExtractionStatus.FAILED)
            raise

        self.db.set_lecture_status(lecture.id, ExtractionStatus.COMPLETED)
        update_progress(100, f"Transcribed {len(media)} media file(s)")
        return {"transcript_id": transcript.id, "segment_count": len(result.segments)}

    # ── INGEST_DOCUMENTS ──────────────────────────────────────────────

    def ingest_documents(self, ctx, job: Job, payload: IngestDocumentsPayload, update_progress) -> dict:
        lecture = self.db.get_lecture(payload.lecture_id)
        if lecture is None:
            raise JobError(ErrorCode.NOT_FOUND, f"Lecture {payload.lecture_id} not found")
        documents = self.db.get_reference_documents(lecture.id)
        if not documents:
            raise JobError(ErrorCode.NOT_FOUND, f"Lecture {lecture.id} has no reference documents")
        self.documents.check_dependencies(documents)

        language = payload.language_code or self.config.get('language', '')
        total = len(documents)
        pages_by_document = {}
        output_dirs = []
        started = []

        with job_workspace(job.id, self.workspace_root, self.keep_debug) as workspace:
            try:
                for index, document in enumerate(documents):
                    ctx.check()

                    def document_progress(percent, message=None, _index=index, _title=document.title):
                        overall = (_index * 100 + percent) / total
                        update_progress(overall, f"{_title}: {message}" if message else None)

                    self.db.set_document_status(document.id, ExtractionStatus.PROCESSING)
                    started.append(document)
                    output_dir = self.pages_root / document.id / job.id
                    output_dirs.append(output_dir)
                    pages, usage = self.documents.process_document(
                        ctx, document, output_dir, workspace / document.id,
                        language, document_progress)
                    update_progress.add_usage(usage)
                    pages_by_document[document.id] = pages

                ctx.check()
                self.db.replace_document_pages(pages_by_document, job_id=job.id)
            except Exception as e:
                _record_failed_usage(update_progress, e)
                for path in output_dirs:
                    remove_dir(path)
                # Documents other than the failing one keep their old pages and status
                failed_id = None
                if (started and not isinstance(e, JobCancelled)
                        and started[-1].id not in pages_by_document):
                    failed_id = started[-1].id
                for document in started:
                    status = (ExtractionStatus.FAILED if document.id == failed_id
                              else document.extraction_status)
                    self.db.set_document_status(document.id, status)
                raise

        for document_id in pages_by_document:
            self._remove_previous_page_runs(document_id, job.id)

        update_progress(100, f"Ingested {total} document(s)")
        return {
            "documents": [{"document_id": doc_id, "page_count": len(pages)}
                          for doc_id, pages in pages_by_document.items()],
            "page_count": sum(len(p) for p in pages_by_document.values()),
        }

    def _remove_previous_page_runs(self, document_id: str, job_id: str):
        """Page images from earlier runs are no longer referenced once new pages commit."""
        document_dir = self.pages_root / document_id
        if not document_dir.exists():
            return
        for run_dir in document_dir.iterdir():
            if run_dir.is_dir() and run_dir.name != job_id:
                remove_dir(run_dir)

    # ── BUILD_MATERIAL ────────────────────────────────────────────────

    def build_material(self, ctx, job: Job, payload: BuildMaterialPayload, update_progress) -> dict:
        try:
            tool, usage = self.generator.generate(ctx, payload, update_progress)
        except JobError as e:
            _record_failed_usage(update_progress, e)
            raise
        update_progress.add_usage(usage)
        ctx.check()

        update_progress(PROGRESS_MATERIAL_STORE, "Saving study material...")
        self.db.insert_tool(tool)
        update_progress(100, f"Created {tool.type} '{tool.title}'")
        return {"tool_id": tool.id}

    # ── PUBLISH_MATERIAL ──────────────────────────────────────────────

    def publish_material(self, ctx, job: Job, payload: PublishMaterialPayload, update_progress) -> dict:
        fmt = (payload.format or "md").lower()
        if fmt != "md":
            raise JobError(ErrorCode.UNSUPPORTED_FORMAT, f"Unsupported export format: {payload.format}")
        tool = self.db.get_tool(payload.tool_id)
        if tool is None:
            raise JobError(ErrorCode.NOT_FOUND, f"Tool {payload.tool_id} not found")

        markdown = render_markdown(tool)

        if payload.include_abstract:
            update_progress(PROGRESS_PUBLISH_ABSTRACT, "Writing abstract...")
            abstract, usage = "", Usage()
            try:
                abstract, usage = self._generate_abstract(
                    ctx, markdown, payload.language_code or tool.language_code)
            except JobCancelled:
                raise
            except JobError as e:
                logger.warning("Abstract generation failed for tool %s: %s", tool.id, e)
                usage = getattr(e, 'usage', None) or Usage()
            update_progress.add_usage(usage)
            if abstract.strip():
                markdown = add_abstract(markdown, abstract)

        ctx.check()
        update_progress(PROGRESS_PUBLISH_WRITE, "Writing export file...")
        path = write_export(markdown, self.exports_root, tool.id, tool.title)
        update_progress(100, f"Exported {path.name}")
        return {"file_path": str(path), "format": "md"}

    def _generate_abstract(self, ctx, markdown: str, language_code: str) -> tuple[str, Usage]:
        model = (self.config.get('polishing_model') or self.config.get('generation_model')
                 or self.config.get('default_model'))
        prompt = render_prompt(GENERATE_DOCUMENT_DESCRIPTION,
                               language_requirement=language_requirement(language_code),
                               content=markdown)
        request = ChatRequest(model=model, messages=[user_message(ContentPart.of_text(prompt))])
        return collect_text(self.llm.chat(ctx, request))
