"""
Document ingestion: office → PDF (LibreOffice), PDF → page PNGs
(Ghostscript), then per-page OCR through a vision-capable chat model.

OCR is best-effort: a page that fails gets a visible marker and the
remaining pages are still processed.
"""

import base64
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable

from lectures.core.constants import (
    ErrorCode, OFFICE_EXTENSIONS, PDF_EXTENSION, OCR_FAILURE_MARKER,
    RENDER_DPI, MAX_DOCUMENT_PAGES, MAX_STDERR_EXCERPT_LEN,
    PROGRESS_DOC_CONVERT, PROGRESS_DOC_RASTERIZE, PROGRESS_DOC_OCR_END,
)
from lectures.core.error_codes import JobCancelled, JobError
from lectures.core.llm_provider import (
    ChatRequest, ContentPart, Provider, Usage, collect_text, user_message,
)
from lectures.core.models_sqlite import ReferenceDocument, ReferencePage
from lectures.core.prompts import INGEST_DOCUMENT_PAGE, render_prompt, language_requirement
from lectures.core.security_utils import run_job_subprocess

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = (PDF_EXTENSION,) + OFFICE_EXTENSIONS


def document_type_for(path: str) -> str:
    """Map a file extension to the stored document_type value."""
    ext = Path(path).suffix.lower().lstrip('.')
    return ext if ext in ("pdf", "pptx", "docx") else "other"


class DocumentProcessor:

    def __init__(self, llm: Provider, model: str, dpi: int = RENDER_DPI,
                 max_pages: int = MAX_DOCUMENT_PAGES):
        self.llm = llm
        self.model = model
        self.dpi = dpi
        self.max_pages = max_pages

    def check_dependencies(self, documents=()):
        """Raise JobError if Ghostscript, or LibreOffice for office files, is missing."""
        if not shutil.which("gs"):
            raise JobError(ErrorCode.MISSING_DEPENDENCY, "ghostscript (gs) not found in PATH")
        needs_office = any(Path(d.file_path).suffix.lower() in OFFICE_EXTENSIONS for d in documents)
        if needs_office and not shutil.which("soffice"):
            raise JobError(ErrorCode.MISSING_DEPENDENCY, "libreoffice (soffice) not found in PATH")

    def process_document(self, ctx, document: ReferenceDocument, output_dir: Path,
                         work_dir: Path, language_code: str,
                         update_progress: Callable[[int, str], None]
                         ) -> tuple[list[ReferencePage], Usage]:
        """
        Render ``document`` to page images in ``output_dir`` and OCR each page.
        ``work_dir`` holds intermediate files (converted PDF, office profile).
        """
        source = Path(document.file_path)
        ext = source.suffix.lower()
        if ext not in SUPPORTED_EXTENSIONS:
            raise JobError(ErrorCode.UNSUPPORTED_DOCUMENT, f"Unsupported document type: {ext or '(none)'}")

        if ext == PDF_EXTENSION:
            pdf_path = source
        else:
            update_progress(PROGRESS_DOC_CONVERT, "Converting document to PDF...")
            pdf_path = self.convert_to_pdf(ctx, source, work_dir)

        update_progress(PROGRESS_DOC_RASTERIZE, "Extracting pages as images...")
        images = self.rasterize(ctx, pdf_path, output_dir)

        usage = Usage()
        pages = []
        total = len(images)
        band = PROGRESS_DOC_OCR_END - PROGRESS_DOC_RASTERIZE
        for index, image_path in enumerate(images):
            ctx.check()
            page_number = index + 1
            try:
                text, page_usage = self.ocr_page(ctx, image_path, language_code)
                usage.add(page_usage)
            except JobCancelled:
                raise
            except (JobError, OSError) as e:
                logger.warning("OCR failed for %s page %d: %s", document.id, page_number, e)
                if getattr(e, 'usage', None) is not None:
                    usage.add(e.usage)
                text = OCR_FAILURE_MARKER.format(error=getattr(e, 'message', None) or e)

            pages.append(ReferencePage(
                document_id=document.id,
                page_number=page_number,
                image_path=str(image_path),
                extracted_text=text,
            ))
            update_progress(PROGRESS_DOC_RASTERIZE + int(page_number * band / total),
                            f"Performed OCR on page {page_number}/{total}")

        return pages, usage

    def convert_to_pdf(self, ctx, source: Path, work_dir: Path) -> Path:
        work_dir.mkdir(parents=True, exist_ok=True)
        profile_dir = work_dir / "soffice_profile"
        args = [
            "soffice",
            f"-env:UserInstallation={profile_dir.resolve().as_uri()}",
            "--headless",
            "--convert-to", "pdf",
            "--outdir", str(work_dir),
            str(source),
        ]
        try:
            result = run_job_subprocess(ctx, args, timeout=600)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise JobError(ErrorCode.DOCUMENT_CONVERT, f"LibreOffice conversion failed: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or "")[:MAX_STDERR_EXCERPT_LEN]
            raise JobError(ErrorCode.DOCUMENT_CONVERT,
                           f"LibreOffice conversion failed (rc={result.returncode}): {stderr}")

        # LibreOffice writes <stem>.pdf into the outdir
        pdf_path = work_dir / f"{source.stem}.pdf"
        if not pdf_path.exists():
            raise JobError(ErrorCode.DOCUMENT_CONVERT, f"Converted PDF not found at {pdf_path.name}")
        return pdf_path

    def rasterize(self, ctx, pdf_path: Path, output_dir: Path) -> list[Path]:
        output_dir.mkdir(parents=True, exist_ok=True)
        args = [
            "gs", "-dSAFER", "-dBATCH", "-dNOPAUSE", "-dQUIET",
            "-sDEVICE=png16m",
            f"-r{self.dpi}",
            "-dFirstPage=1", f"-dLastPage={self.max_pages}",
            f"-sOutputFile={output_dir / 'page_%04d.png'}",
            str(pdf_path),
        ]
        try:
            result = run_job_subprocess(ctx, args, timeout=1800)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise JobError(ErrorCode.RASTERIZE, f"Ghostscript page extraction failed: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or "")[:MAX_STDERR_EXCERPT_LEN]
            raise JobError(ErrorCode.RASTERIZE,
                           f"Ghostscript failed (rc={result.returncode}): {stderr}")

        images = sorted(output_dir.glob("page_*.png"))
        if not images:
            raise JobError(ErrorCode.RASTERIZE, "Document produced no pages")
        logger.info("Rendered %d pages from %s", len(images), pdf_path.name)
        return images

    def ocr_page(self, ctx, image_path: Path, language_code: str) -> tuple[str, Usage]:
        image_b64 = base64.b64encode(image_path.read_bytes()).decode('ascii')
        prompt = render_prompt(INGEST_DOCUMENT_PAGE,
                               language_requirement=language_requirement(language_code))
        request = ChatRequest(
            model=self.model,
            messages=[user_message(
                ContentPart.of_text(prompt),
                ContentPart.of_image(f"data:image/png;base64,{image_b64}"),
            )],
        )
        return collect_text(self.llm.chat(ctx, request))
