"""
Study material generation (guide, flashcards, quiz) from a lecture's
transcript and OCR'd reference pages.
"""

import json
import logging
import re
import uuid
from typing import Callable

from lectures.core.constants import (
    ErrorCode, ExtractionStatus, ToolType,
    PROGRESS_MATERIAL_CONTEXT, PROGRESS_MATERIAL_GENERATE,
)
from lectures.core.db_sqlite import Database
from lectures.core.error_codes import JobError
from lectures.core.llm_provider import (
    ChatRequest, ContentPart, Provider, Usage, collect_text, user_message,
)
from lectures.core.models_sqlite import Tool
from lectures.core.payloads import BuildMaterialPayload
from lectures.core.prompts import (
    GENERATE_STUDY_GUIDE, GENERATE_FLASHCARDS, GENERATE_QUIZ, LENGTH_HINTS,
    render_prompt, language_requirement,
)

logger = logging.getLogger(__name__)

_TEMPLATES = {
    ToolType.GUIDE: GENERATE_STUDY_GUIDE,
    ToolType.FLASHCARD: GENERATE_FLASHCARDS,
    ToolType.QUIZ: GENERATE_QUIZ,
}

_TYPE_LABELS = {
    ToolType.GUIDE: "Study Guide",
    ToolType.FLASHCARD: "Flashcards",
    ToolType.QUIZ: "Quiz",
}

_HEADING_RE = re.compile(r'^\s*#{1,6}\s+(.+?)\s*#*\s*$', re.MULTILINE)


def format_timestamp(ms: int) -> str:
    seconds = max(0, int(ms)) // 1000
    return f"{seconds // 3600:02d}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"


def build_transcript_text(db: Database, lecture_id: str) -> str:
    """Transcript text ordered by unified start, one timestamped line per segment."""
    transcript = db.get_transcript(lecture_id)
    if transcript is None or transcript.status != ExtractionStatus.COMPLETED:
        return ""
    lines = [f"[{format_timestamp(s.start_millisecond)}] {s.text}"
             for s in db.get_transcript_segments(transcript.id)]
    return "\n".join(lines)


def build_reference_materials(db: Database, lecture_id: str) -> str:
    """Markdown of every completed reference document, page by page."""
    parts = []
    for doc in db.get_reference_documents(lecture_id):
        if doc.extraction_status != ExtractionStatus.COMPLETED:
            continue
        parts.append(f"# Reference File: {doc.title}")
        for page in db.get_reference_pages(doc.id):
            parts.append(f"## Page {page.page_number}\n\n{page.extracted_text.strip()}")
    return "\n\n".join(parts)


def parse_json_content(text: str):
    """
    Parse a JSON object or array from a model reply.
    Tolerates prose or code fences around the JSON.
    """
    try:
        return json.loads(text)
    except ValueError:
        pass

    starts = [i for i in (text.find('{'), text.find('[')) if i >= 0]
    end = max(text.rfind('}'), text.rfind(']'))
    if not starts or end < 0:
        raise JobError(ErrorCode.MALFORMED_RESPONSE, "Model reply contains no JSON")
    start = min(starts)
    try:
        return json.loads(text[start:end + 1])
    except ValueError as e:
        raise JobError(ErrorCode.MALFORMED_RESPONSE, f"Model reply is not valid JSON: {e}")


def material_title(tool_type: str, content: str, parsed, lecture_title: str) -> str:
    if isinstance(parsed, dict) and str(parsed.get('title') or '').strip():
        return str(parsed['title']).strip()
    if tool_type == ToolType.GUIDE:
        match = _HEADING_RE.search(content)
        if match:
            return match.group(1).strip()
    return f"{lecture_title} - {_TYPE_LABELS.get(tool_type, tool_type)}"


class ToolGenerator:

    def __init__(self, db: Database, llm: Provider, default_model: str):
        self.db = db
        self.llm = llm
        self.default_model = default_model

    def generate(self, ctx, payload: BuildMaterialPayload,
                 update_progress: Callable[[int, str], None]) -> tuple[Tool, Usage]:
        """
        Build the prompt context, ask the model and return an unsaved Tool.
        The caller stores it once the usage is accounted for.
        """
        lecture = self.db.get_lecture(payload.lecture_id)
        if lecture is None:
            raise JobError(ErrorCode.NOT_FOUND, f"Lecture {payload.lecture_id} not found")

        update_progress(PROGRESS_MATERIAL_CONTEXT, "Collecting transcript and reference material...")
        transcript = build_transcript_text(self.db, lecture.id)
        references = build_reference_materials(self.db, lecture.id)
        if not transcript and not references:
            raise JobError(ErrorCode.NOT_FOUND,
                           "Lecture has no completed transcript or reference material")

        prompt = render_prompt(
            _TEMPLATES[payload.type],
            length=LENGTH_HINTS[payload.length],
            language_requirement=language_requirement(payload.language_code),
            transcript=transcript or "(none)",
            reference_materials=references or "(none)",
        )
        model = payload.model or self.default_model
        update_progress(PROGRESS_MATERIAL_GENERATE, f"Generating {payload.type}...")
        ctx.check()
        request = ChatRequest(model=model, messages=[user_message(ContentPart.of_text(prompt))])
        text, usage = collect_text(self.llm.chat(ctx, request))
        text = text.strip()
        try:
            if not text:
                raise JobError(ErrorCode.MALFORMED_RESPONSE, "Model returned an empty reply")
            if payload.type == ToolType.GUIDE:
                parsed, content = None, text
            else:
                parsed = parse_json_content(text)
                content = json.dumps(parsed, ensure_ascii=False)
        except JobError as e:
            # The reply was paid for even if unusable
            e.usage = usage
            raise

        tool = Tool(
            id=str(uuid.uuid4()),
            exam_id=payload.exam_id or lecture.exam_id,
            lecture_id=lecture.id,
            type=payload.type,
            title=material_title(payload.type, text, parsed, lecture.title),
            language_code=payload.language_code,
            content=content,
        )
        logger.info("Generated %s '%s' for lecture %s (%d chars, model %s)",
                    tool.type, tool.title, lecture.id, len(content), model)
        return tool, usage
