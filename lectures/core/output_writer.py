"""
Output writer: renders study material as Markdown and writes export files.
"""

import json
import logging
from pathlib import Path

from lectures.core.constants import ToolType
from lectures.core.models_sqlite import Tool
from lectures.core.security_utils import safe_output_path

logger = logging.getLogger(__name__)


def _flashcards_markdown(title: str, data) -> list[str]:
    cards = data.get('cards', []) if isinstance(data, dict) else data
    lines = [f"# {title}", ""]
    for index, card in enumerate(cards or [], 1):
        lines += [f"## Card {index}", "",
                  f"**Q:** {str(card.get('front', '')).strip()}", "",
                  f"**A:** {str(card.get('back', '')).strip()}", ""]
    return lines


def _quiz_markdown(title: str, data) -> list[str]:
    questions = data.get('questions', []) if isinstance(data, dict) else data
    lines = [f"# {title}", ""]
    for index, item in enumerate(questions or [], 1):
        lines += [f"## Question {index}", "", str(item.get('question', '')).strip(), ""]
        options = item.get('options') or []
        for opt_index, option in enumerate(options):
            lines.append(f"{chr(ord('A') + opt_index)}. {option}")
        answer = item.get('answer')
        if isinstance(answer, int) and 0 <= answer < len(options):
            lines += ["", f"**Answer:** {chr(ord('A') + answer)}. {options[answer]}"]
        elif answer is not None:
            lines += ["", f"**Answer:** {answer}"]
        explanation = str(item.get('explanation') or '').strip()
        if explanation:
            lines += ["", explanation]
        lines.append("")
    return lines


def render_markdown(tool: Tool) -> str:
    """Markdown for a stored tool; flashcard/quiz JSON is laid out as sections."""
    if tool.type == ToolType.GUIDE:
        return tool.content.strip() + "\n"

    try:
        data = json.loads(tool.content)
    except ValueError:
        logger.warning("Tool %s content is not JSON; exporting as-is", tool.id)
        return tool.content.strip() + "\n"

    if tool.type == ToolType.FLASHCARD:
        lines = _flashcards_markdown(tool.title, data)
    else:
        lines = _quiz_markdown(tool.title, data)
    return "\n".join(lines).rstrip() + "\n"


def add_abstract(markdown: str, abstract: str) -> str:
    """Insert an abstract block after the first heading (or at the top)."""
    block = f"> {abstract.strip()}".replace("\n", "\n> ")
    lines = markdown.split("\n")
    if lines and lines[0].startswith("#"):
        return "\n".join([lines[0], "", block] + lines[1:])
    return f"{block}\n\n{markdown}"


def write_export(text: str, exports_root: Path, tool_id: str, title: str) -> Path:
    """
    Write an export to <ExportsRoot>/<tool_id>/<SanitizedTitle>.md
    Returns the path to the written file.
    """
    folder = safe_output_path(exports_root, tool_id, "export")
    folder.mkdir(parents=True, exist_ok=True)

    base = safe_output_path(folder, title, tool_id)
    output_file = base.with_name(f"{base.name}.md")
    output_file.write_text(text, encoding='utf-8')

    logger.info("Wrote export: %s", output_file)
    return output_file
