"""
Prompt templates.  Placeholders use ``{{name}}`` and are filled by
render_prompt(); unknown placeholders are left in place.
"""

TRANSCRIBE_RECORDING = """\
Transcribe this lecture recording verbatim.
Keep the speaker's original language; do not translate or summarise.
Write numbers, formulas and technical terms exactly as spoken.
Return only the transcript text, with no commentary."""

CLEAN_TRANSCRIPT = """\
Clean up this raw lecture transcript:
- fix punctuation, capitalisation and obvious mis-hearings;
- remove filler words, false starts and repetitions;
- write formulas in LaTeX between $...$.
Do not summarise or drop content. Keep the original language(s) exactly;
never translate. Return only the cleaned transcript.

{{transcript}}"""

INGEST_DOCUMENT_PAGE = """\
You are given one page of a lecture's reference material as an image.
Extract all of its content as clean Markdown:
- keep headings, bullet lists and tables;
- write formulas in LaTeX between $...$;
- describe diagrams and figures briefly in square brackets.
Return only the Markdown for this page.

{{language_requirement}}"""

GENERATE_STUDY_GUIDE = """\
Write a {{length}} study guide for the lecture below in Markdown.
Organise it by topic, explain every key concept, and finish with a short
summary of what to remember for the exam.

{{language_requirement}}

## Transcript
{{transcript}}

## Reference materials
{{reference_materials}}"""

GENERATE_FLASHCARDS = """\
Create a {{length}} set of flashcards for the lecture below.
Respond with JSON only, in this shape:
{"title": "...", "cards": [{"front": "...", "back": "..."}]}

{{language_requirement}}

## Transcript
{{transcript}}

## Reference materials
{{reference_materials}}"""

GENERATE_QUIZ = """\
Create a {{length}} multiple-choice quiz for the lecture below.
Respond with JSON only, in this shape:
{"title": "...", "questions": [{"question": "...", "options": ["..."],
"answer": 0, "explanation": "..."}]}
``answer`` is the zero-based index of the correct option.

{{language_requirement}}

## Transcript
{{transcript}}

## Reference materials
{{reference_materials}}"""

GENERATE_DOCUMENT_DESCRIPTION = """\
Write a short abstract (at most five sentences) of the study material below.
Return only the abstract.

{{language_requirement}}

{{content}}"""

LANGUAGE_REQUIREMENT = "The response must be written in {{language}}."

# Length → rough size hint for the generation prompts
LENGTH_HINTS = {
    "short": "short (about one page)",
    "medium": "medium-length (two to three pages)",
    "long": "long and thorough",
}


def render_prompt(template: str, **variables) -> str:
    """Replace each ``{{key}}`` with ``str(value)``."""
    result = template
    for key, value in variables.items():
        result = result.replace("{{%s}}" % key, str(value))
    return result


def language_requirement(language_code: str) -> str:
    if not language_code:
        return ""
    return render_prompt(LANGUAGE_REQUIREMENT, language=language_code)
