"""
Speech-to-text backend interface.
"""

from dataclasses import dataclass
from pathlib import Path

from lectures.core.llm_provider import Usage


@dataclass
class Segment:
    """A transcribed span; times are seconds relative to the audio file given."""
    start: float
    end: float                # 0 when the backend does not know
    text: str
    confidence: float = 0.0
    speaker: str | None = None


class TranscriptionProvider:
    """Interface every transcription backend implements."""

    name = "transcription"

    def __init__(self):
        self.prompt = ""

    def set_prompt(self, prompt: str):
        self.prompt = prompt or ""

    def set_api_key(self, api_key: str):
        """Swap credentials; local backends ignore this."""

    def check_dependencies(self):
        """Raise JobError(ERR_MISSING_DEPENDENCY) if the backend cannot run."""

    def transcribe(self, ctx, audio_path: Path) -> tuple[list[Segment], Usage]:
        raise NotImplementedError
