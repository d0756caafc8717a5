"""
Transcription through an audio-capable chat model.
The whole chunk comes back as one segment with unknown end time.
"""

import base64
import logging
from pathlib import Path

from lectures.core.constants import TranscriptionBackend, LLM_TRANSCRIBE_MODEL, NORM_FORMAT
from lectures.core.llm_provider import (
    ChatRequest, ContentPart, Provider, Usage, collect_text, user_message,
)
from lectures.core.prompts import TRANSCRIBE_RECORDING
from lectures.core.transcribe_provider import Segment, TranscriptionProvider

logger = logging.getLogger(__name__)


class LLMTranscriptionProvider(TranscriptionProvider):
    name = TranscriptionBackend.LLM

    def __init__(self, llm: Provider, model: str = LLM_TRANSCRIBE_MODEL):
        super().__init__()
        self.llm = llm
        self.model = model or LLM_TRANSCRIBE_MODEL
        self.prompt = TRANSCRIBE_RECORDING

    def transcribe(self, ctx, audio_path: Path) -> tuple[list[Segment], Usage]:
        audio_b64 = base64.b64encode(audio_path.read_bytes()).decode('ascii')
        audio_format = audio_path.suffix.lstrip('.') or NORM_FORMAT
        request = ChatRequest(
            model=self.model,
            messages=[user_message(
                ContentPart.of_text(self.prompt or TRANSCRIBE_RECORDING),
                ContentPart.of_audio(audio_b64, audio_format),
            )],
        )
        text, usage = collect_text(self.llm.chat(ctx, request))
        text = text.strip()
        if not text:
            return [], usage
        return [Segment(start=0.0, end=0.0, text=text)], usage
