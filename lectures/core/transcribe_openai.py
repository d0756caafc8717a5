"""
OpenAI audio transcription API (whisper-1 and compatible servers).
"""

import json
import logging
from pathlib import Path

import requests

from lectures.core.error_codes import JobError
from lectures.core.job_context import run_cancellable
from lectures.core.constants import (
    ErrorCode, OPENAI_API_BASE, OPENAI_TRANSCRIBE_MODEL, TranscriptionBackend,
    MAX_STDERR_EXCERPT_LEN,
)
from lectures.core.llm_provider import Usage
from lectures.core.transcribe_provider import Segment, TranscriptionProvider

logger = logging.getLogger(__name__)


class OpenAITranscriptionProvider(TranscriptionProvider):
    name = TranscriptionBackend.OPENAI

    def __init__(self, api_key: str = "", base_url: str = OPENAI_API_BASE,
                 model: str = OPENAI_TRANSCRIBE_MODEL, language: str = ""):
        super().__init__()
        self.api_key = api_key
        self.base_url = (base_url or OPENAI_API_BASE).rstrip('/')
        self.model = model or OPENAI_TRANSCRIBE_MODEL
        self.language = language

    def set_api_key(self, api_key: str):
        self.api_key = api_key

    def check_dependencies(self):
        if not self.api_key:
            raise JobError(ErrorCode.MISSING_DEPENDENCY, "OpenAI API key is missing")

    def transcribe(self, ctx, audio_path: Path) -> tuple[list[Segment], Usage]:
        ctx.check()
        data = {"model": self.model, "response_format": "verbose_json"}
        if self.prompt:
            data["prompt"] = self.prompt
        if self.language:
            data["language"] = self.language

        def upload():
            with open(audio_path, 'rb') as f:
                return requests.post(
                    f"{self.base_url}/audio/transcriptions",
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    data=data,
                    files={"file": (audio_path.name, f, "audio/mpeg")},
                    timeout=600,
                )

        try:
            resp = run_cancellable(ctx, upload)
        except requests.exceptions.Timeout:
            raise JobError(ErrorCode.TRANSCRIBE_TIMEOUT, "OpenAI transcription timed out")
        except requests.exceptions.ConnectionError:
            raise JobError(ErrorCode.NETWORK_TRANSIENT, "Network error connecting to OpenAI")
        except requests.exceptions.RequestException as e:
            raise JobError(ErrorCode.TRANSCRIBE_FAILED, f"OpenAI request failed: {e}")

        if resp.status_code != 200:
            error_body = resp.text[:MAX_STDERR_EXCERPT_LEN] if resp.text else "No response body"
            raise JobError(ErrorCode.TRANSCRIBE_FAILED,
                           f"OpenAI API returned {resp.status_code}: {error_body}")

        try:
            result = resp.json()
        except json.JSONDecodeError:
            raise JobError(ErrorCode.MALFORMED_RESPONSE, "Failed to parse OpenAI response JSON")

        segments = [
            Segment(start=float(s.get('start', 0.0)), end=float(s.get('end', 0.0)),
                    text=(s.get('text') or '').strip())
            for s in result.get('segments') or []
            if (s.get('text') or '').strip()
        ]
        if not segments and (result.get('text') or '').strip():
            # No segment timing: one span covering the whole file
            segments = [Segment(start=0.0, end=0.0, text=result['text'].strip())]
        return segments, Usage()
