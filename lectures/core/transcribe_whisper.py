"""
Local transcription with the ``whisper`` command-line tool.
"""

import json
import logging
import math
import shutil
import subprocess
from pathlib import Path

from lectures.core.error_codes import JobError
from lectures.core.constants import (
    ErrorCode, WHISPER_LOCAL_MODEL, TranscriptionBackend, MAX_STDERR_EXCERPT_LEN,
)
from lectures.core.llm_provider import Usage
from lectures.core.security_utils import run_job_subprocess
from lectures.core.transcribe_provider import Segment, TranscriptionProvider

logger = logging.getLogger(__name__)


class WhisperLocalProvider(TranscriptionProvider):
    name = TranscriptionBackend.WHISPER_LOCAL

    def __init__(self, model: str = WHISPER_LOCAL_MODEL, language: str = "",
                 binary: str = "whisper"):
        super().__init__()
        self.model = model or WHISPER_LOCAL_MODEL
        self.language = language
        self.binary = binary

    def check_dependencies(self):
        if not shutil.which(self.binary):
            raise JobError(ErrorCode.MISSING_DEPENDENCY,
                           f"{self.binary} not found in PATH (install with: pip install openai-whisper)")

    def transcribe(self, ctx, audio_path: Path) -> tuple[list[Segment], Usage]:
        output_dir = audio_path.parent / f"whisper_{audio_path.stem}"
        output_dir.mkdir(parents=True, exist_ok=True)

        args = [
            self.binary, str(audio_path),
            "--model", self.model,
            "--output_format", "json",
            "--output_dir", str(output_dir),
        ]
        if self.language:
            args += ["--language", self.language]
        if self.prompt:
            args += ["--initial_prompt", self.prompt]

        try:
            result = run_job_subprocess(ctx, args, timeout=7200)
        except (OSError, subprocess.TimeoutExpired) as e:
            raise JobError(ErrorCode.TRANSCRIBE_FAILED, f"whisper failed: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or "")[:MAX_STDERR_EXCERPT_LEN]
            raise JobError(ErrorCode.TRANSCRIBE_FAILED,
                           f"whisper failed (rc={result.returncode}): {stderr}")

        json_path = output_dir / f"{audio_path.stem}.json"
        try:
            with open(json_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise JobError(ErrorCode.MALFORMED_RESPONSE, f"Unreadable whisper output: {e}")

        segments = []
        for s in data.get('segments') or []:
            text = (s.get('text') or '').strip()
            if not text:
                continue
            avg_logprob = s.get('avg_logprob')
            confidence = min(1.0, math.exp(avg_logprob)) if avg_logprob is not None else 0.0
            segments.append(Segment(start=float(s.get('start', 0.0)),
                                    end=float(s.get('end', 0.0)),
                                    text=text, confidence=confidence))
        return segments, Usage()
