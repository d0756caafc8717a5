"""
Deepgram Speech-to-Text integration.
Uses Nova-3, pre-recorded mode, with utterances mapped to segments.
Includes exponential backoff for rate-limit (429) responses.
"""

import json
import logging
import random
from pathlib import Path

import requests

from lectures.core.error_codes import JobError
from lectures.core.job_context import run_cancellable
from lectures.core.constants import (
    ErrorCode, DEEPGRAM_API_BASE, DEEPGRAM_MODEL, TranscriptionBackend,
    MAX_STDERR_EXCERPT_LEN,
)
from lectures.core.llm_provider import Usage
from lectures.core.transcribe_provider import Segment, TranscriptionProvider

logger = logging.getLogger(__name__)

DEEPGRAM_PRERECORDED_URL = f"{DEEPGRAM_API_BASE}/listen"

_MAX_RATE_LIMIT_RETRIES = 4
_RATE_LIMIT_BASE_DELAY = 2.0   # seconds, doubles each retry with jitter


def parse_segments(deepgram_response: dict) -> list[Segment]:
    """
    Map a Deepgram response to segments.
    Uses utterances when present, else one segment for the whole transcript.
    """
    results = deepgram_response.get('results') or {}

    utterances = results.get('utterances') or []
    if utterances:
        segments = []
        for utt in utterances:
            text = (utt.get('transcript') or '').strip()
            if not text:
                continue
            speaker = utt.get('speaker')
            segments.append(Segment(
                start=float(utt.get('start', 0.0)),
                end=float(utt.get('end', 0.0)),
                text=text,
                confidence=float(utt.get('confidence', 0.0) or 0.0),
                speaker=str(speaker) if speaker is not None else None,
            ))
        return segments

    try:
        alternative = results.get('channels', [{}])[0].get('alternatives', [{}])[0]
    except (IndexError, AttributeError) as e:
        logger.warning("Error extracting transcript: %s", e)
        return []

    transcript = (alternative.get('transcript') or '').strip()
    if not transcript:
        return []
    words = alternative.get('words') or []
    start = float(words[0].get('start', 0.0)) if words else 0.0
    end = float(words[-1].get('end', 0.0)) if words else 0.0
    return [Segment(start=start, end=end, text=transcript,
                    confidence=float(alternative.get('confidence', 0.0) or 0.0))]


class DeepgramProvider(TranscriptionProvider):
    name = TranscriptionBackend.DEEPGRAM

    def __init__(self, api_key: str = "", language: str = "", model: str = DEEPGRAM_MODEL):
        super().__init__()
        self.api_key = api_key
        self.language = language
        self.model = model

    def set_api_key(self, api_key: str):
        self.api_key = api_key

    def check_dependencies(self):
        if not self.api_key:
            raise JobError(ErrorCode.MISSING_DEPENDENCY, "Deepgram API key is missing")

    def transcribe(self, ctx, audio_path: Path) -> tuple[list[Segment], Usage]:
        """
        Transcribe an audio file (pre-recorded).
        Retries up to 4 times with exponential backoff on 429 rate-limit responses.
        """
        api_key = self.api_key
        if not api_key:
            raise JobError(ErrorCode.TRANSCRIBE_FAILED, "Deepgram API key not configured")

        headers = {
            "Authorization": f"Token {api_key}",
            "Content-Type": "audio/mpeg",
        }
        params = {
            "model": self.model,
            "smart_format": "true",
            "punctuate": "true",
            "utterances": "true",
        }
        if self.language:
            params["language"] = self.language
        else:
            params["detect_language"] = "true"

        file_size = audio_path.stat().st_size
        # Adaptive timeout: ~1 min per 10MB, minimum 120s
        timeout_sec = max(120, int(file_size / (10 * 1024 * 1024) * 60) + 60)

        def upload():
            with open(audio_path, 'rb') as f:
                return requests.post(
                    DEEPGRAM_PRERECORDED_URL,
                    headers=headers,
                    params=params,
                    data=f,
                    timeout=timeout_sec,
                )

        for attempt in range(_MAX_RATE_LIMIT_RETRIES + 1):
            ctx.check()
            try:
                resp = run_cancellable(ctx, upload)
            except requests.exceptions.Timeout:
                raise JobError(ErrorCode.TRANSCRIBE_TIMEOUT, "Deepgram request timed out")
            except requests.exceptions.ConnectionError:
                raise JobError(ErrorCode.NETWORK_TRANSIENT, "Network error connecting to Deepgram")
            except requests.exceptions.RequestException as e:
                raise JobError(ErrorCode.TRANSCRIBE_FAILED, f"Deepgram request failed: {e}")

            if resp.status_code == 504:
                raise JobError(ErrorCode.TRANSCRIBE_TIMEOUT, "Deepgram returned 504 Gateway Timeout")

            if resp.status_code == 429:
                if attempt < _MAX_RATE_LIMIT_RETRIES:
                    # Exponential backoff with jitter: 2s, 4s, 8s, 16s (+/- 10%)
                    delay = _RATE_LIMIT_BASE_DELAY * (2 ** attempt)
                    delay *= 1 + random.uniform(-0.1, 0.1)
                    logger.warning(
                        "Deepgram rate limited (429), retrying in %.1fs (attempt %d/%d)",
                        delay, attempt + 1, _MAX_RATE_LIMIT_RETRIES,
                    )
                    if ctx.wait(delay):
                        ctx.check()
                    continue
                raise JobError(ErrorCode.NETWORK_TRANSIENT,
                               f"Deepgram rate limited (429) after {_MAX_RATE_LIMIT_RETRIES} retries")

            if resp.status_code != 200:
                # Sanitize error message (never log API key)
                error_body = resp.text[:MAX_STDERR_EXCERPT_LEN] if resp.text else "No response body"
                raise JobError(ErrorCode.TRANSCRIBE_FAILED,
                               f"Deepgram returned {resp.status_code}: {error_body}")

            try:
                result = resp.json()
            except json.JSONDecodeError:
                raise JobError(ErrorCode.MALFORMED_RESPONSE,
                               "Failed to parse Deepgram response JSON")

            return parse_segments(result), Usage()

        raise JobError(ErrorCode.NETWORK_TRANSIENT, "Deepgram request exhausted retries")
