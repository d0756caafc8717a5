"""
Transcription service: turns a lecture's ordered media files into one
continuously time-stamped list of transcript segments.

For file k, a segment's unified time is its time within the file plus the
sum of the *probed* durations of files 0..k-1.  Long files are split into
chunks; chunk-relative times are shifted by the probed durations of the
earlier chunks so ``original_*`` stays relative to the source file.

When a polishing model is configured, each batch of chunks is cleaned up
by the chat model and stored as one segment spanning the batch; if that
call fails the raw segments are kept.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from lectures.core import media_probe
from lectures.core.cleanup import remove_dir
from lectures.core.constants import (
    AUDIO_CHUNK_SEC, CLEANUP_BATCH_SIZE, NORM_FORMAT, TranscriptionBackend,
)
from lectures.core.error_codes import JobCancelled, JobError
from lectures.core.llm_provider import (
    ChatRequest, ContentPart, Provider, Usage, collect_text, user_message,
)
from lectures.core.models_sqlite import LectureMedia, TranscriptSegment
from lectures.core.prompts import CLEAN_TRANSCRIPT, TRANSCRIBE_RECORDING, render_prompt
from lectures.core.transcribe_provider import Segment, TranscriptionProvider

logger = logging.getLogger(__name__)


class MediaTools:
    """ffmpeg/ffprobe operations used by the service (swappable in tests)."""

    def extract_audio(self, ctx, input_path: Path, output_path: Path) -> Path:
        return media_probe.extract_audio(ctx, input_path, output_path)

    def get_duration_ms(self, ctx, path: Path) -> int:
        return media_probe.get_duration_ms(ctx, path)

    def split_audio(self, ctx, audio_path: Path, chunks_dir: Path, chunk_sec: int) -> list[Path]:
        return media_probe.split_audio(ctx, audio_path, chunks_dir, chunk_sec)


@dataclass
class TranscriptionResult:
    segments: list[TranscriptSegment] = field(default_factory=list)
    media_durations: dict[str, int] = field(default_factory=dict)   # media id → ms
    usage: Usage = field(default_factory=Usage)


def to_transcript_segment(seg: Segment, media_id: str, chunk_offset_ms: int,
                          chunk_duration_ms: int, file_offset_ms: int) -> TranscriptSegment:
    """Place a chunk-relative segment on the file and lecture timelines."""
    original_start = chunk_offset_ms + int(round(seg.start * 1000))
    if seg.end > 0:
        original_end = chunk_offset_ms + int(round(seg.end * 1000))
    else:
        original_end = chunk_offset_ms + chunk_duration_ms
    original_end = max(original_end, original_start)
    return TranscriptSegment(
        media_id=media_id,
        start_millisecond=file_offset_ms + original_start,
        end_millisecond=file_offset_ms + original_end,
        original_start_milliseconds=original_start,
        original_end_milliseconds=original_end,
        text=seg.text,
        confidence=seg.confidence,
        speaker=seg.speaker,
    )


class TranscriptionService:

    def __init__(self, provider: TranscriptionProvider, chunk_sec: int = AUDIO_CHUNK_SEC,
                 media: MediaTools | None = None, llm: Provider | None = None,
                 polishing_model: str = "", cleanup_batch_size: int = CLEANUP_BATCH_SIZE):
        self.provider = provider
        self.chunk_sec = chunk_sec or AUDIO_CHUNK_SEC
        self.media = media or MediaTools()
        self.llm = llm
        self.polishing_model = polishing_model
        self.cleanup_batch_size = max(1, cleanup_batch_size or CLEANUP_BATCH_SIZE)

    def check_dependencies(self):
        self.provider.check_dependencies()

    def transcribe_lecture(self, ctx, media_files: list[LectureMedia], workspace: Path,
                           update_progress: Callable[[int, str], None],
                           add_usage: Callable[[Usage], None] | None = None) -> TranscriptionResult:
        """
        Transcribe every media file in ``sequence_order``.
        Any failure (including a duration probe) fails the whole run.
        Usage is handed to ``add_usage`` after every paid call, so it is
        accounted for even when a later file fails.
        """
        result = TranscriptionResult()
        ordered = sorted(media_files, key=lambda m: m.sequence_order)
        total = len(ordered)
        file_offset_ms = 0

        def report(usage: Usage):
            result.usage.add(usage)
            if add_usage is not None:
                add_usage(usage)

        if not self.provider.prompt:
            self.provider.set_prompt(TRANSCRIBE_RECORDING)

        for index, media in enumerate(ordered):
            ctx.check()
            update_progress(int(index / total * 100),
                            f"Transcribing media file {index + 1}/{total}...")

            audio_path = workspace / f"source_{media.id}.{NORM_FORMAT}"
            chunks_dir = workspace / f"chunks_{media.id}"
            try:
                self.media.extract_audio(ctx, Path(media.file_path), audio_path)
                file_duration_ms = self.media.get_duration_ms(ctx, audio_path)

                if file_duration_ms > self.chunk_sec * 1000:
                    chunks = self.media.split_audio(ctx, audio_path, chunks_dir, self.chunk_sec)
                else:
                    chunks = [audio_path]

                chunk_offset_ms = 0
                batch_size = self.cleanup_batch_size
                for batch_start in range(0, len(chunks), batch_size):
                    batch = []
                    for chunk_path in chunks[batch_start:batch_start + batch_size]:
                        ctx.check()
                        if len(chunks) == 1:
                            chunk_duration_ms = file_duration_ms
                        else:
                            chunk_duration_ms = self.media.get_duration_ms(ctx, chunk_path)

                        segments, usage = self.provider.transcribe(ctx, chunk_path)
                        report(usage)
                        for seg in segments:
                            batch.append(to_transcript_segment(
                                seg, media.id, chunk_offset_ms, chunk_duration_ms, file_offset_ms))
                        chunk_offset_ms += chunk_duration_ms

                    done = min(batch_start + batch_size, len(chunks))
                    update_progress(int((index + done / len(chunks)) / total * 100),
                                    "Transcribing audio segments...")
                    result.segments.extend(self.clean_batch(ctx, batch, report))
            finally:
                remove_dir(chunks_dir)
                if audio_path.exists():
                    audio_path.unlink()

            logger.info("Transcribed media %s (%d/%d, %d ms)",
                        media.id, index + 1, total, file_duration_ms)
            result.media_durations[media.id] = file_duration_ms
            file_offset_ms += file_duration_ms
            update_progress(int((index + 1) / total * 100),
                            f"Transcribed media file {index + 1}/{total}")

        return result

    def clean_batch(self, ctx, segments: list[TranscriptSegment],
                    report: Callable[[Usage], None]) -> list[TranscriptSegment]:
        """Polish a batch into one segment; the raw segments come back if the model fails."""
        text = " ".join(s.text.strip() for s in segments if s.text.strip())
        if self.llm is None or not self.polishing_model or not text:
            return segments

        prompt = render_prompt(CLEAN_TRANSCRIPT, transcript=text)
        request = ChatRequest(model=self.polishing_model,
                              messages=[user_message(ContentPart.of_text(prompt))])
        try:
            cleaned, usage = collect_text(self.llm.chat(ctx, request))
        except JobCancelled:
            raise
        except JobError as e:
            logger.warning("Transcript cleanup failed, keeping raw segments: %s", e)
            if getattr(e, 'usage', None) is not None:
                report(e.usage)
            return segments
        report(usage)

        cleaned = cleaned.strip()
        if not cleaned:
            return segments
        first, last = segments[0], segments[-1]
        return [TranscriptSegment(
            media_id=first.media_id,
            start_millisecond=first.start_millisecond,
            end_millisecond=last.end_millisecond,
            original_start_milliseconds=first.original_start_milliseconds,
            original_end_milliseconds=last.original_end_milliseconds,
            text=cleaned,
            confidence=1.0,
        )]


def build_transcription_provider(config, llm) -> TranscriptionProvider:
    """Pick the backend named by ``transcription_provider``."""
    from lectures.core.transcribe_deepgram import DeepgramProvider
    from lectures.core.transcribe_openai import OpenAITranscriptionProvider
    from lectures.core.transcribe_whisper import WhisperLocalProvider
    from lectures.core.transcribe_llm import LLMTranscriptionProvider

    backend = config.get('transcription_provider', TranscriptionBackend.DEEPGRAM)
    language = config.get('language', '')
    if backend == TranscriptionBackend.OPENAI:
        return OpenAITranscriptionProvider(config.get('openai_api_key', ''),
                                           config.get('openai_base_url'),
                                           language=language)
    if backend == TranscriptionBackend.WHISPER_LOCAL:
        return WhisperLocalProvider(config.get('whisper_model'), language=language)
    if backend == TranscriptionBackend.LLM:
        return LLMTranscriptionProvider(llm, config.get('transcription_model'))
    return DeepgramProvider(config.get('deepgram_api_key', ''), language=language)
