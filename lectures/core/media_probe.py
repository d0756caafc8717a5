"""
ffmpeg / ffprobe wrappers: duration probing, audio extraction and
time-based splitting.
Target audio: mono, 16kHz, MP3 CBR 96kbps.
"""

import json
import logging
import subprocess
from pathlib import Path

from lectures.core.security_utils import run_job_subprocess
from lectures.core.error_codes import JobError
from lectures.core.constants import (
    ErrorCode, NORM_CHANNELS, NORM_SAMPLE_RATE, NORM_BITRATE, NORM_FORMAT,
    MAX_STDERR_EXCERPT_LEN,
)

logger = logging.getLogger(__name__)


def get_duration_ms(ctx, media_path: Path) -> int:
    """
    Probe a file's duration in milliseconds with ffprobe.
    Falls back to the longest stream duration when the container has none.
    Raises JobError(ERR_MEDIA_PROBE) when no duration can be determined.
    """
    args = [
        "ffprobe",
        "-v", "error",
        "-show_entries", "format=duration:stream=duration",
        "-of", "json",
        str(media_path),
    ]
    try:
        result = run_job_subprocess(ctx, args, timeout=60)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise JobError(ErrorCode.MEDIA_PROBE, f"ffprobe failed for {media_path.name}: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "")[:MAX_STDERR_EXCERPT_LEN]
        raise JobError(ErrorCode.MEDIA_PROBE,
                       f"ffprobe failed (rc={result.returncode}) for {media_path.name}: {stderr}")

    try:
        info = json.loads(result.stdout or "{}")
    except json.JSONDecodeError:
        raise JobError(ErrorCode.MEDIA_PROBE, f"Unreadable ffprobe output for {media_path.name}")

    duration = _to_seconds(info.get('format', {}).get('duration'))
    if duration <= 0:
        streams = info.get('streams') or []
        duration = max((_to_seconds(s.get('duration')) for s in streams), default=0.0)

    if duration <= 0:
        raise JobError(ErrorCode.MEDIA_PROBE, f"Could not determine duration of {media_path.name}")

    return int(round(duration * 1000))


def _to_seconds(value) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def extract_audio(ctx, input_path: Path, output_path: Path) -> Path:
    """
    Extract and normalize the audio track of any media file (video
    streams are dropped, channels are downmixed to mono).
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    args = [
        "ffmpeg",
        "-y",                           # overwrite
        "-i", str(input_path),
        "-vn",                          # drop video
        "-ac", str(NORM_CHANNELS),      # mono
        "-ar", str(NORM_SAMPLE_RATE),   # 16kHz
        "-b:a", NORM_BITRATE,           # 96k CBR
        "-codec:a", "libmp3lame",
        str(output_path),
    ]

    try:
        result = run_job_subprocess(ctx, args, timeout=1800)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise JobError(ErrorCode.FFMPEG, f"ffmpeg audio extraction failed: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "")[:MAX_STDERR_EXCERPT_LEN]
        raise JobError(ErrorCode.FFMPEG,
                       f"ffmpeg failed (rc={result.returncode}): {stderr}")

    if not output_path.exists():
        raise JobError(ErrorCode.FFMPEG, "Extracted audio file not created")

    logger.info("Extracted audio: %s", output_path)
    return output_path


def split_audio(ctx, audio_path: Path, chunks_dir: Path, chunk_sec: int) -> list[Path]:
    """
    Split normalized audio into consecutive chunks of ``chunk_sec`` seconds
    using the ffmpeg segment muxer. Returns chunk paths in time order.
    """
    chunks_dir.mkdir(parents=True, exist_ok=True)
    pattern = chunks_dir / f"chunk_%03d.{NORM_FORMAT}"

    args = [
        "ffmpeg",
        "-y",
        "-i", str(audio_path),
        "-f", "segment",
        "-segment_time", str(chunk_sec),
        "-reset_timestamps", "1",
        "-codec:a", "copy",             # already normalized
        str(pattern),
    ]

    try:
        result = run_job_subprocess(ctx, args, timeout=1800)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise JobError(ErrorCode.FFMPEG, f"Audio split failed: {e}")

    if result.returncode != 0:
        stderr = (result.stderr or "")[:MAX_STDERR_EXCERPT_LEN]
        raise JobError(ErrorCode.FFMPEG, f"ffmpeg split failed (rc={result.returncode}): {stderr}")

    chunk_paths = sorted(chunks_dir.glob(f"chunk_*.{NORM_FORMAT}"))
    if not chunk_paths:
        raise JobError(ErrorCode.FFMPEG, "Audio split produced no chunks")

    logger.info("Created %d chunks in %s", len(chunk_paths), chunks_dir)
    return chunk_paths
