"""
Application configuration manager.
Stores settings in a JSON file under the data directory.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Callable

from lectures.core.constants import (
    CONFIG_PATH, DATA_DIR, DEFAULT_WORKERS, DEFAULT_CHAT_MODEL,
    DEFAULT_LANGUAGE, DEFAULT_MAX_RETRIES, DEFAULT_MAX_COST_PER_JOB,
    AUDIO_CHUNK_SEC, CLEANUP_BATCH_SIZE, RENDER_DPI, MAX_DOCUMENT_PAGES,
    OPENROUTER_API_BASE, OPENAI_API_BASE, OLLAMA_API_BASE,
    ProviderName, TranscriptionBackend, WHISPER_LOCAL_MODEL,
    LLM_TRANSCRIBE_MODEL,
)

# Validation bounds
_WORKERS_MIN = 1
_WORKERS_MAX = 16
_DPI_MIN = 72
_DPI_MAX = 600
_CHUNK_MIN = 60               # 1 minute
_CHUNK_MAX = 3600             # 1 hour
_PAGES_MIN = 1
_PAGES_MAX = 5000
_RETRIES_MIN = 0
_RETRIES_MAX = 10
_BATCH_MIN = 1
_BATCH_MAX = 20
_TIMEOUT_MAX = 24 * 3600

_SECRET_KEYS = frozenset({
    'openrouter_api_key', 'openai_api_key', 'deepgram_api_key',
})

logger = logging.getLogger(__name__)

_DEFAULTS = {
    'data_dir': str(DATA_DIR),
    'workers': DEFAULT_WORKERS,
    # LLM providers
    'llm_provider': ProviderName.OPENROUTER,
    'openrouter_api_key': '',
    'openrouter_base_url': OPENROUTER_API_BASE,
    'openai_api_key': '',
    'openai_base_url': OPENAI_API_BASE,
    'ollama_base_url': OLLAMA_API_BASE,
    # Per-task models (optionally provider-prefixed)
    'default_model': DEFAULT_CHAT_MODEL,
    'ocr_model': DEFAULT_CHAT_MODEL,
    'generation_model': DEFAULT_CHAT_MODEL,
    'polishing_model': DEFAULT_CHAT_MODEL,
    # Transcription
    'transcription_provider': TranscriptionBackend.DEEPGRAM,
    'transcription_model': LLM_TRANSCRIBE_MODEL,
    'deepgram_api_key': '',
    'whisper_model': WHISPER_LOCAL_MODEL,
    'audio_chunk_sec': AUDIO_CHUNK_SEC,
    'transcript_cleanup': True,
    'cleanup_batch_size': CLEANUP_BATCH_SIZE,
    # Documents
    'render_dpi': RENDER_DPI,
    'max_pages': MAX_DOCUMENT_PAGES,
    # Safety
    'language': DEFAULT_LANGUAGE,
    'max_cost_per_job': DEFAULT_MAX_COST_PER_JOB,
    'max_retries': DEFAULT_MAX_RETRIES,
    'job_timeout_sec': 0,
    'keep_debug_artifacts': False,
}


def _clamp_int(key: str, value, low: int, high: int) -> int:
    try:
        value = int(value)
    except (TypeError, ValueError):
        logger.warning("Invalid %s %r, using default", key, value)
        return _DEFAULTS[key]
    return max(low, min(high, value))


class AppConfig:
    """Manages application configuration stored as JSON."""

    def __init__(self, config_path: Path | None = None):
        self.path = config_path or CONFIG_PATH
        self._data: dict = {}
        self._lock = threading.Lock()
        self._subscribers: list[Callable[[str, object], None]] = []
        self.load()

    def load(self):
        """Load config from disk, merging with defaults."""
        self._data = dict(_DEFAULTS)
        if self.path.exists():
            try:
                with open(self.path, 'r') as f:
                    saved = json.load(f)
            except Exception as e:
                logger.warning("Failed to load config: %s", e)
                return
            for key, value in saved.items():
                self._data[key] = self._validate(key, value)

    def save(self):
        """Persist config to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w') as f:
            json.dump(self._data, f, indent=2)

    def get(self, key: str, default=None):
        return self._data.get(key, default)

    def set(self, key: str, value):
        value = self._validate(key, value)
        with self._lock:
            self._data[key] = value
            self.save()
            subscribers = list(self._subscribers)
        if key in _SECRET_KEYS:
            logger.info("Config updated: %s (redacted)", key)
        else:
            logger.info("Config updated: %s=%r", key, value)
        for callback in subscribers:
            try:
                callback(key, value)
            except Exception as e:
                logger.error("Config subscriber failed for %s: %s", key, e, exc_info=True)

    def subscribe(self, callback: Callable[[str, object], None]):
        """Register ``callback(key, value)`` to run after every ``set()``."""
        with self._lock:
            self._subscribers.append(callback)

    def _validate(self, key: str, value):
        """Validate and coerce config values to safe ranges."""
        if key == 'workers':
            return _clamp_int(key, value, _WORKERS_MIN, _WORKERS_MAX)

        if key == 'render_dpi':
            return _clamp_int(key, value, _DPI_MIN, _DPI_MAX)

        if key == 'audio_chunk_sec':
            return _clamp_int(key, value, _CHUNK_MIN, _CHUNK_MAX)

        if key == 'max_pages':
            return _clamp_int(key, value, _PAGES_MIN, _PAGES_MAX)

        if key == 'max_retries':
            return _clamp_int(key, value, _RETRIES_MIN, _RETRIES_MAX)

        if key == 'job_timeout_sec':
            return _clamp_int(key, value, 0, _TIMEOUT_MAX)

        if key == 'max_cost_per_job':
            try:
                value = float(value)
            except (TypeError, ValueError):
                logger.warning("Invalid max_cost_per_job %r, using default", value)
                return DEFAULT_MAX_COST_PER_JOB
            return max(0.0, value)

        if key == 'llm_provider':
            if value not in (ProviderName.OPENROUTER, ProviderName.OLLAMA, ProviderName.OPENAI):
                logger.warning("Invalid llm_provider %r, using %s", value, ProviderName.OPENROUTER)
                return ProviderName.OPENROUTER

        if key == 'transcription_provider':
            known = (TranscriptionBackend.DEEPGRAM, TranscriptionBackend.OPENAI,
                     TranscriptionBackend.WHISPER_LOCAL, TranscriptionBackend.LLM)
            if value not in known:
                logger.warning("Invalid transcription_provider %r, using %s",
                               value, TranscriptionBackend.DEEPGRAM)
                return TranscriptionBackend.DEEPGRAM

        if key == 'cleanup_batch_size':
            return _clamp_int(key, value, _BATCH_MIN, _BATCH_MAX)

        if key in ('keep_debug_artifacts', 'transcript_cleanup'):
            return bool(value)

        return value

    def as_dict(self) -> dict:
        return dict(self._data)

    @property
    def data_dir(self) -> Path:
        return Path(self._data.get('data_dir', str(DATA_DIR)))

    @property
    def workers(self) -> int:
        return self._data.get('workers', DEFAULT_WORKERS)

    @property
    def language(self) -> str:
        return self._data.get('language', DEFAULT_LANGUAGE)

    @property
    def max_cost_per_job(self) -> float:
        return self._data.get('max_cost_per_job', DEFAULT_MAX_COST_PER_JOB)

    @property
    def max_retries(self) -> int:
        return self._data.get('max_retries', DEFAULT_MAX_RETRIES)

    @property
    def job_timeout_sec(self) -> int:
        return self._data.get('job_timeout_sec', 0)

    @property
    def keep_debug_artifacts(self) -> bool:
        return self._data.get('keep_debug_artifacts', False)
