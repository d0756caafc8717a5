"""
Shared constants for the Lecture Assistant job engine.
Single source of truth, imported by every other module.
"""

import pathlib

# ── Application identity ──────────────────────────────────────────────
APP_NAME = "LectureAssistant"
APP_VERSION = "1.0.0"

# ── Filesystem paths ─────────────────────────────────────────────────
HOME = pathlib.Path.home()

DATA_DIR = HOME / ".lectures"
DB_PATH = DATA_DIR / "lectures.db"
CONFIG_PATH = DATA_DIR / "config.json"
LOG_DIR = DATA_DIR / "logs"
JOBS_CACHE_DIR = DATA_DIR / "cache" / "jobs"
PAGES_DIR = DATA_DIR / "files" / "pages"
EXPORTS_DIR = DATA_DIR / "files" / "exports"


# ── Job types ─────────────────────────────────────────────────────────
class JobType:
    TRANSCRIBE_MEDIA = "TRANSCRIBE_MEDIA"
    INGEST_DOCUMENTS = "INGEST_DOCUMENTS"
    BUILD_MATERIAL = "BUILD_MATERIAL"
    PUBLISH_MATERIAL = "PUBLISH_MATERIAL"

ALL_JOB_TYPES = (
    JobType.TRANSCRIBE_MEDIA,
    JobType.INGEST_DOCUMENTS,
    JobType.BUILD_MATERIAL,
    JobType.PUBLISH_MATERIAL,
)


# ── Job status values ─────────────────────────────────────────────────
class JobStatus:
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


# ── Domain row status values (lowercase, as stored) ──────────────────
class ExtractionStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ToolType:
    GUIDE = "guide"
    FLASHCARD = "flashcard"
    QUIZ = "quiz"

TOOL_TYPES = (ToolType.GUIDE, ToolType.FLASHCARD, ToolType.QUIZ)


# ── Error codes ───────────────────────────────────────────────────────
class ErrorCode:
    # Non-retryable
    BAD_PAYLOAD = "ERR_BAD_PAYLOAD"
    UNKNOWN_JOB_TYPE = "ERR_UNKNOWN_JOB_TYPE"
    NOT_FOUND = "ERR_NOT_FOUND"
    UNSUPPORTED_DOCUMENT = "ERR_UNSUPPORTED_DOCUMENT"
    UNSUPPORTED_FORMAT = "ERR_UNSUPPORTED_FORMAT"
    MEDIA_PROBE = "ERR_MEDIA_PROBE"
    FFMPEG = "ERR_FFMPEG"
    DOCUMENT_CONVERT = "ERR_DOCUMENT_CONVERT"
    RASTERIZE = "ERR_RASTERIZE"
    MALFORMED_RESPONSE = "ERR_MALFORMED_RESPONSE"
    COST_LIMIT = "ERR_COST_LIMIT"
    MISSING_DEPENDENCY = "ERR_MISSING_DEPENDENCY"
    INVALID_REQUEST = "ERR_INVALID_REQUEST"

    # Retryable
    PROVIDER = "ERR_PROVIDER"
    NETWORK_TRANSIENT = "ERR_NETWORK_TRANSIENT"
    TRANSCRIBE_FAILED = "ERR_TRANSCRIBE_FAILED"
    TRANSCRIBE_TIMEOUT = "ERR_TRANSCRIBE_TIMEOUT"
    INTERRUPTED = "ERR_INTERRUPTED"
    UNEXPECTED = "ERR_UNEXPECTED"

    # Special (terminal, not a failure)
    CANCELLED = "ERR_CANCELLED"

RETRYABLE_ERRORS = {
    ErrorCode.PROVIDER,
    ErrorCode.NETWORK_TRANSIENT,
    ErrorCode.TRANSCRIBE_FAILED,
    ErrorCode.TRANSCRIBE_TIMEOUT,
    ErrorCode.INTERRUPTED,
    ErrorCode.UNEXPECTED,
}

MAX_ERROR_MESSAGE_LEN = 2000
MAX_STDERR_EXCERPT_LEN = 300

# ── Worker pool defaults ──────────────────────────────────────────────
DEFAULT_WORKERS = 2
WORKER_POLL_INTERVAL_SEC = 1.0

# ── Audio pipeline defaults ───────────────────────────────────────────
AUDIO_CHUNK_SEC = 300           # 5 minutes per transcription request
NORM_CHANNELS = 1
NORM_SAMPLE_RATE = 16000
NORM_BITRATE = "96k"
NORM_FORMAT = "mp3"
CLEANUP_BATCH_SIZE = 3         # chunks polished per model call

# ── Document pipeline defaults ────────────────────────────────────────
RENDER_DPI = 150
MAX_DOCUMENT_PAGES = 500
OFFICE_EXTENSIONS = (".pptx", ".docx", ".ppt", ".doc", ".odp", ".odt")
PDF_EXTENSION = ".pdf"
OCR_FAILURE_MARKER = "[OCR Failed: {error}]"

# ── Progress mapping ─────────────────────────────────────────────────
PROGRESS_DOC_CONVERT = 5
PROGRESS_DOC_RASTERIZE = 10     # head of the OCR band; pages share the rest
PROGRESS_DOC_OCR_END = 100
PROGRESS_MATERIAL_CONTEXT = 10
PROGRESS_MATERIAL_GENERATE = 20
PROGRESS_MATERIAL_STORE = 95
PROGRESS_PUBLISH_ABSTRACT = 40
PROGRESS_PUBLISH_WRITE = 60

# ── LLM providers ─────────────────────────────────────────────────────
class ProviderName:
    OPENROUTER = "openrouter"
    OLLAMA = "ollama"
    OPENAI = "openai"

KNOWN_PROVIDER_PREFIXES = (ProviderName.OPENROUTER, ProviderName.OLLAMA, ProviderName.OPENAI)

OPENROUTER_API_BASE = "https://openrouter.ai/api/v1"
OPENAI_API_BASE = "https://api.openai.com/v1"
OLLAMA_API_BASE = "http://localhost:11434"

DEFAULT_CHAT_MODEL = "openrouter:google/gemini-2.5-flash-lite"
DEFAULT_OLLAMA_MODEL = "llama3.2"
HTTP_CONNECT_TIMEOUT_SEC = 10
HTTP_READ_TIMEOUT_SEC = 300
STREAM_QUEUE_SIZE = 64

# ── Transcription providers ───────────────────────────────────────────
class TranscriptionBackend:
    DEEPGRAM = "deepgram"
    OPENAI = "openai"
    WHISPER_LOCAL = "whisper-local"
    LLM = "llm"

DEEPGRAM_API_BASE = "https://api.deepgram.com/v1"
DEEPGRAM_MODEL = "nova-3"
OPENAI_TRANSCRIBE_MODEL = "whisper-1"
WHISPER_LOCAL_MODEL = "base"
LLM_TRANSCRIBE_MODEL = "openrouter:google/gemini-2.5-flash-lite"

# ── Misc ──────────────────────────────────────────────────────────────
DEFAULT_LANGUAGE = "en"
DEFAULT_MAX_RETRIES = 3
DEFAULT_MAX_COST_PER_JOB = 0.0   # 0 disables the limit

# Characters forbidden in export file names
UNSAFE_FILENAME_CHARS = r'[<>:"/\\|?*#\x00-\x1f]'
MAX_FILENAME_LEN = 200
