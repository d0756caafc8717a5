"""
SQLite data models (plain dataclasses) for the Lecture Assistant.
"""

import json
from dataclasses import dataclass
from typing import Optional

from lectures.core.constants import JobStatus, ExtractionStatus


@dataclass
class Job:
    id: str                          # UUID
    type: str
    user_id: Optional[str] = None
    status: str = JobStatus.PENDING
    progress: int = 0
    progress_message: Optional[str] = None
    payload: str = "{}"              # JSON
    metadata: Optional[str] = None   # JSON
    result: Optional[str] = None     # JSON
    error: Optional[str] = None
    error_code: Optional[str] = None
    retryable: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: float = 0.0
    retry_of: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    def payload_dict(self) -> dict:
        return json.loads(self.payload) if self.payload else {}

    def result_dict(self) -> dict | None:
        return json.loads(self.result) if self.result else None


@dataclass
class Lecture:
    id: str
    exam_id: Optional[str] = None
    title: str = ""
    description: str = ""
    status: str = "pending"
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class LectureMedia:
    id: str
    lecture_id: str
    media_type: str = "audio"
    sequence_order: int = 0
    file_path: str = ""
    duration_milliseconds: int = 0
    created_at: Optional[str] = None


@dataclass
class Transcript:
    id: str
    lecture_id: str
    language: Optional[str] = None
    status: str = ExtractionStatus.PENDING
    confidence: Optional[float] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class TranscriptSegment:
    media_id: str
    start_millisecond: int
    end_millisecond: int
    original_start_milliseconds: int
    original_end_milliseconds: int
    text: str
    confidence: float = 0.0
    speaker: Optional[str] = None
    transcript_id: Optional[str] = None
    id: Optional[int] = None


@dataclass
class ReferenceDocument:
    id: str
    lecture_id: str
    document_type: str = ""
    title: str = ""
    file_path: str = ""
    page_count: int = 0
    extraction_status: str = ExtractionStatus.PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class ReferencePage:
    document_id: str
    page_number: int
    image_path: str = ""
    extracted_text: str = ""
    id: Optional[int] = None


@dataclass
class Tool:
    id: str
    exam_id: Optional[str]
    type: str
    title: str = ""
    language_code: str = ""
    content: str = ""
    lecture_id: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
