"""
Typed job payloads, one dataclass per job type.
Decoded by the engine after dispatch so a malformed payload fails the job
before any external work starts.
"""

import json
from dataclasses import dataclass, fields

from lectures.core.constants import ErrorCode, ToolType, TOOL_TYPES
from lectures.core.error_codes import JobError


@dataclass
class TranscribeMediaPayload:
    lecture_id: str

    def validate(self):
        _require(self.lecture_id, "lecture_id")


@dataclass
class IngestDocumentsPayload:
    lecture_id: str
    language_code: str = ""

    def validate(self):
        _require(self.lecture_id, "lecture_id")


@dataclass
class BuildMaterialPayload:
    lecture_id: str
    type: str = ToolType.GUIDE
    exam_id: str = ""
    length: str = "medium"
    language_code: str = ""
    model: str = ""

    def validate(self):
        _require(self.lecture_id, "lecture_id")
        if self.type not in TOOL_TYPES:
            raise JobError(ErrorCode.BAD_PAYLOAD, f"Unknown material type: {self.type!r}")
        if self.length not in ("short", "medium", "long"):
            raise JobError(ErrorCode.BAD_PAYLOAD, f"Unknown length: {self.length!r}")


@dataclass
class PublishMaterialPayload:
    tool_id: str
    format: str = "md"
    language_code: str = ""
    include_abstract: bool = False

    def validate(self):
        _require(self.tool_id, "tool_id")


def _require(value, name: str):
    if not isinstance(value, str) or not value.strip():
        raise JobError(ErrorCode.BAD_PAYLOAD, f"Missing or empty field: {name}")


def decode_payload(raw: str | bytes | dict | None, payload_cls: type):
    """
    Decode a JSON payload into ``payload_cls``.
    Unknown keys are ignored; missing required keys, wrong shapes and
    failed validation all raise JobError(ERR_BAD_PAYLOAD).
    """
    if isinstance(raw, dict):
        data = raw
    else:
        try:
            data = json.loads(raw or "{}")
        except (TypeError, ValueError) as e:
            raise JobError(ErrorCode.BAD_PAYLOAD, f"Payload is not valid JSON: {e}")

    if not isinstance(data, dict):
        raise JobError(ErrorCode.BAD_PAYLOAD, "Payload must be a JSON object")

    known = {f.name for f in fields(payload_cls)}
    try:
        payload = payload_cls(**{k: v for k, v in data.items() if k in known})
    except TypeError as e:
        raise JobError(ErrorCode.BAD_PAYLOAD, f"Invalid payload for {payload_cls.__name__}: {e}")

    if hasattr(payload, 'validate'):
        payload.validate()
    return payload
