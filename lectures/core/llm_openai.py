"""
OpenAI-compatible chat providers: the OpenAI API itself and the
OpenRouter aggregator.  Streams server-sent events from /chat/completions.
"""

import json
import logging

from lectures.core.constants import (
    ErrorCode, OPENAI_API_BASE, OPENROUTER_API_BASE, ProviderName,
)
from lectures.core.error_codes import ProviderError
from lectures.core.llm_provider import (
    HTTPChatProvider, ChatRequest, ChatResponseChunk, PART_TEXT, PART_IMAGE, PART_AUDIO,
)

logger = logging.getLogger(__name__)

_SSE_DATA = "data:"
_SSE_DONE = "[DONE]"


def _usage_chunk(usage: dict | None) -> ChatResponseChunk:
    usage = usage or {}
    return ChatResponseChunk(
        input_tokens=usage.get("prompt_tokens", 0) or 0,
        output_tokens=usage.get("completion_tokens", 0) or 0,
        cost=float(usage.get("cost", 0) or 0),
    )


class OpenAICompatibleProvider(HTTPChatProvider):
    name = ProviderName.OPENAI
    endpoint = "/chat/completions"

    def __init__(self, api_key: str = "", base_url: str = OPENAI_API_BASE):
        super().__init__(base_url or OPENAI_API_BASE, api_key)

    def _headers(self, client) -> dict:
        headers = {"Content-Type": "application/json"}
        if client.api_key:
            headers["Authorization"] = f"Bearer {client.api_key}"
        return headers

    @staticmethod
    def _convert_part(part) -> dict:
        if part.type == PART_TEXT:
            return {"type": "text", "text": part.text}
        if part.type == PART_IMAGE:
            return {"type": "image_url", "image_url": {"url": part.image_url}}
        if part.type == PART_AUDIO:
            return {"type": "input_audio",
                    "input_audio": {"data": part.audio_data, "format": part.audio_format}}
        raise ProviderError(f"Invalid content part type: {part.type!r}",
                            code=ErrorCode.INVALID_REQUEST)

    def build_body(self, request: ChatRequest, model: str) -> dict:
        body = {
            "model": model,
            "messages": [
                {"role": m.role, "content": [self._convert_part(p) for p in m.content]}
                for m in request.messages
            ],
            "stream": request.stream,
        }
        if request.stream:
            body["stream_options"] = {"include_usage": True}
        return body

    def parse_single(self, data: dict) -> ChatResponseChunk:
        if data.get("error"):
            return ChatResponseChunk(error=ProviderError(f"{self.name} error: {data['error']}"))
        chunk = _usage_chunk(data.get("usage"))
        choices = data.get("choices") or []
        if choices:
            chunk.text = (choices[0].get("message") or {}).get("content") or ""
        return chunk

    def parse_stream(self, response, emit):
        for line in response.iter_lines(decode_unicode=True):
            if not line or not line.startswith(_SSE_DATA):
                # blank keep-alives and ": comment" lines
                continue
            payload = line[len(_SSE_DATA):].strip()
            if payload == _SSE_DONE:
                return
            try:
                data = json.loads(payload)
            except json.JSONDecodeError:
                emit(ChatResponseChunk(error=ProviderError(
                    f"Failed to decode {self.name} stream event: {payload[:200]}",
                    code=ErrorCode.MALFORMED_RESPONSE)))
                return
            if data.get("error"):
                emit(ChatResponseChunk(error=ProviderError(f"{self.name} error: {data['error']}")))
                return

            choices = data.get("choices") or []
            text = ""
            if choices:
                text = (choices[0].get("delta") or {}).get("content") or ""

            if data.get("usage"):
                chunk = _usage_chunk(data["usage"])
                chunk.text = text
            else:
                chunk = ChatResponseChunk(text=text)

            if text or data.get("usage"):
                if not emit(chunk):
                    return


class OpenRouterProvider(OpenAICompatibleProvider):
    """OpenRouter: OpenAI wire format plus per-request cost in usage."""

    name = ProviderName.OPENROUTER

    def __init__(self, api_key: str = "", base_url: str = OPENROUTER_API_BASE):
        super().__init__(api_key, base_url or OPENROUTER_API_BASE)

    def build_body(self, request: ChatRequest, model: str) -> dict:
        body = super().build_body(request, model)
        body["usage"] = {"include": True}
        return body
