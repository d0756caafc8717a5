"""
Ollama (local inference server) chat provider.
Streams newline-delimited JSON from /api/chat.
"""

import json
import logging

from lectures.core.constants import ErrorCode, OLLAMA_API_BASE, ProviderName
from lectures.core.error_codes import ProviderError
from lectures.core.llm_provider import (
    HTTPChatProvider, ChatRequest, ChatResponseChunk, PART_TEXT, PART_IMAGE, PART_AUDIO,
)

logger = logging.getLogger(__name__)


def strip_data_uri(image_url: str) -> str:
    """Ollama wants bare base64: drop a ``data:<mime>;base64,`` prefix."""
    if image_url.startswith("data:") and "," in image_url:
        return image_url.split(",", 1)[1]
    return image_url


class OllamaProvider(HTTPChatProvider):
    name = ProviderName.OLLAMA
    endpoint = "/api/chat"

    def __init__(self, base_url: str = OLLAMA_API_BASE):
        super().__init__(base_url or OLLAMA_API_BASE)

    def build_body(self, request: ChatRequest, model: str) -> dict:
        messages = []
        for message in request.messages:
            text_parts, images = [], []
            for part in message.content:
                if part.type == PART_TEXT:
                    text_parts.append(part.text)
                elif part.type == PART_IMAGE:
                    images.append(strip_data_uri(part.image_url))
                elif part.type == PART_AUDIO:
                    raise ProviderError("Ollama does not accept audio input",
                                        code=ErrorCode.INVALID_REQUEST)
            entry = {"role": message.role, "content": ''.join(text_parts)}
            if images:
                entry["images"] = images
            messages.append(entry)
        return {"model": model, "messages": messages, "stream": request.stream}

    def parse_single(self, data: dict) -> ChatResponseChunk:
        return ChatResponseChunk(
            text=(data.get("message") or {}).get("content", ""),
            input_tokens=data.get("prompt_eval_count", 0) or 0,
            output_tokens=data.get("eval_count", 0) or 0,
        )

    def parse_stream(self, response, emit):
        for line in response.iter_lines(decode_unicode=True):
            if not line:
                continue
            try:
                data = json.loads(line)
            except json.JSONDecodeError:
                emit(ChatResponseChunk(error=ProviderError(
                    f"Failed to decode ollama response line: {line[:200]}",
                    code=ErrorCode.MALFORMED_RESPONSE)))
                return
            if data.get("error"):
                emit(ChatResponseChunk(error=ProviderError(f"ollama error: {data['error']}")))
                return

            text = (data.get("message") or {}).get("content", "")
            done = bool(data.get("done"))
            if done:
                chunk = self.parse_single(data)
            else:
                chunk = ChatResponseChunk(text=text)
            if text or done:
                if not emit(chunk):
                    return
            if done:
                return
