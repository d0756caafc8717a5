"""
Chat-model provider abstraction.

``Provider.chat(ctx, request)`` raises ProviderError straight away when the
request cannot be started (invalid request, backend unreachable, non-200
status).  Otherwise it returns a ChatStream: an iterator of
ChatResponseChunk fed by a producer thread that reads the HTTP body.
Failures after streaming has started arrive as a chunk with ``error`` set,
so text already delivered is kept.  Providers never retry.
"""

import logging
import queue
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable

import requests

from lectures.core.constants import (
    ErrorCode, HTTP_CONNECT_TIMEOUT_SEC, HTTP_READ_TIMEOUT_SEC,
    STREAM_QUEUE_SIZE, MAX_STDERR_EXCERPT_LEN,
)
from lectures.core.error_codes import JobCancelled, ProviderError

logger = logging.getLogger(__name__)

PART_TEXT = "text"
PART_IMAGE = "image"
PART_AUDIO = "input_audio"
_PART_TYPES = (PART_TEXT, PART_IMAGE, PART_AUDIO)
_ROLES = ("system", "user", "assistant")


# ── Request / response types ──────────────────────────────────────────

@dataclass
class ContentPart:
    type: str
    text: str = ""
    image_url: str = ""        # http(s) URL or data: URI
    audio_data: str = ""       # base64
    audio_format: str = ""     # "mp3", "wav", ...

    @classmethod
    def of_text(cls, text: str) -> "ContentPart":
        return cls(type=PART_TEXT, text=text)

    @classmethod
    def of_image(cls, url: str) -> "ContentPart":
        return cls(type=PART_IMAGE, image_url=url)

    @classmethod
    def of_audio(cls, data: str, audio_format: str) -> "ContentPart":
        return cls(type=PART_AUDIO, audio_data=data, audio_format=audio_format)


@dataclass
class Message:
    role: str
    content: list[ContentPart] = field(default_factory=list)


@dataclass
class ChatRequest:
    model: str
    messages: list[Message] = field(default_factory=list)
    stream: bool = True

    def validate(self):
        if not self.model:
            raise ProviderError("Chat request has no model", code=ErrorCode.INVALID_REQUEST)
        if not self.messages:
            raise ProviderError("Chat request has no messages", code=ErrorCode.INVALID_REQUEST)
        for message in self.messages:
            if message.role not in _ROLES:
                raise ProviderError(f"Invalid message role: {message.role!r}",
                                    code=ErrorCode.INVALID_REQUEST)
            for part in message.content:
                if part.type not in _PART_TYPES:
                    raise ProviderError(f"Invalid content part type: {part.type!r}",
                                        code=ErrorCode.INVALID_REQUEST)


@dataclass
class ChatResponseChunk:
    text: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    error: Exception | None = None


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    def add(self, other: "Usage | ChatResponseChunk"):
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cost += other.cost


def user_message(*parts: ContentPart) -> Message:
    return Message(role="user", content=list(parts))


# ── Read-write lock ───────────────────────────────────────────────────

class ReadWriteLock:
    """
    Many concurrent readers or one writer.  Waiting writers block new
    readers so a credential swap cannot starve.  Not reentrant.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self):
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self):
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# ── Streams ───────────────────────────────────────────────────────────

_END = object()


class ChatStream:
    """
    Iterator over ChatResponseChunk with an explicit ``close()``.

    ``produce(emit)`` runs on a background thread; ``emit(chunk)`` returns
    False once the consumer has closed the stream or the job context is
    cancelled, and the producer must then stop.  Iteration ends after the
    first chunk carrying an error.
    """

    def __init__(self, produce: Callable[[Callable[[ChatResponseChunk], bool]], None],
                 ctx=None, on_close: Callable[[], None] | None = None, name: str = "stream"):
        self._queue: queue.Queue = queue.Queue(maxsize=STREAM_QUEUE_SIZE)
        self._closed = threading.Event()
        self._finished = False
        self._ctx = ctx
        self._on_close = on_close
        self._close_lock = threading.Lock()
        self._thread = threading.Thread(
            target=self._run, args=(produce,), name=f"{name}-producer", daemon=True,
        )
        self._thread.start()

    # producer side

    def _put(self, item) -> bool:
        while not self._closed.is_set():
            if self._ctx is not None and self._ctx.cancelled:
                return False
            try:
                self._queue.put(item, timeout=0.1)
                return True
            except queue.Full:
                continue
        return False

    def _emit(self, chunk: ChatResponseChunk) -> bool:
        return self._put(chunk)

    def _run(self, produce):
        try:
            produce(self._emit)
        except Exception as e:
            if not self._closed.is_set():
                logger.warning("Stream producer failed: %s", e)
                self._put(ChatResponseChunk(error=e))
        finally:
            self._put(_END)
            self._release()

    # consumer side

    def __iter__(self):
        return self

    def __next__(self) -> ChatResponseChunk:
        while True:
            if self._finished:
                raise StopIteration
            if self._ctx is not None and self._ctx.cancelled:
                self.close()
                raise JobCancelled(self._ctx.reason or "Job cancelled")
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _END:
                self._finished = True
                raise StopIteration
            if item.error is not None:
                self._finished = True
                self.close()
            return item

    def close(self):
        """Stop consuming; the producer notices and exits."""
        self._closed.set()
        self._finished = True
        self._release()

    def _release(self):
        with self._close_lock:
            callback, self._on_close = self._on_close, None
        if callback is not None:
            try:
                callback()
            except Exception as e:
                logger.debug("Stream close callback failed: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def join(self, timeout: float | None = None):
        self._thread.join(timeout)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


def collect_text(stream: ChatStream) -> tuple[str, Usage]:
    """
    Drain a stream into (text, usage).
    An error chunk raises ProviderError carrying ``partial_text`` and
    ``usage`` so callers can still account for what was consumed.
    """
    parts: list[str] = []
    usage = Usage()
    with stream:
        for chunk in stream:
            usage.add(chunk)
            if chunk.error is not None:
                err = chunk.error
                if isinstance(err, ProviderError):
                    wrapped = err
                else:
                    wrapped = ProviderError(f"Stream failed: {err}")
                wrapped.partial_text = ''.join(parts)
                wrapped.usage = usage
                raise wrapped
            if chunk.text:
                parts.append(chunk.text)
    return ''.join(parts), usage


# ── Provider base ─────────────────────────────────────────────────────

class Provider:
    """Interface every chat backend implements."""

    name = "provider"

    def chat(self, ctx, request: ChatRequest) -> ChatStream:
        raise NotImplementedError

    def set_api_key(self, api_key: str):
        """Swap credentials; providers without keys ignore this."""


@dataclass(frozen=True)
class _Client:
    base_url: str
    api_key: str
    session: requests.Session


class HTTPChatProvider(Provider):
    """
    Shared plumbing for HTTP chat backends.  Subclasses build the request
    body and parse the response body into chunks.
    """

    endpoint = ""

    def __init__(self, base_url: str, api_key: str = ""):
        self._lock = ReadWriteLock()
        self._client = _Client(base_url.rstrip('/'), api_key or "", requests.Session())

    def set_api_key(self, api_key: str):
        new_client = _Client(self._client.base_url, api_key or "", requests.Session())
        with self._lock.write():
            self._client = new_client
        logger.info("%s credentials updated", self.name)

    def _snapshot(self) -> _Client:
        with self._lock.read():
            return self._client

    def _headers(self, client: _Client) -> dict:
        return {"Content-Type": "application/json"}

    def build_body(self, request: ChatRequest, model: str) -> dict:
        raise NotImplementedError

    def parse_stream(self, response: requests.Response,
                     emit: Callable[[ChatResponseChunk], bool]):
        raise NotImplementedError

    def parse_single(self, data: dict) -> ChatResponseChunk:
        raise NotImplementedError

    def _strip_prefix(self, model: str) -> str:
        prefix = f"{self.name}:"
        return model[len(prefix):] if model.startswith(prefix) else model

    def chat(self, ctx, request: ChatRequest) -> ChatStream:
        request.validate()
        if ctx is not None:
            ctx.check()
        client = self._snapshot()
        model = self._strip_prefix(request.model)
        body = self.build_body(request, model)
        url = f"{client.base_url}{self.endpoint}"

        try:
            response = client.session.post(
                url,
                headers=self._headers(client),
                json=body,
                stream=request.stream,
                timeout=(HTTP_CONNECT_TIMEOUT_SEC, HTTP_READ_TIMEOUT_SEC),
            )
        except requests.exceptions.Timeout:
            raise ProviderError(f"{self.name} request timed out", code=ErrorCode.NETWORK_TRANSIENT)
        except requests.exceptions.ConnectionError:
            raise ProviderError(f"Network error connecting to {self.name}",
                                code=ErrorCode.NETWORK_TRANSIENT)
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{self.name} request failed: {e}")

        # text/event-stream usually arrives without a charset; bodies are UTF-8
        response.encoding = 'utf-8'

        if response.status_code != 200:
            # Never echo credentials; the body is the backend's own message
            error_body = response.text[:MAX_STDERR_EXCERPT_LEN] if response.text else "No response body"
            response.close()
            raise ProviderError(f"{self.name} returned {response.status_code}: {error_body}",
                                status_code=response.status_code)

        if request.stream:
            produce = lambda emit: self.parse_stream(response, emit)
        else:
            produce = lambda emit: self._produce_single(response, emit)

        logger.debug("%s chat started: model=%s", self.name, model)
        return ChatStream(produce, ctx=ctx, on_close=response.close, name=self.name)

    def _produce_single(self, response: requests.Response, emit):
        try:
            data = response.json()
        except ValueError:
            emit(ChatResponseChunk(error=ProviderError(
                f"Failed to parse {self.name} response JSON", code=ErrorCode.MALFORMED_RESPONSE)))
            return
        emit(self.parse_single(data))
