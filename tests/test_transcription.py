#!/usr/bin/env python3
"""
Unit tests for the transcription pipeline: multi-file offsets, chunk
offsets, media probing and the speech-to-text backends.
"""

import sys
import json
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from unittest import mock

# Add project root to path
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from lectures.core import media_probe
from lectures.core.constants import ErrorCode, TranscriptionBackend
from lectures.core.error_codes import JobCancelled, JobError, ProviderError
from lectures.core.job_context import JobContext
from lectures.core.llm_provider import ChatResponseChunk, ChatStream, Provider, Usage
from lectures.core.models_sqlite import LectureMedia
from lectures.core.transcribe_deepgram import DeepgramProvider, parse_segments
from lectures.core.transcribe_openai import OpenAITranscriptionProvider
from lectures.core.transcribe_provider import Segment, TranscriptionProvider
from lectures.core.transcription_service import (
    TranscriptionService, MediaTools, to_transcript_segment, build_transcription_provider,
)


class FakeMedia(MediaTools):
    """Durations keyed by media id (extracted audio) or chunk file name."""

    def __init__(self, durations, chunks=None, fail_probe_for=None):
        self.durations = durations
        self.chunks = chunks or {}
        self.fail_probe_for = fail_probe_for

    def extract_audio(self, ctx, input_path, output_path):
        output_path.write_bytes(b"audio")
        return output_path

    def get_duration_ms(self, ctx, path):
        key = path.stem.replace("source_", "")
        if key == self.fail_probe_for:
            raise JobError(ErrorCode.MEDIA_PROBE, f"Could not determine duration of {path.name}")
        return self.durations[key]

    def split_audio(self, ctx, audio_path, chunks_dir, chunk_sec):
        chunks_dir.mkdir(parents=True, exist_ok=True)
        paths = []
        for name in self.chunks[audio_path.stem.replace("source_", "")]:
            path = chunks_dir / f"{name}.mp3"
            path.write_bytes(b"chunk")
            paths.append(path)
        return paths


class FakeProvider(TranscriptionProvider):
    """Returns canned segments keyed by audio file stem."""

    name = "fake"

    def __init__(self, segments):
        super().__init__()
        self.segments = segments
        self.calls = []

    def transcribe(self, ctx, audio_path):
        key = audio_path.stem.replace("source_", "")
        self.calls.append(key)
        return list(self.segments.get(key, [])), Usage(input_tokens=1)


class FailingProvider(FakeProvider):
    """Bills every call, then fails on the named file."""

    def __init__(self, segments, fail_for):
        super().__init__(segments)
        self.fail_for = fail_for

    def transcribe(self, ctx, audio_path):
        key = audio_path.stem.replace("source_", "")
        if key == self.fail_for:
            err = ProviderError("upstream error")
            err.usage = Usage(input_tokens=10, cost=0.01)
            raise err
        return super().transcribe(ctx, audio_path)


class PolishingLLM(Provider):
    """Replies with the queued texts; an Exception entry is raised instead."""

    name = "polisher"

    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests = []

    def chat(self, ctx, request):
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ChatStream(lambda emit: emit(
            ChatResponseChunk(text=reply, input_tokens=100, output_tokens=50, cost=0.002)))


def media(media_id, order):
    return LectureMedia(id=media_id, lecture_id="L1", sequence_order=order,
                        file_path=f"/lectures/{media_id}.mp4")


class TestTranscriptionService(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.tmpdir.name)
        self.progress = []

    def tearDown(self):
        self.tmpdir.cleanup()

    def record(self, percent, message=None):
        self.progress.append(percent)

    def run_service(self, service, files, ctx=None):
        return service.transcribe_lecture(ctx or JobContext(), files, self.workspace, self.record)

    def test_second_file_offset_by_first_duration(self):
        service = TranscriptionService(
            FakeProvider({"m1": [Segment(0.0, 5.0, "first")], "m2": [Segment(0.0, 3.0, "second")]}),
            media=FakeMedia({"m1": 60000, "m2": 45000}),
        )
        result = self.run_service(service, [media("m2", 1), media("m1", 0)])
        first, second = result.segments
        self.assertEqual((first.start_millisecond, first.end_millisecond), (0, 5000))
        self.assertEqual((second.start_millisecond, second.end_millisecond), (60000, 63000))
        self.assertEqual((second.original_start_milliseconds, second.original_end_milliseconds), (0, 3000))
        self.assertEqual(second.media_id, "m2")
        self.assertEqual(result.media_durations, {"m1": 60000, "m2": 45000})
        self.assertEqual(result.usage.input_tokens, 2)

    def test_offset_uses_probed_duration_not_last_segment(self):
        service = TranscriptionService(
            FakeProvider({"m1": [Segment(0.0, 2.0, "short")], "m2": [Segment(1.0, 2.0, "x")]}),
            media=FakeMedia({"m1": 60000, "m2": 5000}),
        )
        result = self.run_service(service, [media("m1", 0), media("m2", 1)])
        self.assertEqual(result.segments[1].start_millisecond, 61000)

    def test_file_without_segments_still_advances_offset(self):
        service = TranscriptionService(
            FakeProvider({"m2": [Segment(1.0, 2.0, "after silence")]}),
            media=FakeMedia({"m1": 10000, "m2": 20000}),
        )
        result = self.run_service(service, [media("m1", 0), media("m2", 1)])
        self.assertEqual(len(result.segments), 1)
        self.assertEqual(result.segments[0].start_millisecond, 11000)
        self.assertEqual(result.segments[0].end_millisecond, 12000)

    def test_probe_failure_fails_run(self):
        service = TranscriptionService(
            FakeProvider({"m1": [Segment(0.0, 1.0, "a")]}),
            media=FakeMedia({"m1": 10000, "m2": 20000}, fail_probe_for="m2"),
        )
        with self.assertRaises(JobError) as cm:
            self.run_service(service, [media("m1", 0), media("m2", 1)])
        self.assertEqual(cm.exception.code, ErrorCode.MEDIA_PROBE)
        self.assertEqual(list(self.workspace.glob("source_*")), [])

    def test_long_file_is_chunked(self):
        provider = FakeProvider({
            "chunk_000": [Segment(1.0, 2.0, "one")],
            "chunk_001": [Segment(1.0, 2.0, "two")],
            "chunk_002": [Segment(0.5, 0.0, "three")],
        })
        service = TranscriptionService(
            provider, chunk_sec=60,
            media=FakeMedia({"m1": 150000, "chunk_000": 60000, "chunk_001": 60000, "chunk_002": 30000},
                            chunks={"m1": ["chunk_000", "chunk_001", "chunk_002"]}),
        )
        result = self.run_service(service, [media("m1", 0)])
        spans = [(s.original_start_milliseconds, s.original_end_milliseconds) for s in result.segments]
        # Unknown end on the last chunk extends to the chunk's end
        self.assertEqual(spans, [(1000, 2000), (61000, 62000), (120500, 150000)])
        self.assertFalse((self.workspace / "chunks_m1").exists())

    def test_progress_is_proportional_and_monotonic(self):
        service = TranscriptionService(FakeProvider({}), media=FakeMedia({"m1": 1000, "m2": 1000}))
        self.run_service(service, [media("m1", 0), media("m2", 1)])
        self.assertEqual(self.progress, sorted(self.progress))
        self.assertIn(50, self.progress)
        self.assertEqual(self.progress[-1], 100)

    def test_cancelled_context_stops_before_work(self):
        provider = FakeProvider({})
        service = TranscriptionService(provider, media=FakeMedia({"m1": 1000}))
        ctx = JobContext()
        ctx.cancel()
        with self.assertRaises(JobCancelled):
            self.run_service(service, [media("m1", 0)], ctx)
        self.assertEqual(provider.calls, [])

    def test_default_prompt_set(self):
        provider = FakeProvider({})
        TranscriptionService(provider, media=FakeMedia({"m1": 1000})).transcribe_lecture(
            JobContext(), [media("m1", 0)], self.workspace, self.record)
        self.assertIn("Transcribe", provider.prompt)

    def test_usage_reported_per_call_before_later_failure(self):
        added = []
        service = TranscriptionService(
            FailingProvider({"m1": [Segment(0.0, 1.0, "a")]}, fail_for="m2"),
            media=FakeMedia({"m1": 1000, "m2": 1000}),
        )
        with self.assertRaises(ProviderError):
            service.transcribe_lecture(JobContext(), [media("m1", 0), media("m2", 1)],
                                       self.workspace, self.record, added.append)
        self.assertEqual([u.input_tokens for u in added], [1])


def chunked_media():
    return FakeMedia({"m1": 150000, "chunk_000": 60000, "chunk_001": 60000, "chunk_002": 30000},
                     chunks={"m1": ["chunk_000", "chunk_001", "chunk_002"]})


def chunked_provider():
    return FakeProvider({
        "chunk_000": [Segment(1.0, 2.0, "so um one")],
        "chunk_001": [Segment(1.0, 2.0, "two uh")],
        "chunk_002": [Segment(0.5, 0.0, "three")],
    })


class TestTranscriptCleanup(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.workspace = Path(self.tmpdir.name)
        self.progress = []
        self.added = []

    def tearDown(self):
        self.tmpdir.cleanup()

    def run_service(self, llm, ctx=None):
        service = TranscriptionService(chunked_provider(), chunk_sec=60, media=chunked_media(),
                                       llm=llm, polishing_model="polish-model",
                                       cleanup_batch_size=2)
        return service.transcribe_lecture(ctx or JobContext(), [media("m1", 0)], self.workspace,
                                          lambda p, m=None: self.progress.append(p),
                                          self.added.append)

    def test_batches_merge_into_polished_segments(self):
        llm = PolishingLLM("One. Two.", "Three.")
        result = self.run_service(llm)

        self.assertEqual([s.text for s in result.segments], ["One. Two.", "Three."])
        first, second = result.segments
        self.assertEqual((first.original_start_milliseconds, first.original_end_milliseconds),
                         (1000, 62000))
        self.assertEqual((second.original_start_milliseconds, second.original_end_milliseconds),
                         (120500, 150000))
        self.assertEqual(first.confidence, 1.0)
        self.assertEqual(first.media_id, "m1")

        self.assertEqual([r.model for r in llm.requests], ["polish-model", "polish-model"])
        self.assertIn("so um one two uh", llm.requests[0].messages[0].content[0].text)
        self.assertEqual(result.usage.input_tokens, 3 + 200)
        self.assertEqual(sum(u.input_tokens for u in self.added), 3 + 200)

    def test_progress_reported_per_batch(self):
        self.run_service(PolishingLLM("One. Two.", "Three."))
        self.assertEqual(self.progress, [0, 66, 100, 100])

    def test_failed_batch_keeps_raw_segments_and_usage(self):
        err = ProviderError("model overloaded")
        err.usage = Usage(input_tokens=5, cost=0.001)
        result = self.run_service(PolishingLLM(err, "Three."))

        self.assertEqual([s.text for s in result.segments], ["so um one", "two uh", "Three."])
        self.assertEqual(result.segments[0].confidence, 0.0)
        self.assertEqual(result.usage.input_tokens, 3 + 5 + 100)

    def test_empty_reply_keeps_raw_segments(self):
        result = self.run_service(PolishingLLM("  ", "Three."))
        self.assertEqual([s.text for s in result.segments], ["so um one", "two uh", "Three."])

    def test_cancellation_during_cleanup_propagates(self):
        llm = PolishingLLM(JobCancelled(), "Three.")
        with self.assertRaises(JobCancelled):
            self.run_service(llm)
        self.assertEqual(len(llm.requests), 1)

    def test_disabled_without_model(self):
        llm = PolishingLLM()
        service = TranscriptionService(chunked_provider(), chunk_sec=60, media=chunked_media(),
                                       llm=llm, polishing_model="")
        result = service.transcribe_lecture(JobContext(), [media("m1", 0)], self.workspace,
                                            lambda p, m=None: None)
        self.assertEqual(len(result.segments), 3)
        self.assertEqual(llm.requests, [])


class TestSegmentPlacement(unittest.TestCase):

    def test_offsets(self):
        seg = to_transcript_segment(Segment(1.5, 2.25, "hi", 0.8, "0"), "m1",
                                    chunk_offset_ms=300000, chunk_duration_ms=300000,
                                    file_offset_ms=60000)
        self.assertEqual(seg.original_start_milliseconds, 301500)
        self.assertEqual(seg.original_end_milliseconds, 302250)
        self.assertEqual(seg.start_millisecond, 361500)
        self.assertEqual(seg.speaker, "0")

    def test_end_never_before_start(self):
        seg = to_transcript_segment(Segment(5.0, 4.0, "odd"), "m1", 0, 10000, 0)
        self.assertGreaterEqual(seg.end_millisecond, seg.start_millisecond)


class TestMediaProbe(unittest.TestCase):

    def _completed(self, stdout="", returncode=0, stderr=""):
        return subprocess.CompletedProcess(["ffprobe"], returncode, stdout, stderr)

    def test_format_duration(self):
        out = json.dumps({"format": {"duration": "60.000"}})
        with mock.patch.object(media_probe, 'run_job_subprocess', return_value=self._completed(out)):
            self.assertEqual(media_probe.get_duration_ms(None, Path("a.mp3")), 60000)

    def test_stream_duration_fallback(self):
        out = json.dumps({"format": {}, "streams": [{"duration": "12.5"}, {"duration": "N/A"}]})
        with mock.patch.object(media_probe, 'run_job_subprocess', return_value=self._completed(out)):
            self.assertEqual(media_probe.get_duration_ms(None, Path("a.mp3")), 12500)

    def test_failure_raises_probe_error(self):
        with mock.patch.object(media_probe, 'run_job_subprocess',
                               return_value=self._completed(returncode=1, stderr="no such file")):
            with self.assertRaises(JobError) as cm:
                media_probe.get_duration_ms(None, Path("a.mp3"))
        self.assertEqual(cm.exception.code, ErrorCode.MEDIA_PROBE)
        self.assertIn("no such file", cm.exception.message)

    def test_missing_duration_raises(self):
        with mock.patch.object(media_probe, 'run_job_subprocess',
                               return_value=self._completed(json.dumps({"format": {}}))):
            with self.assertRaises(JobError):
                media_probe.get_duration_ms(None, Path("a.mp3"))


class TestDeepgram(unittest.TestCase):

    def test_parse_utterances(self):
        response = {"results": {"utterances": [
            {"start": 0.5, "end": 2.0, "transcript": "Hello there", "confidence": 0.9, "speaker": 0},
            {"start": 2.0, "end": 2.5, "transcript": "  "},
        ]}}
        segments = parse_segments(response)
        self.assertEqual(len(segments), 1)
        self.assertEqual(segments[0].speaker, "0")
        self.assertEqual((segments[0].start, segments[0].end), (0.5, 2.0))

    def test_parse_channel_fallback(self):
        response = {"results": {"channels": [{"alternatives": [{
            "transcript": "whole thing", "confidence": 0.7,
            "words": [{"start": 0.1, "end": 0.4}, {"start": 3.0, "end": 3.6}],
        }]}]}}
        segments = parse_segments(response)
        self.assertEqual(segments[0].text, "whole thing")
        self.assertEqual((segments[0].start, segments[0].end), (0.1, 3.6))

    def test_rate_limit_backoff_then_success(self):
        ctx = mock.Mock()
        ctx.wait.return_value = False
        limited = mock.Mock(status_code=429, text="slow down")
        ok = mock.Mock(status_code=200)
        ok.json.return_value = {"results": {"utterances": [
            {"start": 0.0, "end": 1.0, "transcript": "ok"}]}}

        with tempfile.TemporaryDirectory() as tmpdir:
            audio = Path(tmpdir) / "a.mp3"
            audio.write_bytes(b"audio")
            with mock.patch('lectures.core.transcribe_deepgram.requests.post',
                            side_effect=[limited, ok]) as post:
                segments, _ = DeepgramProvider("dg-key").transcribe(ctx, audio)
        self.assertEqual(post.call_count, 2)
        self.assertEqual(ctx.wait.call_count, 1)
        self.assertEqual(segments[0].text, "ok")

    def test_missing_key(self):
        with self.assertRaises(JobError) as cm:
            DeepgramProvider("").check_dependencies()
        self.assertEqual(cm.exception.code, ErrorCode.MISSING_DEPENDENCY)


class TestUploadCancellation(unittest.TestCase):
    """A cancel during a slow upload ends the call without waiting for the server."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.audio = Path(self.tmpdir.name) / "a.mp3"
        self.audio.write_bytes(b"audio")

    def tearDown(self):
        self.tmpdir.cleanup()

    def assert_cancelled_quickly(self, target, provider):
        ctx = JobContext("job-1")
        timer = threading.Timer(0.2, ctx.cancel)
        timer.start()
        started = time.monotonic()
        try:
            with mock.patch(target, side_effect=lambda *a, **kw: time.sleep(3)):
                with self.assertRaises(JobCancelled):
                    provider.transcribe(ctx, self.audio)
        finally:
            timer.cancel()
        self.assertLess(time.monotonic() - started, 1.5)

    def test_deepgram_upload(self):
        self.assert_cancelled_quickly('lectures.core.transcribe_deepgram.requests.post',
                                      DeepgramProvider("dg-key"))

    def test_openai_upload(self):
        self.assert_cancelled_quickly('lectures.core.transcribe_openai.requests.post',
                                      OpenAITranscriptionProvider("sk-test"))


class TestProviderSelection(unittest.TestCase):

    def test_backends(self):
        llm = mock.Mock()
        cases = {
            TranscriptionBackend.DEEPGRAM: "DeepgramProvider",
            TranscriptionBackend.OPENAI: "OpenAITranscriptionProvider",
            TranscriptionBackend.WHISPER_LOCAL: "WhisperLocalProvider",
            TranscriptionBackend.LLM: "LLMTranscriptionProvider",
        }
        for backend, class_name in cases.items():
            provider = build_transcription_provider({"transcription_provider": backend}, llm)
            self.assertEqual(type(provider).__name__, class_name)


if __name__ == "__main__":
    unittest.main()
