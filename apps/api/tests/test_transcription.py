import asyncio
from pathlib import Path
from typing import List, Optional

import pytest

from multimodal.gemini import StagedFile
from services.ingest_errors import (
    PipelineConfigError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    TranscriptionTooLargeError,
)
from services.transcription import TranscriptionConfig, TranscriptionEngine


GOOD_RESPONSE = '```json\n{"transcript": "hello world", "components": {"hook": "hello"}}\n```'


class FakeBackend:
    def __init__(self, states: List[str], response: str = GOOD_RESPONSE, generate_error: Optional[Exception] = None):
        self.states = list(states)
        self.response = response
        self.generate_error = generate_error
        self.uploaded_paths: List[str] = []
        self.deleted: List[str] = []
        self.polls = 0

    async def upload(self, path, mime_type, display_name=None):
        assert Path(path).exists()
        self.uploaded_paths.append(path)
        return StagedFile(name="files/abc", uri="https://gemini/files/abc", mime_type=mime_type, state=self.states.pop(0))

    async def get_state(self, name):
        self.polls += 1
        return self.states.pop(0)

    async def generate(self, staged, platform_hint):
        if self.generate_error:
            raise self.generate_error
        return self.response

    async def delete(self, name):
        self.deleted.append(name)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _engine(tmp_path, backend, clock=None, **overrides) -> TranscriptionEngine:
    clock = clock or FakeClock()

    async def fake_sleep(seconds: float) -> None:
        clock.now += seconds

    config = TranscriptionConfig(tmp_dir=str(tmp_path / "stage"), **overrides)
    return TranscriptionEngine(
        config,
        backend=backend,
        sleep=fake_sleep,
        clock=clock,
        probe_duration=lambda path: 17,
    )


def _staged_files(tmp_path) -> list:
    stage_dir = tmp_path / "stage"
    return list(stage_dir.iterdir()) if stage_dir.exists() else []


@pytest.mark.asyncio
async def test_transcribe_polls_until_active_and_cleans_up(tmp_path):
    backend = FakeBackend(["PROCESSING", "PROCESSING", "ACTIVE"])
    result = await _engine(tmp_path, backend).transcribe(b"video-bytes", "tiktok", job_id="job-1")

    assert result.transcript == "hello world"
    assert result.components.hook == "hello"
    assert result.duration_seconds == 17
    assert backend.polls == 2
    assert backend.deleted == ["files/abc"]
    assert _staged_files(tmp_path) == []


@pytest.mark.asyncio
async def test_failed_backend_state_raises_and_still_cleans_up(tmp_path):
    backend = FakeBackend(["PROCESSING", "FAILED"])
    with pytest.raises(ProcessingFailedError):
        await _engine(tmp_path, backend).transcribe(b"video-bytes", "instagram")

    assert backend.deleted == ["files/abc"]
    assert _staged_files(tmp_path) == []


@pytest.mark.asyncio
async def test_poll_bound_raises_processing_timeout(tmp_path):
    backend = FakeBackend(["PROCESSING"] * 20)
    engine = _engine(tmp_path, backend, poll_interval_seconds=2.0, poll_timeout_seconds=10.0)
    with pytest.raises(ProcessingTimeoutError):
        await engine.transcribe(b"video-bytes", "tiktok")

    assert backend.polls == 5
    assert backend.deleted == ["files/abc"]
    assert _staged_files(tmp_path) == []


@pytest.mark.asyncio
async def test_generation_error_propagates_after_cleanup(tmp_path):
    backend = FakeBackend(["ACTIVE"], generate_error=RuntimeError("quota exceeded"))
    with pytest.raises(RuntimeError):
        await _engine(tmp_path, backend).transcribe(b"video-bytes", "tiktok")

    assert backend.deleted == ["files/abc"]
    assert _staged_files(tmp_path) == []


@pytest.mark.asyncio
async def test_oversized_payload_is_rejected_before_staging(tmp_path):
    backend = FakeBackend(["ACTIVE"])
    with pytest.raises(TranscriptionTooLargeError):
        await _engine(tmp_path, backend, max_bytes=4).transcribe(b"too-large", "tiktok")

    assert backend.uploaded_paths == []


@pytest.mark.asyncio
async def test_overall_timeout_cancels_and_cleans_up(tmp_path):
    class SlowBackend(FakeBackend):
        async def generate(self, staged, platform_hint):
            await asyncio.sleep(5)
            return GOOD_RESPONSE

    backend = SlowBackend(["ACTIVE"])
    engine = _engine(tmp_path, backend, timeout_seconds=0.05)
    with pytest.raises(ProcessingTimeoutError):
        await engine.transcribe(b"video-bytes", "tiktok")

    assert backend.deleted == ["files/abc"]
    assert _staged_files(tmp_path) == []


@pytest.mark.asyncio
async def test_unparseable_output_is_degraded_not_raised(tmp_path):
    backend = FakeBackend(["ACTIVE"], response="Just words, no structure.")
    result = await _engine(tmp_path, backend).transcribe(b"video-bytes", "tiktok")

    assert result.degraded is True
    assert result.transcript == "Just words, no structure."


def test_engine_requires_api_key_without_injected_backend():
    with pytest.raises(PipelineConfigError):
        TranscriptionEngine(TranscriptionConfig(api_key=""))


@pytest.mark.asyncio
async def test_timeout_during_upload_still_deletes_remote_file(tmp_path):
    class SlowUploadBackend(FakeBackend):
        def __init__(self):
            super().__init__(["ACTIVE"])
            self.remote = set()

        async def upload(self, path, mime_type, display_name=None):
            self.remote.add("files/slow")
            await asyncio.sleep(0.2)
            return StagedFile(name="files/slow", uri="https://gemini/files/slow", mime_type=mime_type, state="ACTIVE")

        async def delete(self, name):
            await super().delete(name)
            self.remote.discard(name)

    backend = SlowUploadBackend()
    engine = _engine(tmp_path, backend, timeout_seconds=0.05)
    with pytest.raises(ProcessingTimeoutError):
        await engine.transcribe(b"video-bytes", "tiktok")

    assert backend.deleted == ["files/slow"]
    assert backend.remote == set()
    assert _staged_files(tmp_path) == []
