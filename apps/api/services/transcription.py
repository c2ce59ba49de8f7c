"""Transcription and script analysis of published media through a file-staging AI backend."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

from multimodal.gemini import GeminiFileBackend, StagedFile
from multimodal.video import get_video_duration_seconds
from services.ingest_errors import (
    PipelineConfigError,
    ProcessingFailedError,
    ProcessingTimeoutError,
    TranscriptionTooLargeError,
)
from services.ingest_types import TranscriptionResult
from services.transcript_parser import parse_transcription_response

logger = logging.getLogger(__name__)

PROCESSING_STATE = "PROCESSING"
FAILED_STATE = "FAILED"


class TranscriptionBackend(Protocol):
    async def upload(self, path: str, mime_type: str, display_name: Optional[str] = None) -> StagedFile: ...

    async def get_state(self, name: str) -> str: ...

    async def generate(self, staged: StagedFile, platform_hint: str) -> str: ...

    async def delete(self, name: str) -> None: ...


@dataclass(frozen=True)
class TranscriptionConfig:
    api_key: str = ""
    model: str = "gemini-2.0-flash"
    tmp_dir: str = "/tmp/vip_transcribe"
    poll_interval_seconds: float = 2.0
    poll_timeout_seconds: float = 300.0
    max_bytes: int = 25 * 1024 * 1024
    timeout_seconds: float = 420.0

    @classmethod
    def from_settings(cls, settings: Any) -> "TranscriptionConfig":
        return cls(
            api_key=str(settings.GEMINI_API_KEY or "").strip(),
            model=settings.GEMINI_MODEL,
            tmp_dir=settings.TRANSCRIBE_TMP_DIR,
            poll_interval_seconds=float(settings.TRANSCRIBE_POLL_INTERVAL_SECONDS),
            poll_timeout_seconds=float(settings.TRANSCRIBE_POLL_TIMEOUT_SECONDS),
            max_bytes=int(settings.TRANSCRIBE_MAX_BYTES),
            timeout_seconds=float(settings.TRANSCRIPTION_TIMEOUT_SECONDS),
        )


class TranscriptionEngine:
    """Stages a payload, waits for the backend to process it, then asks for a structured analysis."""

    def __init__(
        self,
        config: TranscriptionConfig,
        *,
        backend: Optional[TranscriptionBackend] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        probe_duration: Callable[[str], int] = get_video_duration_seconds,
    ) -> None:
        if backend is None:
            if not config.api_key:
                raise PipelineConfigError("GEMINI_API_KEY is not configured")
            backend = GeminiFileBackend(config.api_key, config.model)
        self.config = config
        self.backend = backend
        self._sleep = sleep
        self._clock = clock
        self._probe_duration = probe_duration

    async def transcribe(
        self,
        payload: bytes,
        platform_hint: str,
        *,
        mime_type: str = "video/mp4",
        job_id: Optional[str] = None,
    ) -> TranscriptionResult:
        """Run the full stage/poll/generate/parse cycle under the overall timeout."""
        size = len(payload)
        if size > self.config.max_bytes:
            raise TranscriptionTooLargeError(
                f"Video too large for transcription: {size / 1024 / 1024:.2f} MB exceeds "
                f"{self.config.max_bytes / 1024 / 1024:.0f} MB",
                stage="transcribing",
            )
        try:
            return await asyncio.wait_for(
                self._transcribe(payload, platform_hint, mime_type, job_id),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise ProcessingTimeoutError(
                f"Transcription exceeded {self.config.timeout_seconds:.0f}s",
                stage="transcribing",
            ) from exc

    async def _transcribe(
        self,
        payload: bytes,
        platform_hint: str,
        mime_type: str,
        job_id: Optional[str],
    ) -> TranscriptionResult:
        tmp_dir = Path(self.config.tmp_dir)
        tmp_dir.mkdir(parents=True, exist_ok=True)
        temp_path = tmp_dir / f"{job_id or 'adhoc'}_{uuid.uuid4().hex[:12]}.mp4"
        staged: Optional[StagedFile] = None
        try:
            await asyncio.to_thread(temp_path.write_bytes, payload)
            duration = await asyncio.to_thread(self._probe_duration, str(temp_path))

            upload = asyncio.ensure_future(
                self.backend.upload(
                    str(temp_path),
                    mime_type if mime_type.startswith("video/") else "video/mp4",
                    f"{platform_hint}-{temp_path.stem}",
                )
            )
            try:
                staged = await asyncio.shield(upload)
            except asyncio.CancelledError:
                staged = await self._settle_upload(upload)
                raise
            await self._wait_until_processed(staged)

            raw = await self.backend.generate(staged, platform_hint)
            result = parse_transcription_response(raw)
            logger.info(
                "Transcribed %s: %s chars%s",
                staged.name,
                len(result.transcript),
                " (degraded)" if result.degraded else "",
            )
            return dataclasses.replace(result, duration_seconds=duration)
        finally:
            await self._cleanup(temp_path, staged)

    async def _settle_upload(self, upload: "asyncio.Future[StagedFile]") -> Optional[StagedFile]:
        """Wait out an upload interrupted by cancellation so its remote file can be deleted."""
        try:
            return await asyncio.wait_for(upload, timeout=self.config.poll_timeout_seconds)
        except Exception as exc:
            logger.warning("Interrupted upload did not complete: %r", exc)
            return None

    async def _wait_until_processed(self, staged: StagedFile) -> None:
        state = staged.state
        started = self._clock()
        while state == PROCESSING_STATE:
            if self._clock() - started >= self.config.poll_timeout_seconds:
                raise ProcessingTimeoutError(
                    f"Staged file {staged.name} still processing after "
                    f"{self.config.poll_timeout_seconds:.0f}s",
                    stage="transcribing",
                )
            await self._sleep(self.config.poll_interval_seconds)
            state = await self.backend.get_state(staged.name)
        if state == FAILED_STATE:
            raise ProcessingFailedError(
                f"AI backend failed to process staged file {staged.name}",
                stage="transcribing",
            )

    async def _cleanup(self, temp_path: Path, staged: Optional[StagedFile]) -> None:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove temp transcription file %s: %s", temp_path, exc)
        if staged is None:
            return
        try:
            await self.backend.delete(staged.name)
        except Exception as exc:
            logger.warning("Could not delete staged file %s: %s", staged.name, exc)
