"""Error taxonomy for the ingestion pipeline.

Every error carries a stable ``code`` that is persisted on job and video
records. Fatal errors abort a job before any record exists; degrading errors
are caught by the orchestrator and only change the final record state.
"""

from __future__ import annotations

from typing import Optional


class IngestionError(RuntimeError):
    """Base class for pipeline errors."""

    code = "ingestion_error"

    def __init__(self, message: str, *, stage: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage


class UnsupportedUrlError(IngestionError):
    """Raised synchronously when the submitted URL cannot be ingested."""

    code = "unsupported_url"


class PipelineConfigError(IngestionError):
    """Raised when CDN, AI or resolver credentials are missing."""

    code = "config_error"


class ResolutionError(IngestionError):
    """The source platform did not yield a playable media URL."""

    code = "resolution_failed"


class MediaFetchError(ResolutionError):
    """The resolved media URL could not be downloaded."""

    code = "fetch_failed"


class InvalidMediaError(IngestionError):
    """The downloaded payload is not a usable video (wrong type or too large)."""

    code = "invalid_media"


class PublishError(IngestionError):
    """All CDN publish attempts were exhausted."""

    code = "publish_failed"


class ThumbnailPublishError(IngestionError):
    code = "thumbnail_failed"


class ProcessingFailedError(IngestionError):
    """The AI backend reported a terminal failure for the staged file."""

    code = "ai_processing_failed"


class ProcessingTimeoutError(IngestionError):
    """The staged file did not leave the processing state in time."""

    code = "ai_processing_timeout"


class TranscriptionTooLargeError(IngestionError):
    code = "transcription_too_large"


class TranscriptionParseDegradation(IngestionError):
    """Model output could not be parsed; the raw text is kept as transcript."""

    code = "transcript_degraded"


class InvalidStageTransition(IngestionError):
    code = "invalid_transition"


class DispatchError(IngestionError):
    """The background job could not be handed to the queue or event loop."""

    code = "dispatch_failed"
