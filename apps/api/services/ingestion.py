"""Video ingestion pipeline: submission, stage state machine and background execution."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import require_pipeline_settings, settings
from services import record_store
from services.cdn_publisher import CdnConfig, CdnPublisher
from services.ingest_errors import (
    DispatchError,
    IngestionError,
    InvalidStageTransition,
    UnsupportedUrlError,
)
from services.ingest_queue import dispatch_ingestion_job
from services.ingest_types import IngestionAck, IngestionRequest, ScrapedMedia, TranscriptionResult
from services.media_fetcher import FetcherConfig, MediaFetcher
from services.platform_detector import detect_platform, normalize_source_url
from services.source_resolver import ResolverConfig, SourceResolver, build_source_resolver
from services.transcription import TranscriptionConfig, TranscriptionEngine

logger = logging.getLogger(__name__)

STAGE_TRANSITIONS: Dict[str, frozenset] = {
    "received": frozenset({"downloading", "failed"}),
    "downloading": frozenset({"publishing", "failed"}),
    "publishing": frozenset({"thumbnail_publishing", "failed"}),
    "thumbnail_publishing": frozenset({"transcribing"}),
    "transcribing": frozenset({"done"}),
    "done": frozenset(),
    "failed": frozenset(),
}

STAGE_PROGRESS = {
    "received": 0,
    "downloading": 10,
    "publishing": 40,
    "thumbnail_publishing": 60,
    "transcribing": 70,
    "done": 100,
    "failed": 100,
}

TITLE_MAX_CHARS = 200


def validate_transition(current: str, target: str) -> None:
    if target not in STAGE_TRANSITIONS.get(current, frozenset()):
        raise InvalidStageTransition(f"Illegal stage transition {current} -> {target}", stage=current)


class StageTracker:
    """Tracks the current stage of one job and persists every legal move."""

    def __init__(self, job_id: str, stage: str = "received"):
        self.job_id = job_id
        self.stage = stage

    async def advance(self, target: str, **fields: Any) -> None:
        validate_transition(self.stage, target)
        previous = self.stage
        self.stage = target
        await record_store.update_job(
            self.job_id,
            stage=target,
            progress=STAGE_PROGRESS[target],
            **fields,
        )
        logger.info("Ingestion job %s: %s -> %s", self.job_id, previous, target)

    async def fail(self, error_code: str, error_message: str) -> None:
        failed_stage = self.stage
        await self.advance(
            "failed",
            status="failed",
            failed_stage=failed_stage,
            error_code=error_code,
            error_message=error_message,
            completed=True,
        )


@dataclass
class PipelineComponents:
    resolver: SourceResolver
    fetcher: MediaFetcher
    publisher: CdnPublisher
    transcriber: TranscriptionEngine


def build_pipeline_components() -> PipelineComponents:
    """Construct every stage component from the application settings."""
    fetcher = MediaFetcher(FetcherConfig.from_settings(settings))
    return PipelineComponents(
        resolver=build_source_resolver(ResolverConfig.from_settings(settings)),
        fetcher=fetcher,
        publisher=CdnPublisher(CdnConfig.from_settings(settings), fetcher=fetcher),
        transcriber=TranscriptionEngine(TranscriptionConfig.from_settings(settings)),
    )


def default_title(platform: str) -> str:
    return f"Video from {platform}"


def resolve_title(requested: Optional[str], scraped: ScrapedMedia) -> str:
    title = (requested or "").strip() or (scraped.title or "").strip()
    if not title:
        return default_title(scraped.platform)
    return title[:TITLE_MAX_CHARS]


def upload_filename(scraped: ScrapedMedia, job_id: str) -> str:
    return f"{scraped.platform}-{scraped.short_code or job_id[:8]}.mp4"


async def submit_ingestion(request: IngestionRequest, db: AsyncSession) -> IngestionAck:
    """
    Validate a submission, persist its job row and hand it to the dispatcher.

    Returns as soon as the job is scheduled; no network call is awaited.
    """
    source_url = normalize_source_url(request.source_url)
    detection = detect_platform(source_url)
    if not detection.supported:
        raise UnsupportedUrlError(detection.reason)

    require_pipeline_settings()

    job = await record_store.create_job(
        db,
        user_id=request.user_id,
        source_url=detection.url,
        platform=detection.platform,
        collection_id=request.collection_id,
        interest=request.interest,
        title=request.title,
        scraped=request.scraped,
    )

    try:
        queue_job_id = dispatch_ingestion_job(job.id)
    except Exception as exc:
        job.status = "failed"
        job.stage = "failed"
        job.failed_stage = "received"
        job.error_code = DispatchError.code
        job.error_message = str(exc)[:1000]
        await db.commit()
        raise DispatchError(f"Could not dispatch ingestion job: {exc}", stage="received") from exc

    job.queue_job_id = queue_job_id
    await db.commit()
    logger.info("Ingestion job %s dispatched for %s (%s)", job.id, detection.url, detection.platform)
    return IngestionAck(job_id=job.id, status="processing")


async def run_ingestion_job(job_id: str) -> None:
    """Execute every stage of one job and persist the outcome."""
    job = await record_store.get_job(job_id)
    if not job:
        logger.warning("Ingestion job %s not found", job_id)
        return
    if job.status != "processing" or job.stage != "received":
        logger.warning("Ingestion job %s already at stage %s; skipping", job_id, job.stage)
        return

    tracker = StageTracker(job_id)
    await record_store.update_job(job_id, increment_attempts=True)

    # Fatal stages: any error here fails the job and no record survives.
    try:
        components = build_pipeline_components()

        await tracker.advance("downloading")
        scraped = ScrapedMedia.from_dict(job.scraped_json) if job.scraped_json else None
        if scraped is None or not scraped.media_url:
            scraped = await components.resolver.resolve(job.source_url)
        fetched = await components.fetcher.fetch_video(scraped.media_url)

        await tracker.advance("publishing")
        published = await components.publisher.publish(
            fetched.content,
            upload_filename(scraped, job_id),
        )
        video_id = await record_store.create_video_record(
            job_id,
            published=published,
            scraped=scraped,
            title=resolve_title(job.title, scraped),
            thumbnail_source="default",
        )
    except IngestionError as exc:
        logger.warning("Ingestion job %s failed at %s [%s]: %s", job_id, tracker.stage, exc.code, exc)
        await tracker.fail(exc.code, str(exc))
        return
    except Exception as exc:
        logger.exception("Ingestion job %s failed unexpectedly at %s: %s", job_id, tracker.stage, exc)
        await tracker.fail("unexpected_error", str(exc))
        return

    # Degrading stages: the record already exists and stays playable.
    await tracker.advance("thumbnail_publishing", video_id=video_id)
    custom_thumbnail = await components.publisher.publish_thumbnail(published.remote_id, scraped.thumbnail_url)
    thumbnail_source = "custom" if custom_thumbnail else "default"

    await tracker.advance("transcribing")
    await record_store.set_transcription_status(video_id, "processing")
    result: Optional[TranscriptionResult] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    try:
        result = await components.transcriber.transcribe(
            fetched.content,
            scraped.platform,
            mime_type=fetched.content_type,
            job_id=job_id,
        )
    except IngestionError as exc:
        logger.warning("Transcription for job %s degraded [%s]: %s", job_id, exc.code, exc)
        error, error_code = str(exc), exc.code
    except Exception as exc:
        logger.exception("Transcription for job %s failed unexpectedly: %s", job_id, exc)
        error, error_code = str(exc), "unexpected_error"

    if result is not None and result.degraded:
        error_code = error_code or "transcript_degraded"
    status = await record_store.finalize_video_record(
        video_id,
        result=result,
        error=error,
        thumbnail_source=thumbnail_source,
    )
    if status == "failed" and error_code is None:
        error_code, error = "empty_transcript", "Transcript was empty"

    await tracker.advance(
        "done",
        status="completed",
        error_code=error_code,
        error_message=error,
        completed=True,
    )
    logger.info("Ingestion job %s done: video %s transcription %s", job_id, video_id, status)


def process_ingestion_job(job_id: str) -> None:
    """RQ worker entrypoint for ingestion jobs."""
    asyncio.run(run_ingestion_job(job_id))
