"""Persistence helpers for ingestion jobs, video records and collection counters."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from database import async_session_maker
from models.collection import ALL_VIDEOS_COLLECTION_ID, Collection
from models.ingestion_job import IngestionJob
from models.user import User
from models.video import TRANSCRIPTION_STATUSES, VideoRecord
from services.ingest_types import PublishedMedia, ScrapedMedia, ScriptComponents, TranscriptionResult

logger = logging.getLogger(__name__)

_UNSET: Any = object()


async def ensure_user(db: AsyncSession, user_id: str) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user:
        return user
    user = User(id=user_id, email=f"{user_id}@local.invalid")
    db.add(user)
    await db.flush()
    return user


async def create_job(
    db: AsyncSession,
    *,
    user_id: str,
    source_url: str,
    platform: str,
    collection_id: Optional[str] = None,
    interest: Optional[str] = None,
    title: Optional[str] = None,
    scraped: Optional[ScrapedMedia] = None,
) -> IngestionJob:
    await ensure_user(db, user_id)
    job = IngestionJob(
        id=str(uuid.uuid4()),
        user_id=user_id,
        source_url=source_url,
        platform=platform,
        collection_id=collection_id,
        interest=interest,
        title=title,
        scraped_json=scraped.to_dict() if scraped else None,
        status="processing",
        stage="received",
        progress=0,
        attempts=0,
    )
    db.add(job)
    await db.commit()
    await db.refresh(job)
    return job


async def get_job(job_id: str) -> Optional[IngestionJob]:
    async with async_session_maker() as db:
        result = await db.execute(select(IngestionJob).where(IngestionJob.id == job_id))
        return result.scalar_one_or_none()


async def get_job_for_user(db: AsyncSession, job_id: str, user_id: str) -> Optional[IngestionJob]:
    result = await db.execute(
        select(IngestionJob).where(
            IngestionJob.id == job_id,
            IngestionJob.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def get_video_for_user(db: AsyncSession, video_id: str, user_id: str) -> Optional[VideoRecord]:
    result = await db.execute(
        select(VideoRecord).where(
            VideoRecord.id == video_id,
            VideoRecord.user_id == user_id,
        )
    )
    return result.scalar_one_or_none()


async def update_job(
    job_id: str,
    *,
    status: Optional[str] = None,
    stage: Optional[str] = None,
    failed_stage: Optional[str] = None,
    progress: Optional[int] = None,
    error_code: Any = _UNSET,
    error_message: Any = _UNSET,
    queue_job_id: Optional[str] = None,
    video_id: Optional[str] = None,
    increment_attempts: bool = False,
    completed: bool = False,
) -> None:
    async with async_session_maker() as db:
        result = await db.execute(select(IngestionJob).where(IngestionJob.id == job_id))
        job = result.scalar_one_or_none()
        if not job:
            return
        if status is not None:
            job.status = status
        if stage is not None:
            job.stage = stage
        if failed_stage is not None:
            job.failed_stage = failed_stage
        if progress is not None:
            job.progress = max(0, min(int(progress), 100))
        if error_code is not _UNSET:
            job.error_code = error_code
        if error_message is not _UNSET:
            job.error_message = error_message[:1000] if error_message else error_message
        if queue_job_id is not None:
            job.queue_job_id = queue_job_id
        if video_id is not None:
            job.video_id = video_id
        if increment_attempts:
            job.attempts = max(int(job.attempts or 0), 0) + 1
        if completed:
            job.completed_at = datetime.now(timezone.utc)
        await db.commit()


def build_video_metadata(
    scraped: ScrapedMedia,
    *,
    interest: Optional[str],
    thumbnail_source: str,
) -> Dict[str, Any]:
    return {
        "author": scraped.author,
        "description": scraped.description,
        "hashtags": list(scraped.hashtags),
        "duration": scraped.duration_seconds,
        "published_at": scraped.published_at,
        "short_code": scraped.short_code,
        "interest": interest,
        "thumbnail_source": thumbnail_source,
    }


async def create_video_record(
    job_id: str,
    *,
    published: PublishedMedia,
    scraped: ScrapedMedia,
    title: str,
    thumbnail_source: str,
) -> str:
    """
    Insert the playable video record for ``job_id`` and return its id.

    The parent collection counter is incremented and the job is linked to the
    new record inside the same transaction.
    """
    async with async_session_maker() as db:
        result = await db.execute(select(IngestionJob).where(IngestionJob.id == job_id))
        job = result.scalar_one()

        video = VideoRecord(
            id=str(uuid.uuid4()),
            user_id=job.user_id,
            collection_id=job.collection_id or ALL_VIDEOS_COLLECTION_ID,
            source_url=job.source_url,
            platform=scraped.platform,
            title=title,
            remote_id=published.remote_id,
            playback_url=published.playback_url,
            direct_url=published.direct_url,
            thumbnail_url=published.thumbnail_url,
            metrics=scraped.metrics.to_dict(),
            video_metadata=build_video_metadata(
                scraped,
                interest=job.interest,
                thumbnail_source=thumbnail_source,
            ),
            transcript="",
            components=ScriptComponents().to_dict(),
            content_metadata=None,
            visual_context="",
            transcription_status="pending",
        )
        db.add(video)

        if job.collection_id and job.collection_id != ALL_VIDEOS_COLLECTION_ID:
            counted = await db.execute(
                update(Collection)
                .where(Collection.id == job.collection_id, Collection.user_id == job.user_id)
                .values(video_count=Collection.video_count + 1)
            )
            if not counted.rowcount:
                logger.warning("Collection %s not found for job %s; count not updated", job.collection_id, job_id)

        job.video_id = video.id
        await db.commit()
        return video.id


async def set_transcription_status(video_id: str, status: str) -> None:
    if status not in TRANSCRIPTION_STATUSES:
        raise ValueError(f"Unknown transcription status {status!r}")
    async with async_session_maker() as db:
        await db.execute(
            update(VideoRecord).where(VideoRecord.id == video_id).values(transcription_status=status)
        )
        await db.commit()


async def finalize_video_record(
    video_id: str,
    *,
    result: Optional[TranscriptionResult],
    error: Optional[str] = None,
    thumbnail_source: Optional[str] = None,
) -> str:
    """
    Write the terminal transcription outcome and return the status written.

    ``completed`` is only written when the transcript is non-empty.
    """
    async with async_session_maker() as db:
        db_result = await db.execute(select(VideoRecord).where(VideoRecord.id == video_id))
        video = db_result.scalar_one()

        transcript = (result.transcript if result else "") or ""
        status = "completed" if transcript.strip() else "failed"
        metadata = dict(video.video_metadata or {})
        if thumbnail_source:
            metadata["thumbnail_source"] = thumbnail_source
        if result is not None:
            video.transcript = transcript
            video.components = result.components.to_dict()
            video.content_metadata = result.content_metadata.to_dict()
            video.visual_context = result.visual_context or ""
            if result.duration_seconds and not metadata.get("duration"):
                metadata["duration"] = result.duration_seconds
        video.video_metadata = metadata
        video.transcription_status = status
        video.transcription_error = None if status == "completed" else (error or "Transcript was empty")[:1000]
        video.transcription_completed_at = datetime.now(timezone.utc)
        await db.commit()
        return status
