"""Video ingestion router."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.ingestion_job import IngestionJob
from models.video import VideoRecord
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context
from services import record_store
from services.ingest_errors import DispatchError, PipelineConfigError, UnsupportedUrlError
from services.ingest_types import IngestionRequest, MediaMetrics, ScrapedMedia, ScriptComponents
from services.ingestion import submit_ingestion

router = APIRouter()


class ScrapedMetricsPayload(BaseModel):
    views: int = 0
    likes: int = 0
    comments: int = 0
    shares: int = 0
    saves: Optional[int] = None


class ScrapedPayload(BaseModel):
    platform: str
    media_url: str = Field(min_length=8, max_length=4000)
    thumbnail_url: Optional[str] = None
    title: Optional[str] = None
    author: Optional[str] = None
    description: Optional[str] = None
    hashtags: List[str] = Field(default_factory=list)
    metrics: ScrapedMetricsPayload = Field(default_factory=ScrapedMetricsPayload)
    duration_seconds: Optional[int] = None
    published_at: Optional[str] = None
    short_code: Optional[str] = None

    def to_scraped_media(self) -> ScrapedMedia:
        return ScrapedMedia(
            platform=self.platform if self.platform in {"tiktok", "instagram", "youtube"} else "unknown",
            media_url=self.media_url,
            thumbnail_url=self.thumbnail_url,
            title=self.title,
            author=self.author,
            description=self.description,
            hashtags=tuple(self.hashtags),
            metrics=MediaMetrics(**self.metrics.model_dump()),
            duration_seconds=self.duration_seconds,
            published_at=self.published_at,
            short_code=self.short_code,
        )


class IngestVideoRequest(BaseModel):
    source_url: str = Field(min_length=1, max_length=2000)
    interest: Optional[str] = Field(default=None, max_length=500)
    collection_id: Optional[str] = None
    title: Optional[str] = Field(default=None, max_length=500)
    scraped: Optional[ScrapedPayload] = None
    user_id: Optional[str] = None


class IngestVideoResponse(BaseModel):
    job_id: str
    status: str


class IngestionJobResponse(BaseModel):
    job_id: str
    source_url: str
    platform: str
    status: str
    stage: str
    failed_stage: Optional[str] = None
    progress: int
    attempts: int
    queue_job_id: Optional[str] = None
    video_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class VideoRecordResponse(BaseModel):
    id: str
    collection_id: Optional[str] = None
    source_url: str
    platform: str
    title: Optional[str] = None
    remote_id: str
    playback_url: str
    direct_url: str
    thumbnail_url: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    transcript: str = ""
    components: Dict[str, str] = Field(default_factory=dict)
    content_metadata: Dict[str, Any] = Field(default_factory=dict)
    visual_context: str = ""
    transcription_status: str
    transcription_error: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    transcription_completed_at: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _serialize_job(job: IngestionJob) -> IngestionJobResponse:
    return IngestionJobResponse(
        job_id=job.id,
        source_url=job.source_url,
        platform=job.platform,
        status=job.status,
        stage=job.stage,
        failed_stage=job.failed_stage,
        progress=int(job.progress or 0),
        attempts=int(job.attempts or 0),
        queue_job_id=job.queue_job_id,
        video_id=job.video_id,
        error_code=job.error_code,
        error_message=job.error_message,
        created_at=_iso(job.created_at),
        completed_at=_iso(job.completed_at),
    )


def _serialize_video(video: VideoRecord) -> VideoRecordResponse:
    return VideoRecordResponse(
        id=video.id,
        collection_id=video.collection_id,
        source_url=video.source_url,
        platform=video.platform,
        title=video.title,
        remote_id=video.remote_id,
        playback_url=video.playback_url,
        direct_url=video.direct_url,
        thumbnail_url=video.thumbnail_url,
        metrics=video.metrics or {},
        metadata=video.video_metadata or {},
        transcript=video.transcript or "",
        components=video.components or ScriptComponents().to_dict(),
        content_metadata=video.content_metadata or {},
        visual_context=video.visual_context or "",
        transcription_status=video.transcription_status,
        transcription_error=video.transcription_error,
        created_at=_iso(video.created_at),
        updated_at=_iso(video.updated_at),
        transcription_completed_at=_iso(video.transcription_completed_at),
    )


@router.post("/ingest", response_model=IngestVideoResponse)
async def ingest_video(
    request: IngestVideoRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Validate a source URL and start the ingestion pipeline in the background."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    ingestion_request = IngestionRequest(
        source_url=request.source_url,
        user_id=scoped_user_id,
        interest=request.interest,
        collection_id=request.collection_id,
        title=request.title,
        scraped=request.scraped.to_scraped_media() if request.scraped else None,
    )
    try:
        ack = await submit_ingestion(ingestion_request, db)
    except UnsupportedUrlError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except PipelineConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except DispatchError as exc:
        raise HTTPException(
            status_code=500,
            detail="Ingestion queue unavailable. Check Redis/worker availability and retry.",
        ) from exc
    return IngestVideoResponse(job_id=ack.job_id, status=ack.status)


@router.get("/jobs/{job_id}", response_model=IngestionJobResponse)
async def get_ingestion_job(
    job_id: str,
    user_id: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get ingestion job status for the current user."""
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    job = await record_store.get_job_for_user(db, job_id, scoped_user_id)
    if not job:
        raise HTTPException(status_code=404, detail="Ingestion job not found")
    return _serialize_job(job)


@router.get("/{video_id}", response_model=VideoRecordResponse)
async def get_video(
    video_id: str,
    user_id: Optional[str] = None,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Get a persisted video record for the current user."""
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    video = await record_store.get_video_for_user(db, video_id, scoped_user_id)
    if not video:
        raise HTTPException(status_code=404, detail="Video not found")
    return _serialize_video(video)
