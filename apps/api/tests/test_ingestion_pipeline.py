from unittest.mock import patch

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.future import select

from models.collection import Collection
from models.ingestion_job import IngestionJob
from models.user import User
from models.video import VideoRecord
from services.cdn_publisher import CdnConfig, CdnPublisher
from services.ingest_errors import (
    DispatchError,
    InvalidStageTransition,
    PipelineConfigError,
    ProcessingTimeoutError,
    ResolutionError,
    UnsupportedUrlError,
)
from services.ingest_types import (
    ContentMetadata,
    FetchedMedia,
    IngestionRequest,
    MediaMetrics,
    ScrapedMedia,
    ScriptComponents,
    TranscriptionResult,
)
from services.ingestion import (
    PipelineComponents,
    StageTracker,
    run_ingestion_job,
    submit_ingestion,
    validate_transition,
)
from services.media_fetcher import FetcherConfig, MediaFetcher


USER_ID = "pipeline-user"
TIKTOK_URL = "https://www.tiktok.com/@editwizard/video/7234567890123456789"

SCRAPED = ScrapedMedia(
    platform="tiktok",
    media_url="https://cdn.example.com/video.mp4",
    thumbnail_url="https://p16.tiktokcdn.com/cover.jpeg",
    title="Three editing tricks",
    author="editwizard",
    description="Three editing tricks #capcut",
    hashtags=("capcut",),
    metrics=MediaMetrics(views=45000, likes=1200, comments=88, shares=14),
    duration_seconds=31,
    short_code="7234567890123456789",
)

TRANSCRIPT = TranscriptionResult(
    transcript="Stop scrolling. Here are three editing tricks.",
    components=ScriptComponents(hook="Stop scrolling.", nugget="three editing tricks", call_to_action="Follow"),
    content_metadata=ContentMetadata(author="editwizard", hashtags=("capcut",)),
    visual_context="Screen recording",
    duration_seconds=31,
)


class FakeResolver:
    def __init__(self, media=SCRAPED, error=None):
        self.media = media
        self.error = error
        self.calls = []

    async def resolve(self, url):
        self.calls.append(url)
        if self.error:
            raise self.error
        return self.media


class FakeFetcher:
    async def fetch_video(self, media_url):
        return FetchedMedia(content=b"mp4", content_type="video/mp4", content_length=3, source_url=media_url)


class FakeTranscriber:
    def __init__(self, result=TRANSCRIPT, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def transcribe(self, payload, platform_hint, *, mime_type="video/mp4", job_id=None):
        self.calls.append((payload, platform_hint, job_id))
        if self.error:
            raise self.error
        return self.result


class Bunny:
    def __init__(self, upload_statuses, thumbnail_status=200):
        self.upload_statuses = list(upload_statuses)
        self.thumbnail_status = thumbnail_status
        self.created = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if request.method == "POST" and path.endswith("/thumbnail"):
            return httpx.Response(self.thumbnail_status)
        if request.method == "POST":
            self.created += 1
            return httpx.Response(200, json={"guid": f"guid-{self.created}"})
        return httpx.Response(self.upload_statuses.pop(0))


async def _no_sleep(seconds):
    return None


def _components(bunny, *, resolver=None, transcriber=None, image_status=200):
    def image_handler(request):
        return httpx.Response(image_status, headers={"Content-Type": "image/jpeg"}, content=b"jpeg")

    fetcher = MediaFetcher(FetcherConfig(), transport=httpx.MockTransport(image_handler))
    publisher = CdnPublisher(
        CdnConfig(library_id="lib-1", api_key="bunny-key", hostname="vz-abc.b-cdn.net"),
        transport=httpx.MockTransport(bunny),
        sleep=_no_sleep,
        fetcher=fetcher,
    )
    return PipelineComponents(
        resolver=resolver or FakeResolver(),
        fetcher=FakeFetcher(),
        publisher=publisher,
        transcriber=transcriber or FakeTranscriber(),
    )


@pytest_asyncio.fixture
async def store(session_maker, pipeline_settings):
    async with session_maker() as db:
        db.add(User(id=USER_ID, email="pipeline@example.com"))
        db.add(Collection(id="col-1", user_id=USER_ID, name="Editing", video_count=0))
        await db.commit()
    with (
        patch("services.record_store.async_session_maker", session_maker),
        patch("services.ingestion.dispatch_ingestion_job", return_value="ingest:test") as dispatch,
    ):
        yield session_maker, dispatch


async def _submit_and_run(session_maker, components, **request_overrides):
    request_fields = {"source_url": TIKTOK_URL, "user_id": USER_ID, "collection_id": "col-1", "interest": "editing"}
    request_fields.update(request_overrides)
    async with session_maker() as db:
        ack = await submit_ingestion(IngestionRequest(**request_fields), db)
    with patch("services.ingestion.build_pipeline_components", return_value=components):
        await run_ingestion_job(ack.job_id)
    async with session_maker() as db:
        job = (await db.execute(select(IngestionJob).where(IngestionJob.id == ack.job_id))).scalar_one()
        videos = (await db.execute(select(VideoRecord))).scalars().all()
        collection = (await db.execute(select(Collection).where(Collection.id == "col-1"))).scalar_one()
    return ack, job, videos, collection


@pytest.mark.asyncio
async def test_tiktok_happy_path_produces_completed_record(store):
    session_maker, dispatch = store
    ack, job, videos, collection = await _submit_and_run(session_maker, _components(Bunny([200])))

    assert ack.status == "processing"
    dispatch.assert_called_once_with(ack.job_id)
    assert job.status == "completed"
    assert job.stage == "done"
    assert job.progress == 100
    assert job.error_code is None
    assert job.video_id == videos[0].id

    video = videos[0]
    assert video.platform == "tiktok"
    assert video.remote_id == "guid-1"
    assert video.playback_url == "https://iframe.mediadelivery.net/embed/lib-1/guid-1"
    assert video.direct_url == "https://vz-abc.b-cdn.net/guid-1/play_720p.mp4"
    assert video.thumbnail_url == "https://vz-abc.b-cdn.net/guid-1/thumbnail.jpg"
    assert video.transcription_status == "completed"
    assert video.transcript == TRANSCRIPT.transcript
    assert video.components == {
        "hook": "Stop scrolling.",
        "bridge": "",
        "nugget": "three editing tricks",
        "callToAction": "Follow",
    }
    assert video.title == "Three editing tricks"
    assert video.metrics["views"] == 45000
    assert video.video_metadata["thumbnail_source"] == "custom"
    assert video.video_metadata["interest"] == "editing"
    assert video.transcription_completed_at is not None
    assert collection.video_count == 1


@pytest.mark.asyncio
async def test_publish_retries_then_succeeds_with_one_record(store):
    session_maker, _ = store
    ack, job, videos, _ = await _submit_and_run(session_maker, _components(Bunny([500, 500, 200])))

    assert job.stage == "done"
    assert len(videos) == 1
    assert videos[0].remote_id == "guid-3"


@pytest.mark.asyncio
async def test_publish_exhaustion_fails_job_without_record(store):
    session_maker, _ = store
    transcriber = FakeTranscriber()
    _, job, videos, collection = await _submit_and_run(
        session_maker,
        _components(Bunny([500, 500, 500]), transcriber=transcriber),
    )

    assert job.status == "failed"
    assert job.stage == "failed"
    assert job.failed_stage == "publishing"
    assert job.error_code == "publish_failed"
    assert videos == []
    assert collection.video_count == 0
    assert transcriber.calls == []


@pytest.mark.asyncio
async def test_thumbnail_failure_still_reaches_done_with_default_thumbnail(store):
    session_maker, _ = store
    _, job, videos, _ = await _submit_and_run(
        session_maker,
        _components(Bunny([200], thumbnail_status=500)),
    )

    assert job.stage == "done"
    assert videos[0].thumbnail_url == "https://vz-abc.b-cdn.net/guid-1/thumbnail.jpg"
    assert videos[0].video_metadata["thumbnail_source"] == "default"
    assert videos[0].transcription_status == "completed"


@pytest.mark.asyncio
async def test_ai_timeout_marks_record_failed_but_keeps_cdn_urls(store):
    session_maker, _ = store
    transcriber = FakeTranscriber(error=ProcessingTimeoutError("still processing", stage="transcribing"))
    _, job, videos, _ = await _submit_and_run(session_maker, _components(Bunny([200]), transcriber=transcriber))

    assert job.stage == "done"
    assert job.status == "completed"
    assert job.error_code == "ai_processing_timeout"
    video = videos[0]
    assert video.transcription_status == "failed"
    assert video.transcript == ""
    assert video.playback_url == "https://iframe.mediadelivery.net/embed/lib-1/guid-1"
    assert video.direct_url == "https://vz-abc.b-cdn.net/guid-1/play_720p.mp4"
    assert "still processing" in video.transcription_error
    assert video.components == {"hook": "", "bridge": "", "nugget": "", "callToAction": ""}


@pytest.mark.asyncio
async def test_empty_transcript_never_marks_record_completed(store):
    session_maker, _ = store
    transcriber = FakeTranscriber(result=TranscriptionResult(transcript="", degraded=True))
    _, job, videos, _ = await _submit_and_run(session_maker, _components(Bunny([200]), transcriber=transcriber))

    assert videos[0].transcription_status == "failed"
    assert job.stage == "done"


@pytest.mark.asyncio
async def test_resolution_failure_fails_job_at_downloading(store):
    session_maker, _ = store
    resolver = FakeResolver(error=ResolutionError("No TikTok video URL returned by scraper", stage="downloading"))
    _, job, videos, _ = await _submit_and_run(session_maker, _components(Bunny([200]), resolver=resolver))

    assert job.status == "failed"
    assert job.failed_stage == "downloading"
    assert job.error_code == "resolution_failed"
    assert videos == []


@pytest.mark.asyncio
async def test_prescraped_metadata_skips_resolution_and_defaults_title(store):
    session_maker, _ = store
    resolver = FakeResolver()
    scraped = ScrapedMedia(platform="tiktok", media_url="https://cdn.example.com/pre.mp4")
    _, job, videos, collection = await _submit_and_run(
        session_maker,
        _components(Bunny([200]), resolver=resolver),
        scraped=scraped,
        collection_id="all-videos",
    )

    assert resolver.calls == []
    assert job.stage == "done"
    assert videos[0].title == "Video from tiktok"
    assert videos[0].collection_id == "all-videos"
    assert collection.video_count == 0


@pytest.mark.asyncio
async def test_unsupported_url_never_schedules_work(store):
    session_maker, dispatch = store
    async with session_maker() as db:
        with pytest.raises(UnsupportedUrlError):
            await submit_ingestion(
                IngestionRequest(source_url="https://www.youtube.com/watch?v=dQw4w9WgXcQ", user_id=USER_ID),
                db,
            )
        jobs = (await db.execute(select(IngestionJob))).scalars().all()

    dispatch.assert_not_called()
    assert jobs == []


@pytest.mark.asyncio
async def test_missing_pipeline_configuration_is_rejected(store):
    session_maker, dispatch = store
    with patch("config.settings.GEMINI_API_KEY", ""):
        async with session_maker() as db:
            with pytest.raises(PipelineConfigError):
                await submit_ingestion(IngestionRequest(source_url=TIKTOK_URL, user_id=USER_ID), db)
    dispatch.assert_not_called()


@pytest.mark.asyncio
async def test_dispatch_failure_marks_job_failed(store):
    session_maker, dispatch = store
    dispatch.side_effect = RuntimeError("redis offline")
    async with session_maker() as db:
        with pytest.raises(DispatchError):
            await submit_ingestion(IngestionRequest(source_url=TIKTOK_URL, user_id=USER_ID), db)
        job = (await db.execute(select(IngestionJob))).scalar_one()

    assert job.status == "failed"
    assert job.error_code == "dispatch_failed"


def test_stage_table_rejects_illegal_transitions():
    validate_transition("received", "downloading")
    validate_transition("publishing", "failed")
    for current, target in [
        ("thumbnail_publishing", "failed"),
        ("transcribing", "failed"),
        ("received", "publishing"),
        ("done", "failed"),
        ("failed", "downloading"),
    ]:
        with pytest.raises(InvalidStageTransition):
            validate_transition(current, target)


@pytest.mark.asyncio
async def test_stage_tracker_does_not_persist_illegal_moves():
    tracker = StageTracker("job-x", stage="transcribing")
    with patch("services.ingestion.record_store.update_job") as update_job:
        with pytest.raises(InvalidStageTransition):
            await tracker.advance("failed")
    update_job.assert_not_called()
    assert tracker.stage == "transcribing"


@pytest.mark.asyncio
async def test_video_is_playable_while_transcription_runs(store):
    session_maker, _ = store
    seen = {}

    class InspectingTranscriber(FakeTranscriber):
        async def transcribe(self, payload, platform_hint, *, mime_type="video/mp4", job_id=None):
            async with session_maker() as db:
                job = (await db.execute(select(IngestionJob).where(IngestionJob.id == job_id))).scalar_one()
                video = (await db.execute(select(VideoRecord).where(VideoRecord.id == job.video_id))).scalar_one()
                seen.update(
                    stage=job.stage,
                    status=video.transcription_status,
                    playback_url=video.playback_url,
                    direct_url=video.direct_url,
                    components=video.components,
                )
            return await super().transcribe(payload, platform_hint, mime_type=mime_type, job_id=job_id)

    _, job, videos, _ = await _submit_and_run(
        session_maker, _components(Bunny([200]), transcriber=InspectingTranscriber())
    )

    assert seen["stage"] == "transcribing"
    assert seen["status"] == "processing"
    assert seen["playback_url"] == "https://iframe.mediadelivery.net/embed/lib-1/guid-1"
    assert seen["direct_url"] == "https://vz-abc.b-cdn.net/guid-1/play_720p.mp4"
    assert seen["components"] == {"hook": "", "bridge": "", "nugget": "", "callToAction": ""}
    assert job.video_id == videos[0].id
