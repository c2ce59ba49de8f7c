import asyncio
import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy.future import select

from models.ingestion_job import IngestionJob
from models.user import User
from services import ingest_queue


@pytest.mark.asyncio
async def test_local_dispatch_runs_job_as_tracked_task():
    ran = []

    async def fake_run(job_id):
        ran.append(job_id)

    with (
        patch("services.ingest_queue.settings.INGEST_DISPATCH_MODE", "local"),
        patch("services.ingestion.run_ingestion_job", side_effect=fake_run),
    ):
        task_id = ingest_queue.dispatch_ingestion_job("job-1")
        assert task_id == "ingest:job-1"
        assert len(ingest_queue.pending_local_tasks()) == 1
        await asyncio.gather(*ingest_queue.pending_local_tasks())
        await asyncio.sleep(0)

    assert ran == ["job-1"]
    assert ingest_queue.pending_local_tasks() == set()


@pytest.mark.asyncio
async def test_local_task_crash_is_logged(caplog):
    async def crashing_run(job_id):
        raise RuntimeError("boom")

    with (
        patch("services.ingest_queue.settings.INGEST_DISPATCH_MODE", "local"),
        patch("services.ingestion.run_ingestion_job", side_effect=crashing_run),
        caplog.at_level(logging.ERROR, logger="services.ingest_queue"),
    ):
        ingest_queue.dispatch_ingestion_job("job-2")
        await asyncio.gather(*ingest_queue.pending_local_tasks(), return_exceptions=True)
        await asyncio.sleep(0)

    assert "job-2" in caplog.text
    assert "boom" in caplog.text


def test_rq_dispatch_enqueues_without_rq_retries():
    queue = MagicMock()
    queue.enqueue.return_value = MagicMock(id="ingest:job-3")
    with (
        patch("services.ingest_queue.settings.INGEST_DISPATCH_MODE", "rq"),
        patch("services.ingest_queue.get_ingest_queue", return_value=queue),
    ):
        assert ingest_queue.dispatch_ingestion_job("job-3") == "ingest:job-3"

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.ingestion.process_ingestion_job", "job-3")
    assert kwargs["job_id"] == "ingest:job-3"
    assert "retry" not in kwargs


@pytest.mark.asyncio
async def test_recover_stalled_ingestion_jobs_marks_old_jobs_failed(session_maker):
    old = datetime.now(timezone.utc) - timedelta(hours=5)
    async with session_maker() as db:
        db.add(User(id="u1", email="u1@example.com"))
        db.add(IngestionJob(id="stale", user_id="u1", source_url="https://x", platform="tiktok",
                            stage="transcribing", created_at=old))
        db.add(IngestionJob(id="fresh", user_id="u1", source_url="https://x", platform="tiktok"))
        db.add(IngestionJob(id="done", user_id="u1", source_url="https://x", platform="tiktok",
                            status="completed", stage="done", created_at=old))
        await db.commit()

    with patch("services.ingest_queue.async_session_maker", session_maker):
        recovered = await ingest_queue.recover_stalled_ingestion_jobs(max_age_minutes=60)

    assert recovered == 1
    async with session_maker() as db:
        jobs = {job.id: job for job in (await db.execute(select(IngestionJob))).scalars().all()}
    assert jobs["stale"].status == "failed"
    assert jobs["stale"].failed_stage == "transcribing"
    assert jobs["stale"].error_code == "stalled"
    assert jobs["fresh"].status == "processing"
    assert jobs["done"].status == "completed"
