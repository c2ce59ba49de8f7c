"""Ingestion job dispatch: durable Redis/RQ queue or tracked in-process tasks."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Set

from redis import Redis
from rq import Queue
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.ingestion_job import IngestionJob

logger = logging.getLogger(__name__)

INGEST_JOB_PATH = "services.ingestion.process_ingestion_job"
IN_PROGRESS_STATUSES = ("processing",)

_local_tasks: Set["asyncio.Task[None]"] = set()


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_ingest_queue() -> Queue:
    """Return the configured ingestion queue."""
    return Queue(
        name=settings.INGEST_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=settings.INGEST_JOB_TIMEOUT_SECONDS,
    )


def enqueue_ingestion_job(job_id: str) -> Job:
    """Enqueue one ingestion run. Stages retry locally, so RQ retries stay off."""
    queue = get_ingest_queue()
    return queue.enqueue(
        INGEST_JOB_PATH,
        job_id,
        job_id=f"ingest:{job_id}",
        job_timeout=settings.INGEST_JOB_TIMEOUT_SECONDS,
        result_ttl=86400,
        failure_ttl=86400,
    )


def _on_local_task_done(task: "asyncio.Task[None]") -> None:
    _local_tasks.discard(task)
    if task.cancelled():
        logger.warning("Local ingestion task %s was cancelled", task.get_name())
        return
    exc = task.exception()
    if exc is not None:
        logger.error(
            "Local ingestion task %s crashed: %s",
            task.get_name(),
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
        )


def schedule_local_ingestion_job(job_id: str) -> "asyncio.Task[None]":
    """Run the job on the current event loop, keeping a strong reference until it finishes."""
    from services.ingestion import run_ingestion_job

    task = asyncio.get_running_loop().create_task(run_ingestion_job(job_id), name=f"ingest:{job_id}")
    _local_tasks.add(task)
    task.add_done_callback(_on_local_task_done)
    return task


def pending_local_tasks() -> Set["asyncio.Task[None]"]:
    return set(_local_tasks)


def dispatch_ingestion_job(job_id: str) -> str:
    """Hand ``job_id`` to the configured executor and return its queue/task id."""
    if settings.INGEST_DISPATCH_MODE == "local":
        return schedule_local_ingestion_job(job_id).get_name()
    return enqueue_ingestion_job(job_id).id


async def recover_stalled_ingestion_jobs(max_age_minutes: int = 120) -> int:
    """Mark stale in-progress ingestion jobs as failed after restarts/worker interruptions."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(max_age_minutes, 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(IngestionJob).where(
                IngestionJob.status.in_(IN_PROGRESS_STATUSES),
                IngestionJob.created_at < cutoff,
            )
        )
        jobs = result.scalars().all()
        for job in jobs:
            job.failed_stage = job.stage
            job.status = "failed"
            job.stage = "failed"
            job.error_code = "stalled"
            job.error_message = "Ingestion was interrupted. Submit the URL again."
            job.completed_at = datetime.now(timezone.utc)
            job.progress = 100
        if jobs:
            await db.commit()
        return len(jobs)
