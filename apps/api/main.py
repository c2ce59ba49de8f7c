"""
Video Ingestion Pipeline - FastAPI Backend
Application entry point with health checks and ingestion routing.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import missing_pipeline_settings, settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, videos
from services.ingest_queue import pending_local_tasks, recover_stalled_ingestion_jobs

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


async def _bootstrap_schema() -> None:
    if not settings.AUTO_CREATE_DB_SCHEMA:
        return
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        print("🗄️ Database schema verified.")
    except Exception as e:
        print(f"⚠️ Database bootstrap skipped: {e}")


async def _recover_interrupted_jobs() -> None:
    try:
        recovered = await recover_stalled_ingestion_jobs(settings.INGEST_STALLED_AFTER_MINUTES)
    except Exception as exc:
        print(f"⚠️ Stalled ingestion recovery skipped: {exc}")
        return
    if recovered:
        print(f"♻️ Recovered {recovered} stalled ingestion jobs after startup.")


async def _cancel_local_jobs() -> None:
    in_flight = pending_local_tasks()
    if not in_flight:
        return
    print(f"⏳ Cancelling {len(in_flight)} in-process ingestion jobs...")
    for task in in_flight:
        task.cancel()
    await asyncio.gather(*in_flight, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("🚀 Starting Video Ingestion API...")
    validate_security_settings()
    await _bootstrap_schema()
    missing = missing_pipeline_settings()
    if missing:
        print(f"⚠️ Ingestion pipeline not configured, submissions will fail: missing {', '.join(missing)}")
    await _recover_interrupted_jobs()
    print(f"📮 Ingestion dispatch mode: {settings.INGEST_DISPATCH_MODE}")
    yield
    await _cancel_local_jobs()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Video Ingestion API",
    description="Ingest social videos into CDN-hosted, transcribed and analyzed records",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router, tags=["Health"])
app.include_router(videos.router, prefix="/videos", tags=["Videos"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Video Ingestion API",
        "version": "0.1.0",
        "status": "running"
    }
