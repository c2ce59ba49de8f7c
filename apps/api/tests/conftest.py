import os

# Settings are read at import time; keep tests off Postgres and real credentials.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-secret-value-long-enough-for-hs256")
os.environ.setdefault("TRANSCRIBE_TMP_DIR", "/tmp/vip_transcribe_tests")

from unittest.mock import patch

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
import models  # noqa: F401


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """File-backed SQLite session factory with the full schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ingest.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest.fixture
def pipeline_settings():
    """Patch the settings the pipeline requires to be present."""
    with (
        patch("config.settings.BUNNY_STREAM_LIBRARY_ID", "lib-1"),
        patch("config.settings.BUNNY_STREAM_API_KEY", "bunny-key"),
        patch("config.settings.BUNNY_CDN_HOSTNAME", "abc.b-cdn.net"),
        patch("config.settings.GEMINI_API_KEY", "gemini-key"),
    ):
        yield
