"""Persisted video record produced by the ingestion pipeline."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base

TRANSCRIPTION_STATUSES = ("pending", "processing", "completed", "failed")


class VideoRecord(Base):
    """CDN-hosted video with transcript and script-component analysis."""

    __tablename__ = "videos"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    # Not a foreign key: "all-videos" is a virtual collection.
    collection_id = Column(String, nullable=True, index=True)
    source_url = Column(String, nullable=False)
    platform = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    remote_id = Column(String, nullable=False, unique=True)
    playback_url = Column(String, nullable=False)
    direct_url = Column(String, nullable=False)
    thumbnail_url = Column(String, nullable=True)
    metrics = Column(JSON, nullable=True)
    # "metadata" is reserved on declarative classes.
    video_metadata = Column("metadata", JSON, nullable=True)
    transcript = Column(Text, nullable=False, default="")
    components = Column(JSON, nullable=True)
    content_metadata = Column(JSON, nullable=True)
    visual_context = Column(Text, nullable=False, default="")
    transcription_status = Column(String, nullable=False, default="pending", index=True)
    transcription_error = Column(String, nullable=True)
    transcription_completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="videos")
