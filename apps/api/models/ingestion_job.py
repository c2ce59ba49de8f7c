"""Ingestion job model."""

from sqlalchemy import Column, String, DateTime, ForeignKey, Integer, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class IngestionJob(Base):
    """Pollable status of one submitted ingestion run."""

    __tablename__ = "ingestion_jobs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    source_url = Column(String, nullable=False)
    platform = Column(String, nullable=False, index=True)
    collection_id = Column(String, nullable=True)
    interest = Column(String, nullable=True)
    title = Column(String, nullable=True)
    scraped_json = Column(JSON, nullable=True)
    status = Column(String, nullable=False, default="processing", index=True)
    stage = Column(String, nullable=False, default="received")
    failed_stage = Column(String, nullable=True)
    progress = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    queue_job_id = Column(String, nullable=True, index=True)
    video_id = Column(String, ForeignKey("videos.id"), nullable=True, index=True)
    error_code = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="ingestion_jobs")
