"""User model."""

from sqlalchemy import Column, String, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Owner of submitted videos, collections and ingestion jobs."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, unique=True, nullable=False, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    collections = relationship("Collection", back_populates="user", cascade="all, delete-orphan")
    videos = relationship("VideoRecord", back_populates="user", cascade="all, delete-orphan")
    ingestion_jobs = relationship("IngestionJob", back_populates="user", cascade="all, delete-orphan")
