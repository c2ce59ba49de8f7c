"""Models package."""

from .user import User
from .collection import Collection
from .video import VideoRecord
from .ingestion_job import IngestionJob
