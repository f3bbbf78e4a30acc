"""Database helpers for trendvault."""

from db.migrations import ensure_schema
from db.videos import StorageReference, Video, VideoStore

__all__ = ["StorageReference", "Video", "VideoStore", "ensure_schema"]
