"""Video record store: discovered videos and their download/storage state."""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from db.migrations import ensure_schema
from engine.json_utils import safe_json, safe_json_dumps, string_map
from engine.paths import ensure_dir

VIDEO_STATUS_NEW = "new"
VIDEO_STATUS_QUEUED = "queued"
VIDEO_STATUS_PENDING = "pending"
VIDEO_STATUS_DOWNLOADING = "downloading"
VIDEO_STATUS_UPLOADED = "uploaded"
VIDEO_STATUS_FAILED = "failed"
VIDEO_STATUS_DELETED = "deleted"

# Statuses from which a download job may be enqueued.
ENQUEUEABLE_VIDEO_STATUSES = (VIDEO_STATUS_NEW, VIDEO_STATUS_QUEUED, VIDEO_STATUS_PENDING)
# Statuses from which a claimed job may start downloading.
DOWNLOADABLE_VIDEO_STATUSES = ENQUEUEABLE_VIDEO_STATUSES + (VIDEO_STATUS_FAILED,)

STORAGE_FIELDS = ("storage_provider", "bucket", "object_key", "storage_etag", "filesize", "mime_type")


def utc_now():
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def connect(db_path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_db(db_path) -> None:
    ensure_dir(os.path.dirname(os.path.abspath(str(db_path))))
    conn = connect(db_path)
    try:
        ensure_schema(conn)
    finally:
        conn.close()


@dataclass(frozen=True)
class StorageReference:
    provider: str
    bucket: str
    object_key: str
    etag: Optional[str]
    filesize: int
    mime_type: str


@dataclass
class Video:
    id: str
    external_id: str
    title: str | None
    video_url: str | None
    video_url_direct: str | None
    video_url_meta: dict[str, str] = field(default_factory=dict)
    viral_score: float | None = None
    momentum: float | None = None
    surge_factor: float | None = None
    is_surge: bool = False
    status: str = VIDEO_STATUS_NEW
    storage_provider: str | None = None
    bucket: str | None = None
    object_key: str | None = None
    storage_etag: str | None = None
    filesize: int | None = None
    mime_type: str | None = None
    downloaded_at: str | None = None
    last_error: str | None = None
    attempts: int = 0
    last_attempt_at: str | None = None
    marked_for_deletion: bool = False
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_deleted(self) -> bool:
        return self.marked_for_deletion or self.status == VIDEO_STATUS_DELETED


def _row_to_video(row) -> Optional[Video]:
    if not row:
        return None
    row = dict(row)
    return Video(
        id=row["id"],
        external_id=row["external_id"],
        title=row["title"],
        video_url=row["video_url"],
        video_url_direct=row["video_url_direct"],
        video_url_meta=string_map(safe_json(row["video_url_meta"], default={})),
        viral_score=row["viral_score"],
        momentum=row["momentum"],
        surge_factor=row["surge_factor"],
        is_surge=bool(row["is_surge"]),
        status=row["status"],
        storage_provider=row["storage_provider"],
        bucket=row["bucket"],
        object_key=row["object_key"],
        storage_etag=row["storage_etag"],
        filesize=row["filesize"],
        mime_type=row["mime_type"],
        downloaded_at=row["downloaded_at"],
        last_error=row["last_error"],
        attempts=row["attempts"] or 0,
        last_attempt_at=row["last_attempt_at"],
        marked_for_deletion=bool(row["marked_for_deletion"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class VideoStore:
    def __init__(self, db_path):
        self.db_path = str(db_path)
        init_db(self.db_path)

    def _connect(self):
        return connect(self.db_path)

    def upsert_video(
        self,
        *,
        external_id,
        title=None,
        video_url=None,
        viral_score=None,
        momentum=None,
        surge_factor=None,
        is_surge=False,
        video_url_direct=None,
        video_url_meta=None,
    ) -> str:
        """Insert a discovered video or refresh its descriptors and scores.

        Download state (status, storage reference, retry bookkeeping) is never
        touched by a refresh.
        """
        external_id = str(external_id or "").strip()
        if not external_id:
            raise ValueError("external_id is required")
        now = utc_now()
        meta_json = safe_json_dumps(string_map(video_url_meta)) if video_url_meta else None
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                INSERT INTO videos (
                    id, external_id, title, video_url, video_url_direct, video_url_meta,
                    viral_score, momentum, surge_factor, is_surge, status,
                    attempts, marked_for_deletion, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                    title=COALESCE(excluded.title, videos.title),
                    video_url=COALESCE(excluded.video_url, videos.video_url),
                    viral_score=COALESCE(excluded.viral_score, videos.viral_score),
                    momentum=COALESCE(excluded.momentum, videos.momentum),
                    surge_factor=COALESCE(excluded.surge_factor, videos.surge_factor),
                    is_surge=excluded.is_surge,
                    updated_at=excluded.updated_at
                """,
                (
                    uuid4().hex,
                    external_id,
                    title,
                    video_url,
                    video_url_direct,
                    meta_json,
                    viral_score,
                    momentum,
                    surge_factor,
                    1 if is_surge else 0,
                    VIDEO_STATUS_NEW,
                    now,
                    now,
                ),
            )
            conn.commit()
            cur.execute("SELECT id FROM videos WHERE external_id=?", (external_id,))
            return cur.fetchone()[0]
        finally:
            conn.close()

    def get_video(self, video_id) -> Optional[Video]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM videos WHERE id=?", (video_id,))
            return _row_to_video(cur.fetchone())
        finally:
            conn.close()

    def get_by_external_id(self, external_id) -> Optional[Video]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM videos WHERE external_id=?", (external_id,))
            return _row_to_video(cur.fetchone())
        finally:
            conn.close()

    def list_videos(self, *, status=None, limit=None) -> list[Video]:
        query = "SELECT * FROM videos"
        params = []
        if status:
            query += " WHERE status=?"
            params.append(status)
        query += " ORDER BY created_at ASC, rowid ASC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            return [_row_to_video(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def mark_for_deletion(self, video_id) -> bool:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "UPDATE videos SET marked_for_deletion=1, updated_at=? WHERE id=?",
                (utc_now(), video_id),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def mark_downloading(self, video_id) -> bool:
        """Move a live, not yet stored video to ``downloading``.

        Soft-deleted rows and rows already ``uploaded`` or ``downloading`` are never moved.
        """
        placeholders = ", ".join("?" for _ in DOWNLOADABLE_VIDEO_STATUSES)
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE videos
                SET status=?, updated_at=?
                WHERE id=? AND marked_for_deletion=0 AND status IN ({placeholders})
                """,
                (VIDEO_STATUS_DOWNLOADING, utc_now(), video_id, *DOWNLOADABLE_VIDEO_STATUSES),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def save_direct_url(self, video_id, direct_url, meta=None) -> None:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "UPDATE videos SET video_url_direct=?, video_url_meta=?, updated_at=? WHERE id=?",
                (direct_url, safe_json_dumps(string_map(meta)), utc_now(), video_id),
            )
            conn.commit()
        finally:
            conn.close()

    def mark_uploaded(self, video_id, ref: StorageReference) -> None:
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE videos
                SET status=?, storage_provider=?, bucket=?, object_key=?, storage_etag=?,
                    filesize=?, mime_type=?, downloaded_at=?, last_error=NULL, updated_at=?
                WHERE id=?
                """,
                (
                    VIDEO_STATUS_UPLOADED,
                    ref.provider,
                    ref.bucket,
                    ref.object_key,
                    ref.etag,
                    ref.filesize,
                    ref.mime_type,
                    now,
                    now,
                    video_id,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def mark_failed(self, video_id, error_message) -> bool:
        """Record a failed attempt and clear any storage reference.

        A video already in the terminal ``deleted`` status keeps that status.
        An ``uploaded`` video is left untouched and ``False`` is returned.
        """
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE videos
                SET status=CASE WHEN status=? THEN status ELSE ? END,
                    last_error=?,
                    attempts=COALESCE(attempts, 0) + 1,
                    last_attempt_at=?,
                    storage_provider=NULL, bucket=NULL, object_key=NULL, storage_etag=NULL,
                    filesize=NULL, mime_type=NULL, downloaded_at=NULL,
                    updated_at=?
                WHERE id=? AND status!=?
                """,
                (
                    VIDEO_STATUS_DELETED,
                    VIDEO_STATUS_FAILED,
                    error_message,
                    now,
                    now,
                    video_id,
                    VIDEO_STATUS_UPLOADED,
                ),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()
