"""SQLite schema for the video record store and the download job store."""

from __future__ import annotations

import sqlite3


def ensure_videos_table(conn: sqlite3.Connection) -> None:
    """Ensure the ``videos`` table and its indexes exist."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS videos (
            id TEXT PRIMARY KEY,
            external_id TEXT NOT NULL UNIQUE,
            title TEXT,
            video_url TEXT,
            video_url_direct TEXT,
            video_url_meta TEXT,
            viral_score REAL,
            momentum REAL,
            surge_factor REAL,
            is_surge INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'new',
            storage_provider TEXT,
            bucket TEXT,
            object_key TEXT,
            storage_etag TEXT,
            filesize INTEGER,
            mime_type TEXT,
            downloaded_at TEXT,
            last_error TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_attempt_at TEXT,
            marked_for_deletion INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_videos_status ON videos (status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_videos_viral_score ON videos (viral_score DESC)")
    conn.commit()


def ensure_download_jobs_table(conn: sqlite3.Connection) -> None:
    """Ensure the ``download_jobs`` table, its indexes and the one-active-job-per-video constraint."""
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS download_jobs (
            id TEXT PRIMARY KEY,
            video_id TEXT NOT NULL REFERENCES videos(id),
            status TEXT NOT NULL,
            worker_id TEXT,
            scheduled_at TEXT NOT NULL,
            started_at TEXT,
            finished_at TEXT,
            last_error TEXT,
            payload TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_download_jobs_status_scheduled "
        "ON download_jobs (status, scheduled_at, created_at)"
    )
    cur.execute(
        "CREATE INDEX IF NOT EXISTS idx_download_jobs_worker_status "
        "ON download_jobs (worker_id, status)"
    )
    cur.execute("CREATE INDEX IF NOT EXISTS idx_download_jobs_video ON download_jobs (video_id)")
    # At most one pending/running job per video; terminal rows stay as history.
    cur.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_download_jobs_active_video "
        "ON download_jobs (video_id) "
        "WHERE status IN ('pending', 'running')"
    )
    conn.commit()


def ensure_schema(conn: sqlite3.Connection) -> None:
    ensure_videos_table(conn)
    ensure_download_jobs_table(conn)
