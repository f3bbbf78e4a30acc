import logging
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Optional
from uuid import uuid4

from db.videos import (
    ENQUEUEABLE_VIDEO_STATUSES,
    VIDEO_STATUS_DELETED,
    VIDEO_STATUS_DOWNLOADING,
    VIDEO_STATUS_FAILED,
    VIDEO_STATUS_QUEUED,
    connect,
    init_db,
    utc_now,
)
from engine.json_utils import safe_json, safe_json_dumps
from engine.logs import log_event

JOB_STATUS_PENDING = "pending"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_FAILED = "failed"

ACTIVE_STATUSES = (JOB_STATUS_PENDING, JOB_STATUS_RUNNING)
TERMINAL_STATUSES = (JOB_STATUS_COMPLETED, JOB_STATUS_FAILED)

ENQUEUE_DUPLICATE = "duplicate"
ENQUEUE_NOT_FOUND = "not_found"
ENQUEUE_GONE = "gone"
ENQUEUE_INELIGIBLE = "ineligible"

_LOCK_RETRIES = 5


@dataclass
class DownloadJob:
    id: str
    video_id: str
    status: str
    worker_id: str | None
    scheduled_at: str
    started_at: str | None
    finished_at: str | None
    last_error: str | None
    payload: dict = field(default_factory=dict)
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_retry(self):
        return bool(self.payload.get("retry"))


def _is_lock_error(exc):
    msg = str(exc).lower()
    return "locked" in msg or "busy" in msg


class DownloadJobStore:
    """Durable download jobs; the single source of truth for job ownership.

    Every state transition is either the atomic claim (``claim_next_job``) or a
    conditional single-row update scoped by job id.
    """

    def __init__(self, db_path):
        self.db_path = str(db_path)
        init_db(self.db_path)

    def _connect(self):
        return connect(self.db_path)

    def _row_to_job(self, row):
        if not row:
            return None
        if isinstance(row, sqlite3.Row):
            row = dict(row)
        payload = safe_json(row.get("payload"), default={})
        return DownloadJob(
            id=row["id"],
            video_id=row["video_id"],
            status=row["status"],
            worker_id=row["worker_id"],
            scheduled_at=row["scheduled_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            last_error=row["last_error"],
            payload=payload if isinstance(payload, dict) else {},
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def get_job(self, job_id) -> Optional[DownloadJob]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT * FROM download_jobs WHERE id=?", (job_id,))
            return self._row_to_job(cur.fetchone())
        finally:
            conn.close()

    def get_job_status(self, job_id):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT status FROM download_jobs WHERE id=?", (job_id,))
            row = cur.fetchone()
            return row[0] if row else None
        finally:
            conn.close()

    def list_jobs(self, *, video_id=None, status=None, worker_id=None) -> list[DownloadJob]:
        clauses = []
        params = []
        if video_id:
            clauses.append("video_id=?")
            params.append(video_id)
        if status:
            clauses.append("status=?")
            params.append(status)
        if worker_id:
            clauses.append("worker_id=?")
            params.append(worker_id)
        query = "SELECT * FROM download_jobs"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC, rowid ASC"
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(query, tuple(params))
            return [self._row_to_job(row) for row in cur.fetchall()]
        finally:
            conn.close()

    def find_active_job(self, video_id) -> Optional[DownloadJob]:
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                "SELECT * FROM download_jobs WHERE video_id=? AND status IN (?, ?) LIMIT 1",
                (video_id, *ACTIVE_STATUSES),
            )
            return self._row_to_job(cur.fetchone())
        finally:
            conn.close()

    def _insert_pending_job(self, cur, video_id, payload, scheduled_at, now):
        job_id = uuid4().hex
        cur.execute(
            """
            INSERT INTO download_jobs (
                id, video_id, status, worker_id, scheduled_at, started_at, finished_at,
                last_error, payload, created_at, updated_at
            ) VALUES (?, ?, ?, NULL, ?, NULL, NULL, NULL, ?, ?, ?)
            """,
            (
                job_id,
                video_id,
                JOB_STATUS_PENDING,
                scheduled_at or now,
                safe_json_dumps(payload) if payload else None,
                now,
                now,
            ),
        )
        return job_id

    def enqueue_job(self, video_id, *, payload=None, scheduled_at=None):
        """Create a pending job for ``video_id`` unless one is already active.

        Returns ``(job_id, created, reason)``. ``reason`` is ``None`` when a job was
        created, otherwise one of ``duplicate``, ``not_found``, ``gone`` or ``ineligible``.
        """
        conn = self._connect()
        try:
            cur = conn.cursor()
            for attempt in range(_LOCK_RETRIES):
                try:
                    cur.execute("BEGIN IMMEDIATE")
                    cur.execute(
                        "SELECT status, marked_for_deletion FROM videos WHERE id=?",
                        (video_id,),
                    )
                    video = cur.fetchone()
                    if not video:
                        conn.commit()
                        return None, False, ENQUEUE_NOT_FOUND
                    if video["marked_for_deletion"] or video["status"] == VIDEO_STATUS_DELETED:
                        conn.commit()
                        return None, False, ENQUEUE_GONE
                    if video["status"] not in ENQUEUEABLE_VIDEO_STATUSES:
                        conn.commit()
                        return None, False, ENQUEUE_INELIGIBLE
                    now = utc_now()
                    job_id = self._insert_pending_job(cur, video_id, payload, scheduled_at, now)
                    cur.execute(
                        "UPDATE videos SET status=?, updated_at=? WHERE id=?",
                        (VIDEO_STATUS_QUEUED, now, video_id),
                    )
                    conn.commit()
                    log_event(logging.INFO, "job_enqueued", job_id=job_id, video_id=video_id)
                    return job_id, True, None
                except sqlite3.IntegrityError:
                    conn.rollback()
                    existing = self.find_active_job(video_id)
                    log_event(
                        logging.INFO,
                        "job_skipped_duplicate",
                        video_id=video_id,
                        job_id=existing.id if existing else None,
                    )
                    return (existing.id if existing else None), False, ENQUEUE_DUPLICATE
                except sqlite3.OperationalError as exc:
                    if _is_lock_error(exc) and attempt < _LOCK_RETRIES - 1:
                        conn.rollback()
                        time.sleep(0.05 * (2**attempt))
                        continue
                    raise
        finally:
            conn.close()

    def requeue_failed_video(self, video_id, *, max_attempts):
        """Schedule a fresh retry job for a failed video.

        The failed job rows are left untouched; the retry is a new row with
        payload ``{"retry": true}``. Returns ``(job_id, reason)`` where reason is
        ``None`` on success, or ``not_found``, ``not_failed``, ``max_attempts``,
        ``gone`` or ``duplicate``.
        """
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                "SELECT status, attempts, marked_for_deletion FROM videos WHERE id=?",
                (video_id,),
            )
            video = cur.fetchone()
            if not video:
                conn.commit()
                return None, ENQUEUE_NOT_FOUND
            if video["marked_for_deletion"]:
                conn.commit()
                return None, ENQUEUE_GONE
            if video["status"] != VIDEO_STATUS_FAILED:
                conn.commit()
                return None, "not_failed"
            if (video["attempts"] or 0) >= max_attempts:
                conn.commit()
                return None, "max_attempts"
            now = utc_now()
            try:
                job_id = self._insert_pending_job(cur, video_id, {"retry": True}, None, now)
            except sqlite3.IntegrityError:
                conn.rollback()
                return None, ENQUEUE_DUPLICATE
            cur.execute(
                "UPDATE videos SET status=?, last_error=NULL, updated_at=? WHERE id=?",
                (VIDEO_STATUS_QUEUED, now, video_id),
            )
            conn.commit()
            log_event(logging.INFO, "job_retry_scheduled", job_id=job_id, video_id=video_id)
            return job_id, None
        finally:
            conn.close()

    def claim_next_job(self, worker_id, *, now=None) -> Optional[DownloadJob]:
        """Atomically take ownership of the oldest eligible pending job.

        Selection and update happen inside one ``BEGIN IMMEDIATE`` transaction, which
        holds the database write lock, so no two callers can claim the same row.
        Returns ``None`` when nothing is eligible.
        """
        if not worker_id:
            raise ValueError("worker_id is required")
        now = now or utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                SELECT * FROM download_jobs
                WHERE status=? AND scheduled_at<=?
                ORDER BY scheduled_at ASC, created_at ASC, rowid ASC
                LIMIT 1
                """,
                (JOB_STATUS_PENDING, now),
            )
            row = cur.fetchone()
            if not row:
                conn.commit()
                return None
            job_id = row["id"]
            cur.execute(
                """
                UPDATE download_jobs
                SET status=?, worker_id=?, started_at=?, updated_at=?
                WHERE id=? AND status=?
                """,
                (JOB_STATUS_RUNNING, worker_id, now, now, job_id, JOB_STATUS_PENDING),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            conn.commit()
            updated_row = dict(row)
            updated_row["status"] = JOB_STATUS_RUNNING
            updated_row["worker_id"] = worker_id
            updated_row["started_at"] = now
            updated_row["updated_at"] = now
            return self._row_to_job(updated_row)
        finally:
            conn.close()

    def mark_completed(self, job_id) -> bool:
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE download_jobs
                SET status=?, finished_at=?, last_error=NULL, worker_id=NULL, updated_at=?
                WHERE id=? AND status=?
                """,
                (JOB_STATUS_COMPLETED, now, now, job_id, JOB_STATUS_RUNNING),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def mark_failed(self, job_id, error_message) -> bool:
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE download_jobs
                SET status=?, finished_at=?, last_error=?, worker_id=NULL, updated_at=?
                WHERE id=? AND status=?
                """,
                (JOB_STATUS_FAILED, now, error_message, now, job_id, JOB_STATUS_RUNNING),
            )
            conn.commit()
            return cur.rowcount == 1
        finally:
            conn.close()

    def reset_running_jobs(self, worker_id):
        """Return this worker's orphaned ``running`` jobs to ``pending``.

        Jobs owned by other worker identities are never touched. Videos left in
        ``downloading`` by the reset jobs go back to ``queued``. Returns the number
        of jobs reset.
        """
        if not worker_id:
            raise ValueError("worker_id is required")
        now = utc_now()
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                "SELECT id, video_id FROM download_jobs WHERE worker_id=? AND status=?",
                (worker_id, JOB_STATUS_RUNNING),
            )
            rows = cur.fetchall()
            if not rows:
                conn.commit()
                return 0
            for row in rows:
                cur.execute(
                    """
                    UPDATE download_jobs
                    SET status=?, worker_id=NULL, started_at=NULL, updated_at=?
                    WHERE id=? AND status=?
                    """,
                    (JOB_STATUS_PENDING, now, row["id"], JOB_STATUS_RUNNING),
                )
                cur.execute(
                    "UPDATE videos SET status=?, updated_at=? WHERE id=? AND status=?",
                    (VIDEO_STATUS_QUEUED, now, row["video_id"], VIDEO_STATUS_DOWNLOADING),
                )
            conn.commit()
            return len(rows)
        finally:
            conn.close()

    def count_by_status(self):
        conn = self._connect()
        try:
            cur = conn.cursor()
            cur.execute("SELECT status, COUNT(*) FROM download_jobs GROUP BY status")
            return {row[0]: row[1] for row in cur.fetchall()}
        finally:
            conn.close()
