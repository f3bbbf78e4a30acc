"""Read-only views over the job and video tables for operators."""

from db.videos import STORAGE_FIELDS, VIDEO_STATUS_UPLOADED, connect, init_db
from engine.job_queue import JOB_STATUS_FAILED, JOB_STATUS_RUNNING

_REQUIRED_WHEN_UPLOADED = ("bucket", "object_key", "filesize", "mime_type")


def summarize(db_path, *, recent_failures=10):
    init_db(db_path)
    conn = connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute("SELECT status, COUNT(*) FROM videos GROUP BY status")
        videos = {row[0]: row[1] for row in cur.fetchall()}
        cur.execute("SELECT status, COUNT(*) FROM download_jobs GROUP BY status")
        jobs = {row[0]: row[1] for row in cur.fetchall()}
        cur.execute(
            "SELECT DISTINCT worker_id FROM download_jobs WHERE status=? AND worker_id IS NOT NULL",
            (JOB_STATUS_RUNNING,),
        )
        workers = sorted(row[0] for row in cur.fetchall())
        cur.execute(
            """
            SELECT id, video_id, last_error, finished_at FROM download_jobs
            WHERE status=?
            ORDER BY finished_at DESC, rowid DESC
            LIMIT ?
            """,
            (JOB_STATUS_FAILED, int(recent_failures)),
        )
        failures = [dict(row) for row in cur.fetchall()]
    finally:
        conn.close()
    return {
        "videos": videos,
        "jobs": jobs,
        "active_workers": workers,
        "recent_failures": failures,
    }


def find_storage_inconsistencies(db_path):
    """Ids of videos whose storage fields disagree with their status.

    Uploaded rows need bucket, key, size and mime type; every other status must
    carry no storage reference at all.
    """
    init_db(db_path)
    conn = connect(db_path)
    try:
        cur = conn.cursor()
        cur.execute(f"SELECT id, status, {', '.join(STORAGE_FIELDS)} FROM videos ORDER BY rowid")
        rows = cur.fetchall()
    finally:
        conn.close()
    bad = []
    for row in rows:
        if row["status"] == VIDEO_STATUS_UPLOADED:
            if any(row[name] in (None, "") for name in _REQUIRED_WHEN_UPLOADED):
                bad.append(row["id"])
        elif any(row[name] is not None for name in STORAGE_FIELDS):
            bad.append(row["id"])
    return bad
