from __future__ import annotations

import sqlite3
import threading

import pytest

from db.videos import VideoStore
from engine.job_queue import (
    ENQUEUE_DUPLICATE,
    ENQUEUE_GONE,
    ENQUEUE_INELIGIBLE,
    ENQUEUE_NOT_FOUND,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    JOB_STATUS_RUNNING,
    DownloadJobStore,
)


def _stores(tmp_path):
    db_path = tmp_path / "queue.sqlite"
    return VideoStore(db_path), DownloadJobStore(db_path)


def _seed(videos, count, prefix="vid"):
    return [
        videos.upsert_video(external_id=f"{prefix}{i}", video_url=f"https://example.com/video/{i}")
        for i in range(count)
    ]


def test_claim_returns_none_when_queue_is_empty(tmp_path) -> None:
    _videos, jobs = _stores(tmp_path)
    assert jobs.claim_next_job("worker-a") is None


def test_claim_marks_job_running_with_owner(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    (video_id,) = _seed(videos, 1)
    job_id, created, reason = jobs.enqueue_job(video_id)
    assert created is True
    assert reason is None

    claimed = jobs.claim_next_job("worker-a")

    assert claimed.id == job_id
    assert claimed.status == JOB_STATUS_RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at
    stored = jobs.get_job(job_id)
    assert stored.status == JOB_STATUS_RUNNING
    assert stored.worker_id == "worker-a"
    assert jobs.claim_next_job("worker-b") is None


def test_claim_order_is_oldest_scheduled_first(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    first, second, third = _seed(videos, 3)
    late, _, _ = jobs.enqueue_job(first, scheduled_at="2024-01-01T00:00:30+00:00")
    early, _, _ = jobs.enqueue_job(second, scheduled_at="2024-01-01T00:00:10+00:00")
    middle, _, _ = jobs.enqueue_job(third, scheduled_at="2024-01-01T00:00:20+00:00")

    order = [jobs.claim_next_job("worker-a").id for _ in range(3)]

    assert order == [early, middle, late]


def test_claim_skips_jobs_scheduled_in_the_future(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    (video_id,) = _seed(videos, 1)
    jobs.enqueue_job(video_id, scheduled_at="2999-01-01T00:00:00+00:00")

    assert jobs.claim_next_job("worker-a") is None


def test_concurrent_claims_hand_each_job_to_exactly_one_caller(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    job_count = 5
    caller_count = 16
    for video_id in _seed(videos, job_count):
        jobs.enqueue_job(video_id)

    barrier = threading.Barrier(caller_count)
    results = []
    errors = []
    results_lock = threading.Lock()

    def _claim(index):
        store = DownloadJobStore(jobs.db_path)
        barrier.wait()
        try:
            job = store.claim_next_job(f"worker-{index}")
        except sqlite3.Error as exc:
            errors.append(exc)
            return
        with results_lock:
            results.append(job)

    threads = [threading.Thread(target=_claim, args=(i,)) for i in range(caller_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert errors == []
    claimed = [job for job in results if job is not None]
    empty = [job for job in results if job is None]
    assert len(claimed) == job_count
    assert len({job.id for job in claimed}) == job_count
    assert len(empty) == caller_count - job_count
    running = jobs.list_jobs(status=JOB_STATUS_RUNNING)
    assert len(running) == job_count


def test_enqueue_is_noop_while_a_job_is_active(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    (video_id,) = _seed(videos, 1)
    job_id, created, _ = jobs.enqueue_job(video_id)
    again_id, again_created, reason = jobs.enqueue_job(video_id)

    assert created is True
    assert again_created is False
    assert again_id == job_id
    assert reason == ENQUEUE_DUPLICATE
    assert len(jobs.list_jobs(video_id=video_id)) == 1


def test_unique_active_job_is_enforced_by_the_database(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    (video_id,) = _seed(videos, 1)
    jobs.enqueue_job(video_id)

    conn = sqlite3.connect(jobs.db_path)
    try:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                "INSERT INTO download_jobs (id, video_id, status, scheduled_at, created_at, updated_at) "
                "VALUES ('manual', ?, 'running', '2024-01-01', '2024-01-01', '2024-01-01')",
                (video_id,),
            )
    finally:
        conn.close()


def test_enqueue_moves_video_to_queued(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    (video_id,) = _seed(videos, 1)
    jobs.enqueue_job(video_id)
    assert videos.get_video(video_id).status == "queued"


def test_enqueue_rejects_missing_deleted_and_ineligible_videos(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    gone_id, done_id = _seed(videos, 2)
    videos.mark_for_deletion(gone_id)
    conn = sqlite3.connect(jobs.db_path)
    try:
        conn.execute("UPDATE videos SET status='downloading' WHERE id=?", (done_id,))
        conn.commit()
    finally:
        conn.close()

    assert jobs.enqueue_job("missing") == (None, False, ENQUEUE_NOT_FOUND)
    assert jobs.enqueue_job(gone_id) == (None, False, ENQUEUE_GONE)
    assert jobs.enqueue_job(done_id) == (None, False, ENQUEUE_INELIGIBLE)
    assert jobs.list_jobs() == []


def test_terminal_transitions_clear_ownership(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    ok_video, bad_video = _seed(videos, 2)
    jobs.enqueue_job(ok_video)
    jobs.enqueue_job(bad_video)
    first = jobs.claim_next_job("worker-a")
    second = jobs.claim_next_job("worker-a")

    assert jobs.mark_completed(first.id) is True
    assert jobs.mark_failed(second.id, "TransferFailed: boom") is True
    # Already terminal: no further transitions.
    assert jobs.mark_completed(second.id) is False

    done = jobs.get_job(first.id)
    failed = jobs.get_job(second.id)
    assert done.status == JOB_STATUS_COMPLETED
    assert done.worker_id is None
    assert done.finished_at
    assert failed.status == JOB_STATUS_FAILED
    assert failed.worker_id is None
    assert failed.last_error == "TransferFailed: boom"


def test_failed_video_is_requeued_with_a_new_job_row(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    (video_id,) = _seed(videos, 1)
    jobs.enqueue_job(video_id)
    job = jobs.claim_next_job("worker-a")
    videos.mark_failed(video_id, "TransferFailed: timeout")
    jobs.mark_failed(job.id, "TransferFailed: timeout")

    retry_id, reason = jobs.requeue_failed_video(video_id, max_attempts=3)

    assert reason is None
    assert retry_id != job.id
    history = jobs.list_jobs(video_id=video_id)
    assert [entry.status for entry in history] == [JOB_STATUS_FAILED, JOB_STATUS_PENDING]
    assert history[-1].payload == {"retry": True}
    assert history[-1].is_retry
    video = videos.get_video(video_id)
    assert video.status == "queued"
    assert video.last_error is None
    assert video.attempts == 1


def test_requeue_refuses_when_attempts_exhausted_or_not_failed(tmp_path) -> None:
    videos, jobs = _stores(tmp_path)
    exhausted, fresh = _seed(videos, 2)
    for _ in range(3):
        videos.mark_failed(exhausted, "StorageFailed: denied")

    assert jobs.requeue_failed_video(exhausted, max_attempts=3) == (None, "max_attempts")
    assert jobs.requeue_failed_video(fresh, max_attempts=3) == (None, "not_failed")
    assert jobs.requeue_failed_video("missing", max_attempts=3) == (None, ENQUEUE_NOT_FOUND)
