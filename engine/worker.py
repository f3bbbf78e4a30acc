import logging
import threading
import time

from db.videos import VideoStore
from engine.cancel import CancelToken
from engine.extractor import build_default_extractor
from engine.fetcher import Fetcher
from engine.job_queue import DownloadJobStore
from engine.logs import log_event
from engine.paths import build_engine_paths
from engine.pipeline import JobPipeline
from engine.uploader import Uploader, build_storage

logger = logging.getLogger(__name__)

CLAIM_BACKOFF_FACTOR = 2


class DownloadWorkerEngine:
    """Polls the job store and runs up to ``max_concurrent`` jobs on their own threads.

    The polling loop never waits for a job to finish. Each execution owns a
    ``CancelToken``; ``stop()`` fires all of them and waits a bounded grace period.
    """

    def __init__(self, settings, job_store, pipeline, *, stop_event=None):
        if not settings.worker_id:
            raise ValueError("worker_id is required")
        self.settings = settings
        self.worker_id = settings.worker_id
        self.max_concurrent = max(1, int(settings.max_concurrent))
        self.poll_seconds = settings.poll_interval_seconds
        self.store = job_store
        self.pipeline = pipeline
        self.stop_event = stop_event or threading.Event()
        self._in_flight = {}
        self._lock = threading.Lock()

    @property
    def in_flight(self):
        with self._lock:
            return sorted(self._in_flight)

    def has_capacity(self):
        with self._lock:
            return len(self._in_flight) < self.max_concurrent

    def recover_stale_jobs(self):
        try:
            reset = self.store.reset_running_jobs(self.worker_id)
        except Exception as exc:
            log_event(logging.ERROR, "stale_job_recovery_failed", worker_id=self.worker_id, error=str(exc))
            return 0
        if reset:
            log_event(logging.WARNING, "stale_jobs_recovered", worker_id=self.worker_id, count=reset)
        return reset

    def run_once(self):
        """Claim and start at most one job. Claim errors propagate to the caller."""
        if self.stop_event.is_set() or not self.has_capacity():
            return None
        job = self.store.claim_next_job(self.worker_id)
        if not job:
            return None
        log_event(logging.INFO, "job_claimed", job_id=job.id, video_id=job.video_id, worker_id=self.worker_id)
        self._start(job)
        return job

    def run_loop(self, *, stop_event=None):
        if stop_event is not None:
            self.stop_event = stop_event
        log_event(
            logging.INFO,
            "worker_started",
            worker_id=self.worker_id,
            max_concurrent=self.max_concurrent,
            poll_interval_ms=self.settings.poll_interval_ms,
        )
        self.recover_stale_jobs()
        try:
            while not self.stop_event.is_set():
                if not self.has_capacity():
                    self.stop_event.wait(self.poll_seconds)
                    continue
                try:
                    job = self.run_once()
                except Exception as exc:
                    log_event(logging.ERROR, "claim_failed", worker_id=self.worker_id, error=str(exc))
                    self.stop_event.wait(self.poll_seconds * CLAIM_BACKOFF_FACTOR)
                    continue
                if job is None:
                    self.stop_event.wait(self.poll_seconds)
        finally:
            self.stop()

    def _start(self, job):
        token = CancelToken()
        thread = threading.Thread(
            target=self._execute,
            args=(job, token),
            name=f"download-job-{job.id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._in_flight[job.id] = (thread, token)
        thread.start()

    def _execute(self, job, token):
        try:
            self.pipeline.execute(job, token)
        except Exception:
            logger.exception("job %s escaped the pipeline", job.id)
        finally:
            with self._lock:
                self._in_flight.pop(job.id, None)

    def cancel_job(self, job_id, *, reason=None):
        with self._lock:
            entry = self._in_flight.get(job_id)
        if not entry:
            return False
        entry[1].cancel(reason or "cancelled by operator")
        return True

    def wait_for_idle(self, timeout=None):
        """Join in-flight executions; returns True when none remain."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                threads = [thread for thread, _ in self._in_flight.values()]
            if not threads:
                return True
            for thread in threads:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                thread.join(remaining)
            if deadline is not None and time.monotonic() >= deadline:
                with self._lock:
                    return not self._in_flight

    def stop(self, grace_seconds=None):
        """Signal stop, cancel in-flight jobs and wait up to the grace period.

        Returns the ids of executions still running after the grace period.
        """
        grace = self.settings.shutdown_grace_seconds if grace_seconds is None else grace_seconds
        self.stop_event.set()
        with self._lock:
            entries = list(self._in_flight.items())
        if entries:
            log_event(logging.INFO, "worker_stopping", worker_id=self.worker_id, in_flight=len(entries))
        for _job_id, (_thread, token) in entries:
            token.cancel("worker stopping")
        self.wait_for_idle(grace)
        remaining = self.in_flight
        log_event(logging.INFO, "worker_stopped", worker_id=self.worker_id, abandoned=remaining)
        return remaining


def build_worker(settings, *, stop_event=None, session=None):
    """Wire the store, pipeline stages and engine from settings."""
    build_engine_paths(
        db_path=settings.db_path,
        temp_dir=settings.temp_dir,
        log_dir=settings.log_dir,
        storage_root=settings.storage_root,
    )
    job_store = DownloadJobStore(settings.db_path)
    video_store = VideoStore(settings.db_path)
    pipeline = JobPipeline(
        job_store,
        video_store,
        build_default_extractor(settings),
        Fetcher.from_settings(settings, session=session),
        Uploader(build_storage(settings), settings.storage_bucket),
    )
    return DownloadWorkerEngine(settings, job_store, pipeline, stop_event=stop_event)
