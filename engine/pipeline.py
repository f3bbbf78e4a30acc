import logging
import os

from db.videos import VIDEO_STATUS_UPLOADED
from engine.errors import PipelineError, VideoGoneError, VideoNotFoundError, describe_failure
from engine.logs import log_event

logger = logging.getLogger(__name__)


class JobPipeline:
    """Run one claimed job through Load, Mark, Resolve, Fetch, Upload and Finalize.

    ``execute`` never raises: every failure is converted into the failed state
    for both the job and its video, and the temp file is always removed.
    """

    def __init__(self, job_store, video_store, extractor, fetcher, uploader):
        self.job_store = job_store
        self.video_store = video_store
        self.extractor = extractor
        self.fetcher = fetcher
        self.uploader = uploader

    def execute(self, job, cancel=None) -> bool:
        fetch_result = None
        log_event(logging.INFO, "job_started", job_id=job.id, video_id=job.video_id, retry=job.is_retry)
        try:
            video = self._load(job)
            if video.status == VIDEO_STATUS_UPLOADED:
                return self._skip_uploaded(job, video)
            if not self.video_store.mark_downloading(video.id):
                self._refuse_download(video.id)
            url, meta = self._resolve(video, cancel)
            if cancel is not None:
                cancel.raise_if_cancelled()
            fetch_result = self.fetcher.fetch(url, hints=meta, cancel=cancel)
            if cancel is not None:
                cancel.raise_if_cancelled()
            ref = self.uploader.upload(fetch_result, video, cancel)
            self.video_store.mark_uploaded(video.id, ref)
            if not self.job_store.mark_completed(job.id):
                logger.warning("job %s was no longer running at completion", job.id)
            log_event(
                logging.INFO,
                "job_completed",
                job_id=job.id,
                video_id=video.id,
                bucket=ref.bucket,
                object_key=ref.object_key,
                filesize=ref.filesize,
            )
            return True
        except Exception as exc:
            self._finalize_failure(job, exc)
            return False
        finally:
            if fetch_result is not None:
                self._discard(fetch_result.path)

    def _load(self, job):
        video = self.video_store.get_video(job.video_id)
        if video is None:
            raise VideoNotFoundError(f"video {job.video_id} does not exist")
        if video.is_deleted:
            raise VideoGoneError(f"video {video.id} is marked for deletion")
        return video

    def _skip_uploaded(self, job, video):
        if not self.job_store.mark_completed(job.id):
            logger.warning("job %s was no longer running at completion", job.id)
        log_event(
            logging.INFO,
            "job_skipped_already_uploaded",
            job_id=job.id,
            video_id=video.id,
            object_key=video.object_key,
        )
        return True

    def _refuse_download(self, video_id):
        current = self.video_store.get_video(video_id)
        if current is None:
            raise VideoNotFoundError(f"video {video_id} does not exist")
        if current.is_deleted:
            raise VideoGoneError(f"video {video_id} was deleted before download started")
        raise PipelineError(f"video {video_id} is not downloadable in status {current.status}")

    def _resolve(self, video, cancel):
        if video.video_url_direct:
            return video.video_url_direct, dict(video.video_url_meta)
        resolved = self.extractor.resolve(video, cancel)
        # Persist before fetching so a later failure still keeps the URL.
        self.video_store.save_direct_url(video.id, resolved.url, resolved.meta)
        return resolved.url, dict(resolved.meta)

    def _finalize_failure(self, job, exc):
        error = describe_failure(exc)
        if not isinstance(exc, PipelineError):
            logger.exception("unexpected error in job %s", job.id)
        try:
            self.video_store.mark_failed(job.video_id, error)
        except Exception:
            logger.exception("could not record failure on video %s", job.video_id)
        try:
            self.job_store.mark_failed(job.id, error)
        except Exception:
            logger.exception("could not record failure on job %s", job.id)
        log_event(logging.WARNING, "job_failed", job_id=job.id, video_id=job.video_id, error=error)

    @staticmethod
    def _discard(path):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("could not remove temp file %s", path, exc_info=True)
