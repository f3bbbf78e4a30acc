import logging
import os
from typing import Optional

import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from config.settings import load_settings
from db.videos import (
    ENQUEUEABLE_VIDEO_STATUSES,
    VIDEO_STATUS_DOWNLOADING,
    VIDEO_STATUS_FAILED,
    VIDEO_STATUS_UPLOADED,
    VideoStore,
)
from engine.errors import StorageFailedError
from engine.job_queue import ENQUEUE_DUPLICATE, ENQUEUE_GONE, ENQUEUE_NOT_FOUND, DownloadJobStore
from engine.json_utils import safe_json_dumps
from engine.logs import log_event, setup_logging
from engine.status import find_storage_inconsistencies, summarize
from engine.uploader import build_storage

APP_NAME = "trendvault"

_TRUST_PROXY = os.environ.get("TRENDVAULT_TRUST_PROXY", "").strip().lower() in {"1", "true", "yes"}


class DownloadRequest(BaseModel):
    payload: Optional[dict] = None


class SafeJSONResponse(JSONResponse):
    def render(self, content):
        return safe_json_dumps(content, allow_nan=False, separators=(",", ":")).encode("utf-8")


def _configure_state(app, settings, storage=None):
    app.state.settings = settings
    app.state.videos = VideoStore(settings.db_path)
    app.state.jobs = DownloadJobStore(settings.db_path)
    app.state.storage = storage if storage is not None else build_storage(settings)


def _lookup_video(request: Request, video_id):
    videos = request.app.state.videos
    video = videos.get_video(video_id) or videos.get_by_external_id(video_id)
    if video is None:
        raise HTTPException(status_code=404, detail="Video not found")
    return video


def _download_response(request: Request, video_id, payload=None):
    state = request.app.state
    video = _lookup_video(request, video_id)
    if video.is_deleted:
        return SafeJSONResponse({"error": "Video has been deleted"}, status_code=410)

    if video.status in ENQUEUEABLE_VIDEO_STATUSES:
        job_id, created, reason = state.jobs.enqueue_job(video.id, payload=payload)
        if reason == ENQUEUE_GONE:
            return SafeJSONResponse({"error": "Video has been deleted"}, status_code=410)
        if reason == ENQUEUE_NOT_FOUND:
            raise HTTPException(status_code=404, detail="Video not found")
        if reason and reason != ENQUEUE_DUPLICATE:
            # Status moved on between the read and the enqueue; report the fresh state.
            return _download_response(request, video.id)
        return SafeJSONResponse(
            {"status": "queued", "message": "Download queued", "job_id": job_id, "created": created},
            status_code=202,
        )

    if video.status == VIDEO_STATUS_DOWNLOADING:
        return SafeJSONResponse(
            {"status": "downloading", "message": "Download in progress"},
            status_code=202,
        )

    if video.status == VIDEO_STATUS_UPLOADED:
        if not video.bucket or not video.object_key:
            return SafeJSONResponse({"error": "Storage metadata missing despite status"}, status_code=500)
        ttl = state.settings.signed_url_ttl_seconds
        try:
            url = state.storage.signed_url(video.bucket, video.object_key, ttl)
        except StorageFailedError as exc:
            logging.error("signed url failed video_id=%s err=%s", video.id, exc)
            return SafeJSONResponse({"error": "Failed to generate download URL"}, status_code=500)
        return {
            "status": "uploaded",
            "download_url": url,
            "expires_in": ttl,
            "filesize": video.filesize,
            "mime_type": video.mime_type,
            "downloaded_at": video.downloaded_at,
        }

    if video.status == VIDEO_STATUS_FAILED:
        return SafeJSONResponse(
            {
                "status": "failed",
                "error": video.last_error or "Download failed",
                "attempts": video.attempts,
                "retry_available": video.attempts < state.settings.max_attempts,
            },
            status_code=500,
        )

    return SafeJSONResponse({"error": "Unknown video status", "status": video.status}, status_code=500)


def create_app(settings=None, *, storage=None):
    app = FastAPI(
        title=APP_NAME,
        description="Operator API for the trendvault download queue.",
        default_response_class=SafeJSONResponse,
    )
    if _TRUST_PROXY:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")
    if settings is not None:
        _configure_state(app, settings, storage)

    @app.on_event("startup")
    async def startup():
        if getattr(app.state, "settings", None) is None:
            loaded = load_settings(os.environ.get("TRENDVAULT_CONFIG"))
            setup_logging(loaded.log_dir, loaded.log_level)
            _configure_state(app, loaded, storage)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/status")
    def api_status(request: Request):
        db_path = request.app.state.settings.db_path
        status = summarize(db_path)
        status["storage_inconsistencies"] = find_storage_inconsistencies(db_path)
        return status

    @app.get("/api/videos/{video_id}")
    def api_get_video(video_id: str, request: Request):
        video = _lookup_video(request, video_id)
        jobs = request.app.state.jobs.list_jobs(video_id=video.id)
        return {"video": video, "jobs": jobs}

    @app.get("/api/videos/{video_id}/download")
    def api_download(video_id: str, request: Request):
        return _download_response(request, video_id)

    @app.post("/api/videos/{video_id}/download")
    def api_request_download(video_id: str, request: Request, body: Optional[DownloadRequest] = Body(None)):
        return _download_response(request, video_id, payload=body.payload if body else None)

    @app.post("/api/videos/{video_id}/retry")
    def api_retry(video_id: str, request: Request):
        state = request.app.state
        video = _lookup_video(request, video_id)
        job_id, reason = state.jobs.requeue_failed_video(video.id, max_attempts=state.settings.max_attempts)
        if reason == ENQUEUE_NOT_FOUND:
            raise HTTPException(status_code=404, detail="Video not found")
        if reason == ENQUEUE_GONE:
            raise HTTPException(status_code=410, detail="Video has been deleted")
        if reason == "not_failed":
            raise HTTPException(status_code=400, detail="Video is not in failed state")
        if reason == "max_attempts":
            raise HTTPException(status_code=400, detail="Maximum retry attempts exceeded")
        if reason == ENQUEUE_DUPLICATE:
            raise HTTPException(status_code=409, detail="A download job is already active")
        log_event(logging.INFO, "retry_requested", video_id=video.id, job_id=job_id)
        return {"status": "queued", "message": "Retry scheduled", "job_id": job_id}

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "api.main:app",
        host=os.environ.get("TRENDVAULT_API_HOST", "127.0.0.1"),
        port=int(os.environ.get("TRENDVAULT_API_PORT", "8090")),
    )
