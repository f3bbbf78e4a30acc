import hashlib
import logging
import os
import re
import time
from functools import partial
from pathlib import Path
from uuid import uuid4

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from db.videos import StorageReference
from engine.cancel import run_cancellable
from engine.errors import StorageFailedError
from engine.paths import ensure_dir
from media.sniff import detect_mime_type, extension_for_mime

logger = logging.getLogger(__name__)

KEY_PREFIX = "videos"
COPY_CHUNK_SIZE = 1024 * 1024
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_segment(value):
    cleaned = _UNSAFE_KEY_CHARS.sub("_", str(value or "")).strip("._")
    return cleaned or "unknown"


def build_object_key(external_id, extension=".mp4", *, now_ms=None, token=None):
    """``videos/<id>/<id>_<epoch ms>_<token><ext>``; the token keeps retried uploads apart."""
    segment = _safe_segment(external_id)
    now_ms = int(time.time() * 1000) if now_ms is None else int(now_ms)
    token = token or uuid4().hex[:8]
    if extension and not extension.startswith("."):
        extension = f".{extension}"
    return f"{KEY_PREFIX}/{segment}/{segment}_{now_ms}_{token}{extension or ''}"


def _md5_file(path):
    digest = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


class _CancellableReader:
    """File body for ``put_object`` that stops handing out bytes once the token fires."""

    def __init__(self, handle, cancel):
        self._handle = handle
        self._cancel = cancel

    def read(self, size=-1):
        self._cancel.raise_if_cancelled()
        return self._handle.read(size)

    def seek(self, offset, whence=os.SEEK_SET):
        return self._handle.seek(offset, whence)

    def tell(self):
        return self._handle.tell()


class ObjectStorage:
    """Blob sink: ``put_file`` returns ``{"etag": ...}``; ``signed_url`` returns a time-bounded read URL."""

    provider = "base"

    def put_file(self, bucket, key, path, content_type, cancel=None):
        raise NotImplementedError

    def signed_url(self, bucket, key, expires_in):
        raise NotImplementedError


class S3ObjectStorage(ObjectStorage):
    provider = "s3"

    def __init__(self, *, endpoint_url=None, region=None, access_key=None, secret_key=None, client=None):
        self._client = client or boto3.client(
            "s3",
            region_name=region or "auto",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(signature_version="s3v4", s3={"addressing_style": "path"}),
        )

    def _put(self, bucket, key, path, content_type, cancel):
        try:
            with open(path, "rb") as handle:
                body = _CancellableReader(handle, cancel) if cancel is not None else handle
                return self._client.put_object(
                    Bucket=bucket,
                    Key=key,
                    Body=body,
                    ContentType=content_type,
                    ContentLength=os.path.getsize(path),
                )
        except ClientError as exc:
            code = (exc.response.get("Error") or {}).get("Code") or "ClientError"
            raise StorageFailedError(f"put_object rejected ({code}) for {bucket}/{key}") from exc
        except (BotoCoreError, OSError) as exc:
            if cancel is not None:
                cancel.raise_if_cancelled()
            raise StorageFailedError(f"put_object failed for {bucket}/{key}: {exc}") from exc

    def put_file(self, bucket, key, path, content_type, cancel=None):
        # botocore exposes no abort; an abandoned request finishes or fails on its own thread.
        resp = run_cancellable(partial(self._put, bucket, key, path, content_type, cancel), cancel)
        etag = str(resp.get("ETag") or "").strip('"') or None
        return {"etag": etag}

    def signed_url(self, bucket, key, expires_in):
        try:
            return self._client.generate_presigned_url(
                ClientMethod="get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=int(expires_in),
            )
        except (ClientError, BotoCoreError) as exc:
            raise StorageFailedError(f"could not sign {bucket}/{key}: {exc}") from exc


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed storage under ``<root>/<bucket>/<key>``; URLs are ``file://`` paths."""

    provider = "local"

    def __init__(self, root):
        self.root = Path(root)

    def _target(self, bucket, key):
        target = (self.root / bucket / key).resolve()
        base = (self.root / bucket).resolve()
        if base not in target.parents:
            raise StorageFailedError(f"object key escapes bucket: {key}")
        return target

    def put_file(self, bucket, key, path, content_type, cancel=None):
        target = self._target(bucket, key)
        staging = target.with_name(target.name + ".part")
        try:
            ensure_dir(target.parent)
            with open(path, "rb") as src, open(staging, "wb") as dst:
                while True:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    chunk = src.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    dst.write(chunk)
            if cancel is not None:
                cancel.raise_if_cancelled()
            os.replace(staging, target)
        except OSError as exc:
            raise StorageFailedError(f"local write failed for {bucket}/{key}: {exc}") from exc
        finally:
            if staging.exists():
                staging.unlink()
        return {"etag": _md5_file(target)}

    def signed_url(self, bucket, key, expires_in):
        target = self._target(bucket, key)
        if not target.exists():
            raise StorageFailedError(f"object not found: {bucket}/{key}")
        return target.as_uri()


class Uploader:
    def __init__(self, storage, bucket):
        if not bucket:
            raise ValueError("storage bucket is required")
        self.storage = storage
        self.bucket = bucket

    def upload(self, fetch_result, video, cancel=None) -> StorageReference:
        if cancel is not None:
            cancel.raise_if_cancelled()
        mime_type = detect_mime_type(fetch_result.path, fetch_result.content_type)
        key = build_object_key(video.external_id, extension_for_mime(mime_type))
        result = self.storage.put_file(self.bucket, key, fetch_result.path, mime_type, cancel=cancel) or {}
        # A cancel that lands during the write leaves an orphaned object under a never-reused key.
        if cancel is not None:
            cancel.raise_if_cancelled()
        etag = result.get("etag") or fetch_result.md5
        logger.info("uploaded %s bytes to %s/%s", fetch_result.size, self.bucket, key)
        return StorageReference(
            provider=self.storage.provider,
            bucket=self.bucket,
            object_key=key,
            etag=etag,
            filesize=fetch_result.size,
            mime_type=mime_type,
        )


def build_storage(settings):
    provider = (settings.storage_provider or "local").lower()
    if provider == "s3":
        return S3ObjectStorage(
            endpoint_url=settings.s3_endpoint_url,
            region=settings.s3_region,
            access_key=settings.s3_access_key,
            secret_key=settings.s3_secret_key,
        )
    if provider == "local":
        return LocalObjectStorage(settings.storage_root)
    raise ValueError(f"unsupported storage provider: {settings.storage_provider}")
