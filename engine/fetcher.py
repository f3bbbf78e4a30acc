import hashlib
import logging
import os
import tempfile
import threading
from dataclasses import dataclass

import requests

from engine.cancel import Deadline
from engine.errors import CancelledError, TransferFailedError
from engine.paths import ensure_dir

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 256


@dataclass(frozen=True)
class FetchResult:
    path: str
    size: int
    md5: str
    content_type: str | None = None


def _remove_quietly(path):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError:
        logger.warning("could not remove temp file %s", path, exc_info=True)


class Fetcher:
    """Stream a direct media URL to a uniquely named temp file."""

    def __init__(
        self,
        *,
        temp_dir,
        min_size_bytes=1000,
        transfer_timeout=120.0,
        connect_timeout=15.0,
        user_agent=None,
        referer=None,
        session=None,
    ):
        self.temp_dir = str(temp_dir)
        self.min_size_bytes = int(min_size_bytes)
        self.transfer_timeout = float(transfer_timeout)
        self.connect_timeout = float(connect_timeout)
        self.user_agent = user_agent
        self.referer = referer
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings, session=None):
        return cls(
            temp_dir=settings.temp_dir,
            min_size_bytes=settings.min_file_size_bytes,
            transfer_timeout=settings.transfer_timeout_seconds,
            connect_timeout=settings.connect_timeout_seconds,
            user_agent=settings.user_agent,
            referer=settings.referer,
            session=session,
        )

    def build_headers(self, hints=None):
        hints = hints or {}
        headers = {"Accept": "*/*"}
        user_agent = hints.get("user_agent") or self.user_agent
        referer = hints.get("referer") or self.referer
        if user_agent:
            headers["User-Agent"] = user_agent
        if referer:
            headers["Referer"] = referer
        return headers

    def fetch(self, url, *, hints=None, cancel=None) -> FetchResult:
        """Download ``url`` and return the validated local file.

        Any failure removes the partial file before raising ``TransferFailedError``
        (or ``CancelledError`` when the job's token fired).
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        ensure_dir(self.temp_dir)
        fd, path = tempfile.mkstemp(prefix="download-", suffix=".tmp", dir=self.temp_dir)
        os.close(fd)
        try:
            return self._stream_to(path, url, self.build_headers(hints), cancel)
        except BaseException:
            _remove_quietly(path)
            raise

    def _stream_to(self, path, url, headers, cancel):
        deadline = Deadline(self.transfer_timeout)
        try:
            response = self.session.get(
                url,
                headers=headers,
                stream=True,
                timeout=(self.connect_timeout, self.transfer_timeout),
            )
        except requests.RequestException as exc:
            self._raise_if_cancelled(cancel)
            raise TransferFailedError(f"request failed: {exc}") from exc

        # The read timeout is per socket read; the timer bounds the whole body.
        overdue = threading.Event()

        def _expire():
            overdue.set()
            response.close()

        timer = threading.Timer(deadline.remaining(), _expire)
        timer.daemon = True
        timer.start()
        unregister = cancel.on_cancel(response.close) if cancel is not None else (lambda: None)
        try:
            if response.status_code >= 400:
                raise TransferFailedError(f"HTTP {response.status_code} from media host")
            content_type = (response.headers.get("Content-Type") or "").lower() or None
            if content_type and content_type.startswith("text/html"):
                raise TransferFailedError("media host returned an HTML page")
            digest = hashlib.md5()
            size = 0
            with open(path, "wb") as handle:
                try:
                    for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                        self._raise_if_cancelled(cancel)
                        if overdue.is_set() or deadline.expired:
                            raise self._overdue()
                        if not chunk:
                            continue
                        handle.write(chunk)
                        digest.update(chunk)
                        size += len(chunk)
                except (requests.RequestException, OSError, AttributeError, ValueError) as exc:
                    # A cancel or the deadline timer closes the response underneath iter_content.
                    self._raise_if_cancelled(cancel)
                    if overdue.is_set():
                        raise self._overdue() from exc
                    raise TransferFailedError(f"stream interrupted: {exc}") from exc
            self._raise_if_cancelled(cancel)
            if overdue.is_set():
                raise self._overdue()
            if size < self.min_size_bytes:
                raise TransferFailedError(
                    f"payload too small ({size} bytes < {self.min_size_bytes})"
                )
            return FetchResult(path=path, size=size, md5=digest.hexdigest(), content_type=content_type)
        finally:
            timer.cancel()
            unregister()
            response.close()

    def _overdue(self):
        return TransferFailedError(f"transfer exceeded {self.transfer_timeout:g}s")

    @staticmethod
    def _raise_if_cancelled(cancel):
        if cancel is not None and cancel.cancelled:
            raise CancelledError(cancel.reason)
