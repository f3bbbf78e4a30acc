"""Resolve a video's page URL into a directly fetchable media URL.

Resolution is best effort: an ordered list of strategies is tried until one
produces a URL or the extraction budget runs out.
"""

import html
import json
import logging
import re
from dataclasses import dataclass, field
from functools import partial
from urllib.parse import urljoin

import requests
from yt_dlp import YoutubeDL

from engine.cancel import Deadline, run_cancellable
from engine.errors import CancelledError, ResolutionFailedError
from engine.json_utils import string_map
from engine.logs import log_event

logger = logging.getLogger(__name__)

_MEDIA_URL_MARKERS = (".mp4", "/play/")
_OG_VIDEO_RE = re.compile(
    r"<meta[^>]+property=[\"']og:video(?::url|:secure_url)?[\"'][^>]*content=[\"']([^\"']+)[\"']",
    re.IGNORECASE,
)
_VIDEO_SRC_RE = re.compile(r"<(?:video|source)[^>]+src=[\"']([^\"']+)[\"']", re.IGNORECASE)
_SCRIPT_JSON_RE = re.compile(
    r"<script[^>]*type=[\"']application/(?:ld\+)?json[\"'][^>]*>(.*?)</script>",
    re.IGNORECASE | re.DOTALL,
)
_MIN_STRATEGY_SECONDS = 1.0


@dataclass
class ResolvedMedia:
    url: str
    meta: dict[str, str] = field(default_factory=dict)


def _is_http_url(value):
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def looks_like_media_url(url):
    if not _is_http_url(url):
        return False
    lowered = url.lower()
    return any(marker in lowered for marker in _MEDIA_URL_MARKERS)


def find_media_url_in_json(data):
    """Depth-first search of decoded JSON for the first http(s) string that looks like media."""
    stack = [data]
    while stack:
        node = stack.pop()
        if isinstance(node, str):
            if looks_like_media_url(node):
                return node
        elif isinstance(node, dict):
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))
    return None


class ResolutionStrategy:
    name = "base"

    def resolve(self, page_url, *, timeout, cancel=None):
        """Return a ``ResolvedMedia`` or ``None`` when this strategy found nothing."""
        raise NotImplementedError


class YtDlpInfoStrategy(ResolutionStrategy):
    name = "ytdlp"

    def __init__(self, *, user_agent=None):
        self.user_agent = user_agent

    def _options(self, timeout):
        opts = {
            "skip_download": True,
            "quiet": True,
            "no_warnings": True,
            "noplaylist": True,
            "cachedir": False,
            "socket_timeout": max(1, int(timeout)),
        }
        if self.user_agent:
            opts["http_headers"] = {"User-Agent": self.user_agent}
        return opts

    @staticmethod
    def _pick_format(info):
        formats = [fmt for fmt in (info.get("formats") or []) if isinstance(fmt, dict)]
        progressive = [
            fmt
            for fmt in formats
            if _is_http_url(fmt.get("url"))
            and fmt.get("vcodec") != "none"
            and fmt.get("acodec") != "none"
            and fmt.get("protocol", "https") in ("http", "https")
        ]
        if progressive:
            return max(progressive, key=lambda fmt: (fmt.get("height") or 0, fmt.get("tbr") or 0))
        if _is_http_url(info.get("url")):
            return info
        return None

    def _extract_info(self, page_url, timeout):
        with YoutubeDL(self._options(timeout)) as ydl:
            return ydl.extract_info(page_url, download=False)

    def resolve(self, page_url, *, timeout, cancel=None):
        # yt-dlp has no abort hook; an abandoned extraction runs out on its socket timeout.
        info = run_cancellable(self._extract_info, cancel, page_url, timeout)
        if not isinstance(info, dict):
            return None
        chosen = self._pick_format(info)
        if not chosen:
            return None
        headers = chosen.get("http_headers") or info.get("http_headers") or {}
        meta = {
            "source": "ytdlp",
            "content_type": f"video/{chosen.get('ext')}" if chosen.get("ext") else None,
            "content_length": chosen.get("filesize") or chosen.get("filesize_approx"),
            "format_id": chosen.get("format_id"),
            "user_agent": headers.get("User-Agent"),
            "referer": headers.get("Referer"),
        }
        return ResolvedMedia(url=chosen["url"], meta=string_map(meta))


class PageScanStrategy(ResolutionStrategy):
    """Fetch the page HTML and look for media URLs in markup and embedded JSON."""

    name = "page_scan"

    def __init__(self, *, user_agent=None, session=None):
        self.user_agent = user_agent
        self.session = session or requests.Session()

    def _candidates(self, body, base_url):
        for match in _OG_VIDEO_RE.finditer(body):
            yield "og:video", urljoin(base_url, html.unescape(match.group(1)))
        for match in _VIDEO_SRC_RE.finditer(body):
            src = html.unescape(match.group(1))
            if src.startswith("blob:"):
                continue
            yield "video_tag", urljoin(base_url, src)
        for match in _SCRIPT_JSON_RE.finditer(body):
            try:
                data = json.loads(match.group(1))
            except ValueError:
                continue
            found = find_media_url_in_json(data)
            if found:
                yield "embedded_json", found

    def resolve(self, page_url, *, timeout, cancel=None):
        headers = {"User-Agent": self.user_agent} if self.user_agent else {}
        request = partial(self.session.get, page_url, headers=headers, timeout=timeout)
        response = run_cancellable(request, cancel)
        unregister = cancel.on_cancel(response.close) if cancel is not None else (lambda: None)
        try:
            response.raise_for_status()
            body = response.text or ""
        finally:
            unregister()
        if cancel is not None:
            cancel.raise_if_cancelled()
        for capture, url in self._candidates(body, response.url or page_url):
            if _is_http_url(url):
                return ResolvedMedia(
                    url=url,
                    meta={"source": "page_scan", "capture": capture, "referer": page_url},
                )
        return None


class BrowserSniffStrategy(ResolutionStrategy):
    """Render the page headless and watch network responses for the media stream."""

    name = "browser"

    PLAY_SELECTORS = (
        "[data-e2e='video-play']",
        ".xgplayer-play",
        "button[aria-label*='play' i]",
        "video",
    )

    def __init__(self, *, user_agent=None, settle_seconds=5.0):
        self.user_agent = user_agent
        self.settle_seconds = settle_seconds

    def resolve(self, page_url, *, timeout, cancel=None):
        from playwright.sync_api import Error as PlaywrightError
        from playwright.sync_api import sync_playwright

        deadline = Deadline(timeout)
        found = {}

        def _on_response(response):
            if found:
                return
            try:
                url = response.url
                content_type = (response.headers.get("content-type") or "").lower()
                if content_type.startswith("video/") or looks_like_media_url(url):
                    found.update(
                        url=url,
                        capture="network",
                        content_type=content_type,
                        content_length=response.headers.get("content-length"),
                    )
                elif "application/json" in content_type:
                    media_url = find_media_url_in_json(response.json())
                    if media_url:
                        found.update(url=media_url, capture="json_response")
            except (PlaywrightError, ValueError):
                logger.debug("response inspection failed", exc_info=True)

        with sync_playwright() as pw:
            browser = pw.chromium.launch(headless=True)
            try:
                context = browser.new_context(user_agent=self.user_agent) if self.user_agent else browser.new_context()
                page = context.new_page()
                page.on("response", _on_response)
                page.goto(
                    page_url,
                    wait_until="domcontentloaded",
                    timeout=int(max(deadline.remaining(), _MIN_STRATEGY_SECONDS) * 1000),
                )
                if not found:
                    self._click_play(page, PlaywrightError)
                settle = Deadline(min(self.settle_seconds, deadline.remaining()))
                while not found and not settle.expired:
                    if cancel is not None and cancel.cancelled:
                        raise CancelledError(cancel.reason)
                    page.wait_for_timeout(250)
                if not found:
                    src = page.eval_on_selector_all(
                        "video", "els => els.map(e => e.currentSrc || e.src).filter(Boolean)"
                    )
                    for candidate in src or []:
                        if _is_http_url(candidate):
                            found.update(url=candidate, capture="video_element")
                            break
            finally:
                browser.close()

        if not found:
            return None
        url = found.pop("url")
        return ResolvedMedia(
            url=url,
            meta=string_map({"source": "browser", "referer": page_url, **found}),
        )

    def _click_play(self, page, error_type):
        for selector in self.PLAY_SELECTORS:
            try:
                element = page.query_selector(selector)
                if element:
                    element.click(timeout=2000)
                    return True
            except error_type:
                continue
        return False


class Extractor:
    def __init__(self, strategies, timeout_seconds):
        if not strategies:
            raise ValueError("at least one resolution strategy is required")
        self.strategies = list(strategies)
        self.timeout_seconds = float(timeout_seconds)

    def resolve(self, video, cancel=None) -> ResolvedMedia:
        page_url = video.video_url
        if not _is_http_url(page_url):
            raise ResolutionFailedError(f"video {video.id} has no page URL")
        deadline = Deadline(self.timeout_seconds)
        errors = []
        for strategy in self.strategies:
            if cancel is not None:
                cancel.raise_if_cancelled()
            remaining = deadline.remaining()
            if remaining < _MIN_STRATEGY_SECONDS:
                errors.append(f"{strategy.name}: budget exhausted")
                break
            attempt = partial(strategy.resolve, page_url, timeout=remaining, cancel=cancel)
            try:
                resolved = run_cancellable(attempt, cancel, timeout=remaining)
            except CancelledError:
                raise
            except TimeoutError:
                errors.append(f"{strategy.name}: budget exhausted")
                break
            except Exception as exc:
                # A cancel that tore down the strategy surfaces as its own error.
                if cancel is not None:
                    cancel.raise_if_cancelled()
                logger.debug("strategy %s failed for %s", strategy.name, page_url, exc_info=True)
                errors.append(f"{strategy.name}: {exc}")
                continue
            if cancel is not None:
                cancel.raise_if_cancelled()
            if deadline.expired:
                errors.append(f"{strategy.name}: budget exhausted")
                break
            if resolved and _is_http_url(resolved.url):
                meta = dict(resolved.meta)
                meta.setdefault("strategy", strategy.name)
                log_event(
                    logging.INFO,
                    "direct_url_resolved",
                    video_id=video.id,
                    strategy=strategy.name,
                )
                return ResolvedMedia(url=resolved.url, meta=string_map(meta))
            errors.append(f"{strategy.name}: no media found")
        detail = "; ".join(errors) or "no strategies attempted"
        raise ResolutionFailedError(f"no direct URL within {self.timeout_seconds:g}s ({detail})")


def build_default_extractor(settings):
    strategies = [
        YtDlpInfoStrategy(user_agent=settings.user_agent),
        PageScanStrategy(user_agent=settings.user_agent),
    ]
    if settings.enable_browser_extraction:
        strategies.append(BrowserSniffStrategy(user_agent=settings.user_agent))
    return Extractor(strategies, settings.extraction_timeout_seconds)
