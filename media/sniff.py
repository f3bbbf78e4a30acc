"""Container detection for downloaded media files."""

from __future__ import annotations

import logging
import mimetypes

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "video/mp4"

_EXTENSIONS = {
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/quicktime": ".mov",
    "video/x-matroska": ".mkv",
    "video/x-flv": ".flv",
}

_HEADER_BYTES = 64


def sniff_bytes(header: bytes) -> str | None:
    """Identify a video container from its leading bytes.

    ISO base media files carry ``ftyp`` at offset 4; ``qt`` brands are QuickTime.
    EBML (``1A 45 DF A3``) is WebM when the doctype says so, Matroska otherwise.
    """
    if len(header) >= 12 and header[4:8] == b"ftyp":
        if header[8:10] == b"qt":
            return "video/quicktime"
        return "video/mp4"
    if header.startswith(b"\x1a\x45\xdf\xa3"):
        if b"webm" in header.lower():
            return "video/webm"
        return "video/x-matroska"
    if header.startswith(b"FLV"):
        return "video/x-flv"
    return None


def detect_mime_type(path, fallback: str | None = None) -> str:
    """Return the MIME type of the file at ``path``.

    Magic bytes win; then a usable ``fallback`` (for example the response
    Content-Type); then the file extension; then ``video/mp4``.
    """
    try:
        with open(path, "rb") as handle:
            header = handle.read(_HEADER_BYTES)
    except OSError:
        logger.debug("mime sniff could not read %s", path, exc_info=True)
        header = b""
    detected = sniff_bytes(header)
    if detected:
        return detected
    if fallback:
        cleaned = fallback.split(";", 1)[0].strip().lower()
        if cleaned.startswith("video/"):
            return cleaned
    guessed, _ = mimetypes.guess_type(str(path))
    if guessed and guessed.startswith("video/"):
        return guessed
    return DEFAULT_MIME_TYPE


def extension_for_mime(mime_type: str | None) -> str:
    if not mime_type:
        return ".mp4"
    return _EXTENSIONS.get(mime_type.lower()) or mimetypes.guess_extension(mime_type) or ".mp4"
