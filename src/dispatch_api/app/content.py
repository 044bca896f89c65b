"""External content referenced by a workflow: video references and article text."""

from __future__ import annotations

import http.client
import logging
import re
from dataclasses import dataclass
from typing import Protocol
from urllib import request

import trafilatura

logger = logging.getLogger(__name__)

_YT_VIDEO_ID_RE = re.compile(
    r"(?:youtube\.com/(?:watch\?(?:.*&)?v=|shorts/|embed/)|youtu\.be/)([a-zA-Z0-9_-]{6,})"
)


@dataclass(frozen=True)
class MediaReference:
    """Video the model can watch directly (multimodal call)."""

    uri: str
    mime_type: str = "video/mp4"


def extract_youtube_video_id(url: str) -> str | None:
    match = _YT_VIDEO_ID_RE.search(url or "")
    return match.group(1) if match else None


def media_reference_for(url: str) -> MediaReference | None:
    """Return an attachable media reference for recognised video URLs."""
    video_id = extract_youtube_video_id(url)
    if video_id is None:
        return None
    return MediaReference(uri=f"https://www.youtube.com/watch?v={video_id}")


def truncate_text(text: str, max_chars: int) -> str:
    """Cut text to `max_chars`, marking the cut with an ellipsis."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return text[:max_chars].rstrip() + "…"


class ContentFetcher(Protocol):
    def fetch_article_text(self, url: str) -> str: ...


class HttpArticleFetcher:
    """Download a web page and keep its main text.

    Failures are logged and return an empty string: the prompt then tells the
    model to work from the URL and title alone.
    """

    def __init__(self, *, timeout_s: float, max_chars: int, user_agent: str) -> None:
        self.timeout_s = timeout_s
        self.max_chars = max_chars
        self.user_agent = user_agent

    def fetch_article_text(self, url: str) -> str:
        if not url.startswith(("http://", "https://")):
            logger.warning("article_fetch skipped url=%s reason=unsupported_scheme", url)
            return ""
        req = request.Request(url=url, headers={"User-Agent": self.user_agent}, method="GET")
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                charset = response.headers.get_content_charset() or "utf-8"
                html = response.read().decode(charset, errors="replace")
        except (OSError, LookupError, ValueError, http.client.HTTPException) as exc:
            # Network errors, resets mid-read and unknown charsets all degrade to no text.
            logger.warning("article_fetch failed url=%s reason=%s", url, exc)
            return ""

        text = extract_main_text(html, url=url)
        if not text:
            logger.info("article_fetch empty url=%s", url)
            return ""
        logger.info("article_fetch ok url=%s chars=%d", url, len(text))
        if self.max_chars > 0:
            return text[: self.max_chars]
        return text


def extract_main_text(html: str, *, url: str | None = None) -> str:
    """Main content text via trafilatura; precision first, then recall."""
    if not html or not html.strip():
        return ""
    for options in ({"favor_precision": True}, {"favor_recall": True}):
        try:
            text = trafilatura.extract(html, url=url, include_links=False, **options)
        except Exception as exc:  # noqa: BLE001
            logger.warning("trafilatura.extract failed url=%s reason=%s", url or "<unknown>", exc)
            text = None
        if text:
            return " ".join(text.split())
    return ""
