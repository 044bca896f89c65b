from __future__ import annotations

import http.client
from email.message import Message
from urllib import error, request

import pytest

from dispatch_api.app import content
from dispatch_api.app.content import (
    HttpArticleFetcher,
    extract_youtube_video_id,
    media_reference_for,
    truncate_text,
)

ARTICLE_HTML = """
<html><head><title>Council passes budget</title></head>
<body>
<nav>Home | World | Sports</nav>
<article>
<h1>Council passes budget</h1>
<p>The city council voted seven to two on Tuesday to approve next year's budget,
which raises spending on transit and libraries while holding property taxes flat.</p>
<p>Opponents argued that the plan relies on optimistic revenue forecasts and leaves
little room for emergencies, while supporters called it a careful compromise.</p>
<p>The budget takes effect in January after a final procedural reading next week.</p>
<p>Council members said they would revisit the transit allocation in the spring once
ridership figures for the new express routes are published by the regional agency.</p>
</article>
<footer>Copyright</footer>
</body></html>
"""


class _FakeHTMLResponse:
    def __init__(self, html: str) -> None:
        self._body = html.encode("utf-8")
        self.headers = Message()
        self.headers["Content-Type"] = "text/html; charset=utf-8"

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _FakeHTMLResponse:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        _ = (exc_type, exc, tb)
        return False


@pytest.mark.parametrize(
    ("url", "video_id"),
    [
        ("https://www.youtube.com/watch?v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/watch?feature=share&v=dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://youtu.be/dQw4w9WgXcQ?t=30", "dQw4w9WgXcQ"),
        ("https://www.youtube.com/shorts/dQw4w9WgXcQ", "dQw4w9WgXcQ"),
        ("https://news.example/story", None),
        ("", None),
    ],
)
def test_extract_youtube_video_id(url: str, video_id: str | None) -> None:
    assert extract_youtube_video_id(url) == video_id


def test_media_reference_uses_canonical_watch_url() -> None:
    reference = media_reference_for("https://youtu.be/dQw4w9WgXcQ")
    assert reference is not None
    assert reference.uri == "https://www.youtube.com/watch?v=dQw4w9WgXcQ"
    assert reference.mime_type == "video/mp4"
    assert media_reference_for("https://vimeo.com/123") is None


def test_truncate_text_marks_the_cut() -> None:
    assert truncate_text("abcdef", 10) == "abcdef"
    assert truncate_text("abcdef", 3) == "abc…"


def test_article_fetcher_extracts_main_text(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_urlopen(req: request.Request, timeout: float):
        captured["agent"] = req.get_header("User-agent")
        captured["timeout"] = timeout
        return _FakeHTMLResponse(ARTICLE_HTML)

    monkeypatch.setattr(content.request, "urlopen", fake_urlopen)
    fetcher = HttpArticleFetcher(timeout_s=3, max_chars=20_000, user_agent="dispatch-test")
    text = fetcher.fetch_article_text("https://news.example/budget")

    assert "city council voted" in text
    assert "\n" not in text
    assert captured == {"agent": "dispatch-test", "timeout": 3}


def test_article_fetcher_truncates_to_max_chars(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        content.request, "urlopen", lambda req, timeout: _FakeHTMLResponse(ARTICLE_HTML)
    )
    fetcher = HttpArticleFetcher(timeout_s=3, max_chars=40, user_agent="ua")
    assert len(fetcher.fetch_article_text("https://news.example/budget")) <= 40


def test_article_fetcher_returns_empty_on_network_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req: request.Request, timeout: float):
        raise error.URLError("name resolution failed")

    monkeypatch.setattr(content.request, "urlopen", fake_urlopen)
    fetcher = HttpArticleFetcher(timeout_s=1, max_chars=100, user_agent="ua")
    assert fetcher.fetch_article_text("https://unreachable.example/") == ""


def test_article_fetcher_skips_non_http_urls() -> None:
    fetcher = HttpArticleFetcher(timeout_s=1, max_chars=100, user_agent="ua")
    assert fetcher.fetch_article_text("file:///etc/passwd") == ""


def test_article_fetcher_returns_empty_on_unknown_charset(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def fake_urlopen(req: request.Request, timeout: float):
        response = _FakeHTMLResponse(ARTICLE_HTML)
        response.headers.replace_header("Content-Type", "text/html; charset=x-bogus")
        return response

    monkeypatch.setattr(content.request, "urlopen", fake_urlopen)
    fetcher = HttpArticleFetcher(timeout_s=1, max_chars=100, user_agent="ua")
    assert fetcher.fetch_article_text("https://news.example/budget") == ""


@pytest.mark.parametrize(
    "read_error",
    [ConnectionResetError("peer reset"), http.client.IncompleteRead(b"<html>", 512)],
)
def test_article_fetcher_returns_empty_when_read_breaks(
    monkeypatch: pytest.MonkeyPatch, read_error: Exception
) -> None:
    class _BrokenRead(_FakeHTMLResponse):
        def read(self) -> bytes:
            raise read_error

    monkeypatch.setattr(content.request, "urlopen", lambda req, timeout: _BrokenRead(""))
    fetcher = HttpArticleFetcher(timeout_s=1, max_chars=100, user_agent="ua")
    assert fetcher.fetch_article_text("https://news.example/budget") == ""
