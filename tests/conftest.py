import pytest
import requests

import sget

PAGE_URL = "https://example.com/blog/post.html"

PAGE = b"""<!DOCTYPE html>
<html>
<head>
<title>post</title>
<link rel="stylesheet" href="/css/site.css" integrity="sha384-abc" crossorigin="anonymous">
<link rel="shortcut icon" href="favicon.ico">
<script src="//cdn.example.net/lib.js?v=3"></script>
</head>
<body>
<img src="img/a.png" alt="a">
<img src="https://cdn.example.net/b.jpg" alt="b">
<img src="data:image/png;base64,AAAA" alt="inline">
<a href="/other.html">other</a>
</body>
</html>
"""

ASSETS = {
    "https://cdn.example.net/lib.js?v=3": b"console.log('lib');",
    "https://example.com/blog/img/a.png": b"\x89PNG a",
    "https://cdn.example.net/b.jpg": b"\xff\xd8 b",
    "https://example.com/css/site.css": b"body { color: red; }",
    "https://example.com/blog/favicon.ico": b"ico",
}


class Broken:
    """Body that fails after the first chunk has been delivered."""

    def __init__(self, body: bytes):
        self.body = body


class FakeResponse:
    def __init__(self, url, status_code=200, body=b"", broken=False):
        self.url = url
        self.status_code = status_code
        self.headers = {}
        self._body = body
        self._broken = broken
        self.closed = False

    @property
    def content(self):
        if self._broken:
            raise requests.ConnectionError("connection reset")
        return self._body

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]
            if self._broken:
                raise requests.ConnectionError("connection reset")

    def close(self):
        self.closed = True


class FakeSession:
    """Stands in for requests.Session; unknown URLs answer 404."""

    def __init__(self, pages=None):
        self.pages = dict(pages or {})
        self.calls = []
        self.kwargs = []
        self.headers = {}

    def get(self, url, **kwargs):
        self.calls.append(url)
        self.kwargs.append(kwargs)
        page = self.pages.get(url)
        if page is None:
            return FakeResponse(url, 404)
        if isinstance(page, Exception):
            raise page
        if isinstance(page, Broken):
            return FakeResponse(url, 200, page.body, broken=True)
        if isinstance(page, tuple):
            status, body = page
            return FakeResponse(url, status, body)
        return FakeResponse(url, 200, page)


@pytest.fixture
def fake_session():
    pages = {PAGE_URL: PAGE}
    pages.update(ASSETS)
    return FakeSession(pages)


@pytest.fixture
def settings(tmp_path):
    return sget.Settings(destination=str(tmp_path / "out"))


@pytest.fixture
def make_session(fake_session, settings):
    def factory(url=PAGE_URL, **kwargs):
        fetcher = sget.Fetcher(fake_session, settings.timeout, kwargs.get("logger"))
        return sget.MirrorSession(url, settings, fetcher=fetcher, **kwargs)

    return factory
