import pytest
import requests

import sget
from conftest import ASSETS, Broken, FakeSession


def test_fetch_ok_streams_to_file(tmp_path):
    url = "https://example.com/css/site.css"
    session = FakeSession({url: ASSETS[url]})
    fetcher = sget.Fetcher(session, timeout=5.0)

    result = fetcher.fetch(url)
    assert result.ok
    assert result.status == 200

    target = tmp_path / "nested" / "dir" / "site.css"
    written = result.to_file(target)
    assert written == len(ASSETS[url])
    assert target.read_bytes() == ASSETS[url]
    assert result.response.closed


def test_fetch_passes_timeout_and_streams():
    session = FakeSession({"https://example.com/": b"<html></html>"})
    sget.Fetcher(session, timeout=2.5).fetch("https://example.com/")
    kwargs = session.kwargs[0]
    assert kwargs["timeout"] == (2.5, 2.5)
    assert kwargs["stream"] is True
    assert kwargs["allow_redirects"] is True


def test_non_200_is_a_failed_result(tmp_path):
    session = FakeSession({"https://example.com/gone.png": (410, b"gone")})
    result = sget.Fetcher(session).fetch("https://example.com/gone.png")
    assert not result.ok
    assert result.status == 410
    assert result.response.closed

    err = result.error()
    assert isinstance(err, sget.ResourceFetchError)
    assert err.status == 410
    assert "got 410" in str(err)

    with pytest.raises(sget.ResourceFetchError):
        result.to_file(tmp_path / "gone.png")
    assert not (tmp_path / "gone.png").exists()


def test_transport_error_is_a_failed_result():
    url = "https://down.example.com/x.js"
    session = FakeSession({url: requests.ConnectTimeout("timed out")})
    result = sget.Fetcher(session).fetch(url)
    assert not result.ok
    assert result.status is None
    assert "timed out" in result.reason

    err = result.error(sget.FatalFetchError)
    assert isinstance(err, sget.FatalFetchError)
    assert err.url == url


def test_mid_stream_failure_raises_and_leaves_partial_file(tmp_path):
    url = "https://example.com/big.bin"
    session = FakeSession({url: Broken(b"x" * (sget.CHUNK_SIZE + 10))})
    result = sget.Fetcher(session).fetch(url)
    assert result.ok
    target = tmp_path / "big.bin"
    with pytest.raises(requests.ConnectionError):
        result.to_file(target)
    assert target.stat().st_size == sget.CHUNK_SIZE


def test_build_session_headers(caplog):
    settings = sget.Settings(
        user_agent="sget-test/1.0",
        extra_headers=["Accept-Language: en-US", "broken-header"],
    )
    with caplog.at_level("WARNING", logger="sget"):
        session = sget.build_session(settings)
    assert session.headers["User-Agent"] == "sget-test/1.0"
    assert session.headers["Accept-Language"] == "en-US"
    assert "invalid header" in caplog.text
    assert session.get_adapter("https://example.com/").max_retries.total == 0
