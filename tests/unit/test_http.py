from __future__ import annotations

from pathlib import Path

import pytest
import requests

from feedsync.common.http import (
    DownloadTooLargeError,
    HttpClient,
    HttpRequestError,
    RetryableHttpError,
    RetryConfig,
)


class FakeResponse:
    def __init__(self, status_code: int, chunks: list[bytes] | None = None):
        self.status_code = status_code
        self._chunks = chunks or []
        self.closed = False

    def iter_content(self, chunk_size: int):
        yield from self._chunks

    def close(self):
        self.closed = True


def test_download_writes_streamed_chunks(monkeypatch, tmp_path: Path):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    calls = []

    def fake_request(**kwargs):
        calls.append(kwargs)
        return FakeResponse(200, [b"<dataset>", b"", b"</dataset>"])

    monkeypatch.setattr(client.session, "request", fake_request)
    target = tmp_path / "raw" / "feed.xml"

    written = client.download_to("https://feed.test/f.xml", target, auth=("u", "p"))

    assert written == len(b"<dataset></dataset>")
    assert target.read_bytes() == b"<dataset></dataset>"
    assert calls[0]["auth"] == ("u", "p")
    assert calls[0]["stream"] is True


def test_download_retryable_status_raises_retryable_error(monkeypatch, tmp_path: Path):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: FakeResponse(503))

    with pytest.raises(RetryableHttpError):
        client.download_to("https://feed.test/f.xml", tmp_path / "feed.xml")


def test_download_client_error_is_not_retried(monkeypatch, tmp_path: Path):
    client = HttpClient(retry=RetryConfig(max_attempts=3, multiplier=0.0, max_wait=0.0))
    calls = []

    def fake_request(**_kwargs):
        calls.append(1)
        return FakeResponse(401)

    monkeypatch.setattr(client.session, "request", fake_request)
    with pytest.raises(HttpRequestError):
        client.download_to("https://feed.test/f.xml", tmp_path / "feed.xml")
    assert len(calls) == 1


def test_download_over_size_cap_removes_partial_file(monkeypatch, tmp_path: Path):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    monkeypatch.setattr(client.session, "request", lambda **_kwargs: FakeResponse(200, [b"x" * 10, b"x" * 10]))
    target = tmp_path / "feed.xml"

    with pytest.raises(DownloadTooLargeError):
        client.download_to("https://feed.test/f.xml", target, max_bytes=15)
    assert not target.exists()


def test_connection_errors_become_retryable(monkeypatch, tmp_path: Path):
    client = HttpClient(retry=RetryConfig(max_attempts=1))

    def fake_request(**_kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(client.session, "request", fake_request)
    with pytest.raises(RetryableHttpError):
        client.post_json("https://hooks.test/x", {"a": 1})


def test_post_json_returns_status(monkeypatch):
    client = HttpClient(retry=RetryConfig(max_attempts=1))
    sent = []

    def fake_request(**kwargs):
        sent.append(kwargs)
        return FakeResponse(204)

    monkeypatch.setattr(client.session, "request", fake_request)
    assert client.post_json("https://hooks.test/x", {"a": 1}) == 204
    assert sent[0]["json"] == {"a": 1}
    assert sent[0]["method"] == "POST"
