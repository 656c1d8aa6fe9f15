"""Tests for media URL validation and downloads."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
import requests

from merse_studio.assembly import fetch
from merse_studio.errors import InvalidMediaUrl, MediaError


@pytest.mark.parametrize(
    "host",
    ["localhost", "127.0.0.1", "::1", "10.1.2.3", "192.168.0.10", "172.16.5.4", "172.31.0.1", "169.254.1.1", "[::1]"],
)
def test_private_hosts_are_blocked(host: str) -> None:
    assert fetch.is_blocked_host(host) is True


@pytest.mark.parametrize("host", ["replicate.delivery", "172.32.0.1", "8.8.8.8", "cdn.example.com"])
def test_public_hosts_are_allowed(host: str) -> None:
    assert fetch.is_blocked_host(host) is False


def test_relative_urls_resolve_against_the_caller_host() -> None:
    url = fetch.resolve_media_url("/generated-video/a.mp4", host="app.example.com", proto="https,http")
    assert url == "https://app.example.com/generated-video/a.mp4"


def test_relative_url_without_host_is_invalid() -> None:
    with pytest.raises(InvalidMediaUrl):
        fetch.resolve_media_url("/generated-video/a.mp4")


@pytest.mark.parametrize("url", ["ftp://cdn.example.com/a.mp4", "http://127.0.0.1/a.mp4", "a.mp4", ""])
def test_bad_urls_are_rejected(url: str) -> None:
    with pytest.raises(InvalidMediaUrl):
        fetch.resolve_media_url(url)


class DummyStream:
    def __init__(self, status_code: int, chunks: list[bytes]) -> None:
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Forbidden"
        self._chunks = chunks

    def __enter__(self) -> "DummyStream":
        return self

    def __exit__(self, *_exc: object) -> bool:
        return False

    def iter_content(self, chunk_size: int = 0) -> list[bytes]:
        return self._chunks


class DummySession:
    def __init__(self, response: DummyStream) -> None:
        self.response = response
        self.kwargs: dict[str, Any] = {}

    def get(self, url: str, **kwargs: Any) -> DummyStream:
        self.kwargs = kwargs
        return self.response


def test_download_streams_to_disk(tmp_path: Path) -> None:
    session = DummySession(DummyStream(200, [b"ab", b"", b"cd"]))
    dest = fetch.download_to_file("https://cdn.example.com/a.mp4", tmp_path / "x" / "a.mp4", session=session)  # type: ignore[arg-type]
    assert dest.read_bytes() == b"abcd"
    assert session.kwargs["stream"] is True


def test_download_http_error_raises_media_error(tmp_path: Path) -> None:
    session = DummySession(DummyStream(403, []))
    with pytest.raises(MediaError, match="403"):
        fetch.download_to_file("https://cdn.example.com/a.mp4", tmp_path / "a.mp4", session=session)  # type: ignore[arg-type]


def test_download_network_error_raises_media_error(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(*_args: Any, **_kwargs: Any) -> None:
        raise requests.ConnectionError("reset")

    monkeypatch.setattr(fetch.requests, "get", boom)
    with pytest.raises(MediaError):
        fetch.download_to_file("https://cdn.example.com/a.mp4", tmp_path / "a.mp4")
