"""Tests for provider output walking."""

from __future__ import annotations

from merse_studio.media import collect_image_urls, collect_media, normalize_output_urls, walk_payload


def test_collect_media_finds_videos_covers_and_duration() -> None:
    payload = {
        "result": {
            "video": ["https://cdn.example.com/render"],
            "thumbnail": "https://cdn.example.com/thumb",
            "meta": {"duration": 9.5, "fps": 24},
        },
        "extra": "https://cdn.example.com/clip.webm?sig=1",
    }
    bundle = collect_media(payload)
    assert bundle.videos == ["https://cdn.example.com/render", "https://cdn.example.com/clip.webm?sig=1"]
    assert bundle.covers == ["https://cdn.example.com/thumb"]
    assert bundle.duration == 9.5


def test_collect_media_ignores_booleans_for_duration() -> None:
    assert collect_media({"seconds": True}).duration is None


def test_walk_payload_survives_cycles() -> None:
    node: dict = {"url": "https://a.example/x.mp4"}
    node["self"] = node
    seen: list[str] = []
    walk_payload(node, lambda value, _key: seen.append(value))
    assert seen == ["https://a.example/x.mp4"]


def test_normalize_output_urls_deduplicates() -> None:
    output = ["https://a.example/1.mp4", {"u": "https://a.example/1.mp4"}, "data:video/mp4;base64,AAAA", "nope"]
    assert normalize_output_urls(output) == ["https://a.example/1.mp4", "data:video/mp4;base64,AAAA"]


def test_normalize_output_urls_accepts_plain_string() -> None:
    assert normalize_output_urls("https://a.example/1.mp4") == ["https://a.example/1.mp4"]
    assert normalize_output_urls(None) == []


def test_collect_image_urls_skips_videos() -> None:
    payload = {"image": "https://a.example/pic", "video": "https://a.example/v.mp4", "frame": "data:image/png;base64,AA"}
    assert collect_image_urls(payload) == ["https://a.example/pic", "data:image/png;base64,AA"]
