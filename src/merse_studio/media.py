from __future__ import annotations

import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

_VIDEO_EXT = re.compile(r"\.(mp4|mov|webm|gif)(\?.*)?$", re.IGNORECASE)
_IMAGE_EXT = re.compile(r"\.(png|jpe?g|webp)(\?.*)?$", re.IGNORECASE)
_DURATION_KEYS = ("duration", "video_duration", "length", "seconds")


@dataclass
class MediaBundle:
    videos: list[str] = field(default_factory=list)
    covers: list[str] = field(default_factory=list)
    duration: float | None = None


def walk_payload(payload: Any, visitor: Callable[[Any, str | None], None], key: str | None = None) -> None:
    """
    Depth-first walk over provider output. Scalars are passed to `visitor`
    together with the nearest dict key; list items inherit their parent's key.
    """
    _walk(payload, visitor, set(), key)


def _walk(payload: Any, visitor: Callable[[Any, str | None], None], seen: set[int], key: str | None) -> None:
    if payload is None:
        return
    if isinstance(payload, (str, int, float, bool)):
        visitor(payload, key)
        return
    if not isinstance(payload, (dict, list, tuple)):
        return
    if id(payload) in seen:
        return
    seen.add(id(payload))

    if isinstance(payload, dict):
        for child_key, child in payload.items():
            _walk(child, visitor, seen, str(child_key))
        return
    for item in payload:
        _walk(item, visitor, seen, key)


def collect_media(payload: Any) -> MediaBundle:
    bundle = MediaBundle()

    def visit(value: Any, key: str | None) -> None:
        norm_key = (key or "").lower()
        if isinstance(value, str):
            if value.startswith("http"):
                if _VIDEO_EXT.search(value) or "video" in norm_key:
                    bundle.videos.append(value)
                elif any(tag in norm_key for tag in ("cover", "thumb", "poster")):
                    bundle.covers.append(value)
            elif value.startswith("data:") and "video" in value[:40]:
                bundle.videos.append(value)
            return
        if isinstance(value, bool):
            return
        if isinstance(value, (int, float)) and math.isfinite(value):
            if norm_key in _DURATION_KEYS and bundle.duration is None:
                bundle.duration = float(value)

    walk_payload(payload, visit)
    return bundle


def normalize_output_urls(payload: Any) -> list[str]:
    urls: list[str] = []

    def visit(value: Any, _key: str | None) -> None:
        if isinstance(value, str) and value.startswith(("http://", "https://", "data:video/")):
            urls.append(value)

    walk_payload(payload, visit)
    return list(dict.fromkeys(urls))


def collect_image_urls(payload: Any) -> list[str]:
    urls: list[str] = []

    def visit(value: Any, key: str | None) -> None:
        if not isinstance(value, str):
            return
        trimmed = value.strip()
        if not trimmed:
            return
        if trimmed.startswith("data:image/"):
            urls.append(trimmed)
            return
        if not trimmed.startswith("http"):
            return
        # Avoid picking video links.
        if _VIDEO_EXT.search(trimmed):
            return
        lowered = (key or "").lower()
        if _IMAGE_EXT.search(trimmed) or any(tag in lowered for tag in ("image", "png", "jpg", "jpeg", "webp", "url")):
            urls.append(trimmed)

    walk_payload(payload, visit)
    return list(dict.fromkeys(urls))
