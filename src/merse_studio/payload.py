"""Progressively smaller prediction inputs for retrying after a 422."""

from __future__ import annotations

import base64
import io
from pathlib import Path
from typing import Any

from PIL import Image

MAX_SHRINK_STAGE = 4
SHRUNK_IMAGE_MAX_SIDE = 768
SHRUNK_IMAGE_QUALITY = 80
SHRUNK_PROMPT_CHARS = 600

_OPTIONAL_KEYS = ("video_length", "resolution")


def _encode_jpeg(img: Image.Image, max_side: int, quality: int) -> str:
    img = img.convert("RGB")
    img.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)
    buf = io.BytesIO()
    img.save(buf, format="JPEG", quality=quality, optimize=True)
    return "data:image/jpeg;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


def image_to_data_url(path: Path, max_side: int = SHRUNK_IMAGE_MAX_SIDE, quality: int = SHRUNK_IMAGE_QUALITY) -> str:
    with Image.open(path) as img:
        return _encode_jpeg(img, max_side, quality)


def shrink_data_url(data_url: str, max_side: int = SHRUNK_IMAGE_MAX_SIDE, quality: int = SHRUNK_IMAGE_QUALITY) -> str:
    """Re-encode a base64 image data URL; non-data URLs and undecodable data pass through."""
    if not data_url.startswith("data:image/") or "," not in data_url:
        return data_url
    _header, encoded = data_url.split(",", 1)
    try:
        raw = base64.b64decode(encoded, validate=False)
        with Image.open(io.BytesIO(raw)) as img:
            return _encode_jpeg(img, max_side, quality)
    except (ValueError, OSError):
        return data_url


def truncate_words(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    cut = text[:limit]
    space = cut.rfind(" ")
    if space > limit // 2:
        cut = cut[:space]
    return cut.rstrip(" ,;")


def shrink_payload(payload: dict[str, Any], stage: int) -> dict[str, Any]:
    """
    Stages are cumulative:
      0 drop None values
      1 drop optional keys (video_length, resolution)
      2 re-encode a data:image reference as a small JPEG
      3 drop the reference image
      4 truncate the prompt
    """
    out = {k: v for k, v in payload.items() if v is not None}
    if stage >= 1:
        for key in _OPTIONAL_KEYS:
            out.pop(key, None)
    if stage >= 2 and isinstance(out.get("image"), str):
        out["image"] = shrink_data_url(out["image"])
    if stage >= 3:
        out.pop("image", None)
    if stage >= 4 and isinstance(out.get("prompt"), str):
        out["prompt"] = truncate_words(out["prompt"], SHRUNK_PROMPT_CHARS)
    return out
