"""Merge ad-hoc clip sequences and grab last frames for the Loop studio."""

from __future__ import annotations

import logging
import tempfile
import time
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

from merse_studio.assembly.fetch import download_to_file, resolve_media_url
from merse_studio.assembly.ffmpeg import concat_videos, extract_last_frame, slugify
from merse_studio.config import settings
from merse_studio.payload import image_to_data_url

LOGGER = logging.getLogger(__name__)

LOOP_PUBLIC_PREFIX = "/generated-loop"
DEFAULT_SEQUENCE_NAME = "loop-sequence"


def _stamp() -> str:
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def clean_video_urls(raw: Any, limit: int | None = None) -> list[str]:
    if not isinstance(raw, list):
        return []
    cap = limit if limit is not None else settings.max_merge_segments
    return [item.strip() for item in raw if isinstance(item, str) and item.strip()][:cap]


def merge_sequence(
    video_urls: list[str],
    sequence_name: str | None,
    output_dir: Path,
    *,
    host: str | None = None,
    proto: str | None = None,
    downloader: Callable[[str, Path], Path] = download_to_file,
    concat: Callable[[list[Path], Path], Path] = concat_videos,
) -> str:
    """Download, concatenate and publish; returns the public URL of the result."""
    urls = clean_video_urls(video_urls)
    if not urls:
        raise ValueError("Provide at least one video URL to build the sequence.")
    absolute = [resolve_media_url(u, host, proto) for u in urls]

    base = (sequence_name or "").strip() or DEFAULT_SEQUENCE_NAME
    name = f"{slugify(base, fallback=DEFAULT_SEQUENCE_NAME)}-{_stamp()}.mp4"
    output_dir.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix="merse-loop-merge-") as tmp:
        local: list[Path] = []
        for i, url in enumerate(absolute, start=1):
            local.append(downloader(url, Path(tmp) / f"segment-{i}.mp4"))
        concat(local, output_dir / name)

    LOGGER.info("Merged %d clips into %s", len(absolute), name)
    return f"{LOOP_PUBLIC_PREFIX}/{name}"


def extract_frame_from_url(
    video_url: str,
    output_dir: Path,
    *,
    host: str | None = None,
    proto: str | None = None,
    downloader: Callable[[str, Path], Path] = download_to_file,
    frame_extractor: Callable[[Path, Path], Path] = extract_last_frame,
) -> str:
    if not isinstance(video_url, str) or not video_url.strip():
        raise ValueError("videoUrl is required.")
    absolute = resolve_media_url(video_url, host, proto)

    frames_dir = output_dir / "frames"
    frames_dir.mkdir(parents=True, exist_ok=True)
    name = f"frame-{_stamp()}.jpg"

    with tempfile.TemporaryDirectory(prefix="merse-loop-frame-") as tmp:
        source = downloader(absolute, Path(tmp) / "source.mp4")
        frame_extractor(source, frames_dir / name)

    return f"{LOOP_PUBLIC_PREFIX}/frames/{name}"


def last_frame_data_url(
    video_url: str,
    local_roots: dict[str, Path],
    *,
    max_side: int = 768,
    downloader: Callable[[str, Path], Path] = download_to_file,
    frame_extractor: Callable[[Path, Path], Path] = extract_last_frame,
) -> str:
    """
    Last frame of `video_url` as a JPEG data URL. URLs under one of the
    `local_roots` prefixes are read from disk instead of downloaded.
    """
    with tempfile.TemporaryDirectory(prefix="merse-flow-frame-") as tmp:
        source = _local_source(video_url, local_roots)
        if source is None:
            source = downloader(resolve_media_url(video_url), Path(tmp) / "source.mp4")
        frame = frame_extractor(source, Path(tmp) / "frame.jpg")
        return image_to_data_url(frame, max_side=max_side)


def _local_source(video_url: str, local_roots: dict[str, Path]) -> Path | None:
    for prefix, root in local_roots.items():
        if not video_url.startswith(prefix.rstrip("/") + "/"):
            continue
        base = root.resolve()
        candidate = (base / video_url[len(prefix.rstrip("/")) + 1 :]).resolve()
        if base not in candidate.parents or not candidate.exists():
            return None
        return candidate
    return None
