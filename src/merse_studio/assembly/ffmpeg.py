"""FFmpeg helpers: concatenate segment clips and grab continuity frames."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
import unicodedata
from pathlib import Path

from merse_studio.config import settings
from merse_studio.errors import MediaError

LOG = logging.getLogger(__name__)

LAST_FRAME_OFFSET_S = 0.08


def _run_subprocess(cmd: list[str]) -> subprocess.CompletedProcess[str]:
    """Run a subprocess command with safe defaults."""

    normalized_cmd = [str(part) for part in cmd]
    return subprocess.run(normalized_cmd, capture_output=True, text=True, check=False)


def _stderr_tail(proc: subprocess.CompletedProcess[str], lines: int = 6) -> str:
    tail = (proc.stderr or "").strip().splitlines()[-lines:]
    return " | ".join(tail)


def slugify(value: str, fallback: str = "sequence") -> str:
    normalized = unicodedata.normalize("NFD", value.lower())
    ascii_only = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_only).strip("-")[:48].strip("-")
    return slug or fallback


def write_concat_list(paths: list[Path], list_path: Path) -> Path:
    lines = []
    for p in paths:
        escaped = str(p.resolve()).replace("'", "'\\''")
        lines.append(f"file '{escaped}'")
    list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return list_path


def concat_videos(paths: list[Path], out_path: Path, ffmpeg_bin: str | None = None) -> Path:
    """
    Stream-copy concat first; if the clips disagree on codec params fall back to
    a libx264/aac re-encode. A single input is simply copied.
    """
    if not paths:
        raise MediaError("No segments to concatenate.")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    if len(paths) == 1:
        shutil.copyfile(paths[0], out_path)
        return out_path

    binary = ffmpeg_bin or settings.ffmpeg_bin
    list_path = write_concat_list(paths, out_path.with_name(out_path.name + ".txt"))
    try:
        copy_cmd = [binary, "-y", "-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy", out_path]
        proc = _run_subprocess(copy_cmd)
        if proc.returncode == 0:
            return out_path

        LOG.warning("Stream-copy concat failed, re-encoding %d segments", len(paths))
        encode_cmd = [
            binary, "-y", "-f", "concat", "-safe", "0", "-i", list_path,
            "-map", "0:v:0", "-map", "0:a?",
            "-c:v", "libx264", "-preset", "veryfast", "-crf", "22",
            "-c:a", "aac", "-b:a", "128k",
            "-movflags", "+faststart",
            out_path,
        ]
        proc = _run_subprocess(encode_cmd)
        if proc.returncode != 0:
            raise MediaError(f"ffmpeg concat failed: {_stderr_tail(proc)}")
        return out_path
    except OSError as exc:
        raise MediaError(f"ffmpeg could not be executed: {exc}") from exc
    finally:
        list_path.unlink(missing_ok=True)


def probe_duration(path: Path, ffprobe_bin: str | None = None) -> float | None:
    cmd = [
        ffprobe_bin or settings.ffprobe_bin,
        "-v", "error",
        "-show_entries", "format=duration",
        "-of", "default=nokey=1:noprint_wrappers=1",
        path,
    ]
    try:
        proc = _run_subprocess(cmd)
    except OSError:
        return None
    if proc.returncode != 0:
        return None
    try:
        value = float((proc.stdout or "").strip())
    except ValueError:
        return None
    return value if value > 0 else None


def extract_last_frame(video_path: Path, out_path: Path, ffmpeg_bin: str | None = None) -> Path:
    binary = ffmpeg_bin or settings.ffmpeg_bin
    out_path.parent.mkdir(parents=True, exist_ok=True)
    duration = probe_duration(video_path)
    seek = max(duration - LAST_FRAME_OFFSET_S, 0.0) if duration else 0.0

    try:
        cmd = [binary, "-y"]
        if seek > 0:
            cmd += ["-ss", f"{seek:.3f}"]
        cmd += ["-i", video_path, "-frames:v", "1", "-q:v", "2", out_path]
        proc = _run_subprocess(cmd)
        if proc.returncode != 0 or not out_path.exists():
            # Some containers refuse seeking near the end; take the first frame instead.
            proc = _run_subprocess([binary, "-y", "-i", video_path, "-frames:v", "1", "-q:v", "2", out_path])
            if proc.returncode != 0:
                raise MediaError(f"ffmpeg frame extraction failed: {_stderr_tail(proc)}")
    except OSError as exc:
        raise MediaError(f"ffmpeg could not be executed: {exc}") from exc

    if not out_path.exists():
        raise MediaError("ffmpeg did not produce a frame.")
    return out_path
