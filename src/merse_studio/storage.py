from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from merse_studio.config import settings

LOGGER = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def sha256_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def campaign_key(params: dict[str, Any]) -> str:
    canonical = json.dumps(params, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)
    return sha256_text(canonical)[:24]


def _safe_id(value: str) -> str:
    # Prevent path traversal through ids coming from URLs / webhooks.
    cleaned = os.path.basename(value.strip()).replace("..", "_")
    if not cleaned:
        raise ValueError("empty id")
    return cleaned


def _atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


@dataclass
class SegmentRecord:
    index: int
    start: int
    duration: int
    prompt: str
    status: str = "pending"  # pending|running|succeeded|failed
    prediction_id: str | None = None
    video_url: str | None = None
    local_path: str | None = None
    attempts: int = 0
    payload_stage: int = 0
    error: str | None = None
    updated_at: str = field(default_factory=_now_iso)

    def touch(self) -> None:
        self.updated_at = _now_iso()


@dataclass
class CampaignRecord:
    campaign_key: str
    provider: str
    params: dict[str, Any]
    status: str = "pending"  # pending|running|succeeded|failed
    segments: list[SegmentRecord] = field(default_factory=list)
    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    final_path: str | None = None
    final_url: str | None = None
    error: str | None = None

    @property
    def completed_segments(self) -> int:
        return sum(1 for s in self.segments if s.status == "succeeded")

    @property
    def total_segments(self) -> int:
        return len(self.segments)

    def progress(self) -> dict[str, Any]:
        return {
            "campaignKey": self.campaign_key,
            "status": self.status,
            "provider": self.provider,
            "completedSegments": self.completed_segments,
            "totalSegments": self.total_segments,
            "videoUrl": self.final_url,
            "error": self.error,
            "segments": [
                {
                    "index": s.index,
                    "status": s.status,
                    "duration": s.duration,
                    "predictionId": s.prediction_id,
                    "attempts": s.attempts,
                    "error": s.error,
                }
                for s in self.segments
            ],
        }


class CampaignCache:
    """One JSON checkpoint per campaign plus a directory for its segment files."""

    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.campaigns_dir = self.root_dir / "campaigns"
        self.campaigns_dir.mkdir(parents=True, exist_ok=True)

    def _record_path(self, key: str) -> Path:
        return self.campaigns_dir / f"{_safe_id(key)}.json"

    def campaign_dir(self, key: str) -> Path:
        path = self.campaigns_dir / _safe_id(key)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def segment_path(self, key: str, index: int) -> Path:
        return self.campaign_dir(key) / f"segment-{index + 1}.mp4"

    def frame_path(self, key: str, index: int) -> Path:
        return self.campaign_dir(key) / f"segment-{index + 1}-last.jpg"

    def load(self, key: str) -> CampaignRecord | None:
        path = self._record_path(key)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text("utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            segments = [SegmentRecord(**s) for s in data.pop("segments", [])]
            return CampaignRecord(segments=segments, **data)
        except (ValueError, TypeError) as exc:
            # Corrupt checkpoint: replan from scratch.
            LOGGER.warning("Ignoring corrupted campaign cache %s: %s", path, exc)
            return None

    def save(self, record: CampaignRecord) -> None:
        record.updated_at = _now_iso()
        data = asdict(record)
        _atomic_write_json(self._record_path(record.campaign_key), data)

    def delete(self, key: str) -> None:
        camp_dir = (self.campaigns_dir / _safe_id(key)).resolve()
        if not str(camp_dir).startswith(str(self.campaigns_dir.resolve()) + os.sep):
            raise ValueError("Refusing to delete outside campaigns_dir")
        if camp_dir.exists():
            shutil.rmtree(camp_dir)
        self._record_path(key).unlink(missing_ok=True)

    def list_keys(self) -> list[str]:
        return sorted(p.stem for p in self.campaigns_dir.glob("*.json"))


class JobStore:
    """Merge-on-write JSON snapshots of loop-ads jobs."""

    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.jobs_dir = self.root_dir / "jobs"
        self.jobs_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, job_id: str) -> Path:
        return self.jobs_dir / f"{_safe_id(job_id)}.json"

    def read(self, job_id: str) -> dict[str, Any] | None:
        path = self._path(job_id)
        if not path.exists():
            return None
        try:
            loaded = json.loads(path.read_text("utf-8"))
        except ValueError as exc:
            LOGGER.warning("Ignoring corrupted job snapshot %s: %s", path, exc)
            return None
        return loaded if isinstance(loaded, dict) else None

    def merge(self, job_id: str, data: dict[str, Any]) -> dict[str, Any]:
        current = self.read(job_id) or {}
        current.update(data)
        _atomic_write_json(self._path(job_id), current)
        return current


class StoryboardStore:
    """Storyboards keyed by the brief that produced them, so a repeated brief maps to the same campaign."""

    def __init__(self, root_dir: Path | None = None) -> None:
        self.root_dir = Path(root_dir or settings.data_dir).resolve()
        self.storyboards_dir = self.root_dir / "storyboards"
        self.storyboards_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.storyboards_dir / f"{_safe_id(key)}.json"

    def load(self, key: str) -> dict[str, str] | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            loaded = json.loads(path.read_text("utf-8"))
        except ValueError as exc:
            LOGGER.warning("Ignoring corrupted storyboard %s: %s", path, exc)
            return None
        if not isinstance(loaded, dict) or not isinstance(loaded.get("text"), str):
            return None
        return {"text": loaded["text"], "provider": str(loaded.get("provider") or "fallback")}

    def save(self, key: str, text: str, provider: str) -> None:
        _atomic_write_json(self._path(key), {"text": text, "provider": provider, "created_at": _now_iso()})
