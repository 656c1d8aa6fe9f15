"""Shared fixtures; DATA_DIR points at a throwaway directory before any import of the app."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import pytest
from PIL import Image

os.environ.setdefault("DATA_DIR", tempfile.mkdtemp(prefix="merse-tests-"))

from merse_studio.errors import PayloadRejected, PredictionFailed, PredictionNotFound, PredictionTimeout  # noqa: E402
from merse_studio.providers.base import Prediction  # noqa: E402
from merse_studio.providers.catalog import VideoProviderSpec  # noqa: E402
from merse_studio.providers.replicate_provider import clear_version_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_version_cache() -> None:
    clear_version_cache()


class FakeBackend:
    """In-memory stand-in for ReplicateClient."""

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.predictions: dict[str, Prediction] = {}
        self.reject_next = 0
        self.mode = "ok"  # ok|timeout|fail

    def resolve_version(self, model: str, version: str | None = None) -> str:
        return version or "v-test"

    def create_prediction(
        self,
        version: str,
        input: dict[str, Any],
        webhook: str | None = None,
        events: list[str] | None = None,
    ) -> Prediction:
        self.created.append(dict(input))
        if self.reject_next > 0:
            self.reject_next -= 1
            raise PayloadRejected("input too large", status_code=422)
        pid = f"p{len(self.predictions) + 1}"
        prediction = Prediction(id=pid, status="starting")
        self.predictions[pid] = prediction
        return prediction

    def get_prediction(self, prediction_id: str) -> Prediction:
        if prediction_id not in self.predictions:
            raise PredictionNotFound("not found", status_code=404)
        return self.predictions[prediction_id]

    def wait(self, prediction: Prediction, poll_interval_s: float, max_attempts: int, on_status: Any = None) -> Prediction:
        if self.mode == "timeout":
            raise PredictionTimeout(prediction.id, attempts=max_attempts, last_status="processing")
        if self.mode == "fail":
            raise PredictionFailed("model crashed", prediction_id=prediction.id)
        done = Prediction(
            id=prediction.id,
            status="succeeded",
            output={"video": f"https://cdn.example.com/{prediction.id}.mp4", "cover": "https://cdn.example.com/c.jpg"},
        )
        self.predictions[prediction.id] = done
        return done


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def wan_spec() -> VideoProviderSpec:
    return VideoProviderSpec(
        key="wan",
        label="Wan",
        model="wan-video/wan-2.6-t2v",
        version=None,
        token="r8_test",
        poll_interval_s=0.0,
        max_attempts=2,
        segment_durations=(5, 10),
    )


def fake_download(url: str, dest: Path) -> Path:
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(b"clip:" + url.encode())
    return dest


def fake_concat(paths: list[Path], out: Path) -> Path:
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_bytes(b"".join(p.read_bytes() for p in paths))
    return out


def fake_frame(video: Path, out: Path) -> Path:
    out.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", (64, 36), (200, 40, 90)).save(out, format="JPEG")
    return out
