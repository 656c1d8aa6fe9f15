"""
Resumable multi-segment video campaigns.

A campaign is one requested video, split into provider-sized segments. Every
state change is checkpointed to the campaign cache *before* the next paid
call, so a repeated request picks up finished segments and in-flight
predictions instead of paying for them again.
"""

from __future__ import annotations

import base64
import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from merse_studio.assembly.fetch import download_to_file
from merse_studio.assembly.ffmpeg import concat_videos, extract_last_frame, slugify
from merse_studio.errors import (
    CampaignPending,
    MediaError,
    MerseError,
    PayloadRejected,
    PredictionFailed,
    PredictionNotFound,
    PredictionTimeout,
    ReplicateError,
)
from merse_studio.media import collect_media, normalize_output_urls
from merse_studio.payload import MAX_SHRINK_STAGE, image_to_data_url, shrink_payload
from merse_studio.providers.base import TERMINAL_FAILURES, Prediction, VideoBackend
from merse_studio.providers.catalog import VideoProviderSpec
from merse_studio.segments import assign_beats, build_segment_prompt, plan_segments
from merse_studio.storage import CampaignCache, CampaignRecord, SegmentRecord, campaign_key, sha256_text

LOGGER = logging.getLogger(__name__)

PUBLIC_PREFIX = "/generated-video"


@dataclass(frozen=True)
class CampaignRequest:
    prompt: str
    total_seconds: int
    aspect_ratio: str
    reference_image: str | None = None
    scenes: tuple[str, ...] = ()
    label: str = "campaign"


@dataclass(frozen=True)
class CampaignResult:
    campaign_key: str
    video_url: str
    local_path: str
    duration: int
    segments: int
    provider: str
    resumed_segments: int = 0
    resumed: bool = False
    cover: str | None = None
    segment_urls: list[str] = field(default_factory=list)

    def as_response(self) -> dict[str, Any]:
        return {
            "videoUrl": self.video_url,
            "cover": self.cover,
            "duration": self.duration,
            "provider": self.provider,
            "segments": self.segments,
            "campaignKey": self.campaign_key,
            "resumedSegments": self.resumed_segments,
            "resumed": self.resumed,
        }


def _write_data_url(data_url: str, dest: Path) -> Path:
    _header, encoded = data_url.split(",", 1)
    dest.parent.mkdir(parents=True, exist_ok=True)
    dest.write_bytes(base64.b64decode(encoded))
    return dest


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class CampaignRunner:
    # campaign key -> lock, dropped once no caller holds or waits on it
    _locks: dict[str, _KeyLock] = {}
    _locks_guard = threading.Lock()

    def __init__(
        self,
        cache: CampaignCache,
        client_factory: Callable[[VideoProviderSpec], VideoBackend],
        output_dir: Path,
        *,
        continuity_frames: bool = True,
        frame_max_side: int = 768,
        payload_retry_limit: int = MAX_SHRINK_STAGE,
        max_segments: int = 24,
        downloader: Callable[[str, Path], Path] = download_to_file,
        concat: Callable[[list[Path], Path], Path] = concat_videos,
        frame_extractor: Callable[[Path, Path], Path] = extract_last_frame,
    ) -> None:
        self.cache = cache
        self.client_factory = client_factory
        self.output_dir = Path(output_dir)
        self.continuity_frames = continuity_frames
        self.frame_max_side = frame_max_side
        self.payload_retry_limit = max(0, min(int(payload_retry_limit), MAX_SHRINK_STAGE))
        self.max_segments = max_segments
        self.downloader = downloader
        self.concat = concat
        self.frame_extractor = frame_extractor

    @classmethod
    @contextmanager
    def _locked(cls, key: str) -> Iterator[None]:
        with cls._locks_guard:
            entry = cls._locks.setdefault(key, _KeyLock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with cls._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    cls._locks.pop(key, None)

    # -- planning ---------------------------------------------------------

    @staticmethod
    def campaign_params(request: CampaignRequest, provider: VideoProviderSpec) -> dict[str, Any]:
        return {
            "provider": provider.key,
            "model": provider.model,
            "prompt": request.prompt,
            "seconds": int(request.total_seconds),
            "aspect": request.aspect_ratio,
            "reference": sha256_text(request.reference_image) if request.reference_image else None,
            "scenes": list(request.scenes),
        }

    def _plan(self, key: str, params: dict[str, Any], request: CampaignRequest, provider: VideoProviderSpec) -> CampaignRecord:
        planned = plan_segments(request.total_seconds, provider.segment_durations, self.max_segments)
        total = sum(p.duration for p in planned)
        beats = assign_beats(list(request.scenes), len(planned))
        segments = [
            SegmentRecord(
                index=p.index,
                start=p.start,
                duration=p.duration,
                prompt=build_segment_prompt(request.prompt, p, len(planned), total, beats[p.index]),
            )
            for p in planned
        ]
        LOGGER.info(
            "Planned campaign %s on %s: %ds as %s",
            key,
            provider.key,
            total,
            "+".join(str(p.duration) for p in planned),
        )
        return CampaignRecord(campaign_key=key, provider=provider.key, params=params, segments=segments)

    # -- public -----------------------------------------------------------

    def status(self, key: str) -> CampaignRecord | None:
        return self.cache.load(key)

    def run(self, request: CampaignRequest, provider: VideoProviderSpec) -> CampaignResult:
        if not provider.configured:
            raise MerseError(f"{provider.label}: model or API token is not configured")
        params = self.campaign_params(request, provider)
        key = campaign_key(params)
        with self._locked(key):
            return self._run_locked(key, params, request, provider)

    def _run_locked(
        self,
        key: str,
        params: dict[str, Any],
        request: CampaignRequest,
        provider: VideoProviderSpec,
    ) -> CampaignResult:
        record = self.cache.load(key)
        if record is None or not record.segments:
            record = self._plan(key, params, request, provider)
            self.cache.save(record)

        if record.status == "succeeded" and record.final_path and Path(record.final_path).exists():
            LOGGER.info("Campaign %s already assembled, serving cached result", key)
            return self._result(record, resumed_segments=record.total_segments, resumed=True)

        client = self.client_factory(provider)
        version = client.resolve_version(provider.model or "", provider.version)

        record.status = "running"
        record.error = None
        self.cache.save(record)

        reference = request.reference_image
        resumed = 0
        paths: list[Path] = []
        last_index = record.total_segments - 1
        cover: str | None = None

        for seg in record.segments:
            local = Path(seg.local_path) if seg.local_path else None
            if seg.status == "succeeded" and local is not None and local.exists():
                LOGGER.info("Campaign %s segment %d already done, skipping", key, seg.index + 1)
                resumed += 1
            else:
                prediction = self._run_segment(client, version, record, seg, provider, request.aspect_ratio, reference)
                local, seg_cover = self._store_segment(record, seg, prediction)
                cover = cover or seg_cover
            paths.append(local)
            if seg.index < last_index:
                reference = self._continuity_reference(record, seg, local, reference)

        name = f"{slugify(request.label, fallback='campaign')}-{key}.mp4"
        out_path = self.output_dir / name
        try:
            self.concat(paths, out_path)
        except MediaError as exc:
            record.status = "failed"
            record.error = str(exc)
            self.cache.save(record)
            raise

        record.final_path = str(out_path)
        record.final_url = f"{PUBLIC_PREFIX}/{name}"
        record.status = "succeeded"
        record.error = None
        self.cache.save(record)
        LOGGER.info("Campaign %s assembled from %d segments -> %s", key, len(paths), out_path)
        return self._result(record, resumed_segments=resumed, resumed=resumed > 0, cover=cover)

    # -- per segment ------------------------------------------------------

    def _fail(self, record: CampaignRecord, seg: SegmentRecord, message: str) -> None:
        seg.status = "failed"
        seg.error = message
        seg.touch()
        record.status = "failed"
        record.error = f"segment {seg.index + 1}: {message}"
        self.cache.save(record)

    def _run_segment(
        self,
        client: VideoBackend,
        version: str,
        record: CampaignRecord,
        seg: SegmentRecord,
        provider: VideoProviderSpec,
        aspect_ratio: str,
        reference: str | None,
    ) -> Prediction:
        prediction: Prediction | None = None
        if seg.status == "running" and seg.prediction_id:
            try:
                prediction = client.get_prediction(seg.prediction_id)
            except PredictionNotFound:
                LOGGER.warning("Prediction %s vanished upstream, resubmitting segment %d", seg.prediction_id, seg.index + 1)
                prediction = None
            if prediction is not None and prediction.status in TERMINAL_FAILURES:
                LOGGER.warning(
                    "Prediction %s ended as %s, resubmitting segment %d",
                    prediction.id,
                    prediction.status,
                    seg.index + 1,
                )
                prediction = None
            if prediction is None:
                seg.prediction_id = None
                seg.status = "pending"
            else:
                LOGGER.info("Resuming segment %d on prediction %s (%s)", seg.index + 1, prediction.id, prediction.status)

        if prediction is None:
            prediction = self._submit(client, version, record, seg, provider, aspect_ratio, reference)

        try:
            return client.wait(prediction, provider.poll_interval_s, provider.max_attempts)
        except PredictionTimeout as exc:
            record.status = "running"
            self.cache.save(record)
            raise CampaignPending(
                record.campaign_key,
                completed=record.completed_segments,
                total=record.total_segments,
                prediction_id=exc.prediction_id,
            ) from exc
        except PredictionFailed as exc:
            seg.prediction_id = None
            self._fail(record, seg, str(exc))
            raise

    def _submit(
        self,
        client: VideoBackend,
        version: str,
        record: CampaignRecord,
        seg: SegmentRecord,
        provider: VideoProviderSpec,
        aspect_ratio: str,
        reference: str | None,
    ) -> Prediction:
        base_input = provider.build_input(seg.prompt, seg.duration, aspect_ratio, reference)
        stage = min(seg.payload_stage, self.payload_retry_limit)
        while True:
            payload = shrink_payload(base_input, stage)
            try:
                prediction = client.create_prediction(version, payload)
                break
            except PayloadRejected as exc:
                if stage >= self.payload_retry_limit:
                    self._fail(record, seg, f"input rejected (422): {exc.message}")
                    raise
                stage += 1
                seg.payload_stage = stage
                self.cache.save(record)
                LOGGER.warning(
                    "Segment %d input rejected (422: %s), retrying with shrink stage %d",
                    seg.index + 1,
                    exc.message,
                    stage,
                )
            except ReplicateError as exc:
                self._fail(record, seg, exc.message)
                raise

        seg.prediction_id = prediction.id
        seg.status = "running"
        seg.attempts += 1
        seg.error = None
        seg.touch()
        # Checkpoint before polling.
        self.cache.save(record)
        LOGGER.info(
            "Submitted segment %d/%d (%ds) as prediction %s",
            seg.index + 1,
            record.total_segments,
            seg.duration,
            prediction.id,
        )
        return prediction

    def _store_segment(self, record: CampaignRecord, seg: SegmentRecord, prediction: Prediction) -> tuple[Path, str | None]:
        media = collect_media(prediction.output)
        videos = media.videos or normalize_output_urls(prediction.output)
        if not videos:
            seg.prediction_id = None
            self._fail(record, seg, "no video URL in the prediction output")
            raise MediaError(f"Prediction {prediction.id} finished without a video URL")

        url = videos[0]
        dest = self.cache.segment_path(record.campaign_key, seg.index)
        try:
            if url.startswith("data:"):
                _write_data_url(url, dest)
            else:
                self.downloader(url, dest)
        except (MediaError, OSError, ValueError) as exc:
            # Leave the segment "running" with its prediction id: the next request re-polls and re-downloads.
            record.error = f"segment {seg.index + 1}: download failed: {exc}"
            self.cache.save(record)
            if isinstance(exc, MediaError):
                raise
            raise MediaError(str(exc)) from exc

        seg.video_url = None if url.startswith("data:") else url
        seg.local_path = str(dest)
        seg.status = "succeeded"
        seg.error = None
        seg.touch()
        self.cache.save(record)
        LOGGER.info("Segment %d/%d stored at %s", seg.index + 1, record.total_segments, dest)
        return dest, (media.covers[0] if media.covers else None)

    def _continuity_reference(
        self,
        record: CampaignRecord,
        seg: SegmentRecord,
        local: Path,
        current: str | None,
    ) -> str | None:
        if not self.continuity_frames:
            return current
        frame = self.cache.frame_path(record.campaign_key, seg.index)
        try:
            if not frame.exists():
                self.frame_extractor(local, frame)
            return image_to_data_url(frame, max_side=self.frame_max_side)
        except (MediaError, OSError) as exc:
            LOGGER.warning("Continuity frame for segment %d unavailable: %s", seg.index + 1, exc)
            return current

    def _result(
        self,
        record: CampaignRecord,
        *,
        resumed_segments: int,
        resumed: bool,
        cover: str | None = None,
    ) -> CampaignResult:
        return CampaignResult(
            campaign_key=record.campaign_key,
            video_url=record.final_url or "",
            local_path=record.final_path or "",
            duration=sum(s.duration for s in record.segments),
            segments=record.total_segments,
            provider=record.provider,
            resumed_segments=resumed_segments,
            resumed=resumed,
            cover=cover,
            segment_urls=[s.video_url for s in record.segments if s.video_url],
        )
