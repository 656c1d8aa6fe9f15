from __future__ import annotations

import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any

import requests
import uvicorn
from fastapi import Body, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, Field

from merse_studio.assembly.sequence import extract_frame_from_url, last_frame_data_url, merge_sequence
from merse_studio.campaign import PUBLIC_PREFIX, CampaignRunner
from merse_studio.config import settings
from merse_studio.corporate import CorporateVideoService
from merse_studio.errors import (
    CampaignPending,
    InvalidMediaUrl,
    MerseError,
    PredictionNotFound,
    ProviderChainError,
    ReplicateError,
)
from merse_studio.flows import DEFAULT_ENERGY_LIMIT, FlowNode, FlowRunner, LoopStep
from merse_studio.logging_utils import setup_logging
from merse_studio.loop_ads import LoopAdsService
from merse_studio.providers.catalog import VideoProviderSpec, build_video_providers, corporate_chain
from merse_studio.providers.openai_provider import get_storyboard_writer
from merse_studio.providers.replicate_provider import ReplicateClient
from merse_studio.rate_limit import RateLimiter
from merse_studio.storage import CampaignCache, JobStore, StoryboardStore
from merse_studio.video import VideoService

setup_logging(verbose=settings.log_verbose, quiet=settings.log_quiet)
LOGGER = logging.getLogger(__name__)

app = FastAPI(title="merse_studio video service")

FLOW_PENDING_ROUNDS = 6

data_dir = Path(settings.data_dir).resolve()
video_dir = data_dir / "generated-video"
loop_dir = data_dir / "generated-loop"
video_dir.mkdir(parents=True, exist_ok=True)
loop_dir.mkdir(parents=True, exist_ok=True)
app.mount(PUBLIC_PREFIX, StaticFiles(directory=str(video_dir)), name="generated-video")
app.mount("/generated-loop", StaticFiles(directory=str(loop_dir)), name="generated-loop")


def _replicate_client(token: str) -> ReplicateClient:
    return ReplicateClient(
        token,
        api_url=settings.replicate_api_url,
        timeout=settings.replicate_request_timeout_s,
    )


def _provider_client(provider: VideoProviderSpec) -> ReplicateClient:
    return _replicate_client(provider.token or "")


providers = build_video_providers(settings)
cache = CampaignCache(data_dir)
job_store = JobStore(data_dir)
runner = CampaignRunner(
    cache,
    _provider_client,
    video_dir,
    continuity_frames=settings.continuity_frames,
    frame_max_side=settings.continuity_frame_max_side,
    payload_retry_limit=settings.payload_retry_limit,
    max_segments=settings.max_campaign_segments,
)
video_service = VideoService(runner, providers)
corporate_service = CorporateVideoService(
    runner,
    corporate_chain(settings),
    get_storyboard_writer(),
    StoryboardStore(data_dir),
)
loop_ads_service = LoopAdsService(settings, job_store, _replicate_client)
loop_ads_limiter = RateLimiter(settings.loop_ads_rate_limit, settings.loop_ads_rate_window_s)


class MergeSequenceRequest(BaseModel):
    videoUrls: list[Any] = Field(default_factory=list)
    sequenceName: str | None = None


class ExtractFrameRequest(BaseModel):
    videoUrl: str = ""


class FlowRunRequest(BaseModel):
    flowName: str = "flow"
    nodes: list[dict[str, Any]] = Field(default_factory=list)
    energyLimit: int = DEFAULT_ENERGY_LIMIT


def _pending_response(exc: CampaignPending) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content={
            "status": "processing",
            "campaignKey": exc.campaign_key,
            "completedSegments": exc.completed,
            "totalSegments": exc.total,
            "predictionId": exc.prediction_id,
            "message": str(exc),
        },
    )


def _forwarded_host(request: Request) -> tuple[str | None, str | None]:
    host = request.headers.get("x-forwarded-host") or request.headers.get("host")
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme
    return host, proto


def _client_identifier(request: Request) -> str:
    uid = (request.headers.get("x-merse-uid") or "").strip()
    if uid:
        return uid
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    return forwarded or "anonymous"


@app.get("/api/health")
def health() -> dict[str, Any]:
    return {
        "ok": True,
        "providers": {key: spec.configured for key, spec in providers.items()},
        "storyboard": "openai" if settings.openai_api_key else "fallback",
    }


@app.post("/api/generate-video")
def generate_video(body: dict[str, Any] = Body(...)) -> Any:
    try:
        result = video_service.generate(body)
    except CampaignPending as exc:
        return _pending_response(exc)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (MerseError, requests.RequestException) as exc:
        LOGGER.error("Video generation failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return result.as_response()


@app.get("/api/campaigns/{campaign_key}")
def campaign_status(campaign_key: str) -> dict[str, Any]:
    record = runner.status(campaign_key)
    if record is None:
        raise HTTPException(status_code=404, detail="campaign not found")
    return record.progress()


@app.delete("/api/campaigns/{campaign_key}")
def delete_campaign(campaign_key: str) -> dict[str, Any]:
    if runner.status(campaign_key) is None:
        raise HTTPException(status_code=404, detail="campaign not found")
    cache.delete(campaign_key)
    return {"ok": True}


@app.post("/api/generate-corporate-video")
def generate_corporate_video(body: dict[str, Any] = Body(...)) -> Any:
    try:
        return corporate_service.generate(body)
    except CampaignPending as exc:
        return _pending_response(exc)
    except ProviderChainError as exc:
        LOGGER.error("Corporate video failed on every provider: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (MerseError, requests.RequestException) as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/api/loop-ads/create")
def loop_ads_create(request: Request, body: dict[str, Any] = Body(...)) -> dict[str, Any]:
    decision = loop_ads_limiter.hit(_client_identifier(request))
    if not decision.allowed:
        raise HTTPException(
            status_code=429,
            detail="Too many Loop Ads requests. Try again in a few seconds.",
            headers={"Retry-After": str(decision.retry_after_s)},
        )
    try:
        return loop_ads_service.create(body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except ReplicateError as exc:
        raise HTTPException(status_code=500, detail=exc.message) from exc
    except MerseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.get("/api/loop-ads/status")
def loop_ads_status(id: str | None = None) -> dict[str, Any]:
    job_id = (id or "").strip()
    if not job_id:
        raise HTTPException(status_code=400, detail="Provide the job id.")
    try:
        return loop_ads_service.status(job_id)
    except PredictionNotFound as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except ReplicateError as exc:
        raise HTTPException(status_code=500, detail=exc.message) from exc
    except MerseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


@app.post("/api/loop-ads/webhook")
def loop_ads_webhook(secret: str | None = None, payload: dict[str, Any] | None = Body(default=None)) -> dict[str, Any]:
    try:
        return loop_ads_service.webhook(secret, payload or {})
    except PermissionError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


@app.post("/api/loop/merge-sequence")
def loop_merge_sequence(request: Request, body: MergeSequenceRequest) -> dict[str, Any]:
    host, proto = _forwarded_host(request)
    try:
        merged = merge_sequence(body.videoUrls, body.sequenceName, loop_dir, host=host, proto=proto)
    except (InvalidMediaUrl, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MerseError as exc:
        LOGGER.error("Sequence merge failed: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"mergedUrl": merged}


@app.post("/api/loop/extract-last-frame")
def loop_extract_last_frame(request: Request, body: ExtractFrameRequest) -> dict[str, Any]:
    host, proto = _forwarded_host(request)
    try:
        frame_url = extract_frame_from_url(body.videoUrl, loop_dir, host=host, proto=proto)
    except (InvalidMediaUrl, ValueError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MerseError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"frameUrl": frame_url}


def _flow_video_step(node: FlowNode, prompt: str, reference: str | None) -> str:
    body = {
        "prompt": prompt,
        "provider": node.provider,
        "aspectRatio": node.aspect_ratio,
        "duration": node.duration,
        "referenceImage": reference,
        "label": node.name,
    }
    pending: CampaignPending | None = None
    # Same body, same campaign key: each round resumes the in-flight prediction.
    for _ in range(FLOW_PENDING_ROUNDS):
        try:
            return video_service.generate(body).video_url
        except CampaignPending as exc:
            pending = exc
            LOGGER.info("Flow step %s still rendering (%s)", node.name, exc)
    raise MerseError(f"Step {node.name} is still rendering: {pending}")


def _flow_loop_step(identifier: str) -> LoopStep:
    def step(node: FlowNode, loop_body: dict[str, Any], should_stop: Callable[[], bool]) -> str:
        decision = loop_ads_limiter.hit(identifier)
        if not decision.allowed:
            raise MerseError(f"Too many Loop Ads requests. Try again in {decision.retry_after_s}s.")
        created = loop_ads_service.create(loop_body)
        return loop_ads_service.wait(created["id"], should_stop=should_stop)[0]

    return step


def _flow_frame(video_url: str) -> str:
    return last_frame_data_url(
        video_url,
        {PUBLIC_PREFIX: video_dir, "/generated-loop": loop_dir},
        max_side=settings.continuity_frame_max_side,
    )


@app.post("/api/flows/run")
def run_flow(request: Request, body: FlowRunRequest) -> dict[str, Any]:
    if not body.nodes:
        raise HTTPException(status_code=400, detail="Add at least one step to the flow.")
    nodes = [FlowNode.from_dict(raw, i) for i, raw in enumerate(body.nodes)]
    flow_runner = FlowRunner(
        _flow_video_step,
        _flow_loop_step(_client_identifier(request)),
        _flow_frame,
        energy_limit=body.energyLimit,
    )
    return flow_runner.run(nodes, flow_name=body.flowName.strip() or "flow").as_response()


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
