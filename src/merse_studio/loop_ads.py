"""Loop Ads engine: a single Replicate model driven by a wide parameter form."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any
from urllib.parse import quote

from merse_studio.config import Settings
from merse_studio.errors import MerseError, PredictionFailed, PredictionTimeout
from merse_studio.inputs import (
    parse_bool,
    parse_enum,
    parse_integer,
    parse_number,
    parse_optional_string,
    parse_string,
)
from merse_studio.media import collect_image_urls, normalize_output_urls
from merse_studio.providers.base import Prediction, VideoBackend
from merse_studio.storage import JobStore

LOGGER = logging.getLogger(__name__)

PRESETS = ("ecom", "cosmic", "minimal", "premium")
BACKGROUND_MODES = ("studio_glass", "cosmic_nebula", "packshot_studio")
ELEMENTS = ("none", "orb", "chroma_creature", "mixed")
PARTICLE_STYLES = ("dust", "comet", "mixed")
PALETTE_MODES = ("auto", "manual")
TEXT_ANIMS = ("none", "fade", "slide", "type")

CONFIG_KEYS = (
    "preset",
    "background_mode",
    "element",
    "scenes",
    "seconds_per_scene",
    "fps",
    "width",
    "height",
    "batch_count",
    "seed",
    "with_product",
)

WEBHOOK_EVENTS = ["completed", "failed", "canceled"]

STATUS_POLL_ATTEMPTS = 70
STATUS_POLL_INTERVAL_S = 3.2


PRESET_DEFAULTS: dict[str, tuple[str, str]] = {
    "ecom": ("studio_glass", "mixed"),
    "cosmic": ("cosmic_nebula", "orb"),
    "minimal": ("studio_glass", "none"),
    "premium": ("packshot_studio", "orb"),
}


def build_loop_input(body: dict[str, Any]) -> dict[str, Any]:
    preset = parse_enum(body.get("preset"), "ecom", PRESETS)
    default_background, default_element = PRESET_DEFAULTS[preset]
    loop_input: dict[str, Any] = {
        "preset": preset,
        "background_mode": parse_enum(body.get("background_mode"), default_background, BACKGROUND_MODES),
        "element": parse_enum(body.get("element"), default_element, ELEMENTS),
        "particles": parse_bool(body.get("particles"), True),
        "particle_style": parse_enum(body.get("particle_style"), "mixed", PARTICLE_STYLES),
        "width": parse_integer(body.get("width"), 720, 512, 1080),
        "height": parse_integer(body.get("height"), 1280, 512, 1920),
        "fps": parse_integer(body.get("fps"), 24, 12, 60),
        "scenes": parse_integer(body.get("scenes"), 5, 3, 10),
        "seconds_per_scene": parse_number(body.get("seconds_per_scene"), 1, 0.6, 3, 0.1),
        "motion_intensity": parse_number(body.get("motion_intensity"), 0.9, 0, 1, 0.01),
        "loop_fade": parse_number(body.get("loop_fade"), 0.35, 0.1, 0.8, 0.01),
        "with_product": parse_bool(body.get("with_product"), False),
        "remove_bg": parse_bool(body.get("remove_bg"), True),
        "product_image": parse_optional_string(body.get("product_image")),
        "title": parse_string(body.get("title"), "MERSE", 100),
        "subtitle": parse_string(body.get("subtitle"), "Loop Ads Engine", 140),
        "text_anim": parse_enum(body.get("text_anim"), "fade", TEXT_ANIMS),
        "reflection": parse_bool(body.get("reflection"), True),
        "reflection_strength": parse_number(body.get("reflection_strength"), 0.22, 0, 0.8, 0.01),
        "palette_mode": parse_enum(body.get("palette_mode"), "auto", PALETTE_MODES),
        "manual_colors": parse_optional_string(body.get("manual_colors")),
        "product_scale": parse_number(body.get("product_scale"), 0.58, 0.2, 0.9, 0.01),
        "product_x": parse_number(body.get("product_x"), 0.64, 0, 1, 0.01),
        "product_y": parse_number(body.get("product_y"), 0.5, 0, 1, 0.01),
        "seed": parse_integer(body.get("seed"), 0, 0, 2_147_483_647),
        "batch_count": parse_integer(body.get("batch_count"), 1, 1, 8),
        "batch_start": parse_integer(body.get("batch_start"), 0, 0, 9999),
    }
    if loop_input["with_product"] and not loop_input["product_image"]:
        raise ValueError("With the product enabled, send a public URL (or upload) in product_image.")
    return {k: v for k, v in loop_input.items() if v is not None}


def config_summary(loop_input: Any) -> dict[str, Any]:
    if not isinstance(loop_input, dict):
        return {}
    return {key: loop_input.get(key) for key in CONFIG_KEYS}


def _first_non_empty(*values: str | None) -> str:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class LoopAdsService:
    def __init__(
        self,
        cfg: Settings,
        job_store: JobStore,
        client_factory: Callable[[str], VideoBackend],
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.job_store = job_store
        self.client_factory = client_factory
        self._sleep = sleep

    @property
    def token(self) -> str:
        c = self.cfg
        return _first_non_empty(
            c.replicate_loop_ads_api_token,
            c.replicate_merse_api_token,
            c.replicate_veo_api_token,
            c.replicate_wan_video_api_token,
            c.replicate_kling_api_token,
            c.replicate_api_token,
        )

    @property
    def model(self) -> str:
        return _first_non_empty(self.cfg.replicate_loop_ads_model, self.cfg.replicate_merse_model)

    @property
    def model_version(self) -> str | None:
        if (self.cfg.replicate_loop_ads_model or "").strip():
            return _first_non_empty(self.cfg.replicate_loop_ads_model_version) or None
        return _first_non_empty(self.cfg.replicate_merse_model_version) or None

    def _client(self) -> VideoBackend:
        if not self.token:
            raise MerseError(
                "Configure REPLICATE_LOOP_ADS_API_TOKEN (recommended) or a fallback token such as REPLICATE_API_TOKEN.",
            )
        return self.client_factory(self.token)

    def webhook_url(self) -> str | None:
        app_url = (self.cfg.app_url or "").strip().rstrip("/")
        secret = (self.cfg.replicate_webhook_secret or "").strip()
        if not app_url or not secret:
            return None
        return f"{app_url}/api/loop-ads/webhook?secret={quote(secret, safe='')}"

    def _snapshot(self, job_id: str, data: dict[str, Any]) -> None:
        try:
            self.job_store.merge(job_id, data)
        except (OSError, ValueError) as exc:
            LOGGER.warning("Failed to persist loop-ads job %s: %s", job_id, exc)

    def create(self, body: dict[str, Any]) -> dict[str, Any]:
        loop_input = build_loop_input(body)
        client = self._client()
        model = self.model
        if not model:
            raise MerseError("Configure REPLICATE_LOOP_ADS_MODEL (recommended) to use the Loop Ads engine.")

        version = client.resolve_version(model, self.model_version)
        webhook = self.webhook_url()
        prediction = client.create_prediction(
            version,
            loop_input,
            webhook=webhook,
            events=WEBHOOK_EVENTS if webhook else None,
        )

        config = config_summary(loop_input)
        now_ms = int(time.time() * 1000)
        self._snapshot(
            prediction.id,
            {
                "id": prediction.id,
                "status": prediction.status or "starting",
                "output": normalize_output_urls(prediction.output),
                "createdAt": now_ms,
                "updatedAt": now_ms,
                "provider": "replicate",
                "model": model,
                "webhookMode": "enabled" if webhook else "disabled",
                "config": config,
            },
        )
        LOGGER.info("Loop-ads job %s created on %s", prediction.id, model)
        return {
            "id": prediction.id,
            "status": prediction.status or "starting",
            "model": model,
            "webhook": "enabled" if webhook else "disabled",
            "config": config,
        }

    def _status_payload(self, prediction: Prediction) -> dict[str, Any]:
        output = normalize_output_urls(prediction.output)
        return {
            "id": prediction.id,
            "status": prediction.status or "unknown",
            "output": output if output else (prediction.output or []),
            "images": collect_image_urls(prediction.output),
            "config": config_summary(prediction.raw.get("input")),
            "error": prediction.error,
        }

    def status(self, job_id: str) -> dict[str, Any]:
        prediction = self._client().get_prediction(job_id)
        payload = self._status_payload(prediction)
        self._snapshot(
            job_id,
            {
                "id": job_id,
                "status": payload["status"],
                "output": normalize_output_urls(prediction.output),
                "config": payload["config"],
                "error": prediction.error,
                "updatedAt": int(time.time() * 1000),
            },
        )
        return payload

    def webhook(self, secret: str | None, payload: dict[str, Any]) -> dict[str, Any]:
        expected = (self.cfg.replicate_webhook_secret or "").strip()
        if expected and secret != expected:
            raise PermissionError("Unauthorized webhook")

        job_id = payload.get("id") if isinstance(payload.get("id"), str) else ""
        if not job_id:
            return {"ok": True}

        self._snapshot(
            job_id,
            {
                "id": job_id,
                "status": payload.get("status") if isinstance(payload.get("status"), str) else "unknown",
                "output": normalize_output_urls(payload.get("output")),
                "error": payload.get("error"),
                "updatedAt": int(time.time() * 1000),
            },
        )
        return {"ok": True}

    def wait(
        self,
        job_id: str,
        attempts: int = STATUS_POLL_ATTEMPTS,
        interval_s: float = STATUS_POLL_INTERVAL_S,
        should_stop: Callable[[], bool] | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> list[str]:
        """Poll until the loop renders; returns its output URLs."""
        for _ in range(attempts):
            if should_stop is not None and should_stop():
                raise MerseError("Execution stopped by the user.")
            data = self.status(job_id)
            status = data["status"]
            if on_status is not None:
                on_status(status)
            if status == "succeeded":
                outputs = normalize_output_urls(data["output"])
                if not outputs:
                    raise PredictionFailed("Loop finished without a video URL.", prediction_id=job_id, status=status)
                return outputs
            if status in ("failed", "canceled"):
                err = data.get("error")
                message = err.get("message") if isinstance(err, dict) else err
                raise PredictionFailed(
                    message if isinstance(message, str) and message else "Loop Ads failed while rendering.",
                    prediction_id=job_id,
                    status=status,
                )
            self._sleep(interval_s)
        raise PredictionTimeout(job_id, attempts=attempts)
