from __future__ import annotations

import logging
from typing import Any

from merse_studio.campaign import CampaignRequest, CampaignResult, CampaignRunner
from merse_studio.errors import MerseError
from merse_studio.inputs import normalize_reference_image, normalize_stepped, sanitize_text
from merse_studio.providers.catalog import VideoProviderSpec

LOGGER = logging.getLogger(__name__)

DEFAULT_PROVIDER = "veo"
MIN_SECONDS = 4
MAX_SECONDS = 120
DEFAULT_SECONDS = 8
MAX_PROMPT_CHARS = 2000


class VideoService:
    """Single-provider generation; long durations become segmented campaigns."""

    def __init__(self, runner: CampaignRunner, providers: dict[str, VideoProviderSpec]) -> None:
        self.runner = runner
        self.providers = providers

    def build_request(self, body: dict[str, Any]) -> tuple[CampaignRequest, VideoProviderSpec]:
        prompt = sanitize_text(body.get("prompt"), MAX_PROMPT_CHARS)
        if not prompt:
            raise ValueError("Provide a prompt to generate the video.")

        key = body.get("provider")
        key = key.strip().lower() if isinstance(key, str) else ""
        if key not in self.providers:
            key = DEFAULT_PROVIDER
        provider = self.providers[key]

        request = CampaignRequest(
            prompt=prompt,
            total_seconds=normalize_stepped(body.get("duration"), MIN_SECONDS, MAX_SECONDS, 1, DEFAULT_SECONDS),
            aspect_ratio=provider.normalize_aspect(body.get("aspectRatio")),
            reference_image=normalize_reference_image(body.get("referenceImage")),
            label=sanitize_text(body.get("label"), 48) or f"{provider.key}-video",
        )
        return request, provider

    def generate(self, body: dict[str, Any]) -> CampaignResult:
        request, provider = self.build_request(body)
        if not (provider.model or "").strip():
            raise MerseError(f"{provider.label}: no model configured")
        if not (provider.token or "").strip():
            raise MerseError(f"{provider.label}: Replicate token is not configured")
        LOGGER.info("Generating %ds video on %s", request.total_seconds, provider.key)
        return self.runner.run(request, provider)
