from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from merse_studio.config import Settings


@dataclass(frozen=True)
class VideoProviderSpec:
    key: str
    label: str
    model: str | None
    version: str | None
    token: str | None
    poll_interval_s: float
    max_attempts: int
    # Clip lengths (seconds) the model accepts for a single prediction.
    segment_durations: tuple[int, ...]
    aspect_ratios: tuple[str, ...] = ("16:9", "9:16")
    default_aspect: str = "16:9"
    prompt_suffix: str = ""
    extended_inputs: bool = False

    @property
    def configured(self) -> bool:
        return bool((self.model or "").strip()) and bool((self.token or "").strip())

    def normalize_aspect(self, value: Any) -> str:
        if isinstance(value, str) and value.strip() in self.aspect_ratios:
            return value.strip()
        return self.default_aspect

    def build_input(
        self,
        prompt: str,
        duration: int,
        aspect_ratio: str,
        reference_image: str | None = None,
    ) -> dict[str, Any]:
        text = f"{prompt} {self.prompt_suffix}".strip() if self.prompt_suffix else prompt
        payload: dict[str, Any] = {
            "prompt": text,
            "aspect_ratio": aspect_ratio,
            "duration": duration,
        }
        if self.extended_inputs:
            payload["video_length"] = duration
            payload["resolution"] = "720x1280" if aspect_ratio == "9:16" else "1080p"
        if reference_image:
            payload["image"] = reference_image
        return payload


def _first(*values: str | None) -> str | None:
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def build_video_providers(cfg: Settings) -> dict[str, VideoProviderSpec]:
    fallback_token = cfg.replicate_api_token
    providers = [
        VideoProviderSpec(
            key="corporate",
            label="Corporate Primary",
            model=_first(cfg.replicate_corporate_video_model),
            version=_first(cfg.replicate_corporate_video_model_version),
            token=_first(cfg.replicate_corporate_api_token, fallback_token),
            poll_interval_s=2.5,
            max_attempts=45,
            segment_durations=(5, 10),
            prompt_suffix="High-end corporate campaign, premium finish.",
            extended_inputs=True,
        ),
        VideoProviderSpec(
            key="merse",
            label="Merse AI",
            model=_first(cfg.replicate_merse_model),
            version=_first(cfg.replicate_merse_model_version),
            token=_first(cfg.replicate_merse_api_token, fallback_token),
            poll_interval_s=2.5,
            max_attempts=35,
            segment_durations=tuple(range(4, 21, 2)),
            prompt_suffix="Official Merse identity, cosmic particles, brand-grade transitions.",
        ),
        VideoProviderSpec(
            key="veo",
            label="Veo",
            # The veo slot only accepts veo models.
            model=_first(cfg.replicate_veo_model) if "veo" in (cfg.replicate_veo_model or "").lower() else "google/veo-3",
            version=_first(cfg.replicate_veo_model_version),
            token=_first(cfg.replicate_veo_api_token, fallback_token),
            poll_interval_s=3.0,
            max_attempts=45,
            segment_durations=(4, 6, 8),
            prompt_suffix="Cinematic realism, consistent motion and polished edits.",
            extended_inputs=True,
        ),
        VideoProviderSpec(
            key="wan",
            label="Wan",
            model=_first(cfg.replicate_wan_video_model),
            version=_first(cfg.replicate_wan_video_model_version),
            token=_first(cfg.replicate_wan_video_api_token, fallback_token),
            poll_interval_s=2.5,
            max_attempts=40,
            segment_durations=(5, 10, 15),
            prompt_suffix="Stable camera path, elegant transitions, branded narrative arc.",
        ),
        VideoProviderSpec(
            key="kling",
            label="Kling",
            model=_first(cfg.replicate_kling_model),
            version=_first(cfg.replicate_kling_model_version),
            token=_first(cfg.replicate_kling_api_token, fallback_token),
            poll_interval_s=2.5,
            max_attempts=40,
            segment_durations=(5, 10),
            prompt_suffix="Smooth movement, high detail, cinematic look.",
        ),
        VideoProviderSpec(
            key="sora",
            label="Sora",
            model=_first(cfg.replicate_sora_model),
            version=_first(cfg.replicate_sora_model_version),
            token=_first(cfg.replicate_sora_api_token, fallback_token),
            poll_interval_s=3.0,
            max_attempts=45,
            segment_durations=tuple(range(6, 21, 2)),
            prompt_suffix="Coherent physics, narrative pacing and premium composition.",
        ),
    ]
    return {p.key: p for p in providers}


CORPORATE_CHAIN = ("corporate", "merse", "veo", "wan", "kling", "sora")


def corporate_chain(cfg: Settings) -> list[VideoProviderSpec]:
    catalog = build_video_providers(cfg)
    return [catalog[key] for key in CORPORATE_CHAIN]
