"""Tests for the provider catalog built from settings."""

from __future__ import annotations

from merse_studio.config import Settings
from merse_studio.providers.catalog import CORPORATE_CHAIN, build_video_providers, corporate_chain


def _settings(**overrides: object) -> Settings:
    return Settings(_env_file=None, **overrides)


def test_tokens_fall_back_to_the_shared_replicate_token() -> None:
    providers = build_video_providers(_settings(replicate_api_token="shared", replicate_kling_api_token="own"))
    assert providers["wan"].token == "shared"
    assert providers["kling"].token == "own"


def test_veo_slot_rejects_other_model_families() -> None:
    providers = build_video_providers(_settings(replicate_veo_model="minimax/video-01"))
    assert providers["veo"].model == "google/veo-3"


def test_corporate_chain_order() -> None:
    chain = corporate_chain(_settings(replicate_api_token="shared"))
    assert tuple(p.key for p in chain) == CORPORATE_CHAIN
    assert chain[0].model is None
    assert chain[0].configured is False


def test_build_input_adds_extended_fields_and_reference() -> None:
    veo = build_video_providers(_settings())["veo"]
    payload = veo.build_input("A fox", 8, "9:16", "https://cdn/ref.png")
    assert payload["prompt"].startswith("A fox ")
    assert payload["duration"] == 8
    assert payload["video_length"] == 8
    assert payload["resolution"] == "720x1280"
    assert payload["image"] == "https://cdn/ref.png"


def test_build_input_omits_missing_reference() -> None:
    wan = build_video_providers(_settings())["wan"]
    payload = wan.build_input("A fox", 5, "16:9")
    assert "image" not in payload
    assert "resolution" not in payload
