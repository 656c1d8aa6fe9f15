from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Loads keys from process env, and also from a local .env file (.env.local style deploys).
    model_config = SettingsConfigDict(env_prefix="", extra="ignore", env_file=".env", env_file_encoding="utf-8")

    data_dir: str = "data"

    # OpenAI (storyboards / prompt plans)
    openai_api_key: str | None = None
    openai_base_url: str | None = None
    openai_storyboard_model: str = "gpt-4o-mini"

    # Replicate
    replicate_api_url: str = "https://api.replicate.com/v1"
    replicate_api_token: str | None = None
    replicate_request_timeout_s: float = 30.0

    replicate_veo_model: str = "google/veo-3"
    replicate_veo_model_version: str | None = None
    replicate_veo_api_token: str | None = None

    replicate_sora_model: str = "openai/sora"
    replicate_sora_model_version: str | None = None
    replicate_sora_api_token: str | None = None

    replicate_merse_model: str = "mersee/merse-ai-1-0"
    replicate_merse_model_version: str | None = None
    replicate_merse_api_token: str | None = None

    replicate_wan_video_model: str = "wan-video/wan-2.6-t2v"
    replicate_wan_video_model_version: str | None = None
    replicate_wan_video_api_token: str | None = None

    replicate_kling_model: str = "kwaivgi/kling-v2.5-turbo-pro"
    replicate_kling_model_version: str | None = None
    replicate_kling_api_token: str | None = None

    # No default: the corporate slot is only tried when explicitly configured.
    replicate_corporate_video_model: str | None = None
    replicate_corporate_video_model_version: str | None = None
    replicate_corporate_api_token: str | None = None

    replicate_loop_ads_model: str | None = None
    replicate_loop_ads_model_version: str | None = None
    replicate_loop_ads_api_token: str | None = None

    # Webhooks (loop ads)
    app_url: str | None = None
    replicate_webhook_secret: str | None = None

    # Media tooling
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"

    # Orchestration limits
    max_merge_segments: int = 40
    max_campaign_segments: int = 24
    payload_retry_limit: int = 4
    continuity_frames: bool = True
    continuity_frame_max_side: int = 768

    # Rate limiting
    loop_ads_rate_limit: int = 4
    loop_ads_rate_window_s: float = 60.0

    # Logging
    log_verbose: bool = False
    log_quiet: bool = False


settings = Settings()
