from __future__ import annotations

import logging
from typing import Any

from merse_studio.config import settings
from merse_studio.providers.base import StoryboardResult

LOGGER = logging.getLogger(__name__)


def extract_message_text(content: Any) -> str:
    """Chat content may be a plain string or a list of text parts."""
    if isinstance(content, str):
        return content.strip()
    if not isinstance(content, list):
        return ""
    parts: list[str] = []
    for chunk in content:
        if isinstance(chunk, str):
            parts.append(chunk)
            continue
        text = chunk.get("text") if isinstance(chunk, dict) else getattr(chunk, "text", None)
        if isinstance(text, str):
            parts.append(text)
    return "\n".join(parts).strip()


class StoryboardWriter:
    name = "openai"

    def __init__(self, api_key: str | None, base_url: str | None = None, model: str | None = None) -> None:
        self.api_key = (api_key or "").strip() or None
        self.base_url = base_url
        self.model = (model or settings.openai_storyboard_model).strip()
        self._client: Any = None

    @property
    def enabled(self) -> bool:
        return self.api_key is not None

    def _get_client(self) -> Any:
        if self._client is None:
            from openai import OpenAI  # type: ignore

            self._client = OpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    def _complete(self, system: str, user: str, *, temperature: float, max_tokens: int) -> str:
        resp = self._get_client().chat.completions.create(
            model=self.model,
            temperature=temperature,
            max_tokens=max_tokens,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        choices = getattr(resp, "choices", None) or []
        if not choices:
            return ""
        return extract_message_text(choices[0].message.content)

    def write_corporate_storyboard(self, brief: dict[str, Any], fallback: str) -> StoryboardResult:
        """
        Five numbered scenes plus a closing CTA. Any failure (no key, SDK error,
        empty answer) returns the deterministic fallback instead of raising.
        """
        if not self.enabled:
            return StoryboardResult(text=fallback, provider="fallback")

        user = "\n".join(
            [
                f"Company: {brief['company']}",
                f"Goal: {brief['goal_label']} ({brief['goal_prompt']})",
                f"Visual scenario: {brief['scenario_label']} ({brief['scenario_prompt']})",
                f"Total duration: {brief['duration']} seconds",
                f"Brief: {brief['script_brief']}",
                f"Logo provided: {'yes' if brief.get('has_logo') else 'no'}",
                "Write a storyboard with a clear narrative, commercial pacing and camera directions.",
            ]
        )
        try:
            text = self._complete(
                "You are the creative director of corporate films. Answer with 5 numbered scenes, "
                "one per line, and a final CTA. No markdown.",
                user,
                temperature=0.8,
                max_tokens=500,
            )
        except Exception as exc:
            LOGGER.warning("Storyboard generation failed, using fallback: %s", exc)
            return StoryboardResult(text=fallback, provider="fallback")

        if not text:
            return StoryboardResult(text=fallback, provider="fallback")
        return StoryboardResult(text=text, provider=self.name)


def get_storyboard_writer() -> StoryboardWriter:
    return StoryboardWriter(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.openai_storyboard_model,
    )
