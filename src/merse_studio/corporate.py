"""Corporate brand films: storyboard, prompt, then a provider fallback chain."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Literal

import requests

from merse_studio.campaign import CampaignRequest, CampaignResult, CampaignRunner
from merse_studio.errors import CampaignPending, MerseError, ProviderChainError
from merse_studio.inputs import normalize_reference_image, normalize_stepped, parse_enum, sanitize_text
from merse_studio.providers.base import StoryboardProvider, StoryboardResult
from merse_studio.providers.catalog import VideoProviderSpec
from merse_studio.segments import split_storyboard
from merse_studio.storage import StoryboardStore, campaign_key

LOGGER = logging.getLogger(__name__)

CorporateGoal = Literal["launch", "institutional", "events", "training"]
CorporateScenario = Literal["galaxy", "space", "studio", "urban"]

GOALS: tuple[CorporateGoal, ...] = ("launch", "institutional", "events", "training")
SCENARIOS: tuple[CorporateScenario, ...] = ("galaxy", "space", "studio", "urban")

GOAL_LABELS: dict[str, str] = {
    "launch": "Product launch",
    "institutional": "Institutional",
    "events": "Events & fairs",
    "training": "Education",
}

GOAL_PROMPTS: dict[str, str] = {
    "launch": "product launch with clear differentiation, features, and a direct call-to-action",
    "institutional": "brand manifesto with credibility, mission, and social proof",
    "events": "event invitation highlighting date, experience, and urgency",
    "training": "educational flow with clear onboarding steps and confident guidance",
}

SCENARIO_LABELS: dict[str, str] = {
    "galaxy": "Neo Galaxy",
    "space": "Orbit Workspace",
    "studio": "Studio Vision",
    "urban": "City Nova",
}

SCENARIO_PROMPTS: dict[str, str] = {
    "galaxy": "deep-space stage, luminous nebulae, elegant starfields, premium cosmic atmosphere",
    "space": "floating orbital offices, holographic dashboards, collaborative futuristic environment",
    "studio": "minimal corporate studio, controlled neutral light, polished surfaces, product focus",
    "urban": "night megacity skyline, digital billboards, modern mobility, urban cinematic pulse",
}

MIN_SECONDS, MAX_SECONDS, STEP_SECONDS, DEFAULT_SECONDS = 30, 120, 5, 45
STORYBOARD_PROMPT_CHARS = 1800


@dataclass(frozen=True)
class CorporateBrief:
    company: str
    script_brief: str
    goal: str
    scenario: str
    duration: int
    reference_image: str | None

    @property
    def has_logo(self) -> bool:
        return self.reference_image is not None

    def as_storyboard_input(self) -> dict[str, Any]:
        return {
            "company": self.company,
            "goal_label": GOAL_LABELS[self.goal],
            "goal_prompt": GOAL_PROMPTS[self.goal],
            "scenario_label": SCENARIO_LABELS[self.scenario],
            "scenario_prompt": SCENARIO_PROMPTS[self.scenario],
            "script_brief": self.script_brief,
            "duration": self.duration,
            "has_logo": self.has_logo,
        }


def normalize_goal(value: Any) -> str:
    return parse_enum(value.strip().lower() if isinstance(value, str) else value, "launch", GOALS)


def normalize_scenario(value: Any) -> str:
    return parse_enum(value.strip().lower() if isinstance(value, str) else value, "galaxy", SCENARIOS)


def parse_brief(body: dict[str, Any]) -> CorporateBrief:
    company = sanitize_text(body.get("company"), 80)
    script_brief = sanitize_text(body.get("scriptBrief"), 1200)
    if not company:
        raise ValueError("Provide the company name.")
    if not script_brief:
        raise ValueError("Provide a brief to generate the corporate video.")
    return CorporateBrief(
        company=company,
        script_brief=script_brief,
        goal=normalize_goal(body.get("goal")),
        scenario=normalize_scenario(body.get("scenario")),
        duration=normalize_stepped(body.get("duration"), MIN_SECONDS, MAX_SECONDS, STEP_SECONDS, DEFAULT_SECONDS),
        reference_image=normalize_reference_image(body.get("logo")),
    )


def build_fallback_storyboard(brief: CorporateBrief) -> str:
    opening = max(5, round(brief.duration * 0.2))
    return "\n".join(
        [
            f"Scene 1 (0-{opening}s): {brief.company} brand opening in the {SCENARIO_LABELS[brief.scenario]} setting.",
            "Scene 2: context and the main pain point of the audience.",
            f"Scene 3: the solution and its core differentiators for {GOAL_LABELS[brief.goal].lower()}.",
            "Scene 4: proof of value with results, credentials and trust.",
            "Scene 5: closing with a direct call-to-action.",
            f"Strategic summary: {brief.script_brief}",
        ]
    )


def build_corporate_prompt(brief: CorporateBrief, storyboard: str) -> str:
    guidance = re.sub(r"\s+", " ", storyboard)[:STORYBOARD_PROMPT_CHARS]
    parts = [
        f"Corporate brand film for {brief.company}.",
        f"Business objective: {GOAL_PROMPTS[brief.goal]}.",
        f"Visual world: {SCENARIO_PROMPTS[brief.scenario]}.",
        f"Target length: {brief.duration} seconds.",
        f"Creative brief: {brief.script_brief}.",
        "Integrate the company logo in elegant transitions and end-card."
        if brief.has_logo
        else "Use typographic branding placeholders with premium corporate style.",
        "Cinematic shots, smooth camera motion, controlled pacing, realistic lighting, polished motion graphics.",
        "Galaxy-inspired aesthetics with professional tone, credible executives, and clear value proposition.",
        f"Storyboard guidance: {guidance}.",
    ]
    return " ".join(parts)


class CorporateVideoService:
    def __init__(
        self,
        runner: CampaignRunner,
        chain: list[VideoProviderSpec],
        storyboard_writer: StoryboardProvider,
        storyboards: StoryboardStore,
    ) -> None:
        self.runner = runner
        self.chain = chain
        self.storyboard_writer = storyboard_writer
        self.storyboards = storyboards

    def storyboard_for(self, brief: CorporateBrief) -> StoryboardResult:
        # A repeated brief must map to the same campaign key.
        key = campaign_key(brief.as_storyboard_input())
        stored = self.storyboards.load(key)
        if stored is not None:
            LOGGER.info("Reusing storyboard %s for %s", key, brief.company)
            return StoryboardResult(text=stored["text"], provider=stored["provider"])
        storyboard = self.storyboard_writer.write_corporate_storyboard(
            brief.as_storyboard_input(),
            fallback=build_fallback_storyboard(brief),
        )
        self.storyboards.save(key, storyboard.text, storyboard.provider)
        return storyboard

    def generate(self, body: dict[str, Any]) -> dict[str, Any]:
        brief = parse_brief(body)
        storyboard = self.storyboard_for(brief)
        prompt = build_corporate_prompt(brief, storyboard.text)
        request = CampaignRequest(
            prompt=prompt,
            total_seconds=brief.duration,
            aspect_ratio="16:9",
            reference_image=brief.reference_image,
            scenes=tuple(split_storyboard(storyboard.text)),
            label=f"{brief.company}-corporate",
        )
        result = self._generate_with_fallback(request)
        response = result.as_response()
        response["storyboard"] = storyboard.text
        response["storyboardProvider"] = storyboard.provider
        return response

    def _generate_with_fallback(self, request: CampaignRequest) -> CampaignResult:
        failures: list[str] = []
        for provider in self.chain:
            if not (provider.model or "").strip():
                continue
            if not (provider.token or "").strip():
                failures.append(f"{provider.label}: missing API token")
                continue
            try:
                return self.runner.run(request, provider)
            except CampaignPending:
                # The in-flight prediction belongs to this provider.
                raise
            except (MerseError, requests.RequestException, ValueError) as exc:
                failures.append(f"{provider.label}: {exc}")
                LOGGER.warning("Provider %s failed for corporate video: %s", provider.label, exc)
        raise ProviderChainError(failures)
