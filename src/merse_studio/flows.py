"""
Flow Studio: a linear pipeline of video and Loop Ads steps.

Each step may consume the previous step's output (as a reference frame or
product image) and may reference any earlier output in its prompt through
`{{prev_url}}` / `{{step_<n>_url}}` tokens.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import requests

from merse_studio.errors import MerseError
from merse_studio.inputs import parse_bool, parse_enum, parse_number

LOGGER = logging.getLogger(__name__)

PROVIDERS = ("veo", "sora", "merse", "wan", "kling")
APIS = ("video_api", "loop_ads_api")
REFERENCE_MODES = ("none", "url", "previous")
PRODUCT_SOURCES = ("url", "previous")
LOOP_PRESETS = ("ecom", "cosmic", "minimal", "premium")

VIDEO_COSTS: dict[str, int] = {"veo": 30, "sora": 34, "merse": 24, "wan": 20, "kling": 22}
LOOP_COST = 26
DEFAULT_ENERGY_LIMIT = 1000

RETRY_PAUSE_S = 0.55

PROMPT_REFINEMENTS = (
    "Refine continuity, keep subject identity and remove flicker.",
    "Enhance camera movement coherence and preserve style consistency.",
    "Improve lighting readability and keep cinematic depth stable.",
)

LOOP_PRESET_BACKGROUND = {
    "ecom": "studio_glass",
    "cosmic": "cosmic_nebula",
    "minimal": "studio_glass",
    "premium": "packshot_studio",
}
LOOP_PRESET_ELEMENT = {"ecom": "mixed", "cosmic": "orb", "minimal": "none", "premium": "orb"}


def _text(value: Any, fallback: str = "") -> str:
    return value if isinstance(value, str) else fallback


@dataclass
class FlowNode:
    name: str
    api: str = "video_api"
    prompt: str = ""
    provider: str = "veo"
    aspect_ratio: str = "9:16"
    duration: int = 6
    retries: int = 1
    continue_on_error: bool = False
    auto_pass_output: bool = True
    reference_mode: str = "none"
    reference_url: str = ""
    loop_preset: str = "ecom"
    loop_scenes: int = 5
    loop_seconds_per_scene: float = 1.0
    with_product: bool = False
    product_source: str = "url"
    product_url: str = ""

    @classmethod
    def from_dict(cls, raw: dict[str, Any], index: int) -> "FlowNode":
        default_name = f"Step {index + 1}"
        name = _text(raw.get("name")).strip() or default_name
        return cls(
            name=name,
            api=parse_enum(raw.get("api"), "video_api", APIS),
            prompt=_text(raw.get("prompt")),
            provider=parse_enum(raw.get("provider"), "veo", PROVIDERS),
            aspect_ratio=parse_enum(raw.get("aspectRatio"), "9:16", ("16:9", "9:16")),
            duration=int(parse_number(raw.get("duration"), 6, 4, 20, 2)),
            retries=int(parse_number(raw.get("retries"), 1, 0, 4, 1)),
            continue_on_error=parse_bool(raw.get("continueOnError"), False),
            auto_pass_output=parse_bool(raw.get("autoPassOutput"), True),
            reference_mode=parse_enum(raw.get("referenceMode"), "none", REFERENCE_MODES),
            reference_url=_text(raw.get("referenceUrl")).strip(),
            loop_preset=parse_enum(raw.get("loopPreset"), "ecom", LOOP_PRESETS),
            loop_scenes=int(parse_number(raw.get("loopScenes"), 5, 3, 10, 1)),
            loop_seconds_per_scene=parse_number(raw.get("loopSecondsPerScene"), 1, 0.6, 3, 0.1),
            with_product=parse_bool(raw.get("withProduct"), False),
            product_source=parse_enum(raw.get("productSource"), "url", PRODUCT_SOURCES),
            product_url=_text(raw.get("productUrl")).strip(),
        )

    @property
    def cost(self) -> int:
        if self.api == "loop_ads_api":
            return LOOP_COST
        return VIDEO_COSTS[self.provider]


@dataclass
class FlowStep:
    index: int
    name: str
    status: str = "idle"
    output_url: str | None = None
    error: str | None = None
    rendered_prompt: str | None = None
    attempts: int = 0


@dataclass
class FlowRunResult:
    flow_name: str
    status: str
    steps: list[FlowStep] = field(default_factory=list)
    energy_used: int = 0
    log: list[str] = field(default_factory=list)
    error: str | None = None

    def as_response(self) -> dict[str, Any]:
        return {
            "flowName": self.flow_name,
            "status": self.status,
            "energyUsed": self.energy_used,
            "error": self.error,
            "log": self.log,
            "steps": [
                {
                    "index": s.index,
                    "name": s.name,
                    "status": s.status,
                    "outputUrl": s.output_url,
                    "error": s.error,
                    "renderedPrompt": s.rendered_prompt,
                    "attempts": s.attempts,
                }
                for s in self.steps
            ],
        }


class FlowStopped(MerseError):
    pass


class EnergyExhausted(MerseError):
    pass


def apply_prompt_tokens(prompt: str, tokens: dict[str, str]) -> str:
    out = prompt
    for key, value in tokens.items():
        out = out.replace("{{" + key + "}}", value or "")
    return out.strip()


def mutate_prompt(prompt: str, attempt: int) -> str:
    if attempt <= 0:
        return prompt
    suffix = PROMPT_REFINEMENTS[(attempt - 1) % len(PROMPT_REFINEMENTS)]
    return f"{prompt} {suffix}".strip()


def build_loop_body(node: FlowNode, prompt: str, index: int, product_image: str | None) -> dict[str, Any]:
    body: dict[str, Any] = {
        "preset": node.loop_preset,
        "background_mode": LOOP_PRESET_BACKGROUND[node.loop_preset],
        "element": LOOP_PRESET_ELEMENT[node.loop_preset],
        "scenes": node.loop_scenes,
        "seconds_per_scene": node.loop_seconds_per_scene,
        "fps": 24,
        "width": 720,
        "height": 1280,
        "particles": True,
        "particle_style": "mixed",
        "motion_intensity": 0.9,
        "loop_fade": 0.35,
        "title": node.name[:100] or f"Step {index + 1}",
        "subtitle": prompt[:140] or "Flow Studio - Loop Ads Auto",
        "text_anim": "fade",
        "with_product": node.with_product,
        "remove_bg": True,
        "batch_count": 1,
        "batch_start": 0,
    }
    if node.with_product:
        body["product_image"] = product_image
    return body


VideoStep = Callable[[FlowNode, str, str | None], str]
LoopStep = Callable[[FlowNode, dict[str, Any], Callable[[], bool]], str]
FrameResolver = Callable[[str], str | None]


class FlowRunner:
    def __init__(
        self,
        video_step: VideoStep,
        loop_step: LoopStep,
        frame_resolver: FrameResolver,
        energy_limit: int = DEFAULT_ENERGY_LIMIT,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.video_step = video_step
        self.loop_step = loop_step
        self.frame_resolver = frame_resolver
        self.energy_limit = energy_limit
        self._sleep = sleep

    def run(
        self,
        nodes: list[FlowNode],
        flow_name: str = "flow",
        should_stop: Callable[[], bool] | None = None,
    ) -> FlowRunResult:
        result = FlowRunResult(flow_name=flow_name, status="running")
        stop = should_stop or (lambda: False)
        previous_url = ""
        frame_cache: dict[str, str] = {}
        tokens: dict[str, str] = {}

        def log(message: str) -> None:
            result.log.append(message)
            LOGGER.info("[flow %s] %s", flow_name, message)

        def previous_frame() -> str:
            if not previous_url:
                return ""
            if previous_url not in frame_cache:
                try:
                    frame = self.frame_resolver(previous_url)
                except (MerseError, OSError, ValueError) as exc:
                    LOGGER.warning("Frame capture failed for %s: %s", previous_url, exc)
                    frame = None
                frame_cache[previous_url] = frame or previous_url
            return frame_cache[previous_url]

        log(f'Flow "{flow_name}" started with {len(nodes)} step(s).')
        try:
            for index, node in enumerate(nodes):
                if stop():
                    raise FlowStopped("Execution stopped by the user.")
                step = FlowStep(index=index + 1, name=node.name, status="running")
                result.steps.append(step)
                log(f"Step {index + 1} ({node.name}) started.")

                base_prompt = apply_prompt_tokens(node.prompt, {"prev_url": previous_url, **tokens})
                prompt = base_prompt
                output_url = ""
                last_error = ""

                for attempt in range(node.retries + 1):
                    if stop():
                        raise FlowStopped("Execution stopped by the user.")
                    if attempt > 0:
                        prompt = mutate_prompt(base_prompt, attempt)
                        log(f"Step {index + 1} retry {attempt}/{node.retries}.")
                    step.attempts = attempt + 1
                    try:
                        output_url = self._execute(node, index, prompt, result, previous_url, previous_frame, stop)
                        break
                    except (MerseError, requests.RequestException, ValueError) as exc:
                        last_error = str(exc) or "Unexpected step failure."
                        LOGGER.warning("Step %d attempt %d failed: %s", index + 1, attempt + 1, last_error)
                        if attempt >= node.retries:
                            break
                        self._sleep(RETRY_PAUSE_S)

                if not output_url and stop():
                    raise FlowStopped("Execution stopped by the user.")
                if not output_url:
                    step.status = "error"
                    step.error = last_error or "Step failed without detail."
                    log(f"Step {index + 1} failed: {step.error}")
                    if node.continue_on_error:
                        continue
                    result.status = "error"
                    result.error = step.error
                    return result

                tokens[f"step_{index + 1}_url"] = output_url
                if node.auto_pass_output:
                    previous_url = output_url
                step.status = "done"
                step.output_url = output_url
                step.rendered_prompt = prompt
                log(f"Step {index + 1} completed.")
        except FlowStopped as exc:
            result.status = "stopped"
            result.error = str(exc)
            log(str(exc))
            return result

        result.status = "done"
        log("Flow finished.")
        return result

    def _charge(self, result: FlowRunResult, cost: int) -> None:
        if result.energy_used + cost > self.energy_limit:
            raise EnergyExhausted("Not enough energy for this step.")

    def _execute(
        self,
        node: FlowNode,
        index: int,
        prompt: str,
        result: FlowRunResult,
        previous_url: str,
        previous_frame: Callable[[], str],
        stop: Callable[[], bool],
    ) -> str:
        reference: str | None = None
        if node.reference_mode == "url":
            reference = node.reference_url or None
        elif node.reference_mode == "previous":
            reference = previous_frame() or None

        cost = node.cost
        self._charge(result, cost)

        if node.api == "video_api":
            if not prompt.strip():
                raise ValueError("A video step needs a prompt.")
            url = self.video_step(node, prompt, reference)
        else:
            product_image: str | None = None
            if node.with_product:
                if node.product_source == "url":
                    product_image = node.product_url
                else:
                    product_image = previous_frame() or previous_url
                if not product_image:
                    raise ValueError("A Loop Ads step with a product needs a product URL or a previous output.")
            url = self.loop_step(node, build_loop_body(node, prompt, index, product_image), stop)

        if not isinstance(url, str) or not url.strip():
            raise MerseError("The step returned no video URL.")
        result.energy_used += cost
        return url
