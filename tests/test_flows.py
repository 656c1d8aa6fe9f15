"""Tests for the Flow Studio executor."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from merse_studio.errors import MerseError
from merse_studio.flows import (
    LOOP_COST,
    PROMPT_REFINEMENTS,
    FlowNode,
    FlowRunner,
    apply_prompt_tokens,
    mutate_prompt,
)


class Steps:
    """Records calls; `fail_first` makes the first N video attempts raise."""

    def __init__(self, fail_first: int = 0) -> None:
        self.fail_first = fail_first
        self.video_calls: list[tuple[str, str, str | None]] = []
        self.loop_calls: list[dict[str, Any]] = []
        self.frames: list[str] = []
        self.sleeps: list[float] = []
        self.stop_in_loop = False
        self.stopped = False

    def video(self, node: FlowNode, prompt: str, reference: str | None) -> str:
        self.video_calls.append((node.name, prompt, reference))
        if self.fail_first > 0:
            self.fail_first -= 1
            raise MerseError("provider busy")
        return f"https://cdn.example.com/{node.name}-{len(self.video_calls)}.mp4"

    def loop(self, node: FlowNode, body: dict[str, Any], should_stop: Callable[[], bool]) -> str:
        self.loop_calls.append(body)
        if self.stop_in_loop:
            self.stopped = True
        if should_stop():
            raise MerseError("Execution stopped by the user.")
        return "https://cdn.example.com/loop.mp4"

    def frame(self, url: str) -> str:
        self.frames.append(url)
        return f"data:image/jpeg;base64,{len(self.frames)}"

    def runner(self, energy_limit: int = 1000) -> FlowRunner:
        return FlowRunner(self.video, self.loop, self.frame, energy_limit=energy_limit, sleep=self.sleeps.append)


def _nodes(*raw: dict[str, Any]) -> list[FlowNode]:
    return [FlowNode.from_dict(r, i) for i, r in enumerate(raw)]


def test_apply_prompt_tokens() -> None:
    assert apply_prompt_tokens("Remix {{prev_url}} and {{step_1_url}} ", {"prev_url": "A", "step_1_url": ""}) == "Remix A and"


def test_mutate_prompt_cycles_refinements() -> None:
    assert mutate_prompt("base", 0) == "base"
    assert mutate_prompt("base", 1) == f"base {PROMPT_REFINEMENTS[0]}"
    assert mutate_prompt("base", 4) == f"base {PROMPT_REFINEMENTS[0]}"


def test_node_normalization_clamps_values() -> None:
    node = FlowNode.from_dict({"retries": 9, "duration": 7, "provider": "runway", "api": "loop_ads_api"}, 2)
    assert node.name == "Step 3"
    assert node.retries == 4
    assert node.duration == 8
    assert node.provider == "veo"
    assert node.cost == LOOP_COST


def test_outputs_flow_into_later_prompts_and_references() -> None:
    steps = Steps()
    nodes = _nodes(
        {"name": "intro", "prompt": "Sunrise over dunes", "provider": "wan"},
        {"name": "follow", "prompt": "Continue from {{step_1_url}}", "referenceMode": "previous", "provider": "kling"},
    )
    result = steps.runner().run(nodes, "demo")

    assert result.status == "done"
    assert result.energy_used == 20 + 22
    assert steps.video_calls[1][1] == "Continue from https://cdn.example.com/intro-1.mp4"
    assert steps.video_calls[1][2] == "data:image/jpeg;base64,1"
    assert result.steps[1].output_url == "https://cdn.example.com/follow-2.mp4"


def test_retry_uses_mutated_prompt_and_pauses() -> None:
    steps = Steps(fail_first=1)
    result = steps.runner().run(_nodes({"name": "a", "prompt": "Base", "retries": 2}), "retry")

    assert result.status == "done"
    assert [call[1] for call in steps.video_calls] == ["Base", f"Base {PROMPT_REFINEMENTS[0]}"]
    assert steps.sleeps == [0.55]
    assert result.steps[0].attempts == 2
    assert result.energy_used == 30


def test_failed_node_stops_the_flow() -> None:
    steps = Steps(fail_first=5)
    result = steps.runner().run(_nodes({"name": "a", "prompt": "x", "retries": 0}, {"name": "b", "prompt": "y"}), "f")
    assert result.status == "error"
    assert result.error == "provider busy"
    assert len(result.steps) == 1


def test_continue_on_error_moves_on() -> None:
    steps = Steps(fail_first=1)
    result = steps.runner().run(
        _nodes({"name": "a", "prompt": "x", "retries": 0, "continueOnError": True}, {"name": "b", "prompt": "y"}), "f"
    )
    assert result.status == "done"
    assert [s.status for s in result.steps] == ["error", "done"]


def test_energy_budget_is_enforced() -> None:
    steps = Steps()
    result = steps.runner(energy_limit=40).run(
        _nodes({"name": "a", "prompt": "x", "provider": "veo"}, {"name": "b", "prompt": "y", "provider": "veo"}), "e"
    )
    assert result.status == "error"
    assert result.energy_used == 30
    assert len(steps.video_calls) == 1
    assert "energy" in (result.error or "").lower()


def test_energy_shortfall_fails_only_that_step_with_continue_on_error() -> None:
    steps = Steps()
    nodes = _nodes(
        {"name": "pricey", "prompt": "x", "provider": "veo", "retries": 0, "continueOnError": True},
        {"name": "cheap", "prompt": "y", "provider": "wan"},
    )
    result = steps.runner(energy_limit=25).run(nodes, "budget")

    assert result.status == "done"
    assert [s.status for s in result.steps] == ["error", "done"]
    assert "energy" in (result.steps[0].error or "").lower()
    assert [call[0] for call in steps.video_calls] == ["cheap"]
    assert result.energy_used == 20


def test_stop_while_a_loop_renders_marks_the_flow_stopped() -> None:
    steps = Steps()
    steps.stop_in_loop = True
    nodes = _nodes({"name": "ad", "api": "loop_ads_api", "prompt": "Sale", "retries": 2})
    result = steps.runner().run(nodes, "loop", should_stop=lambda: steps.stopped)

    assert result.status == "stopped"
    assert len(steps.loop_calls) == 1
    assert result.energy_used == 0


def test_loop_step_uses_previous_output_as_product() -> None:
    steps = Steps()
    nodes = _nodes(
        {"name": "hero", "prompt": "Bottle on marble"},
        {"name": "ad", "api": "loop_ads_api", "prompt": "Summer sale", "withProduct": True, "productSource": "previous", "loopPreset": "premium"},
    )
    result = steps.runner().run(nodes, "loop")

    assert result.status == "done"
    body = steps.loop_calls[0]
    assert body["product_image"] == "data:image/jpeg;base64,1"
    assert body["background_mode"] == "packshot_studio"
    assert body["subtitle"] == "Summer sale"
    assert result.energy_used == 30 + LOOP_COST


def test_video_step_without_prompt_fails() -> None:
    steps = Steps()
    result = steps.runner().run(_nodes({"name": "a", "prompt": "  ", "retries": 0}), "p")
    assert result.status == "error"
    assert steps.video_calls == []


def test_should_stop_aborts() -> None:
    steps = Steps()
    result = steps.runner().run(_nodes({"name": "a", "prompt": "x"}), "s", should_stop=lambda: True)
    assert result.status == "stopped"
    assert steps.video_calls == []
