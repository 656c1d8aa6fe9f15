from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

ACTIVE_STATUSES = ("starting", "processing", "pending")
TERMINAL_FAILURES = ("failed", "canceled")


@dataclass(frozen=True)
class Prediction:
    id: str
    status: str
    output: Any = None
    error: Any = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: dict[str, Any], fallback_id: str = "") -> "Prediction":
        return cls(
            id=str(data.get("id") or fallback_id),
            status=str(data.get("status") or "unknown"),
            output=data.get("output"),
            error=data.get("error"),
            raw=dict(data),
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status == "succeeded" or self.status in TERMINAL_FAILURES

    def error_message(self, default: str = "Generation failed on Replicate.") -> str:
        err = self.error
        if isinstance(err, dict):
            message = err.get("message") if isinstance(err.get("message"), str) else default
            details = err.get("details")
            return f"{message} {details}" if isinstance(details, str) and details else message
        if isinstance(err, str) and err.strip():
            return err.strip()
        return default


@dataclass(frozen=True)
class StoryboardResult:
    text: str
    provider: str  # openai|fallback


class VideoBackend(Protocol):
    def resolve_version(self, model: str, version: str | None = None) -> str: ...

    def create_prediction(
        self,
        version: str,
        input: dict[str, Any],
        webhook: str | None = None,
        events: list[str] | None = None,
    ) -> Prediction: ...

    def get_prediction(self, prediction_id: str) -> Prediction: ...

    def wait(
        self,
        prediction: Prediction,
        poll_interval_s: float,
        max_attempts: int,
        on_status: Any = None,
    ) -> Prediction: ...


class StoryboardProvider(Protocol):
    name: str

    def write_corporate_storyboard(self, brief: dict[str, Any], fallback: str) -> StoryboardResult: ...
