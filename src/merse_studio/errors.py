"""Exception hierarchy shared by providers, orchestration and the API layer."""

from __future__ import annotations

from typing import Any


class MerseError(RuntimeError):
    """Base class for errors raised by merse_studio services."""


class ReplicateError(MerseError):
    """Non-2xx (or malformed) response from the Replicate REST API."""

    def __init__(self, message: str, *, status_code: int | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.details = details


class PayloadRejected(ReplicateError):
    """Replicate answered 422: the input payload did not validate."""


class PredictionNotFound(ReplicateError):
    """Replicate answered 404 for a prediction id."""


class PredictionFailed(MerseError):
    def __init__(self, message: str, *, prediction_id: str | None = None, status: str = "failed") -> None:
        super().__init__(message)
        self.prediction_id = prediction_id
        self.status = status


class PredictionTimeout(MerseError):
    def __init__(self, prediction_id: str, *, attempts: int, last_status: str | None = None) -> None:
        super().__init__(
            f"Timed out waiting for prediction {prediction_id} after {attempts} polls (last status: {last_status})",
        )
        self.prediction_id = prediction_id
        self.attempts = attempts
        self.last_status = last_status


class CampaignPending(MerseError):
    """A campaign was checkpointed while a prediction is still running upstream."""

    def __init__(self, campaign_key: str, *, completed: int, total: int, prediction_id: str | None = None) -> None:
        super().__init__(f"Campaign {campaign_key} still processing ({completed}/{total} segments done)")
        self.campaign_key = campaign_key
        self.completed = completed
        self.total = total
        self.prediction_id = prediction_id


class ProviderChainError(MerseError):
    def __init__(self, failures: list[str]) -> None:
        details = " | ".join(failures[:6])
        message = "No video provider completed successfully."
        if details:
            message = f"{message} {details}"
        super().__init__(message)
        self.failures = list(failures)


class MediaError(MerseError):
    """ffmpeg/ffprobe failure, failed download or missing media output."""


class InvalidMediaUrl(MerseError, ValueError):
    pass
