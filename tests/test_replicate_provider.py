"""Tests for the Replicate REST client (no network)."""

from __future__ import annotations

from typing import Any

import pytest
import requests

from merse_studio.errors import (
    PayloadRejected,
    PredictionFailed,
    PredictionNotFound,
    PredictionTimeout,
    ReplicateError,
)
from merse_studio.providers.base import Prediction
from merse_studio.providers.replicate_provider import ReplicateClient


class DummyResponse:
    def __init__(self, status_code: int, payload: Any) -> None:
        self.status_code = status_code
        self._payload = payload

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class DummySession:
    """Replays queued responses and records every request."""

    def __init__(self, responses: list[DummyResponse]) -> None:
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> DummyResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"unexpected request {method} {url}")
        return self.responses.pop(0)


def _client(responses: list[DummyResponse], sleeps: list[float] | None = None) -> tuple[ReplicateClient, DummySession]:
    session = DummySession(responses)
    sink = sleeps if sleeps is not None else []
    client = ReplicateClient("r8_token", session=session, sleep=sink.append)  # type: ignore[arg-type]
    return client, session


def test_empty_token_is_rejected() -> None:
    with pytest.raises(ReplicateError):
        ReplicateClient("  ")


def test_resolve_version_caches_latest_version() -> None:
    client, session = _client([DummyResponse(200, {"latest_version": {"id": "abc123"}})])
    assert client.resolve_version("wan-video/wan-2.6-t2v") == "abc123"
    assert client.resolve_version("wan-video/wan-2.6-t2v") == "abc123"
    assert len(session.calls) == 1
    assert session.calls[0]["url"].endswith("/models/wan-video/wan-2.6-t2v")
    assert session.calls[0]["headers"]["Authorization"] == "Bearer r8_token"


def test_explicit_version_skips_lookup() -> None:
    client, session = _client([])
    assert client.resolve_version("google/veo-3", "pinned") == "pinned"
    assert session.calls == []


def test_resolve_version_surfaces_api_errors() -> None:
    client, _ = _client([DummyResponse(404, {"detail": "model not found"})])
    with pytest.raises(ReplicateError) as excinfo:
        client.resolve_version("nobody/nothing")
    assert excinfo.value.message == "model not found"
    assert excinfo.value.status_code == 404


def test_create_prediction_sends_webhook_filter() -> None:
    client, session = _client([DummyResponse(201, {"id": "p1", "status": "starting"})])
    prediction = client.create_prediction("v1", {"prompt": "x"}, webhook="https://app/hook", events=["completed"])
    assert prediction.id == "p1"
    body = session.calls[0]["json"]
    assert body == {
        "version": "v1",
        "input": {"prompt": "x"},
        "webhook": "https://app/hook",
        "webhook_events_filter": ["completed"],
    }


def test_create_prediction_422_raises_payload_rejected() -> None:
    client, _ = _client([DummyResponse(422, {"title": "Input validation failed", "detail": "image too large"})])
    with pytest.raises(PayloadRejected) as excinfo:
        client.create_prediction("v1", {"prompt": "x"})
    assert excinfo.value.status_code == 422
    assert "image too large" in excinfo.value.message


def test_create_prediction_without_id_is_an_error() -> None:
    client, _ = _client([DummyResponse(201, {"status": "starting"})])
    with pytest.raises(ReplicateError):
        client.create_prediction("v1", {"prompt": "x"})


def test_network_errors_are_wrapped() -> None:
    class BrokenSession:
        def request(self, *_args: Any, **_kwargs: Any) -> None:
            raise requests.ConnectionError("boom")

    client = ReplicateClient("r8_token", session=BrokenSession())  # type: ignore[arg-type]
    with pytest.raises(ReplicateError):
        client.get_prediction("p1")


def test_get_prediction_404_raises_not_found() -> None:
    client, _ = _client([DummyResponse(404, {"detail": "Not found."})])
    with pytest.raises(PredictionNotFound):
        client.get_prediction("gone")


def test_wait_polls_until_succeeded() -> None:
    sleeps: list[float] = []
    client, session = _client(
        [
            DummyResponse(200, {"id": "p1", "status": "processing"}),
            DummyResponse(200, {"id": "p1", "status": "succeeded", "output": "https://cdn/x.mp4"}),
        ],
        sleeps,
    )
    done = client.wait(Prediction(id="p1", status="starting"), poll_interval_s=1.5, max_attempts=5)
    assert done.status == "succeeded"
    assert done.output == "https://cdn/x.mp4"
    assert sleeps == [1.5, 1.5]
    assert len(session.calls) == 2


def test_wait_raises_on_failure_with_message() -> None:
    client, _ = _client([DummyResponse(200, {"id": "p1", "status": "failed", "error": {"message": "NSFW"}})])
    with pytest.raises(PredictionFailed) as excinfo:
        client.wait(Prediction(id="p1", status="processing"), poll_interval_s=0, max_attempts=3)
    assert "NSFW" in str(excinfo.value)
    assert excinfo.value.prediction_id == "p1"


def test_wait_times_out_when_budget_is_spent() -> None:
    client, _ = _client([DummyResponse(200, {"id": "p1", "status": "processing"})] * 2)
    with pytest.raises(PredictionTimeout) as excinfo:
        client.wait(Prediction(id="p1", status="starting"), poll_interval_s=0, max_attempts=2)
    assert excinfo.value.prediction_id == "p1"
    assert excinfo.value.last_status == "processing"


def test_wait_returns_already_finished_prediction_without_polling() -> None:
    client, session = _client([])
    done = Prediction(id="p1", status="succeeded", output=["https://cdn/x.mp4"])
    assert client.wait(done, poll_interval_s=1, max_attempts=3) is done
    assert session.calls == []
