"""Replicate predictions over REST (create, poll, resolve model versions)."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

import requests
from requests import exceptions as requests_exceptions

from merse_studio.errors import (
    PayloadRejected,
    PredictionFailed,
    PredictionNotFound,
    PredictionTimeout,
    ReplicateError,
)
from merse_studio.providers.base import TERMINAL_FAILURES, Prediction

LOGGER = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.replicate.com/v1"

# model slug -> version id, process-wide
_VERSION_CACHE: dict[str, str] = {}
_VERSION_LOCK = threading.Lock()


def clear_version_cache() -> None:
    with _VERSION_LOCK:
        _VERSION_CACHE.clear()


def _error_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and isinstance(err.get("message"), str):
            return err["message"]
        if isinstance(err, str) and err.strip():
            return err.strip()
        if isinstance(data.get("detail"), str):
            return data["detail"]
        if isinstance(data.get("title"), str):
            return data["title"]
    return default


class ReplicateClient:
    name = "replicate"

    def __init__(
        self,
        token: str,
        api_url: str = DEFAULT_API_URL,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if not token or not token.strip():
            raise ReplicateError("Replicate API token is not configured")
        self.token = token.strip()
        self.api_url = api_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self._sleep = sleep

    def _headers(self, *, json_body: bool = False) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/json",
        }
        if json_body:
            headers["Content-Type"] = "application/json"
        return headers

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> tuple[int, Any]:
        url = f"{self.api_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                headers=self._headers(json_body=payload is not None),
                json=payload,
                timeout=self.timeout,
            )
        except requests_exceptions.RequestException as exc:
            raise ReplicateError(f"Replicate request failed: {exc}") from exc

        try:
            data = resp.json()
        except ValueError:
            data = None
        return resp.status_code, data

    def resolve_version(self, model: str, version: str | None = None) -> str:
        """
        An explicit version wins (and is remembered for the model); otherwise the
        cached id, otherwise `latest_version.id` from the models endpoint.
        """
        model = model.strip()
        if version and version.strip():
            with _VERSION_LOCK:
                _VERSION_CACHE[model] = version.strip()
            return version.strip()

        with _VERSION_LOCK:
            cached = _VERSION_CACHE.get(model)
        if cached:
            return cached

        status, data = self._request("GET", f"/models/{model}")
        if status >= 400:
            raise ReplicateError(
                _error_message(data, f"Could not resolve the model version for {model}."),
                status_code=status,
                details=data,
            )
        latest = (data or {}).get("latest_version") if isinstance(data, dict) else None
        version_id = latest.get("id") if isinstance(latest, dict) else None
        if not isinstance(version_id, str) or not version_id.strip():
            raise ReplicateError(f"Model {model} has no latest_version.", status_code=status, details=data)

        with _VERSION_LOCK:
            _VERSION_CACHE[model] = version_id.strip()
        return version_id.strip()

    def create_prediction(
        self,
        version: str,
        input: dict[str, Any],
        webhook: str | None = None,
        events: list[str] | None = None,
    ) -> Prediction:
        body: dict[str, Any] = {"version": version, "input": input}
        if webhook:
            body["webhook"] = webhook
            body["webhook_events_filter"] = list(events or ["completed"])

        status, data = self._request("POST", "/predictions", body)
        if status == 422:
            raise PayloadRejected(
                _error_message(data, "Replicate rejected the prediction input (422)."),
                status_code=status,
                details=data,
            )
        if status >= 400 or not isinstance(data, dict):
            raise ReplicateError(
                _error_message(data, f"Failed to start prediction (status {status})."),
                status_code=status,
                details=data,
            )

        prediction = Prediction.from_json(data)
        if not prediction.id:
            raise ReplicateError("Replicate did not return a prediction id.", status_code=status, details=data)
        LOGGER.debug("Created prediction %s (status=%s)", prediction.id, prediction.status)
        return prediction

    def get_prediction(self, prediction_id: str) -> Prediction:
        status, data = self._request("GET", f"/predictions/{prediction_id}")
        if status == 404:
            raise PredictionNotFound(
                _error_message(data, f"Prediction {prediction_id} not found."),
                status_code=status,
                details=data,
            )
        if status >= 400 or not isinstance(data, dict):
            raise ReplicateError(
                _error_message(data, "Failed to fetch prediction status."),
                status_code=status,
                details=data,
            )
        return Prediction.from_json(data, fallback_id=prediction_id)

    def wait(
        self,
        prediction: Prediction,
        poll_interval_s: float,
        max_attempts: int,
        on_status: Callable[[Prediction], None] | None = None,
    ) -> Prediction:
        current = prediction
        for attempt in range(max(0, int(max_attempts))):
            if not current.is_active:
                break
            self._sleep(poll_interval_s)
            current = self.get_prediction(current.id)
            LOGGER.debug("Prediction %s poll %d: %s", current.id, attempt + 1, current.status)
            if on_status is not None:
                on_status(current)

        if current.status in TERMINAL_FAILURES:
            raise PredictionFailed(current.error_message(), prediction_id=current.id, status=current.status)
        if current.status != "succeeded":
            raise PredictionTimeout(current.id, attempts=max_attempts, last_status=current.status)
        return current
