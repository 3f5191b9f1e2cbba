"""HTTP client for the external prediction provider."""

from typing import Any, Literal, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, field_validator


class ProviderError(Exception):
    """Raised when a provider call fails."""

    pass


PredictionStatus = Literal["starting", "processing", "succeeded", "failed", "canceled"]

TERMINAL_PREDICTION_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class CreatePredictionRequest(BaseModel):
    """Request body for POST /predictions."""

    model_config = ConfigDict(frozen=True)

    model: str
    input: dict[str, Any] = {}

    @field_validator("model")
    @classmethod
    def model_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("model is required")
        return v


class Prediction(BaseModel):
    """A prediction as reported by the provider."""

    model_config = ConfigDict(frozen=True)

    id: str
    status: PredictionStatus
    output: Any = None
    error: str | None = None
    metrics: dict[str, Any] = {}
    cost: float | None = None

    @property
    def predict_time(self) -> float | None:
        value = self.metrics.get("predict_time")
        return float(value) if value is not None else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PREDICTION_STATUSES


class PredictionProvider(Protocol):
    """What the orchestrator needs from a prediction backend."""

    def create_prediction(self, model: str, input: dict[str, Any]) -> Prediction: ...

    def get_status(self, prediction_id: str) -> Prediction: ...

    def cancel(self, prediction_id: str) -> None: ...


class HttpPredictionProvider:
    """Prediction provider reached over a Replicate-style REST API."""

    def __init__(self, base_url: str, api_token: str | None = None, timeout: float = 30.0):
        """Initialize client with base URL, token and timeout."""
        if not base_url or not base_url.strip():
            raise ValueError("base_url is required")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._timeout = timeout

    def _headers(self) -> dict[str, str]:
        if not self._api_token:
            return {}
        return {"Authorization": f"Bearer {self._api_token}"}

    def _request(self, method: str, path: str, json: dict | None = None) -> httpx.Response:
        url = f"{self._base_url}{path}"
        try:
            with httpx.Client(timeout=self._timeout, headers=self._headers()) as client:
                response = client.request(method, url, json=json)
        except httpx.ConnectError as e:
            raise ProviderError(f"Connection failed: {e}") from e
        except httpx.TimeoutException as e:
            raise ProviderError(f"Request timed out: {e}") from e
        except httpx.RequestError as e:
            raise ProviderError(f"Request failed: {e}") from e

        if response.status_code >= 400:
            raise ProviderError(f"HTTP {response.status_code}: {response.text}")
        return response

    def _parse(self, response: httpx.Response) -> Prediction:
        try:
            return Prediction.model_validate(response.json())
        except Exception as e:
            raise ProviderError(f"Invalid response: {e}") from e

    def create_prediction(self, model: str, input: dict[str, Any]) -> Prediction:
        """Call POST /predictions."""
        request = CreatePredictionRequest(model=model, input=input)
        response = self._request("POST", "/predictions", json=request.model_dump(mode="json"))
        return self._parse(response)

    def get_status(self, prediction_id: str) -> Prediction:
        """Call GET /predictions/{id}."""
        if not prediction_id or not prediction_id.strip():
            raise ValueError("prediction_id is required")
        return self._parse(self._request("GET", f"/predictions/{prediction_id}"))

    def cancel(self, prediction_id: str) -> None:
        """Call POST /predictions/{id}/cancel."""
        if not prediction_id or not prediction_id.strip():
            raise ValueError("prediction_id is required")
        self._request("POST", f"/predictions/{prediction_id}/cancel")
