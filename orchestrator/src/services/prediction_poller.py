"""Cooperative polling of external predictions."""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict

from services.provider_client import PredictionProvider, ProviderError

logger = logging.getLogger(__name__)


class PollConfig(BaseModel):
    """Bounds of a poll loop."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int
    poll_interval: float
    backoff_multiplier: float = 1.0
    max_interval: float | None = None
    progress_start: int = 10
    progress_end: int = 90


POLL_CONFIGS: dict[str, PollConfig] = {
    "image": PollConfig(max_attempts=60, poll_interval=5.0),
    "video": PollConfig(max_attempts=120, poll_interval=10.0),
    "processing_image": PollConfig(max_attempts=180, poll_interval=5.0),
    "processing_video": PollConfig(max_attempts=180, poll_interval=10.0),
    "workflow": PollConfig(max_attempts=360, poll_interval=5.0),
}


class PollResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    output: Any = None
    error: str | None = None
    predict_time: float | None = None
    cost: float | None = None


class CancellationToken:
    """Set by whoever wants the poll loop to stop early.

    An optional ``checker`` is consulted on every check, which lets a token
    follow external state such as the execution being cancelled.
    """

    def __init__(self, checker: Callable[[], bool] | None = None):
        self._event = threading.Event()
        self._checker = checker

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._checker is not None and self._checker():
            self._event.set()
            return True
        return False

    def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds. Returns True if cancelled meanwhile."""
        if self._event.wait(timeout):
            return True
        return self.cancelled


class PredictionPoller:
    """Polls a provider until a prediction finishes, fails or runs out of time."""

    def __init__(
        self,
        provider: PredictionProvider,
        sleep: Callable[[float], None] | None = None,
    ):
        if provider is None:
            raise ValueError("provider is required")
        self._provider = provider
        self._sleep = sleep or time.sleep

    def poll_for_completion(
        self,
        prediction_id: str,
        config: PollConfig,
        on_progress: Callable[[int], None] | None = None,
        on_heartbeat: Callable[[], None] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> PollResult:
        if not prediction_id:
            raise ValueError("prediction_id is required")

        interval = config.poll_interval
        span = config.progress_end - config.progress_start

        for attempt in range(config.max_attempts):
            if cancel_token is not None and cancel_token.cancelled:
                return self._cancel(prediction_id)

            prediction = self._provider.get_status(prediction_id)

            if prediction.status == "succeeded":
                return PollResult(
                    success=True,
                    output=prediction.output,
                    predict_time=prediction.predict_time,
                    cost=prediction.cost,
                )
            if prediction.status in ("failed", "canceled"):
                return PollResult(
                    success=False,
                    error=prediction.error or f"Prediction {prediction.status}",
                )

            if on_progress is not None:
                on_progress(config.progress_start + span * (attempt + 1) // config.max_attempts)
            if on_heartbeat is not None:
                on_heartbeat()

            if cancel_token is not None:
                if cancel_token.wait(interval):
                    return self._cancel(prediction_id)
            else:
                self._sleep(interval)

            interval *= config.backoff_multiplier
            if config.max_interval is not None:
                interval = min(interval, config.max_interval)

        return PollResult(success=False, error="Prediction timed out")

    def _cancel(self, prediction_id: str) -> PollResult:
        try:
            self._provider.cancel(prediction_id)
        except ProviderError as e:
            logger.warning(f"Failed to cancel prediction {prediction_id}: {e}")
        return PollResult(success=False, error="Prediction cancelled")
