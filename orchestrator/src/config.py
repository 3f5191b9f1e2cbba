"""Environment-driven settings shared by the API server, worker and CLI."""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict

from models.queues import QueueName


def _queue_env_name(queue: QueueName) -> str:
    return "QUEUE_CONCURRENCY_" + queue.value.upper().replace("-", "_")


class OrchestratorSettings(BaseModel):
    """Runtime settings. Every field can be set through the environment."""

    model_config = ConfigDict(frozen=True)

    redis_url: str = "redis://localhost:6379"
    log_level: str = "info"
    log_dir: str = "logs"
    stall_threshold_seconds: float = 300.0
    max_recovery_attempts: int = 3
    recovery_interval_seconds: float = 300.0
    worker_poll_interval: float = 1.0
    queue_lock_ttl_seconds: float = 30.0
    queue_concurrency: dict[str, int] = {}
    provider_base_url: str | None = None
    provider_api_token: str | None = None
    artifact_dir: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "OrchestratorSettings":
        env = os.environ if environ is None else environ
        values: dict = {}

        simple = {
            "REDIS_URL": "redis_url",
            "LOG_LEVEL": "log_level",
            "LOG_DIR": "log_dir",
            "STALL_THRESHOLD_SECONDS": "stall_threshold_seconds",
            "MAX_RECOVERY_ATTEMPTS": "max_recovery_attempts",
            "RECOVERY_INTERVAL_SECONDS": "recovery_interval_seconds",
            "WORKER_POLL_INTERVAL": "worker_poll_interval",
            "QUEUE_LOCK_TTL_SECONDS": "queue_lock_ttl_seconds",
            "PROVIDER_BASE_URL": "provider_base_url",
            "PROVIDER_API_TOKEN": "provider_api_token",
            "ARTIFACT_DIR": "artifact_dir",
        }
        for env_name, field in simple.items():
            if env.get(env_name):
                values[field] = env[env_name]

        concurrency = {}
        for queue in QueueName:
            raw = env.get(_queue_env_name(queue))
            if raw:
                concurrency[queue.value] = int(raw)
        values["queue_concurrency"] = concurrency

        if "log_level" in values:
            values["log_level"] = values["log_level"].lower()
        return cls.model_validate(values)

    @property
    def queue_lock_ttl_ms(self) -> int:
        return int(self.queue_lock_ttl_seconds * 1000)
