"""Construction of the service graph shared by all entry points."""

from dataclasses import dataclass
from datetime import timedelta

from redis import Redis

from config import OrchestratorSettings
from services.artifact_store import LocalArtifactStore
from services.execution_service import ExecutionService
from services.execution_state import ExecutionStateManager
from services.job_recovery import JobRecoveryService
from services.job_store import RedisJobStore
from services.node_executors import NodeExecutorRegistry, build_default_executors
from services.provider_client import HttpPredictionProvider
from services.queue_manager import QueueManager
from services.state_store import RedisStateStore
from services.task_queue import QueueRegistry
from services.worker import Worker
from services.workflow_store import RedisWorkflowStore


@dataclass
class Services:
    registry: QueueRegistry
    state_store: RedisStateStore
    job_store: RedisJobStore
    workflow_store: RedisWorkflowStore
    state_manager: ExecutionStateManager
    queue_manager: QueueManager
    recovery: JobRecoveryService
    execution_service: ExecutionService
    executors: NodeExecutorRegistry
    worker: Worker


def build_services(redis_client: Redis, settings: OrchestratorSettings) -> Services:
    """Wire every component against one Redis connection."""
    if redis_client is None:
        raise ValueError("redis_client is required")
    if settings is None:
        raise ValueError("settings is required")

    registry = QueueRegistry.from_defaults(
        redis_client,
        concurrency_overrides=settings.queue_concurrency,
        lock_ttl_ms=settings.queue_lock_ttl_ms,
    )
    state_store = RedisStateStore(redis_client)
    job_store = RedisJobStore(redis_client)
    workflow_store = RedisWorkflowStore(redis_client)
    state_manager = ExecutionStateManager(state_store)
    queue_manager = QueueManager(
        registry, job_store, state_store, state_manager, workflow_store
    )
    recovery = JobRecoveryService(
        job_store,
        queue_manager,
        state_store,
        stall_threshold=timedelta(seconds=settings.stall_threshold_seconds),
        max_recovery_attempts=settings.max_recovery_attempts,
        recovery_interval=settings.recovery_interval_seconds,
    )

    provider = None
    if settings.provider_base_url:
        provider = HttpPredictionProvider(
            settings.provider_base_url, settings.provider_api_token
        )
    artifact_store = LocalArtifactStore(settings.artifact_dir) if settings.artifact_dir else None

    executors = build_default_executors(
        provider, state_store, workflow_store, queue_manager, artifact_store
    )

    return Services(
        registry=registry,
        state_store=state_store,
        job_store=job_store,
        workflow_store=workflow_store,
        state_manager=state_manager,
        queue_manager=queue_manager,
        recovery=recovery,
        execution_service=ExecutionService(
            state_store, workflow_store, queue_manager, provider
        ),
        executors=executors,
        worker=Worker(queue_manager, state_store, workflow_store, executors),
    )
