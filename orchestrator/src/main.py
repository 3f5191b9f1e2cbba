"""Main entry point for the orchestrator API server."""

import argparse
import logging
import os
import sys

import redis
import uvicorn

from api.app import OrchestratorAPI
from config import OrchestratorSettings
from services.bootstrap import build_services
from services.log_service import configure_logging

logger = logging.getLogger(__name__)


def get_redis_client(settings: OrchestratorSettings | None = None) -> redis.Redis:
    """Create Redis client from settings or the environment."""
    settings = settings or OrchestratorSettings.from_env()
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def create_app(settings: OrchestratorSettings | None = None) -> "uvicorn.ASGIApplication":
    """Create FastAPI application with all dependencies."""
    settings = settings or OrchestratorSettings.from_env()
    redis_client = get_redis_client(settings)
    services = build_services(redis_client, settings)

    api = OrchestratorAPI(
        services.execution_service,
        services.queue_manager,
        services.recovery,
        services.workflow_store,
        services.state_store,
        redis_client,
    )
    return api.create_app()


def main() -> int:
    """Run the orchestrator API server."""
    settings = OrchestratorSettings.from_env()

    parser = argparse.ArgumentParser(description="Orchestrator API Server")
    parser.add_argument(
        "--host",
        default=os.environ.get("HOST", "0.0.0.0"),
        help="Host to bind to (default: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.environ.get("PORT", "8000")),
        help="Port to bind to (default: 8000)",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=settings.log_level,
        help="Log level (default: info)",
    )
    args = parser.parse_args()

    # Configure logging with file rotation
    configure_logging(
        log_dir=settings.log_dir,
        log_file="orchestrator.log",
        level=getattr(logging, args.log_level.upper()),
    )

    logger.info("Starting orchestrator API server")
    logger.info(f"Redis: {settings.redis_url}")

    app = create_app(settings)
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
    return 0


def get_app() -> "uvicorn.ASGIApplication":
    """Get or create the FastAPI application (for uvicorn import)."""
    return create_app()


if __name__ == "__main__":
    sys.exit(main())
