"""Operator CLI for stalled job recovery and the dead letter queue."""

import argparse
import json
import logging
import sys

import redis

from config import OrchestratorSettings
from services.bootstrap import Services, build_services
from services.job_store import DlqJobNotFoundError
from services.state_store import ExecutionNotFoundError

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Orchestrator job recovery")
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default="info",
        help="Log level (default: info)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("scan", help="Recover stalled jobs once")
    commands.add_parser("stats", help="Show job and queue counts")

    dlq = commands.add_parser("dlq", help="List dead-lettered jobs")
    dlq.add_argument("--limit", type=int, default=50)
    dlq.add_argument("--offset", type=int, default=0)

    retry = commands.add_parser("retry", help="Retry a dead-lettered job")
    retry.add_argument("job_id")

    recover = commands.add_parser(
        "recover-execution", help="Recover the unfinished jobs of one execution"
    )
    recover.add_argument("execution_id")
    return parser


def run_command(args: argparse.Namespace, services: Services) -> int:
    """Run one subcommand and print its result as JSON."""
    recovery = services.recovery

    if args.command == "scan":
        result = {"recovered": recovery.recover_stalled_jobs()}
    elif args.command == "stats":
        result = {
            "jobs": recovery.get_job_stats().model_dump(),
            "queues": services.queue_manager.get_queue_metrics(),
        }
    elif args.command == "dlq":
        jobs, total = recovery.get_dlq_jobs(args.limit, args.offset)
        result = {
            "total": total,
            "jobs": [job.model_dump(mode="json") for job in jobs],
        }
    elif args.command == "retry":
        try:
            result = {"job_id": args.job_id, "new_job_id": recovery.retry_from_dlq(args.job_id)}
        except DlqJobNotFoundError as e:
            logger.error(str(e))
            return 1
    elif args.command == "recover-execution":
        try:
            result = {
                "execution_id": args.execution_id,
                "recovered": recovery.recover_execution(args.execution_id),
            }
        except ExecutionNotFoundError as e:
            logger.error(str(e))
            return 1
    else:
        logger.error(f"Unknown command: {args.command}")
        return 2

    print(json.dumps(result, indent=2))
    return 0


def main() -> int:
    """Run a recovery command against the configured Redis."""
    args = build_parser().parse_args()
    settings = OrchestratorSettings.from_env()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    redis_client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        redis_client.ping()
    except redis.ConnectionError as e:
        logger.error(f"Failed to connect to Redis: {e}")
        return 1

    return run_command(args, build_services(redis_client, settings))


if __name__ == "__main__":
    sys.exit(main())
