"""
Job worker entry point.

One invocation runs one command and exits; an external scheduler (cron)
calls it periodically. The command comes from the CLI args or the
WORKER_COMMAND environment variable:

    omnicrm-worker process
    omnicrm-worker process-user <user_id>
    omnicrm-worker cleanup [older_than_days]
    omnicrm-worker stats
"""

import asyncio
import os
import sys
from collections.abc import Awaitable, Callable
from typing import Any

from omnicrm.config import settings
from omnicrm.db.pool import db_pool
from omnicrm.infrastructure.observability.logging import get_logger, setup_logging
from omnicrm.jobs.dispatcher import JobDispatcher
from omnicrm.jobs.processors import build_default_registry
from omnicrm.jobs.runner import JobRunner

logger = get_logger(__name__)

Command = Callable[[JobRunner, list[str]], Awaitable[Any]]


async def _process(runner: JobRunner, args: list[str]) -> dict[str, Any]:
    summary = await runner.process_jobs()
    return summary.to_dict()


async def _process_user(runner: JobRunner, args: list[str]) -> dict[str, Any]:
    if not args:
        raise ValueError("process-user requires a user id")
    summary = await runner.process_user_jobs(args[0])
    return summary.to_dict()


async def _cleanup(runner: JobRunner, args: list[str]) -> dict[str, Any]:
    older_than_days = int(args[0]) if args else None
    return {"deleted": await runner.cleanup_old_jobs(older_than_days)}


async def _stats(runner: JobRunner, args: list[str]) -> dict[str, Any]:
    return await runner.get_job_stats()


COMMAND_REGISTRY: dict[str, Command] = {
    "process": _process,
    "process-user": _process_user,
    "cleanup": _cleanup,
    "stats": _stats,
}


def _resolve_command(argv: list[str] | None = None) -> tuple[str, list[str]]:
    """Pick the command from CLI args or the WORKER_COMMAND env variable."""
    argv = sys.argv[1:] if argv is None else argv
    if argv:
        return argv[0].strip().lower(), argv[1:]
    return os.getenv("WORKER_COMMAND", "process").strip().lower(), []


def build_runner() -> JobRunner:
    return JobRunner(JobDispatcher(build_default_registry()))


async def run_worker(command: str, args: list[str] | None = None, runner: JobRunner | None = None) -> Any:
    """Run one worker command against an initialized pool."""
    if command not in COMMAND_REGISTRY:
        raise ValueError(
            f"Unknown worker command '{command}'. "
            f"Available commands: {', '.join(sorted(COMMAND_REGISTRY.keys()))}"
        )

    logger.info("Starting job worker", command=command)

    owns_pool = runner is None
    if owns_pool:
        await db_pool.initialize()
    try:
        result = await COMMAND_REGISTRY[command](runner or build_runner(), args or [])
    finally:
        if owns_pool:
            await db_pool.close()

    logger.info("Job worker finished", command=command, result=result)
    return result


def main() -> None:
    """CLI entrypoint."""
    setup_logging(settings.LOG_LEVEL)
    command, args = _resolve_command()
    asyncio.run(run_worker(command, args))


if __name__ == "__main__":
    main()
