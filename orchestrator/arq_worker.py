"""
Agent Runtime - arq Worker Entry Point

CMD target for the worker container. Drives executions enqueued by
ArqBackend against the shared store.

Usage:
    python -m orchestrator.arq_worker

    # Or via arq CLI:
    arq orchestrator.arq_worker.WorkerSettings

The worker builds its own Orchestrator from config (AR_CONFIG_PATH, AR_ENV,
AR_* overrides) with an inline backend, so each job runs the loop to its
next suspension point in a pool thread. tools.factory must name the
function that builds the ToolRegistry.
"""

from __future__ import annotations

import asyncio
import logging
import os
from concurrent.futures import ThreadPoolExecutor

from arq.connections import RedisSettings

from engine.config import get_config_value, load_config
from engine.logging import configure_logging
from orchestrator.worker import InlineBackend

logger = logging.getLogger("agent_runtime.arq_worker")


async def drive_execution(ctx: dict, execution_id: str) -> str | None:
    """arq task: run the loop in the thread pool to keep the event loop free."""
    loop = asyncio.get_running_loop()
    orchestrator = ctx["orchestrator"]
    status = await loop.run_in_executor(ctx["pool"], orchestrator.loop.drive, execution_id)
    logger.info("Drove %s to %s", execution_id, status.value if status else "nothing",
                extra={"execution_id": execution_id})
    return status.value if status else None


async def startup(ctx: dict):
    """arq startup hook: config, logging, orchestrator, recovery sweep."""
    from orchestrator.runtime import Orchestrator

    loop = asyncio.get_running_loop()
    config = load_config()
    configure_logging(
        level=str(get_config_value("logging.level", config, "INFO")),
        json_format=bool(get_config_value("logging.json", config, True)),
    )
    max_workers = int(get_config_value("worker.max_workers", config, 4))
    ctx["pool"] = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ar_worker")
    orchestrator = Orchestrator(config=config, backend=InlineBackend())
    ctx["orchestrator"] = orchestrator
    summary = await loop.run_in_executor(ctx["pool"], orchestrator.recover)
    logger.info("arq worker started: max_workers=%d recovery=%s", max_workers, summary)


async def shutdown(ctx: dict):
    """arq shutdown hook: stop timers and the thread pool."""
    orchestrator = ctx.get("orchestrator")
    if orchestrator is not None:
        orchestrator.shutdown()
    pool = ctx.get("pool")
    if pool:
        pool.shutdown(wait=True)
    logger.info("arq worker shutdown complete")


class WorkerSettings:
    """arq worker configuration."""
    functions = [drive_execution]
    on_startup = startup
    on_shutdown = shutdown
    max_jobs = int(os.environ.get("AR_MAX_WORKERS", "4"))
    job_timeout = int(os.environ.get("AR_JOB_TIMEOUT", "600"))
    redis_settings = RedisSettings.from_dsn(
        os.environ.get("AR_REDIS_URL", "redis://localhost:6379")
    )


if __name__ == "__main__":
    from arq import run_worker

    run_worker(WorkerSettings)
