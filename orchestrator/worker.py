"""
Agent Runtime - Worker Backends

Where run loops execute. The Orchestrator hands every drive (a new
execution, an approved resume, a recovery re-drive) to one backend:

  - InlineBackend:     synchronous in the caller's thread (dev/testing)
  - ThreadPoolBackend: bounded ThreadPoolExecutor in-process (default)
  - ArqBackend:        arq + Redis; orchestrator/arq_worker.py drives jobs

The active backend is selected by the AR_WORKER_MODE env var or the
worker.mode config key:
  inline    → InlineBackend
  thread    → ThreadPoolBackend
  arq       → ArqBackend
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger("agent_runtime.worker")

DriveFn = Callable[[str], Any]


# ═══════════════════════════════════════════════════════════════════
# Job Tracking
# ═══════════════════════════════════════════════════════════════════

@dataclass
class JobRecord:
    """In-memory record for one submitted drive."""
    job_id: str
    execution_id: str
    status: str = "queued"      # queued | running | completed | failed
    enqueued_at: float = 0.0
    started_at: float = 0.0
    completed_at: float = 0.0
    error: str = ""


class JobTracker:
    """Thread-safe in-memory job status tracker."""

    def __init__(self):
        self._jobs: dict[str, JobRecord] = {}
        self._lock = threading.Lock()

    def create(self, execution_id: str) -> JobRecord:
        record = JobRecord(
            job_id=f"job_{uuid.uuid4().hex[:12]}",
            execution_id=execution_id,
            enqueued_at=time.time(),
        )
        with self._lock:
            self._jobs[record.job_id] = record
        return record

    def get(self, job_id: str) -> JobRecord | None:
        with self._lock:
            return self._jobs.get(job_id)

    def for_execution(self, execution_id: str) -> list[JobRecord]:
        with self._lock:
            return [j for j in self._jobs.values() if j.execution_id == execution_id]

    def mark_running(self, job_id: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = "running"
                self._jobs[job_id].started_at = time.time()

    def mark_completed(self, job_id: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = "completed"
                self._jobs[job_id].completed_at = time.time()

    def mark_failed(self, job_id: str, error: str):
        with self._lock:
            if job_id in self._jobs:
                self._jobs[job_id].status = "failed"
                self._jobs[job_id].completed_at = time.time()
                self._jobs[job_id].error = error[:500]

    @property
    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {"queued": 0, "running": 0, "completed": 0, "failed": 0}
            for j in self._jobs.values():
                counts[j.status] = counts.get(j.status, 0) + 1
            return counts


# ═══════════════════════════════════════════════════════════════════
# Worker Backend Interface
# ═══════════════════════════════════════════════════════════════════

class WorkerBackend:
    """Abstract interface for handing a run loop to a worker."""

    mode = ""

    def __init__(self):
        self.tracker = JobTracker()

    def submit(self, execution_id: str, drive: DriveFn) -> str:
        """Schedule drive(execution_id). Returns job_id."""
        raise NotImplementedError

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.tracker.get(job_id)

    def _run(self, job_id: str, execution_id: str, drive: DriveFn) -> None:
        self.tracker.mark_running(job_id)
        try:
            drive(execution_id)
            self.tracker.mark_completed(job_id)
        except Exception as e:
            self.tracker.mark_failed(job_id, str(e))
            logger.error("Job %s failed for execution %s: %s", job_id, execution_id, e,
                         exc_info=True, extra={"execution_id": execution_id})

    def shutdown(self):
        """Graceful shutdown."""
        pass


# ═══════════════════════════════════════════════════════════════════
# Inline Backend (synchronous, dev/test)
# ═══════════════════════════════════════════════════════════════════

class InlineBackend(WorkerBackend):
    """Runs the loop before submit() returns."""

    mode = "inline"

    def submit(self, execution_id, drive):
        record = self.tracker.create(execution_id)
        self._run(record.job_id, execution_id, drive)
        return record.job_id


# ═══════════════════════════════════════════════════════════════════
# Thread Pool Backend
# ═══════════════════════════════════════════════════════════════════

class ThreadPoolBackend(WorkerBackend):
    """
    Bounded concurrency in-process. One execution's loop runs on one worker
    thread at a time; a suspended execution holds no thread.
    """

    mode = "thread"

    def __init__(self, max_workers: int = 4):
        super().__init__()
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="ar_worker",
        )
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()
        logger.info("ThreadPoolBackend started: max_workers=%d", max_workers)

    def submit(self, execution_id, drive):
        record = self.tracker.create(execution_id)
        future = self._pool.submit(self._run, record.job_id, execution_id, drive)
        with self._lock:
            self._futures[record.job_id] = future
        logger.debug("Submitted job %s for execution %s", record.job_id, execution_id)
        return record.job_id

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every submitted job has finished. For tests/shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                pending = [f for f in self._futures.values() if not f.done()]
            if not pending:
                return True
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(0.01)

    def shutdown(self):
        logger.info("Shutting down ThreadPoolBackend...")
        self._pool.shutdown(wait=True, cancel_futures=False)


# ═══════════════════════════════════════════════════════════════════
# Arq Backend (production, Redis)
# ═══════════════════════════════════════════════════════════════════

class ArqBackend(WorkerBackend):
    """
    Enqueues drive_execution jobs to Redis. The arq worker
    (orchestrator/arq_worker.py) rebuilds an Orchestrator over the shared
    store and drives them; the drive callable is not shipped.
    """

    mode = "arq"

    def __init__(self, redis_url: str = "redis://localhost:6379"):
        super().__init__()
        self.redis_url = redis_url
        self._arq_pool = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _ensure_pool(self):
        """Lazy-init the arq Redis pool."""
        if self._arq_pool is not None:
            return
        from arq import create_pool
        from arq.connections import RedisSettings

        self._loop = asyncio.new_event_loop()
        try:
            self._arq_pool = self._loop.run_until_complete(
                create_pool(RedisSettings.from_dsn(self.redis_url))
            )
        except Exception as e:
            raise RuntimeError(f"Cannot connect to Redis at {self.redis_url}: {e}") from e

    def submit(self, execution_id, drive):
        self._ensure_pool()
        record = self.tracker.create(execution_id)
        self._loop.run_until_complete(
            self._arq_pool.enqueue_job(
                "drive_execution",
                execution_id,
                _job_id=record.job_id,
            )
        )
        logger.info("Enqueued arq job %s for execution %s", record.job_id, execution_id)
        return record.job_id

    def shutdown(self):
        if self._arq_pool is not None:
            self._loop.run_until_complete(self._arq_pool.close())
            self._loop.close()
            self._arq_pool = None


# ═══════════════════════════════════════════════════════════════════
# Backend Factory
# ═══════════════════════════════════════════════════════════════════

def create_backend(
    mode: str | None = None,
    max_workers: int = 4,
    redis_url: str = "redis://localhost:6379",
) -> WorkerBackend:
    """
    Create the worker backend.

    Mode: explicit argument, else AR_WORKER_MODE, else "thread".
    """
    mode = (mode or os.environ.get("AR_WORKER_MODE") or "thread").lower()

    if mode == "inline":
        logger.info("Worker backend: InlineBackend (synchronous)")
        return InlineBackend()
    if mode == "thread":
        logger.info("Worker backend: ThreadPoolBackend (max_workers=%d)", max_workers)
        return ThreadPoolBackend(max_workers=max_workers)
    if mode == "arq":
        logger.info("Worker backend: ArqBackend (redis=%s)", redis_url)
        return ArqBackend(redis_url=redis_url)
    raise ValueError(f"Unknown worker mode: {mode!r} (expected inline, thread or arq)")
