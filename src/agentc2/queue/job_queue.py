"""Priority-based job queue for background agent and workflow runs.

Handles concurrent execution of triggered work with:
- Priority queue (organizations in good billing standing first)
- Configurable max concurrent jobs
- Status callbacks
- Automatic cleanup of completed jobs
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Status of a queued job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class JobPriority(int, Enum):
    """Priority levels for job scheduling."""

    LOW = 0        # Past-due organizations
    NORMAL = 1     # No subscription on file
    HIGH = 2       # Active subscription
    CRITICAL = 3   # System work


@dataclass
class Job:
    """A queued unit of background work."""

    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    organization_id: str = ""
    label: str = ""
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.QUEUED
    created_at: datetime = field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    result: Any = None
    error: str | None = None
    position: int = 0  # 1-indexed position while queued

    _fn: Callable[..., Coroutine] | None = field(default=None, repr=False)
    _kwargs: dict[str, Any] = field(default_factory=dict, repr=False)
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for JSON serialization."""
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "label": self.label[:80],
            "priority": self.priority.name,
            "status": self.status.value,
            "position": self.position,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "error": self.error,
        }


class JobQueue:
    """Priority-based job queue.

    Usage:
        queue = JobQueue(max_concurrent=4)
        await queue.start()

        job = await queue.submit(
            organization_id="org_1",
            label="agent:support",
            priority=JobPriority.HIGH,
            fn=invoker.run_agent,
            run_id="...",
        )
        await queue.wait(job.id)
    """

    def __init__(
        self,
        max_concurrent: int = 4,
        on_status_change: Callable[[Job], Coroutine] | None = None,
        max_completed_jobs: int = 100,
    ) -> None:
        """Initialize job queue.

        Args:
            max_concurrent: Maximum jobs running at once
            on_status_change: Async callback when job status changes
            max_completed_jobs: How many completed jobs to keep in history
        """
        self.max_concurrent = max_concurrent
        self.on_status_change = on_status_change
        self.max_completed_jobs = max_completed_jobs

        self._queue: list[Job] = []
        self._running: dict[str, Job] = {}
        self._completed: dict[str, Job] = {}
        self._tasks: set[asyncio.Task] = set()
        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._worker_task: asyncio.Task | None = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started and self._worker_task is not None

    async def start(self) -> None:
        """Start the queue worker."""
        if self._started:
            return

        self._started = True
        self._worker_task = asyncio.create_task(self._worker())
        logger.info("JobQueue started (max_concurrent=%d)", self.max_concurrent)

    async def stop(self) -> None:
        """Stop the queue worker and cancel in-flight jobs."""
        if not self._started:
            return

        self._started = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info("JobQueue stopped")

    async def submit(
        self,
        organization_id: str,
        label: str,
        priority: JobPriority = JobPriority.NORMAL,
        fn: Callable[..., Coroutine] | None = None,
        **kwargs: Any,
    ) -> Job:
        """Submit a job to the queue.

        Args:
            organization_id: Tenant the work belongs to
            label: Short description for listings
            priority: Job priority level
            fn: Async function to execute
            **kwargs: Arguments to pass to fn

        Returns:
            Job object with queue position
        """
        job = Job(organization_id=organization_id or "", label=label[:200], priority=priority)
        job._fn = fn
        job._kwargs = kwargs

        async with self._lock:
            # Higher priority goes earlier, FIFO within a level
            insert_pos = len(self._queue)
            for i, queued_job in enumerate(self._queue):
                if job.priority > queued_job.priority:
                    insert_pos = i
                    break

            self._queue.insert(insert_pos, job)
            self._update_positions()

        self._wakeup.set()
        await self._notify(job)
        logger.info(
            "Job %s queued (org=%s, priority=%s, position=%d)",
            job.id,
            organization_id or "none",
            job.priority.name,
            job.position,
        )
        return job

    async def cancel(self, job_id: str) -> bool:
        """Cancel a queued job. Running jobs are not interrupted."""
        async with self._lock:
            for i, job in enumerate(self._queue):
                if job.id == job_id:
                    job.status = JobStatus.CANCELLED
                    job.completed_at = datetime.now()
                    self._queue.pop(i)
                    self._completed[job.id] = job
                    job._done.set()
                    self._update_positions()
                    break
            else:
                return False

        await self._notify(job)
        logger.info("Job %s cancelled", job_id)
        return True

    async def get_status(self, job_id: str) -> Job | None:
        async with self._lock:
            if job_id in self._running:
                return self._running[job_id]
            for job in self._queue:
                if job.id == job_id:
                    return job
            return self._completed.get(job_id)

    async def wait(self, job_id: str, timeout: float | None = None) -> Job | None:
        """Wait until a job finishes (completed, failed or cancelled)."""
        job = await self.get_status(job_id)
        if job is None:
            return None
        await asyncio.wait_for(job._done.wait(), timeout=timeout)
        return job

    async def get_queue_info(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "queued": len(self._queue),
                "running": len(self._running),
                "completed": len(self._completed),
                "max_concurrent": self.max_concurrent,
                "available_slots": max(0, self.max_concurrent - len(self._running)),
            }

    async def get_queue_snapshot(self) -> list[dict[str, Any]]:
        """Running jobs first, then queued ones."""
        async with self._lock:
            return [j.to_dict() for j in self._running.values()] + [
                j.to_dict() for j in self._queue
            ]

    async def _worker(self) -> None:
        """Background worker that processes the queue."""
        while self._started:
            try:
                started = await self._process_next()
                if not started:
                    self._wakeup.clear()
                    try:
                        await asyncio.wait_for(self._wakeup.wait(), timeout=0.5)
                    except asyncio.TimeoutError:
                        pass
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Queue worker error: %s", e)
                await asyncio.sleep(1)

    async def _process_next(self) -> bool:
        """Start the next job if capacity is available."""
        async with self._lock:
            if len(self._running) >= self.max_concurrent or not self._queue:
                return False

            job = self._queue.pop(0)
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now()
            job.position = 0
            self._running[job.id] = job
            self._update_positions()

        await self._notify(job)
        logger.info("Job %s started", job.id)

        task = asyncio.create_task(self._run_job(job))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _run_job(self, job: Job) -> None:
        try:
            if job._fn:
                job.result = await job._fn(**job._kwargs)
            job.status = JobStatus.COMPLETED
            logger.info("Job %s completed", job.id)
        except asyncio.CancelledError:
            job.status = JobStatus.CANCELLED
            raise
        except Exception as e:
            job.status = JobStatus.FAILED
            job.error = str(e)
            logger.error("Job %s failed: %s", job.id, e)
        finally:
            job.completed_at = datetime.now()

            async with self._lock:
                self._running.pop(job.id, None)
                self._completed[job.id] = job
                self._cleanup_completed()

            job._done.set()
            self._wakeup.set()
            await self._notify(job)

    def _update_positions(self) -> None:
        for i, job in enumerate(self._queue):
            job.position = i + 1

    def _cleanup_completed(self) -> None:
        """Remove oldest completed jobs if over limit."""
        while len(self._completed) > self.max_completed_jobs:
            oldest_id = min(
                self._completed,
                key=lambda jid: self._completed[jid].completed_at or datetime.now(),
            )
            del self._completed[oldest_id]

    async def _notify(self, job: Job) -> None:
        if self.on_status_change:
            try:
                await self.on_status_change(job)
            except Exception as e:
                logger.warning("Status notification failed for job %s: %s", job.id, e)
