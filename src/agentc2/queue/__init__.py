"""Job queue for background agent and workflow runs."""

from agentc2.queue.job_queue import (
    Job,
    JobPriority,
    JobQueue,
    JobStatus,
)

__all__ = [
    "Job",
    "JobPriority",
    "JobQueue",
    "JobStatus",
]
