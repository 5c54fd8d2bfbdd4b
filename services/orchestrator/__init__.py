"""
Generation Job Orchestrator

Drives a job from queued to done, suggested or error:
- Typed working variables merged additively per stage
- Gapless step log per job
- Conditional claim for multi-worker deployments
- Supervised detached tasks with cancellation tokens

The orchestrator itself lives in services.orchestrator.graph and the HTTP
surface in services.orchestrator.server; both pull in billing, which in
turn depends on the store defined here, so they are not imported eagerly.
"""

from .db import InMemoryJobStore, JobStore, PostgresJobStore, create_store
from .runner import CancellationToken, JobCancelled, JobTaskRunner, QueueClaimer
from .state import Job, JobMode, JobStatus, LedgerEntry, Step, WorkingVariables

__all__ = [
    "Job",
    "JobMode",
    "JobStatus",
    "Step",
    "LedgerEntry",
    "WorkingVariables",
    "JobStore",
    "InMemoryJobStore",
    "PostgresJobStore",
    "create_store",
    "JobTaskRunner",
    "CancellationToken",
    "JobCancelled",
    "QueueClaimer",
]
