"""Render job queue: backends, retry, progress throttling and the worker pool."""

from .backends import QueueBackend
from .billing import compute_credit_debit
from .memory_backend import InMemoryQueue
from .models import (
    CancellationUnsupportedError,
    Job,
    JobNotFoundError,
    JobResult,
    JobStatus,
    LeaseLostError,
    QueueError,
    truncate_error,
)
from .progress import ProgressReporter
from .retry import RetryExhaustedError, RetryPolicy, with_retry
from .sql_backend import SQLQueueStore
from .worker import WorkerPool, process_render_job

__all__ = [
    "QueueBackend",
    "SQLQueueStore",
    "InMemoryQueue",
    "Job",
    "JobResult",
    "JobStatus",
    "QueueError",
    "LeaseLostError",
    "JobNotFoundError",
    "CancellationUnsupportedError",
    "truncate_error",
    "ProgressReporter",
    "RetryExhaustedError",
    "RetryPolicy",
    "with_retry",
    "compute_credit_debit",
    "WorkerPool",
    "process_render_job",
]
