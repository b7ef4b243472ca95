"""Pydantic models and exceptions for the render job queue.

This module defines the type-safe models shared by both queue backends and
by the worker pool.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

# Stored error messages are cut to this many characters
ERROR_MAX_LENGTH = 500


class JobStatus(str, Enum):
    """Job lifecycle states.

    State transitions (one-directional, never back to queued):
        queued    → rendering   (worker claims the job)
        rendering → rendering   (expired lease reclaimed by another worker)
        rendering → completed   (render + upload succeeded, credits debited)
        rendering → failed      (render/upload error, cancel, or lease exhausted)
    """

    QUEUED = "queued"
    RENDERING = "rendering"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class Job(BaseModel):
    """A render job row as seen by workers."""

    id: str = Field(..., description="Unique job identifier (UUID)")
    status: JobStatus = Field(default=JobStatus.QUEUED, description="Current job state")
    input_parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Opaque payload for the render adapter"
    )
    user_id: str = Field(..., description="Owner, debited on completion")
    progress: float = Field(default=0.0, ge=0.0, le=1.0, description="Render progress fraction")
    output_reference: Optional[str] = Field(default=None, description="Durable URL once completed")
    error: Optional[str] = Field(default=None, description="Truncated error once failed")
    worker_id: Optional[str] = Field(default=None, description="Worker holding the claim")
    lease_expires_at: Optional[datetime] = Field(default=None, description="Claim lease deadline")
    attempt_count: int = Field(default=0, ge=0, description="Number of claims so far")
    created_at: datetime = Field(default_factory=lambda: utcnow(), description="Queue time")
    started_at: Optional[datetime] = Field(default=None, description="Most recent claim time")
    completed_at: Optional[datetime] = Field(default=None, description="Terminal transition time")
    updated_at: Optional[datetime] = Field(default=None, description="Last write")


class JobResult(BaseModel):
    """Outcome of one pass through the render pipeline."""

    job_id: str = Field(..., description="Job identifier")
    status: JobStatus = Field(..., description="Final status (completed or failed)")
    output_reference: Optional[str] = Field(default=None, description="Durable URL if completed")
    credits_debited: int = Field(default=0, ge=0, description="Credits charged for this job")
    error_message: Optional[str] = Field(default=None, description="Error details if failed")
    duration_s: float = Field(default=0.0, ge=0.0, description="Wall time in seconds")


class QueueError(Exception):
    """Base class for queue backend errors."""


class JobNotFoundError(QueueError):
    def __init__(self, job_id: str):
        super().__init__(f"Render job {job_id} not found")
        self.job_id = job_id


class LeaseLostError(QueueError):
    """The job is no longer rendering under this worker's claim."""

    def __init__(self, job_id: str, worker_id: Optional[str] = None):
        super().__init__(f"Job {job_id} is no longer claimed by {worker_id or 'this worker'}")
        self.job_id = job_id
        self.worker_id = worker_id


class CancellationUnsupportedError(QueueError):
    """Raised by backends that cannot reach the process rendering a job."""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def truncate_error(error: Any, limit: int = ERROR_MAX_LENGTH) -> str:
    """Render an error as a bounded, non-empty string."""
    if isinstance(error, BaseException):
        text = f"{type(error).__name__}: {error}" if str(error) else type(error).__name__
    else:
        text = str(error) if error else "Unknown error"
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
