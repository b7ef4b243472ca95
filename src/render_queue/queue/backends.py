"""Abstract base class for render queue backends.

This module defines the interface shared by the durable SQL store (multi-process,
crash-safe) and the in-memory registry (single process, state lost on exit).
The worker pool and the render service only talk to this interface.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from .models import CancellationUnsupportedError, Job, JobStatus

if TYPE_CHECKING:
    from ..renderer import CancelToken


class QueueBackend(ABC):
    """Abstract queue interface for durable/in-memory backends.

    Implementations must provide:
    - Atomic claim (no two callers ever receive the same job)
    - FIFO order by created_at among claimable jobs
    - One-directional status transitions (never back to queued)
    - Complete + debit as a single all-or-nothing step
    - Best-effort failure and progress writes that never raise
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open connections and create the schema if needed.

        Raises if the store is unreachable; callers treat that as a fatal
        startup error.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release pooled connections. Safe to call twice."""

    @abstractmethod
    async def enqueue(
        self,
        user_id: str,
        parameters: Dict[str, Any],
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Job:
        """Add a queued job.

        Args:
            user_id: Owner, debited on completion
            parameters: Opaque render payload
            job_id: Explicit id (default: new uuid4)
            created_at: Explicit queue time (default: now), used for FIFO order

        Returns:
            The stored job
        """

    @abstractmethod
    async def claim_next(self, worker_id: str) -> Optional[Job]:
        """Atomically claim the oldest claimable job and mark it rendering.

        Args:
            worker_id: Unique identifier for the claiming worker

        Returns:
            Job if one was claimable, None if the queue is empty

        Implementation notes:
        - MUST be safe with concurrent callers, including other processes
        - Should set status='rendering', worker_id, started_at, lease
        - Should increment attempt_count
        """

    @abstractmethod
    async def mark_completed(
        self,
        job_id: str,
        output_reference: str,
        user_id: str,
        credits_to_debit: int,
        worker_id: Optional[str] = None,
    ) -> int:
        """Finalize a job and debit its owner in one transaction.

        Args:
            job_id: Job identifier
            output_reference: Durable URL of the uploaded artifact
            user_id: Account to debit
            credits_to_debit: Non-negative debit; the balance floors at zero
            worker_id: Claimant; when given, the write only applies to that claim

        Returns:
            The user's balance after the debit

        Raises:
            LeaseLostError: the job is not rendering under this claim. Nothing
                is written.
        """

    @abstractmethod
    async def mark_failed(self, job_id: str, error: Any, worker_id: Optional[str] = None) -> bool:
        """Best-effort failure record (error truncated to 500 chars).

        Returns:
            True if the job moved to failed, False otherwise. Never raises.
        """

    @abstractmethod
    async def update_progress(
        self, job_id: str, progress: float, worker_id: Optional[str] = None
    ) -> None:
        """Best-effort monotonic progress write. Never raises."""

    @abstractmethod
    async def renew_lease(self, job_id: str, worker_id: str) -> bool:
        """Extend the claim lease.

        Returns:
            False if the job is no longer rendering under ``worker_id``
        """

    @abstractmethod
    async def fail_expired_leases(self) -> int:
        """Fail rendering jobs whose lease expired after the last allowed claim.

        Returns:
            Count of jobs moved to failed
        """

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        """Fetch a job, or None if unknown."""

    @abstractmethod
    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        """Jobs in created_at order, optionally filtered by status.

        Can be O(n); only used for status commands and tests.
        """

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """Job counts keyed by status value (every status present, 0 if none)."""

    @abstractmethod
    async def get_credits(self, user_id: str) -> Optional[int]:
        """Current balance, or None if the user has no ledger row."""

    @abstractmethod
    async def set_credits(self, user_id: str, credits: int) -> None:
        """Create or overwrite a ledger row (operator tooling)."""

    async def cancel(self, job_id: str) -> bool:
        """Cancel a queued or in-progress job.

        Backends that cannot reach the rendering process keep this default.
        """
        raise CancellationUnsupportedError(
            f"{type(self).__name__} cannot cancel job {job_id}: "
            "the claim may be held by another process"
        )

    def bind_cancel_token(self, job_id: str, token: "CancelToken") -> None:
        """Associate a running job with its cancel token (no-op by default)."""

    def release_cancel_token(self, job_id: str) -> None:
        """Forget the token once the job has finished (no-op by default)."""
