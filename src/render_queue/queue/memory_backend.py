"""In-process implementation of QueueBackend.

Single-process deployments that do not need durability across restarts can
run the worker pool against this registry (QUEUE_BACKEND=memory). State lives
in dicts owned by the event loop; every method runs without awaiting, so each
call is atomic with respect to other tasks.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..renderer import CancelToken
from .backends import QueueBackend
from .models import Job, JobNotFoundError, JobStatus, LeaseLostError, truncate_error, utcnow

logger = logging.getLogger(__name__)

CANCELLED_ERROR = "RenderCancelledError: Render cancelled"


class InMemoryQueue(QueueBackend):
    """Job registry plus credit ledger, lost when the process exits.

    Unlike the SQL store this backend can cancel in-progress jobs, because the
    render runs in the same process and its cancel token is reachable.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self._jobs: Dict[str, Job] = {}
        self._credits: Dict[str, int] = {}
        self._debits: Dict[str, int] = {}
        self._cancel_tokens: Dict[str, CancelToken] = {}

    async def connect(self) -> None:
        logger.info("In-memory queue ready (state is not durable)", extra={"event": "store_connected"})

    async def close(self) -> None:
        self._cancel_tokens.clear()

    async def enqueue(
        self,
        user_id: str,
        parameters: Dict[str, Any],
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Job:
        job_id = job_id or str(uuid.uuid4())
        if job_id in self._jobs:
            raise ValueError(f"Job {job_id} already exists")
        now = self._clock()
        job = Job(
            id=job_id,
            user_id=user_id,
            input_parameters=dict(parameters),
            created_at=created_at or now,
            updated_at=now,
        )
        self._jobs[job_id] = job
        logger.info("Job queued", extra={"job_id": job_id, "user_id": user_id, "event": "job_queued"})
        return job.model_copy(deep=True)

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        queued = [job for job in self._jobs.values() if job.status == JobStatus.QUEUED]
        if not queued:
            return None
        job = min(queued, key=lambda j: j.created_at)
        now = self._clock()
        job.status = JobStatus.RENDERING
        job.worker_id = worker_id
        job.started_at = now
        job.updated_at = now
        job.attempt_count += 1
        logger.info("Job claimed", extra={"job_id": job.id, "worker_id": worker_id, "event": "job_claimed"})
        return job.model_copy(deep=True)

    def _owned(self, job_id: str, worker_id: Optional[str]) -> Optional[Job]:
        job = self._jobs.get(job_id)
        if job is None or job.status != JobStatus.RENDERING:
            return None
        if worker_id is not None and job.worker_id != worker_id:
            return None
        return job

    async def mark_completed(
        self,
        job_id: str,
        output_reference: str,
        user_id: str,
        credits_to_debit: int,
        worker_id: Optional[str] = None,
    ) -> int:
        if credits_to_debit < 0:
            raise ValueError(f"credits_to_debit must be >= 0, got {credits_to_debit}")
        job = self._owned(job_id, worker_id)
        if job is None:
            raise LeaseLostError(job_id, worker_id)
        if job_id in self._debits:
            raise RuntimeError(f"Job {job_id} was already billed")

        before = self._credits.get(user_id)
        if before is None:
            logger.warning(
                "No credit ledger row for user %s; treating balance as 0",
                user_id,
                extra={"job_id": job_id, "user_id": user_id, "event": "billing_missing_ledger"},
            )
            before = 0
        after = max(before - credits_to_debit, 0)
        if before < credits_to_debit:
            logger.warning(
                "Billing shortfall: balance %d < debit %d, flooring at 0",
                before,
                credits_to_debit,
                extra={"job_id": job_id, "user_id": user_id, "event": "billing_shortfall"},
            )

        now = self._clock()
        job.status = JobStatus.COMPLETED
        job.output_reference = output_reference
        job.progress = 1.0
        job.completed_at = now
        job.updated_at = now
        if user_id in self._credits:
            self._credits[user_id] = after
        self._debits[job_id] = credits_to_debit
        logger.info(
            "Job completed, debited %d credits (balance %d)",
            credits_to_debit,
            after,
            extra={"job_id": job_id, "user_id": user_id, "event": "job_completed"},
        )
        return after

    async def mark_failed(self, job_id: str, error: Any, worker_id: Optional[str] = None) -> bool:
        job = self._owned(job_id, worker_id)
        if job is None:
            logger.warning(
                "Job no longer rendering under this claim; failure not recorded",
                extra={"job_id": job_id, "worker_id": worker_id, "event": "failure_not_applied"},
            )
            return False
        self._fail(job, truncate_error(error))
        return True

    def _fail(self, job: Job, message: str) -> None:
        now = self._clock()
        job.status = JobStatus.FAILED
        job.error = message
        job.completed_at = now
        job.updated_at = now
        logger.info("Job failed: %s", message, extra={"job_id": job.id, "event": "job_failed"})

    async def update_progress(
        self, job_id: str, progress: float, worker_id: Optional[str] = None
    ) -> None:
        job = self._owned(job_id, worker_id)
        value = min(max(float(progress), 0.0), 1.0)
        if job is not None and value > job.progress:
            job.progress = value
            job.updated_at = self._clock()

    async def renew_lease(self, job_id: str, worker_id: str) -> bool:
        return self._owned(job_id, worker_id) is not None

    async def fail_expired_leases(self) -> int:
        # Claims cannot outlive the process that holds them
        return 0

    async def get_job(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        jobs = sorted(self._jobs.values(), key=lambda j: j.created_at)
        if status is not None:
            jobs = [j for j in jobs if j.status == JobStatus(status)]
        return [j.model_copy(deep=True) for j in jobs]

    async def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        for job in self._jobs.values():
            counts[job.status.value] += 1
        return counts

    async def get_credits(self, user_id: str) -> Optional[int]:
        return self._credits.get(user_id)

    async def set_credits(self, user_id: str, credits: int) -> None:
        if credits < 0:
            raise ValueError("credits must be >= 0")
        self._credits[user_id] = credits

    async def cancel(self, job_id: str) -> bool:
        """Cancel a job.

        - queued: removed from the registry
        - rendering: marked failed and its render signalled to stop
        - completed/failed: not cancellable, returns False

        Raises:
            JobNotFoundError: unknown job id
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        if job.status == JobStatus.QUEUED:
            del self._jobs[job_id]
            logger.info("Queued job cancelled", extra={"job_id": job_id, "event": "job_cancelled"})
            return True

        if job.status == JobStatus.RENDERING:
            # Fail first so a render that is already uploading cannot complete
            self._fail(job, CANCELLED_ERROR)
            token = self._cancel_tokens.pop(job_id, None)
            if token is not None:
                token.cancel()
            logger.info("Rendering job cancelled", extra={"job_id": job_id, "event": "job_cancelled"})
            return True

        return False

    def bind_cancel_token(self, job_id: str, token: CancelToken) -> None:
        self._cancel_tokens[job_id] = token

    def release_cancel_token(self, job_id: str) -> None:
        self._cancel_tokens.pop(job_id, None)
