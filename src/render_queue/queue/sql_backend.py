"""SQL implementation of QueueBackend (PostgreSQL or SQLite).

This module provides the durable, multi-process queue using:
- SQLAlchemy Core tables executed through the async `databases` library
- FOR UPDATE SKIP LOCKED claims on PostgreSQL
- A single-statement compare-and-swap claim on SQLite (WAL mode)
- Linear-backoff retry around connection acquisition and every query
- Complete + credit debit in one transaction
"""

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import sqlalchemy as sa
from databases import Database, DatabaseURL

from .backends import QueueBackend
from .models import (
    Job,
    JobNotFoundError,
    JobStatus,
    LeaseLostError,
    ensure_utc,
    truncate_error,
    utcnow,
)
from .retry import RetryPolicy, with_retry
from .schema import credit_debits, job_transitions, render_jobs, schema_ddl, user_credits

T = TypeVar("T")

logger = logging.getLogger(__name__)

POSTGRES_DIALECTS = ("postgresql", "postgres")


class SQLQueueStore(QueueBackend):
    """Durable render queue shared by any number of worker processes.

    Features:
    - Atomic claim across processes (skip-locked read or CAS update)
    - Claim leases, so a crashed worker's job is picked up again
    - Guarded terminal writes: only the current claimant can finalize a job
    - Idempotent billing (one credit_debits row per job)
    - State transition audit trail
    """

    def __init__(
        self,
        database_url: str,
        retry: RetryPolicy = RetryPolicy(),
        lease_duration_s: float = 300.0,
        max_claim_attempts: int = 3,
        pool_max_size: int = 10,
        pool_idle_timeout_s: float = 30.0,
        acquire_timeout_s: float = 5.0,
        statement_timeout_ms: int = 15000,
        clock: Optional[Callable[[], datetime]] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initialize the store (no I/O until connect()).

        Args:
            database_url: postgresql://... or sqlite:///path.db
            retry: Attempts and base delay for every store operation
            lease_duration_s: How long a claim stays valid without renewal
            max_claim_attempts: Claims allowed before an expired job is failed
            pool_max_size: Max pooled connections (PostgreSQL)
            pool_idle_timeout_s: Idle connection lifetime (PostgreSQL)
            acquire_timeout_s: Connection timeout (PostgreSQL)
            statement_timeout_ms: Per-transaction statement timeout on
                PostgreSQL, busy timeout on SQLite
            clock: Returns the current UTC time (tests pin it)
            sleep: Retry sleep (tests make it instant)
        """
        self.database_url = database_url
        self.retry = retry
        self.lease_duration = timedelta(seconds=lease_duration_s)
        self.max_claim_attempts = max_claim_attempts
        self.statement_timeout_ms = int(statement_timeout_ms)
        self._clock = clock or utcnow
        self._sleep = sleep

        self.dialect = DatabaseURL(database_url).dialect
        if self.is_postgres:
            options: Dict[str, Any] = {
                "min_size": 1,
                "max_size": pool_max_size,
                "max_inactive_connection_lifetime": pool_idle_timeout_s,
                "timeout": acquire_timeout_s,
                "command_timeout": statement_timeout_ms / 1000,
            }
        else:
            options = {"timeout": statement_timeout_ms / 1000}
        self._database = Database(database_url, **options)

    @classmethod
    def from_settings(cls, settings: Any) -> "SQLQueueStore":
        return cls(
            settings.database_url,
            retry=RetryPolicy.from_config(settings),
            lease_duration_s=settings.lease_duration_s,
            max_claim_attempts=settings.max_claim_attempts,
            pool_max_size=settings.db_pool_max_size,
            pool_idle_timeout_s=settings.db_pool_idle_timeout_ms / 1000,
            acquire_timeout_s=settings.db_acquire_timeout_ms / 1000,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )

    @property
    def is_postgres(self) -> bool:
        return self.dialect in POSTGRES_DIALECTS

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        await self._run("connect", self._create_schema)
        logger.info("Queue store connected (%s)", self.dialect, extra={"event": "store_connected"})

    async def close(self) -> None:
        if self._database.is_connected:
            await self._database.disconnect()
            logger.info("Queue store closed", extra={"event": "store_closed"})

    async def _ensure_connected(self) -> None:
        if not self._database.is_connected:
            await self._database.connect()

    async def _create_schema(self) -> None:
        if not self.is_postgres:
            # WAL lets readers proceed while a claim holds the write lock
            await self._database.execute("PRAGMA journal_mode=WAL")
        for statement in schema_ddl():
            await self._database.execute(statement)

    async def _run(self, context: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Retry connection acquisition and the operation independently."""
        retry_kwargs: Dict[str, Any] = {
            "attempts": self.retry.attempts,
            "base_delay_s": self.retry.base_delay_s,
        }
        if self._sleep is not None:
            retry_kwargs["sleep"] = self._sleep
        await with_retry(self._ensure_connected, f"{context}: acquire connection", **retry_kwargs)
        return await with_retry(
            operation, context, give_up_on=(LeaseLostError, JobNotFoundError), **retry_kwargs
        )

    async def _set_statement_timeout(self) -> None:
        if self.is_postgres:
            await self._database.execute(
                sa.text(f"SET LOCAL statement_timeout = {self.statement_timeout_ms}")
            )

    async def _rollback(self, transaction: Any, context: str) -> None:
        try:
            await transaction.rollback()
        except Exception:
            # Never mask the error that caused the rollback
            logger.warning("Rollback failed during %s", context, exc_info=True, extra={"context": context})

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------
    async def enqueue(
        self,
        user_id: str,
        parameters: Dict[str, Any],
        job_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Job:
        job_id = job_id or str(uuid.uuid4())

        async def operation() -> Job:
            now = self._clock()
            job = Job(
                id=job_id,
                status=JobStatus.QUEUED,
                input_parameters=parameters,
                user_id=user_id,
                created_at=created_at or now,
                updated_at=now,
            )
            async with self._database.transaction():
                await self._database.execute(
                    render_jobs.insert().values(
                        id=job.id,
                        status=job.status.value,
                        input_parameters=json.dumps(parameters),
                        user_id=user_id,
                        progress=0.0,
                        attempt_count=0,
                        created_at=job.created_at,
                        updated_at=now,
                    )
                )
                await self._record_transition(job_id, None, JobStatus.QUEUED, now)
            return job

        job = await self._run(f"enqueue({job_id})", operation)
        logger.info("Job queued", extra={"job_id": job_id, "user_id": user_id, "event": "job_queued"})
        return job

    def _claimable(self, table: Any, now: datetime) -> Any:
        """Queued rows, plus rendering rows whose lease expired with claims left."""
        return sa.or_(
            table.c.status == JobStatus.QUEUED.value,
            sa.and_(
                table.c.status == JobStatus.RENDERING.value,
                table.c.lease_expires_at < now,
                table.c.attempt_count < self.max_claim_attempts,
            ),
        )

    def _claim_values(self, worker_id: str, now: datetime) -> Dict[str, Any]:
        return {
            "status": JobStatus.RENDERING.value,
            "worker_id": worker_id,
            "started_at": now,
            "lease_expires_at": now + self.lease_duration,
            "attempt_count": render_jobs.c.attempt_count + 1,
            "updated_at": now,
        }

    async def claim_next(self, worker_id: str) -> Optional[Job]:
        claim = self._claim_postgres if self.is_postgres else self._claim_sqlite
        job = await self._run("claim_next", lambda: claim(worker_id))
        if job is not None:
            logger.info(
                "Job claimed (attempt %d)",
                job.attempt_count,
                extra={"job_id": job.id, "worker_id": worker_id, "event": "job_claimed"},
            )
        return job

    async def _claim_postgres(self, worker_id: str) -> Optional[Job]:
        now = self._clock()
        transaction = await self._database.transaction()
        try:
            await self._set_statement_timeout()
            row = await self._database.fetch_one(
                sa.select(render_jobs.c.id)
                .where(self._claimable(render_jobs, now))
                .order_by(render_jobs.c.created_at.asc(), render_jobs.c.id.asc())
                .limit(1)
                .with_for_update(skip_locked=True)
            )
            if row is None:
                await self._rollback(transaction, "claim_next")
                return None

            claimed = await self._database.fetch_one(
                sa.update(render_jobs)
                .where(render_jobs.c.id == row["id"])
                .values(**self._claim_values(worker_id, now))
                .returning(*render_jobs.c)
            )
            job = self._row_to_job(claimed)
            await self._record_transition(
                job.id, self._claimed_from(job), JobStatus.RENDERING, now, worker_id
            )
        except BaseException:
            await self._rollback(transaction, "claim_next")
            raise
        await transaction.commit()
        return job

    async def _claim_sqlite(self, worker_id: str) -> Optional[Job]:
        # No skip-locked read on SQLite: claim with a single UPDATE so the
        # candidate check and the write happen under one writer lock.
        now = self._clock()
        candidate = render_jobs.alias("candidate")
        oldest = (
            sa.select(candidate.c.id)
            .where(self._claimable(candidate, now))
            .order_by(candidate.c.created_at.asc(), candidate.c.id.asc())
            .limit(1)
            .scalar_subquery()
        )
        async with self._database.transaction():
            claimed = await self._database.fetch_one(
                sa.update(render_jobs)
                .where(render_jobs.c.id == oldest)
                .where(self._claimable(render_jobs, now))
                .values(**self._claim_values(worker_id, now))
                .returning(*render_jobs.c)
            )
            if claimed is None:
                return None
            job = self._row_to_job(claimed)
            await self._record_transition(
                job.id, self._claimed_from(job), JobStatus.RENDERING, now, worker_id
            )
        return job

    @staticmethod
    def _claimed_from(job: Job) -> JobStatus:
        return JobStatus.QUEUED if job.attempt_count <= 1 else JobStatus.RENDERING

    def _owned(self, job_id: str, worker_id: Optional[str]) -> List[Any]:
        """Guard for terminal writes: rendering, and held by worker_id if given."""
        clauses = [render_jobs.c.id == job_id, render_jobs.c.status == JobStatus.RENDERING.value]
        if worker_id is not None:
            clauses.append(render_jobs.c.worker_id == worker_id)
        return clauses

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

        async def operation() -> int:
            now = self._clock()
            transaction = await self._database.transaction()
            try:
                await self._set_statement_timeout()
                finalized = await self._finalize_job(job_id, output_reference, worker_id, now)
                if finalized:
                    balance = await self._debit_credits(job_id, user_id, credits_to_debit, now)
                    await self._record_transition(
                        job_id, JobStatus.RENDERING, JobStatus.COMPLETED, now, worker_id
                    )
            except BaseException:
                await self._rollback(transaction, f"mark_completed({job_id})")
                raise
            if not finalized:
                await self._rollback(transaction, f"mark_completed({job_id})")
                return await self._already_billed(job_id, worker_id)
            await transaction.commit()
            return balance

        balance = await self._run(f"mark_completed({job_id})", operation)
        logger.info(
            "Job completed, debited %d credits (balance %d)",
            credits_to_debit,
            balance,
            extra={"job_id": job_id, "user_id": user_id, "event": "job_completed"},
        )
        return balance

    async def _finalize_job(
        self, job_id: str, output_reference: str, worker_id: Optional[str], now: datetime
    ) -> bool:
        row = await self._database.fetch_one(
            sa.update(render_jobs)
            .where(*self._owned(job_id, worker_id))
            .values(
                status=JobStatus.COMPLETED.value,
                output_reference=output_reference,
                progress=1.0,
                error=None,
                lease_expires_at=None,
                completed_at=now,
                updated_at=now,
            )
            .returning(render_jobs.c.id)
        )
        return row is not None

    async def _debit_credits(self, job_id: str, user_id: str, amount: int, now: datetime) -> int:
        """Debit inside the caller's transaction. Returns the new balance."""
        query = sa.select(user_credits.c.credits).where(user_credits.c.user_id == user_id)
        if self.is_postgres:
            query = query.with_for_update()
        row = await self._database.fetch_one(query)

        if row is None:
            logger.warning(
                "No credit ledger row for user %s; treating balance as 0",
                user_id,
                extra={"job_id": job_id, "user_id": user_id, "event": "billing_missing_ledger"},
            )
            before = 0
        else:
            before = row["credits"]

        after = max(before - amount, 0)
        if before < amount:
            logger.warning(
                "Billing shortfall: balance %d < debit %d, flooring at 0",
                before,
                amount,
                extra={"job_id": job_id, "user_id": user_id, "event": "billing_shortfall"},
            )

        if row is not None:
            await self._database.execute(
                sa.update(user_credits)
                .where(user_credits.c.user_id == user_id)
                .values(credits=after, updated_at=now)
            )
        await self._database.execute(
            credit_debits.insert().values(
                job_id=job_id,
                user_id=user_id,
                amount=amount,
                balance_before=before,
                balance_after=after,
                created_at=now,
            )
        )
        return after

    async def _already_billed(self, job_id: str, worker_id: Optional[str]) -> int:
        """Resolve a guard miss: a retried commit that landed, or a lost lease."""
        job = await self._load_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        debit = await self._database.fetch_one(
            sa.select(credit_debits.c.balance_after).where(credit_debits.c.job_id == job_id)
        )
        if (
            job.status == JobStatus.COMPLETED
            and debit is not None
            and (worker_id is None or job.worker_id == worker_id)
        ):
            return debit["balance_after"]
        raise LeaseLostError(job_id, worker_id)

    async def mark_failed(self, job_id: str, error: Any, worker_id: Optional[str] = None) -> bool:
        message = truncate_error(error)

        async def operation() -> bool:
            now = self._clock()
            row = await self._database.fetch_one(
                sa.update(render_jobs)
                .where(*self._owned(job_id, worker_id))
                .values(
                    status=JobStatus.FAILED.value,
                    error=message,
                    lease_expires_at=None,
                    completed_at=now,
                    updated_at=now,
                )
                .returning(render_jobs.c.id)
            )
            return row is not None

        try:
            updated = await self._run(f"mark_failed({job_id})", operation)
        except Exception:
            logger.critical(
                "Could not record failure for job %s; it stays rendering until its lease expires",
                job_id,
                exc_info=True,
                extra={"job_id": job_id, "worker_id": worker_id, "event": "failure_record_lost"},
            )
            return False

        if not updated:
            logger.warning(
                "Job no longer rendering under this claim; failure not recorded",
                extra={"job_id": job_id, "worker_id": worker_id, "event": "failure_not_applied"},
            )
            return False

        await self._record_transition_best_effort(
            job_id, JobStatus.RENDERING, JobStatus.FAILED, worker_id, message
        )
        logger.info("Job failed: %s", message, extra={"job_id": job_id, "event": "job_failed"})
        return True

    async def update_progress(
        self, job_id: str, progress: float, worker_id: Optional[str] = None
    ) -> None:
        value = min(max(float(progress), 0.0), 1.0)

        async def operation() -> None:
            now = self._clock()
            await self._database.execute(
                sa.update(render_jobs)
                .where(*self._owned(job_id, worker_id))
                .where(render_jobs.c.progress < value)
                .values(progress=value, lease_expires_at=now + self.lease_duration, updated_at=now)
            )

        try:
            await self._run(f"update_progress({job_id})", operation)
        except Exception:
            logger.warning(
                "Progress update failed for job %s",
                job_id,
                exc_info=True,
                extra={"job_id": job_id, "event": "progress_write_failed"},
            )

    async def renew_lease(self, job_id: str, worker_id: str) -> bool:
        async def operation() -> bool:
            now = self._clock()
            row = await self._database.fetch_one(
                sa.update(render_jobs)
                .where(*self._owned(job_id, worker_id))
                .values(lease_expires_at=now + self.lease_duration, updated_at=now)
                .returning(render_jobs.c.id)
            )
            return row is not None

        return await self._run(f"renew_lease({job_id})", operation)

    async def fail_expired_leases(self) -> int:
        message = f"Lease expired after {self.max_claim_attempts} claim attempts"

        async def operation() -> List[Any]:
            now = self._clock()
            return await self._database.fetch_all(
                sa.update(render_jobs)
                .where(
                    render_jobs.c.status == JobStatus.RENDERING.value,
                    render_jobs.c.lease_expires_at < now,
                    render_jobs.c.attempt_count >= self.max_claim_attempts,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    error=message,
                    lease_expires_at=None,
                    completed_at=now,
                    updated_at=now,
                )
                .returning(render_jobs.c.id, render_jobs.c.worker_id)
            )

        rows = await self._run("fail_expired_leases", operation)
        for row in rows:
            await self._record_transition_best_effort(
                row["id"], JobStatus.RENDERING, JobStatus.FAILED, row["worker_id"], message
            )
            logger.warning(message, extra={"job_id": row["id"], "event": "lease_exhausted"})
        return len(rows)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_job(self, job_id: str) -> Optional[Job]:
        return await self._run(f"get_job({job_id})", lambda: self._load_job(job_id))

    async def _load_job(self, job_id: str) -> Optional[Job]:
        row = await self._database.fetch_one(
            sa.select(render_jobs).where(render_jobs.c.id == job_id)
        )
        return self._row_to_job(row) if row is not None else None

    async def list_jobs(self, status: Optional[JobStatus] = None) -> List[Job]:
        query = sa.select(render_jobs).order_by(render_jobs.c.created_at.asc(), render_jobs.c.id.asc())
        if status is not None:
            query = query.where(render_jobs.c.status == JobStatus(status).value)
        rows = await self._run("list_jobs", lambda: self._database.fetch_all(query))
        return [self._row_to_job(row) for row in rows]

    async def count_by_status(self) -> Dict[str, int]:
        query = sa.select(render_jobs.c.status, sa.func.count().label("n")).group_by(
            render_jobs.c.status
        )
        rows = await self._run("count_by_status", lambda: self._database.fetch_all(query))
        counts = {status.value: 0 for status in JobStatus}
        for row in rows:
            counts[row["status"]] = row["n"]
        return counts

    async def get_credits(self, user_id: str) -> Optional[int]:
        row = await self._run(
            f"get_credits({user_id})",
            lambda: self._database.fetch_one(
                sa.select(user_credits.c.credits).where(user_credits.c.user_id == user_id)
            ),
        )
        return row["credits"] if row is not None else None

    async def set_credits(self, user_id: str, credits: int) -> None:
        if credits < 0:
            raise ValueError("credits must be >= 0")

        async def operation() -> None:
            now = self._clock()
            async with self._database.transaction():
                row = await self._database.fetch_one(
                    sa.update(user_credits)
                    .where(user_credits.c.user_id == user_id)
                    .values(credits=credits, updated_at=now)
                    .returning(user_credits.c.user_id)
                )
                if row is None:
                    await self._database.execute(
                        user_credits.insert().values(user_id=user_id, credits=credits, updated_at=now)
                    )

        await self._run(f"set_credits({user_id})", operation)

    async def get_transitions(self, job_id: str) -> List[Dict[str, Any]]:
        """Audit trail for one job, oldest first."""
        query = (
            sa.select(job_transitions)
            .where(job_transitions.c.job_id == job_id)
            .order_by(job_transitions.c.id.asc())
        )
        rows = await self._run(f"get_transitions({job_id})", lambda: self._database.fetch_all(query))
        return [{c.name: row[c.name] for c in job_transitions.c} for row in rows]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    async def _record_transition(
        self,
        job_id: str,
        from_state: Optional[JobStatus],
        to_state: JobStatus,
        now: datetime,
        worker_id: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        await self._database.execute(
            job_transitions.insert().values(
                job_id=job_id,
                from_state=from_state.value if from_state else None,
                to_state=to_state.value,
                timestamp=now,
                worker_id=worker_id,
                error_snippet=truncate_error(error, 200) if error else None,
            )
        )

    async def _record_transition_best_effort(
        self,
        job_id: str,
        from_state: JobStatus,
        to_state: JobStatus,
        worker_id: Optional[str],
        error: Optional[str],
    ) -> None:
        try:
            await self._record_transition(job_id, from_state, to_state, self._clock(), worker_id, error)
        except Exception:
            logger.warning("Could not record transition for job %s", job_id, exc_info=True, extra={"job_id": job_id})

    @staticmethod
    def _row_to_job(row: Any) -> Job:
        data = {column.name: row[column.name] for column in render_jobs.c}
        data["input_parameters"] = json.loads(data["input_parameters"] or "{}")
        for key in ("lease_expires_at", "created_at", "started_at", "completed_at", "updated_at"):
            data[key] = ensure_utc(data[key])
        return Job(**data)
