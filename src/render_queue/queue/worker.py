"""Worker pool and per-job render pipeline.

This module provides concurrent render processing with:
- A polling loop that claims jobs up to a MAX_PARALLEL cap
- One asyncio task per claimed job, isolated from the loop and from each other
- Lease heartbeats for long-running renders
- Periodic failing of jobs whose leases ran out of claims
- Drain and forced-cancel hooks for the shutdown coordinator
"""

import asyncio
import logging
import os
import socket
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..models import RenderParameters
from ..renderer import CancelToken, RenderAdapter, RenderCancelledError, RenderError
from ..storage import UploadError, Uploader
from .backends import QueueBackend
from .billing import compute_credit_debit
from .models import Job, JobResult, JobStatus, LeaseLostError, truncate_error
from .progress import ProgressReporter

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


async def process_render_job(
    job: Job,
    store: QueueBackend,
    adapter: RenderAdapter,
    uploader: Uploader,
    worker_id: Optional[str] = None,
    credits_per_minute: int = 1,
    progress_interval_s: float = 5.0,
    cancel_token: Optional[CancelToken] = None,
) -> JobResult:
    """Render, upload, bill and finalize one claimed job.

    Pipeline: validate → render → upload → compute debit → mark_completed.
    Any failure along the way marks the job failed and nobody is charged.

    Args:
        job: A job claimed by ``worker_id``
        store: Queue backend that owns the job
        adapter: Render pipeline
        uploader: Durable storage for the rendered file
        worker_id: Claimant; terminal writes only apply while it holds the claim
        credits_per_minute: Billing rate
        progress_interval_s: Minimum time between progress writes
        cancel_token: Fires to abort the render (created if not given)

    Returns:
        JobResult describing the outcome. Never raises for job-level errors.

    Error handling:
    - RenderError / UploadError / invalid parameters: expected, logged without
      traceback, job marked failed
    - LeaseLostError: another worker owns the job now; nothing is written
    - Anything else: logged with traceback, job marked failed
    """
    start_time = time.monotonic()
    token = cancel_token or CancelToken()
    store.bind_cancel_token(job.id, token)

    async def write_progress(job_id: str, progress: float) -> None:
        await store.update_progress(job_id, progress, worker_id)

    reporter = ProgressReporter(job.id, write_progress, interval_s=progress_interval_s)
    artifact: Optional[Path] = None
    log_extra: Dict[str, Any] = {"job_id": job.id, "worker_id": worker_id, "user_id": job.user_id}

    try:
        params = RenderParameters.model_validate(job.input_parameters)

        logger.info("Rendering", extra={**log_extra, "event": "render_started"})
        artifact = await adapter.render(job.id, params, reporter, token)
        reporter.flush()
        await reporter.drain()
        token.raise_if_cancelled()

        logger.info("Uploading %s", artifact.name, extra={**log_extra, "event": "upload_started"})
        reference = await uploader.upload(artifact, job.id)

        debit = compute_credit_debit(params, credits_per_minute)
        await store.mark_completed(job.id, reference, job.user_id, debit, worker_id=worker_id)

        return JobResult(
            job_id=job.id,
            status=JobStatus.COMPLETED,
            output_reference=reference,
            credits_debited=debit,
            duration_s=time.monotonic() - start_time,
        )

    except LeaseLostError as e:
        logger.warning(
            "Claim lost before completion; leaving job to its current owner",
            extra={**log_extra, "event": "lease_lost"},
        )
        return JobResult(
            job_id=job.id,
            status=JobStatus.FAILED,
            error_message=truncate_error(e),
            duration_s=time.monotonic() - start_time,
        )

    except Exception as e:
        message = truncate_error(e)
        expected = isinstance(e, (RenderError, UploadError, ValueError))
        logger.error(
            "Render job failed: %s",
            message,
            exc_info=not expected,
            extra={
                **log_extra,
                "event": "render_cancelled" if isinstance(e, RenderCancelledError) else "render_failed",
            },
        )
        await store.mark_failed(job.id, message, worker_id=worker_id)
        return JobResult(
            job_id=job.id,
            status=JobStatus.FAILED,
            error_message=message,
            duration_s=time.monotonic() - start_time,
        )

    finally:
        store.release_cancel_token(job.id)
        await reporter.drain()
        if artifact is not None:
            await _cleanup_artifact(artifact, job.id)


async def _cleanup_artifact(path: Path, job_id: str) -> None:
    """Best-effort removal of the local render."""
    try:
        await asyncio.to_thread(path.unlink, missing_ok=True)
    except OSError:
        logger.warning(
            "Could not delete local artifact %s",
            path,
            exc_info=True,
            extra={"job_id": job_id, "event": "cleanup_failed"},
        )


class WorkerPool:
    """Claims jobs from a queue backend and renders up to ``max_parallel`` at once.

    The active-job map and the stop flag are only touched from the event loop
    thread, so no locking is needed.

    Loop, while not stopping:
    1. At capacity: sleep ``busy_poll_interval_s``
    2. Claim; on store failure log and sleep ``2 * poll_interval_s``
    3. Nothing claimable: sleep ``poll_interval_s``
    4. Otherwise dispatch the job as its own task

    Every sleep returns early when a stop is requested.
    """

    def __init__(
        self,
        store: QueueBackend,
        adapter: RenderAdapter,
        uploader: Uploader,
        worker_id: Optional[str] = None,
        max_parallel: int = 4,
        poll_interval_s: float = 1.5,
        busy_poll_interval_s: float = 0.5,
        progress_interval_s: float = 5.0,
        credits_per_minute: int = 1,
        lease_duration_s: float = 300.0,
        reap_interval_s: float = 60.0,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.store = store
        self.adapter = adapter
        self.uploader = uploader
        self.worker_id = worker_id or default_worker_id()
        self.max_parallel = max_parallel
        self.poll_interval_s = poll_interval_s
        self.busy_poll_interval_s = busy_poll_interval_s
        self.progress_interval_s = progress_interval_s
        self.credits_per_minute = credits_per_minute
        self.lease_duration_s = lease_duration_s
        self.reap_interval_s = reap_interval_s

        self._active: Dict[str, Tuple["asyncio.Task[Any]", CancelToken]] = {}
        self._stop_event = asyncio.Event()
        self._idle_event = asyncio.Event()
        self._idle_event.set()
        self.claimed = 0
        self.finished = 0

    @classmethod
    def from_settings(
        cls, settings: Any, store: QueueBackend, adapter: RenderAdapter, uploader: Uploader
    ) -> "WorkerPool":
        return cls(
            store,
            adapter,
            uploader,
            worker_id=settings.worker_id,
            max_parallel=settings.max_parallel,
            poll_interval_s=settings.poll_interval_s,
            busy_poll_interval_s=settings.busy_poll_interval_s,
            progress_interval_s=settings.progress_update_interval_s,
            credits_per_minute=settings.credits_per_minute,
            lease_duration_s=settings.lease_duration_s,
            reap_interval_s=settings.reap_interval_s,
        )

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        """Stop claiming new jobs. Active renders keep running."""
        if not self._stop_event.is_set():
            logger.info(
                "Worker stopping: no new claims (%d active)",
                self.active_count,
                extra={"worker_id": self.worker_id, "event": "stop_requested"},
            )
            self._stop_event.set()

    async def run(self) -> None:
        """Poll and dispatch until ``request_stop()``. Does not wait for active jobs."""
        logger.info(
            "Worker started - max parallel: %d",
            self.max_parallel,
            extra={"worker_id": self.worker_id, "event": "worker_started"},
        )
        next_reap = time.monotonic()

        while not self.stopping:
            if time.monotonic() >= next_reap:
                await self._reap()
                next_reap = time.monotonic() + self.reap_interval_s

            if self.active_count >= self.max_parallel:
                await self._sleep(self.busy_poll_interval_s)
                continue

            try:
                job = await self.store.claim_next(self.worker_id)
            except Exception:
                logger.error(
                    "Claim failed; backing off",
                    exc_info=True,
                    extra={"worker_id": self.worker_id, "event": "claim_failed"},
                )
                await self._sleep(2 * self.poll_interval_s)
                continue

            if job is None:
                await self._sleep(self.poll_interval_s)
                continue

            # A claim that raced a stop request still runs; otherwise it
            # would sit in rendering until its lease expired.
            self._dispatch(job)

        logger.info(
            "Worker loop stopped (%d active)",
            self.active_count,
            extra={"worker_id": self.worker_id, "event": "worker_loop_stopped"},
        )

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _reap(self) -> None:
        try:
            failed = await self.store.fail_expired_leases()
        except Exception:
            logger.warning("Expired-lease sweep failed", exc_info=True, extra={"event": "reap_failed"})
            return
        if failed:
            logger.warning(
                "Failed %d jobs whose leases expired", failed, extra={"event": "leases_reaped"}
            )

    def _dispatch(self, job: Job) -> None:
        token = CancelToken()
        task = asyncio.create_task(self._run_job(job, token), name=f"render-{job.id}")
        self._active[job.id] = (task, token)
        self._idle_event.clear()
        self.claimed += 1

    async def _run_job(self, job: Job, token: CancelToken) -> Optional[JobResult]:
        heartbeat = asyncio.create_task(self._heartbeat(job.id, token))
        try:
            return await process_render_job(
                job,
                self.store,
                self.adapter,
                self.uploader,
                worker_id=self.worker_id,
                credits_per_minute=self.credits_per_minute,
                progress_interval_s=self.progress_interval_s,
                cancel_token=token,
            )
        except Exception:
            # Task boundary: nothing from one job reaches the loop
            logger.exception(
                "Unhandled error in render task",
                extra={"job_id": job.id, "worker_id": self.worker_id, "event": "task_crashed"},
            )
            return None
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._active.pop(job.id, None)
            self.finished += 1
            if not self._active:
                self._idle_event.set()

    async def _heartbeat(self, job_id: str, token: CancelToken) -> None:
        interval = self.lease_duration_s / 3
        while True:
            await asyncio.sleep(interval)
            try:
                owned = await self.store.renew_lease(job_id, self.worker_id)
            except Exception:
                logger.warning(
                    "Lease renewal failed", exc_info=True, extra={"job_id": job_id, "event": "lease_renew_failed"}
                )
                continue
            if not owned:
                logger.warning(
                    "Lease lost; cancelling local render",
                    extra={"job_id": job_id, "worker_id": self.worker_id, "event": "lease_lost"},
                )
                token.cancel()
                return

    async def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is active. Returns False on timeout."""
        if not self._active:
            return True
        try:
            await asyncio.wait_for(self._idle_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def cancel_active(self) -> int:
        """Signal every active render to stop and cancel its task."""
        active = list(self._active.values())
        for task, token in active:
            token.cancel()
            task.cancel()
        if active:
            logger.warning(
                "Cancelled %d active renders", len(active), extra={"event": "renders_cancelled"}
            )
        return len(active)
