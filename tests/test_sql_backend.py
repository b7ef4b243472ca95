"""Tests for the SQL queue store (run against SQLite).

Tests cover:
- Enqueue and FIFO claims
- Concurrent claim safety
- Completion with credit debit in one transaction
- Guarded failure and progress writes
- Lease expiry, reclaim and exhaustion
- Retry around connection acquisition
"""

import asyncio
from datetime import timedelta

import pytest

from render_queue.queue import (
    CancellationUnsupportedError,
    JobStatus,
    LeaseLostError,
    RetryExhaustedError,
    RetryPolicy,
    SQLQueueStore,
)
from render_queue.renderer import RenderError

from conftest import TWO_MINUTE_RENDER, no_sleep


class TestEnqueueAndClaim:
    """Test job creation and atomic claims."""

    async def test_enqueue_creates_queued_job(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)

        stored = await sql_store.get_job(job.id)
        assert stored.status == JobStatus.QUEUED
        assert stored.progress == 0.0
        assert stored.attempt_count == 0
        assert stored.user_id == "user-1"
        assert stored.input_parameters == TWO_MINUTE_RENDER

    async def test_get_unknown_job_returns_none(self, sql_store):
        assert await sql_store.get_job("missing") is None

    async def test_claim_empty_queue(self, sql_store):
        assert await sql_store.claim_next("w1") is None

    async def test_claim_sets_rendering_fields(self, sql_store, clock):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)

        claimed = await sql_store.claim_next("w1")

        assert claimed.id == job.id
        assert claimed.status == JobStatus.RENDERING
        assert claimed.worker_id == "w1"
        assert claimed.attempt_count == 1
        assert claimed.started_at == clock.now
        assert claimed.lease_expires_at == clock.now + timedelta(seconds=60)

    async def test_claim_is_fifo_by_created_at(self, sql_store, clock):
        await sql_store.enqueue("u", TWO_MINUTE_RENDER, job_id="newer", created_at=clock.now + timedelta(seconds=5))
        await sql_store.enqueue("u", TWO_MINUTE_RENDER, job_id="older", created_at=clock.now)

        first = await sql_store.claim_next("w1")
        second = await sql_store.claim_next("w1")

        assert first.id == "older"
        assert second.id == "newer"
        assert await sql_store.claim_next("w1") is None

    async def test_concurrent_claims_never_share_a_job(self, sql_store):
        """Test that racing claimants each get a distinct job."""
        for i in range(5):
            await sql_store.enqueue("u", TWO_MINUTE_RENDER, job_id=f"job-{i}")

        results = await asyncio.gather(*(sql_store.claim_next(f"w{i}") for i in range(8)))

        claimed = [job.id for job in results if job is not None]
        assert len(claimed) == 5
        assert len(set(claimed)) == 5
        counts = await sql_store.count_by_status()
        assert counts["rendering"] == 5
        assert counts["queued"] == 0

    async def test_separate_stores_on_one_database_claim_distinct_jobs(self, tmp_path, clock):
        """Test claim atomicity across independent connection pools, as between worker processes."""
        url = f"sqlite:///{tmp_path / 'shared.db'}"
        stores = [
            SQLQueueStore(url, retry=RetryPolicy(attempts=3, base_delay_s=0), clock=clock, sleep=no_sleep)
            for _ in range(4)
        ]
        for store in stores:
            await store.connect()
        try:
            for i in range(20):
                await stores[0].enqueue("u", TWO_MINUTE_RENDER, job_id=f"job-{i:02d}")

            results = await asyncio.gather(
                *(stores[i % 4].claim_next(f"worker-{i}") for i in range(40)),
                return_exceptions=True,
            )

            assert [r for r in results if isinstance(r, Exception)] == []
            claimed = [job.id for job in results if job is not None]
            assert sorted(claimed) == [f"job-{i:02d}" for i in range(20)]
            counts = await stores[3].count_by_status()
            assert counts["rendering"] == 20
            assert counts["queued"] == 0
        finally:
            for store in stores:
                await store.close()


class TestMarkCompleted:
    """Test completion and billing."""

    async def test_completes_and_debits(self, sql_store):
        await sql_store.set_credits("user-1", 10)
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        balance = await sql_store.mark_completed(job.id, "https://cdn.test/a.mp4", "user-1", 2, worker_id="w1")

        assert balance == 8
        assert await sql_store.get_credits("user-1") == 8
        stored = await sql_store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.output_reference == "https://cdn.test/a.mp4"
        assert stored.progress == 1.0
        assert stored.lease_expires_at is None
        assert stored.completed_at is not None

    async def test_debit_floors_at_zero(self, sql_store):
        await sql_store.set_credits("user-1", 1)
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        balance = await sql_store.mark_completed(job.id, "ref", "user-1", 3, worker_id="w1")

        assert balance == 0
        assert await sql_store.get_credits("user-1") == 0
        assert (await sql_store.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_missing_ledger_counts_as_zero(self, sql_store):
        job = await sql_store.enqueue("nobody", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        balance = await sql_store.mark_completed(job.id, "ref", "nobody", 2, worker_id="w1")

        assert balance == 0
        assert await sql_store.get_credits("nobody") is None
        assert (await sql_store.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_negative_debit_rejected(self, sql_store):
        with pytest.raises(ValueError):
            await sql_store.mark_completed("any", "ref", "user-1", -1)

    async def test_other_worker_cannot_complete(self, sql_store):
        await sql_store.set_credits("user-1", 10)
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        with pytest.raises(LeaseLostError):
            await sql_store.mark_completed(job.id, "ref", "user-1", 2, worker_id="w2")

        assert await sql_store.get_credits("user-1") == 10
        assert (await sql_store.get_job(job.id)).status == JobStatus.RENDERING

    async def test_repeated_completion_is_idempotent(self, sql_store):
        """Test that a retried commit does not bill twice."""
        await sql_store.set_credits("user-1", 10)
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        first = await sql_store.mark_completed(job.id, "ref", "user-1", 2, worker_id="w1")
        second = await sql_store.mark_completed(job.id, "ref", "user-1", 2, worker_id="w1")

        assert first == second == 8
        assert await sql_store.get_credits("user-1") == 8

    async def test_debit_failure_rolls_back_completion(self, sql_store, monkeypatch):
        await sql_store.set_credits("user-1", 10)
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        async def broken_debit(*args, **kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(sql_store, "_debit_credits", broken_debit)

        with pytest.raises(RetryExhaustedError):
            await sql_store.mark_completed(job.id, "ref", "user-1", 2, worker_id="w1")

        stored = await sql_store.get_job(job.id)
        assert stored.status == JobStatus.RENDERING
        assert stored.output_reference is None
        assert await sql_store.get_credits("user-1") == 10


class TestMarkFailed:
    """Test failure recording."""

    async def test_marks_failed(self, sql_store):
        await sql_store.set_credits("user-1", 10)
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        assert await sql_store.mark_failed(job.id, RenderError("codec exploded"), worker_id="w1") is True

        stored = await sql_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "RenderError: codec exploded"
        assert stored.completed_at is not None
        assert await sql_store.get_credits("user-1") == 10

    async def test_error_is_truncated(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        await sql_store.mark_failed(job.id, "x" * 600, worker_id="w1")

        stored = await sql_store.get_job(job.id)
        assert len(stored.error) == 500
        assert stored.error.endswith("...")

    async def test_not_applied_without_claim(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)

        assert await sql_store.mark_failed(job.id, "boom") is False
        assert (await sql_store.get_job(job.id)).status == JobStatus.QUEUED

    async def test_terminal_status_is_final(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")
        await sql_store.mark_completed(job.id, "ref", "user-1", 1, worker_id="w1")

        assert await sql_store.mark_failed(job.id, "late failure", worker_id="w1") is False
        assert (await sql_store.get_job(job.id)).status == JobStatus.COMPLETED

    async def test_store_errors_are_swallowed(self, sql_store, monkeypatch):
        async def unreachable():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(sql_store, "_ensure_connected", unreachable)

        assert await sql_store.mark_failed("any", "boom", worker_id="w1") is False


class TestUpdateProgress:
    """Test progress writes."""

    async def test_progress_written(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        await sql_store.update_progress(job.id, 0.42, worker_id="w1")

        assert (await sql_store.get_job(job.id)).progress == pytest.approx(0.42)

    async def test_progress_never_decreases(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        await sql_store.update_progress(job.id, 0.5, worker_id="w1")
        await sql_store.update_progress(job.id, 0.3, worker_id="w1")

        assert (await sql_store.get_job(job.id)).progress == pytest.approx(0.5)

    async def test_progress_renews_lease(self, sql_store, clock):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        clock.advance(30)
        await sql_store.update_progress(job.id, 0.1, worker_id="w1")

        stored = await sql_store.get_job(job.id)
        assert stored.lease_expires_at == clock.now + timedelta(seconds=60)

    async def test_ignored_after_terminal(self, sql_store):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")
        await sql_store.mark_failed(job.id, "boom", worker_id="w1")

        await sql_store.update_progress(job.id, 0.9, worker_id="w1")

        assert (await sql_store.get_job(job.id)).progress == 0.0

    async def test_store_errors_are_swallowed(self, sql_store, monkeypatch):
        async def unreachable():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(sql_store, "_ensure_connected", unreachable)

        await sql_store.update_progress("any", 0.5, worker_id="w1")


class TestLeases:
    """Test lease renewal, reclaim and exhaustion."""

    async def test_renew_lease_only_for_owner(self, sql_store, clock):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")
        clock.advance(10)

        assert await sql_store.renew_lease(job.id, "w1") is True
        assert await sql_store.renew_lease(job.id, "w2") is False
        stored = await sql_store.get_job(job.id)
        assert stored.lease_expires_at == clock.now + timedelta(seconds=60)

    async def test_live_lease_is_not_reclaimed(self, sql_store, clock):
        await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        clock.advance(30)

        assert await sql_store.claim_next("w2") is None

    async def test_expired_lease_is_reclaimed(self, sql_store, clock):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        clock.advance(61)
        reclaimed = await sql_store.claim_next("w2")

        assert reclaimed.id == job.id
        assert reclaimed.worker_id == "w2"
        assert reclaimed.attempt_count == 2
        with pytest.raises(LeaseLostError):
            await sql_store.mark_completed(job.id, "ref", "user-1", 1, worker_id="w1")

        transitions = await sql_store.get_transitions(job.id)
        assert [(t["from_state"], t["to_state"]) for t in transitions] == [
            (None, "queued"),
            ("queued", "rendering"),
            ("rendering", "rendering"),
        ]

    async def test_exhausted_leases_are_failed(self, sql_store, clock):
        job = await sql_store.enqueue("user-1", TWO_MINUTE_RENDER)
        for worker in ("w1", "w2", "w3"):
            assert (await sql_store.claim_next(worker)).id == job.id
            clock.advance(61)

        assert await sql_store.claim_next("w4") is None
        assert await sql_store.fail_expired_leases() == 1

        stored = await sql_store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error == "Lease expired after 3 claim attempts"
        assert await sql_store.fail_expired_leases() == 0


class TestQueries:
    """Test read-side helpers."""

    async def test_count_by_status_includes_every_status(self, sql_store):
        assert await sql_store.count_by_status() == {
            "queued": 0,
            "rendering": 0,
            "completed": 0,
            "failed": 0,
        }

        await sql_store.enqueue("u", TWO_MINUTE_RENDER)
        await sql_store.enqueue("u", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")

        counts = await sql_store.count_by_status()
        assert counts["queued"] == 1
        assert counts["rendering"] == 1

    async def test_list_jobs_filters_by_status(self, sql_store, clock):
        await sql_store.enqueue("u", TWO_MINUTE_RENDER, job_id="a", created_at=clock.now)
        await sql_store.enqueue("u", TWO_MINUTE_RENDER, job_id="b", created_at=clock.now + timedelta(seconds=1))
        await sql_store.claim_next("w1")

        assert [j.id for j in await sql_store.list_jobs()] == ["a", "b"]
        assert [j.id for j in await sql_store.list_jobs(JobStatus.QUEUED)] == ["b"]

    async def test_completed_job_transitions(self, sql_store):
        job = await sql_store.enqueue("u", TWO_MINUTE_RENDER)
        await sql_store.claim_next("w1")
        await sql_store.mark_completed(job.id, "ref", "u", 1, worker_id="w1")

        transitions = await sql_store.get_transitions(job.id)

        assert [(t["from_state"], t["to_state"]) for t in transitions] == [
            (None, "queued"),
            ("queued", "rendering"),
            ("rendering", "completed"),
        ]
        assert transitions[-1]["worker_id"] == "w1"

    async def test_set_credits_upserts(self, sql_store):
        await sql_store.set_credits("user-1", 5)
        await sql_store.set_credits("user-1", 7)

        assert await sql_store.get_credits("user-1") == 7
        with pytest.raises(ValueError):
            await sql_store.set_credits("user-1", -1)

    async def test_cancel_is_unsupported(self, sql_store):
        job = await sql_store.enqueue("u", TWO_MINUTE_RENDER)

        with pytest.raises(CancellationUnsupportedError):
            await sql_store.cancel(job.id)


class TestRetry:
    """Test retry around connection acquisition."""

    async def test_transient_connection_failure_is_retried(self, sql_store, monkeypatch):
        original = sql_store._ensure_connected
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("connection reset by peer")
            await original()

        monkeypatch.setattr(sql_store, "_ensure_connected", flaky)

        assert await sql_store.get_job("missing") is None
        assert len(calls) == 3

    async def test_persistent_failure_raises(self, sql_store, monkeypatch):
        async def unreachable():
            raise ConnectionError("connection refused")

        monkeypatch.setattr(sql_store, "_ensure_connected", unreachable)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await sql_store.claim_next("w1")
        assert exc_info.value.attempts == 3

    async def test_connect_to_unreachable_store_fails(self, tmp_path):
        store = SQLQueueStore(
            f"sqlite:///{tmp_path / 'missing-dir' / 'queue.db'}",
            retry=RetryPolicy(attempts=2, base_delay_s=0),
            sleep=no_sleep,
        )

        with pytest.raises(RetryExhaustedError):
            await store.connect()


class TestSettings:
    def test_from_settings(self, settings):
        store = SQLQueueStore.from_settings(settings)

        assert store.dialect == "sqlite"
        assert store.is_postgres is False
        assert store.retry == RetryPolicy(attempts=2, base_delay_s=0)
        assert store.lease_duration == timedelta(seconds=300)
        assert store.max_claim_attempts == 3
