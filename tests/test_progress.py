"""Tests for throttled progress writes."""

import asyncio

import pytest

from render_queue.queue import ProgressReporter


class ManualClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def written():
    return []


@pytest.fixture
def reporter(written, clock):
    async def sink(job_id, progress):
        written.append((job_id, progress))

    return ProgressReporter("job-1", sink, interval_s=5.0, clock=clock)


class TestProgressReporter:
    """Test throttling, rounding and failure isolation."""

    async def test_first_value_written_immediately(self, reporter, written):
        reporter(0.123)
        await reporter.drain()

        assert written == [("job-1", 0.12)]
        assert reporter.last_written == 0.12

    async def test_values_inside_window_are_skipped(self, reporter, written, clock):
        reporter(0.1)
        clock.now = 1.0
        reporter(0.2)
        clock.now = 4.9
        reporter(0.3)
        clock.now = 5.0
        reporter(0.4)
        await reporter.drain()

        assert [p for _, p in written] == [0.1, 0.4]
        assert reporter.writes == 2

    async def test_non_advancing_values_are_skipped(self, reporter, written, clock):
        reporter(0.5)
        clock.now = 10.0
        reporter(0.501)
        clock.now = 20.0
        reporter(0.4)
        await reporter.drain()

        assert [p for _, p in written] == [0.5]

    async def test_values_are_clamped(self, reporter, written):
        reporter(1.7)
        await reporter.drain()

        assert written == [("job-1", 1.0)]

    async def test_flush_ignores_window(self, reporter, written, clock):
        reporter(0.2)
        clock.now = 1.0
        reporter(0.9)
        reporter.flush()
        await reporter.drain()

        assert [p for _, p in written] == [0.2, 0.9]

    async def test_flush_without_new_value_is_noop(self, reporter, written):
        reporter.flush()
        reporter(0.3)
        reporter.flush()
        await reporter.drain()

        assert [p for _, p in written] == [0.3]

    async def test_sink_failure_does_not_raise(self, clock):
        async def broken(job_id, progress):
            raise ConnectionError("connection reset")

        reporter = ProgressReporter("job-1", broken, interval_s=0, clock=clock)
        reporter(0.5)
        await reporter.drain()

        assert reporter.last_written == 0.5

    async def test_burst_catches_up_after_window(self, reporter, written, clock):
        """Test the last fed value is stored once the window closes, without flush."""
        for i in range(1, 1001):
            clock.now = i / 1000
            reporter(i / 1000)
        clock.now = 30.0
        await reporter.drain()

        assert reporter.writes <= 2
        assert written[-1] == ("job-1", 1.0)

    async def test_trailing_value_written_when_render_goes_quiet(self):
        written = []

        async def sink(job_id, progress):
            written.append(progress)

        reporter = ProgressReporter("job-1", sink, interval_s=0.05)
        reporter(0.1)
        reporter(0.2)
        reporter(0.3)
        await asyncio.sleep(0.2)

        assert written == [0.1, 0.3]
        assert reporter.writes == 2

    async def test_drain_inside_window_drops_trailing_value(self, reporter, written, clock):
        reporter(0.1)
        clock.now = 1.0
        reporter(0.2)
        await reporter.drain()
        await asyncio.sleep(0)

        assert [p for _, p in written] == [0.1]
