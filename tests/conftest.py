import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from render_queue.config import WorkerSettings
from render_queue.queue import InMemoryQueue, RetryPolicy, SQLQueueStore
from render_queue.renderer import MockRenderAdapter, RenderAdapter
from render_queue.storage import Uploader, UploadError

# 120s at 30 fps: 2 credits at the default rate
TWO_MINUTE_RENDER = {"videoInfo": {"width": 1080, "height": 1920, "durationInFrames": 3600, "fps": 30}}


async def no_sleep(_seconds):
    return None


async def wait_until(predicate, timeout=5.0, interval=0.01):
    """Poll an async predicate until it returns truthy."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not await predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


class FakeClock:
    """Wall clock for the store that only moves when told to."""

    def __init__(self, start=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class FakeUploader(Uploader):
    def __init__(self, fail_with=None):
        self.fail_with = fail_with
        self.uploads = []

    async def upload(self, local_path, job_id):
        if self.fail_with:
            raise UploadError(self.fail_with)
        assert Path(local_path).exists()
        self.uploads.append(job_id)
        return f"https://cdn.test/renders/{job_id}.mp4"


class BlockingAdapter(RenderAdapter):
    """Renders only after ``release`` is set or the cancel token fires."""

    def __init__(self, output_dir):
        self.output_dir = Path(output_dir)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def render(self, job_id, parameters, on_progress, cancel_token):
        self.started.set()
        cancel_token.add_callback(self.release.set)
        on_progress(0.5)
        await self.release.wait()
        cancel_token.raise_if_cancelled()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"{job_id}.mp4"
        path.write_bytes(b"render")
        return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def sql_store(tmp_path, clock):
    """SQLite-backed store with instant retries and a pinned clock."""
    store = SQLQueueStore(
        f"sqlite:///{tmp_path / 'queue.db'}",
        retry=RetryPolicy(attempts=3, base_delay_s=0),
        lease_duration_s=60,
        max_claim_attempts=3,
        clock=clock,
        sleep=no_sleep,
    )
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def memory_store():
    return InMemoryQueue()


@pytest.fixture
def mock_adapter(tmp_path):
    return MockRenderAdapter(str(tmp_path / "renders"), steps=4, step_delay_s=0)


@pytest.fixture
def blocking_adapter(tmp_path):
    return BlockingAdapter(tmp_path / "renders")


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def settings(tmp_path):
    """Worker settings with millisecond-scale timings."""
    return WorkerSettings(
        database_url=f"sqlite:///{tmp_path / 'worker.db'}",
        queue_backend="durable",
        max_parallel=2,
        poll_interval_ms=10,
        busy_poll_interval_ms=10,
        progress_update_interval_ms=0,
        shutdown_timeout_ms=2000,
        db_retry_attempts=2,
        db_retry_delay_ms=0,
        renderer="mock",
        temp_render_dir=str(tmp_path / "renders"),
        storage_dir=str(tmp_path / "published"),
        worker_id="test-worker",
    )
