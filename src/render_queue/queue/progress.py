"""Throttled durable progress writes for a single render."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from .detached import spawn_detached

logger = logging.getLogger(__name__)

ProgressSink = Callable[[str, float], Awaitable[None]]


class ProgressReporter:
    """Turns a high-frequency progress stream into bounded-rate store writes.

    Call it with raw fractions from the render adapter. A value is written when
    ``interval_s`` has passed since the previous write (the first value always
    qualifies) and its 2-decimal rounding is above the last written value.
    A value that arrives inside the window is written when the window closes,
    so the stored progress catches up even if the render goes quiet.
    Writes run as detached tasks so a failing store never stalls the render.

    Must be called from the event loop thread.
    """

    def __init__(
        self,
        job_id: str,
        sink: ProgressSink,
        interval_s: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.job_id = job_id
        self._sink = sink
        self._interval_s = max(0.0, interval_s)
        self._clock = clock
        self._last_write_at: Optional[float] = None
        self._last_written: Optional[float] = None
        self._latest: Optional[float] = None
        self._trailing: Optional[asyncio.TimerHandle] = None
        self._tasks: List["asyncio.Task[None]"] = []
        self.writes = 0

    @property
    def last_written(self) -> Optional[float]:
        return self._last_written

    def __call__(self, fraction: float) -> None:
        value = round(min(max(float(fraction), 0.0), 1.0), 2)
        self._latest = value
        if not self._is_advance(value):
            return

        now = self._clock()
        remaining = self._window_remaining(now)
        if remaining > 0:
            # At most one pending write per window; it picks up _latest when it fires
            if self._trailing is None:
                self._trailing = asyncio.get_running_loop().call_later(remaining, self._write_trailing)
            return
        self._write(value, now)

    def flush(self) -> None:
        """Write the latest observed value now, ignoring the throttle window."""
        self._cancel_trailing()
        self._write_latest()

    async def drain(self) -> None:
        """Wait for outstanding writes. Their errors are already logged.

        A trailing value whose window has already closed is written first;
        one still inside its window is dropped.
        """
        if self._trailing is not None:
            self._cancel_trailing()
            if self._window_remaining(self._clock()) <= 0:
                self._write_latest()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
            self._tasks.clear()

    def _window_remaining(self, now: float) -> float:
        if self._last_write_at is None:
            return 0.0
        return self._interval_s - (now - self._last_write_at)

    def _is_advance(self, value: float) -> bool:
        return self._last_written is None or value > self._last_written

    def _cancel_trailing(self) -> None:
        if self._trailing is not None:
            self._trailing.cancel()
            self._trailing = None

    def _write_trailing(self) -> None:
        self._trailing = None
        self._write_latest()

    def _write_latest(self) -> None:
        if self._latest is not None and self._is_advance(self._latest):
            self._write(self._latest, self._clock())

    def _write(self, value: float, now: float) -> None:
        self._cancel_trailing()
        self._last_written = value
        self._last_write_at = now
        self.writes += 1
        self._tasks = [t for t in self._tasks if not t.done()]
        self._tasks.append(
            spawn_detached(
                self._sink(self.job_id, value),
                f"progress update for job {self.job_id}",
                extra={"job_id": self.job_id, "event": "progress_write_failed"},
            )
        )
