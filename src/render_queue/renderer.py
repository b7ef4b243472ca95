"""Render pipeline adapters: parameters in, local video file out.

The worker only sees ``RenderAdapter.render``. It reports fractional progress
through a callback and stops cooperatively when its cancel token fires.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, List, Optional

from .ffmpeg_runner import FfmpegErrorType, FfmpegProgress, FfmpegRunner
from .models import RenderParameters

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class RenderError(Exception):
    """The render pipeline could not produce an artifact."""

    def __init__(self, message: str, artifacts: Optional[List[Path]] = None):
        super().__init__(message)
        self.artifacts = artifacts or []


class RenderCancelledError(RenderError):
    def __init__(self, message: str = "Render cancelled"):
        super().__init__(message)


class CancelToken:
    """Cooperative cancellation handle passed into a render.

    ``cancel()`` may be called from any thread. Callbacks registered after
    cancellation run immediately.
    """

    def __init__(self):
        self._cancelled = False
        self._callbacks: List[Callable[[], Any]] = []
        self._lock = threading.Lock()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancel callback failed")

    def add_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        callback()

    def remove_callback(self, callback: Callable[[], Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RenderCancelledError()


class RenderAdapter(ABC):
    """Turns render parameters into a local video file."""

    @abstractmethod
    async def render(
        self,
        job_id: str,
        parameters: RenderParameters,
        on_progress: ProgressCallback,
        cancel_token: CancelToken,
    ) -> Path:
        """Render a job.

        Args:
            job_id: Job identifier, used to name the artifact
            parameters: Validated render parameters
            on_progress: Called on the event loop with fractions in 0..1
            cancel_token: Fires when the job must stop

        Returns:
            Path to the rendered file

        Raises:
            RenderCancelledError: the token fired before the render finished
            RenderError: any other render failure
        """


class FfmpegRenderAdapter(RenderAdapter):
    """Renders with FFmpeg in a worker thread.

    The blocking FfmpegRunner runs through ``asyncio.to_thread``; its progress
    updates are handed back to the event loop with ``call_soon_threadsafe``.
    """

    def __init__(
        self,
        output_dir: str,
        global_timeout_s: int = 1800,
        kill_grace_period_s: int = 5,
        no_progress_timeout_s: int = 120,
    ):
        self.output_dir = Path(output_dir)
        self.global_timeout_s = global_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.no_progress_timeout_s = no_progress_timeout_s

    def _make_runner(self, callback: Callable[[FfmpegProgress], None]) -> FfmpegRunner:
        return FfmpegRunner(
            global_timeout_s=self.global_timeout_s,
            no_progress_timeout_s=self.no_progress_timeout_s,
            kill_grace_period_s=self.kill_grace_period_s,
            temp_dir=str(self.output_dir / "failures"),
            progress_callback=callback,
        )

    async def render(
        self,
        job_id: str,
        parameters: RenderParameters,
        on_progress: ProgressCallback,
        cancel_token: CancelToken,
    ) -> Path:
        loop = asyncio.get_running_loop()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_dir / f"{job_id}.mp4"

        def bridge(progress: FfmpegProgress) -> None:
            # Runs on the FFmpeg monitor thread
            loop.call_soon_threadsafe(on_progress, progress.fraction)

        runner = self._make_runner(bridge)
        try:
            cmd = runner.build_render_command(parameters, str(output_path))
        except ValueError as e:
            raise RenderError(str(e)) from e

        cancel_token.raise_if_cancelled()
        cancel_token.add_callback(runner.cancel)
        try:
            result = await asyncio.to_thread(runner.run, cmd, parameters.duration_s or None)
        except asyncio.CancelledError:
            runner.cancel()
            raise
        finally:
            cancel_token.remove_callback(runner.cancel)

        if result.error_type is FfmpegErrorType.CANCELLED:
            output_path.unlink(missing_ok=True)
            raise RenderCancelledError()
        if not result.success:
            output_path.unlink(missing_ok=True)
            raise RenderError(result.describe(), artifacts=result.artifacts_saved)

        on_progress(1.0)
        logger.info(
            "Rendered %s in %.1fs",
            output_path.name,
            result.duration_s,
            extra={"job_id": job_id, "event": "render_finished"},
        )
        return output_path


class MockRenderAdapter(RenderAdapter):
    """Simulates a render by stepping progress and writing a placeholder file."""

    def __init__(
        self,
        output_dir: str,
        steps: int = 10,
        step_delay_s: float = 0.05,
        fail_with: Optional[str] = None,
    ):
        self.output_dir = Path(output_dir)
        self.steps = max(1, steps)
        self.step_delay_s = step_delay_s
        self.fail_with = fail_with

    async def render(
        self,
        job_id: str,
        parameters: RenderParameters,
        on_progress: ProgressCallback,
        cancel_token: CancelToken,
    ) -> Path:
        for step in range(1, self.steps + 1):
            cancel_token.raise_if_cancelled()
            await asyncio.sleep(self.step_delay_s)
            on_progress(step / self.steps)
        cancel_token.raise_if_cancelled()

        if self.fail_with:
            raise RenderError(self.fail_with)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        output_path = self.output_dir / f"{job_id}.mp4"
        output_path.write_bytes(f"mock render {job_id} {parameters.duration_s:.3f}s\n".encode())
        logger.info("Mock render complete", extra={"job_id": job_id, "event": "render_finished"})
        return output_path


def build_adapter(settings: Any) -> RenderAdapter:
    if settings.renderer == "mock":
        return MockRenderAdapter(settings.temp_render_dir)
    return FfmpegRenderAdapter(
        settings.temp_render_dir,
        global_timeout_s=settings.ffmpeg_timeout_s,
        kill_grace_period_s=settings.ffmpeg_kill_grace_period_s,
    )
