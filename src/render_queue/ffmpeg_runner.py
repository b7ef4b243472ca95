"""Blocking FFmpeg execution for the render adapter.

``FfmpegRunner.run`` owns one FFmpeg process from spawn to exit:

- a global timeout and a no-progress timeout, both checked while waiting
- ``-progress pipe:2`` output parsed on a monitor thread and handed to a callback
- cancellation from any thread
- psutil teardown of the whole process tree, so no encoder is left orphaned
- a log and a re-runnable script written next to the renders when a run fails
"""

import contextlib
import logging
import os
import shlex
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, List, Optional

import imageio_ffmpeg
import psutil

from .models import RenderParameters

logger = logging.getLogger(__name__)

STDERR_TAIL_LINES = 200

# stderr fragments meaning a retry with the same input would fail again
PERMANENT_ERROR_PATTERNS = (
    "no such file or directory",
    "invalid data found",
    "invalid argument",
    "permission denied",
    "unsupported codec",
    "invalid codec",
    "moov atom not found",
    "server returned 404",
    "corrupt",
)

DEFAULT_WIDTH = 1080
DEFAULT_HEIGHT = 1920


class FfmpegErrorType(Enum):
    PERMANENT = "permanent"
    TRANSIENT = "transient"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


@dataclass
class FfmpegProgress:
    """Latest values from FFmpeg's progress stream."""

    current_time_s: float = 0.0
    total_duration_s: float = 0.0  # 0 when unknown
    fps: float = 0.0
    speed: float = 0.0
    frame: int = 0
    last_update: float = 0.0  # time.monotonic() of the last out_time

    @property
    def fraction(self) -> float:
        """Share of the expected output written so far, 0..1."""
        if self.total_duration_s <= 0:
            return 0.0
        return min(max(self.current_time_s / self.total_duration_s, 0.0), 1.0)


@dataclass
class FfmpegResult:
    success: bool
    returncode: int
    stderr_tail: str
    duration_s: float
    error_type: Optional[FfmpegErrorType] = None
    final_progress: Optional[FfmpegProgress] = None
    artifacts_saved: List[Path] = field(default_factory=list)

    def describe(self) -> str:
        """Short failure reason suitable for a job's error column."""
        if self.error_type is FfmpegErrorType.CANCELLED:
            return "render cancelled"
        if self.error_type is FfmpegErrorType.TIMEOUT:
            return f"ffmpeg timed out after {self.duration_s:.0f}s"
        lines = self.stderr_tail.strip().splitlines()
        reason = lines[-1] if lines else "no output"
        kind = self.error_type.value if self.error_type else "unknown"
        return f"ffmpeg exited with code {self.returncode} ({kind}): {reason}"


class FfmpegRunner:
    """Runs one FFmpeg render with timeouts, progress and cancellation.

    ``run()`` blocks, so the render adapter calls it through
    ``asyncio.to_thread``. ``cancel()`` may be called from any thread.

    Example:
        >>> runner = FfmpegRunner(progress_callback=lambda p: print(p.fraction))
        >>> cmd = runner.build_render_command(params, "renders/job.mp4")
        >>> result = runner.run(cmd, expected_duration=params.duration_s)
        >>> if not result.success:
        ...     print(result.describe(), result.artifacts_saved)
    """

    def __init__(
        self,
        global_timeout_s: int = 1800,
        no_progress_timeout_s: int = 120,
        kill_grace_period_s: int = 5,
        save_artifacts_on_failure: bool = True,
        ffmpeg_loglevel: str = "error",
        temp_dir: Optional[str] = None,
        progress_callback: Optional[Callable[[FfmpegProgress], None]] = None,
        poll_interval_s: float = 0.5,
    ):
        """
        Args:
            global_timeout_s: Hard limit for the whole render
            no_progress_timeout_s: Abort when out_time stops moving this long
            kill_grace_period_s: Wait between SIGTERM and SIGKILL
            save_artifacts_on_failure: Keep a log and command script on failure
            ffmpeg_loglevel: Passed to ``-loglevel``
            temp_dir: Where failure artifacts go (default: $TMPDIR)
            progress_callback: Invoked on the monitor thread per progress block
            poll_interval_s: Wait slice between timeout/cancel checks
        """
        self.global_timeout_s = global_timeout_s
        self.no_progress_timeout_s = no_progress_timeout_s
        self.kill_grace_period_s = kill_grace_period_s
        self.save_artifacts_on_failure = save_artifacts_on_failure
        self.ffmpeg_loglevel = ffmpeg_loglevel
        self.temp_dir = temp_dir
        self.progress_callback = progress_callback
        self.poll_interval_s = poll_interval_s

        self._process: Optional[subprocess.Popen] = None
        self._progress = FfmpegProgress()
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._cancel_requested = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> None:
        self._cancel_requested.set()

    def build_render_command(self, params: RenderParameters, output_path: str) -> List[str]:
        """Build the H.264/AAC command for one job.

        A ``videoUrl`` source is letterboxed to the requested geometry and
        frame rate. Without one, a black canvas with silent audio is rendered.
        Output is cut to durationInFrames / fps when that is known.
        """
        info = params.video_info
        duration = params.duration_s
        if not params.video_url and duration <= 0:
            raise ValueError("durationInFrames must be > 0 when no videoUrl is given")

        width = info.width or DEFAULT_WIDTH
        height = info.height or DEFAULT_HEIGHT
        rate = f"{info.fps:g}"

        if params.video_url:
            video_filter = ",".join([
                f"scale={width}:{height}:force_original_aspect_ratio=decrease",
                f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2",
                f"fps={rate}",
            ])
            inputs = ["-i", params.video_url, "-vf", video_filter]
        else:
            inputs = [
                "-f", "lavfi", "-i", f"color=c=black:s={width}x{height}:r={rate}",
                "-f", "lavfi", "-i", "anullsrc=channel_layout=stereo:sample_rate=48000",
                "-shortest",
            ]

        trim = ["-t", f"{duration:.3f}"] if duration > 0 else []
        encode = [
            "-c:v", "libx264", "-preset", "medium", "-pix_fmt", "yuv420p",
            "-c:a", "aac", "-movflags", "+faststart",
        ]
        reporting = ["-progress", "pipe:2", "-nostats", "-loglevel", self.ffmpeg_loglevel]
        return [self._get_ffmpeg_exe(), "-y", *inputs, *trim, *encode, *reporting, str(output_path)]

    def run(self, cmd: List[str], expected_duration: Optional[float] = None) -> FfmpegResult:
        """Run ``cmd`` to completion, timeout or cancellation.

        Args:
            cmd: Full FFmpeg argv
            expected_duration: Output length in seconds, for progress fractions

        Returns:
            FfmpegResult; failures are reported in it rather than raised
        """
        started = time.monotonic()
        self._progress = FfmpegProgress(total_duration_s=expected_duration or 0.0)
        self._stderr_tail.clear()

        if self.cancelled:
            return FfmpegResult(
                False, -1, "", 0.0, FfmpegErrorType.CANCELLED, final_progress=self._progress
            )

        try:
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
            )
            monitor = threading.Thread(
                target=self._monitor_progress, args=(self._process.stderr,), daemon=True
            )
            monitor.start()

            returncode, error_type = self._wait(started)
            monitor.join(timeout=2)

            stderr_tail = "\n".join(self._stderr_tail)
            if returncode != 0 and error_type is None:
                error_type = (
                    FfmpegErrorType.CANCELLED if self.cancelled else self._classify_error(stderr_tail)
                )

            artifacts: List[Path] = []
            if (
                error_type not in (None, FfmpegErrorType.CANCELLED)
                and self.save_artifacts_on_failure
            ):
                artifacts = self._save_failure_artifacts(cmd, stderr_tail)

            return FfmpegResult(
                success=returncode == 0 and error_type is None,
                returncode=returncode,
                stderr_tail=stderr_tail,
                duration_s=time.monotonic() - started,
                error_type=error_type,
                final_progress=self._progress,
                artifacts_saved=artifacts,
            )
        except Exception:
            self._kill_process_tree()
            raise
        finally:
            self._process = None

    def _wait(self, started: float):
        """Wait for exit in slices; kill the tree on timeout or cancel."""
        while True:
            try:
                return self._process.wait(timeout=self.poll_interval_s), None
            except subprocess.TimeoutExpired:
                abort = self._check_abort(started)
            if abort is None:
                continue
            self._kill_process_tree()
            returncode = self._process.poll()
            return (-1 if returncode is None else returncode), abort

    def _check_abort(self, started: float) -> Optional[FfmpegErrorType]:
        if self.cancelled:
            return FfmpegErrorType.CANCELLED
        now = time.monotonic()
        if now - started > self.global_timeout_s:
            logger.warning("FFmpeg exceeded the %ss render limit", self.global_timeout_s)
            return FfmpegErrorType.TIMEOUT
        if now - (self._progress.last_update or started) > self.no_progress_timeout_s:
            logger.warning("FFmpeg stalled: no progress for %ss", self.no_progress_timeout_s)
            return FfmpegErrorType.TIMEOUT
        return None

    def _monitor_progress(self, stderr_stream) -> None:
        """Consume FFmpeg's stderr on the monitor thread.

        ``-progress`` writes ``key=value`` blocks, each closed by a
        ``progress=continue`` or ``progress=end`` line, which fires the
        callback. Lines that are not ``key=value`` are diagnostics and are
        kept in the stderr tail.
        """
        progress = self._progress
        try:
            for raw in stderr_stream:
                line = raw.strip()
                if not line:
                    continue
                key, sep, value = line.partition("=")
                if not sep or " " in key:
                    self._stderr_tail.append(line)
                elif key == "progress":
                    self._notify(progress)
                else:
                    self._apply_progress_field(progress, key, value.strip())
        except (OSError, ValueError):
            # Pipe closed while the process tree was being killed
            logger.debug("FFmpeg stderr closed", exc_info=True)

    @staticmethod
    def _apply_progress_field(progress: FfmpegProgress, key: str, value: str) -> None:
        try:
            if key == "out_time":
                hours, minutes, seconds = value.split(":")
                progress.current_time_s = int(hours) * 3600 + int(minutes) * 60 + float(seconds)
                progress.last_update = time.monotonic()
            elif key == "frame":
                progress.frame = int(value)
            elif key == "fps":
                progress.fps = float(value)
            elif key == "speed":
                progress.speed = float(value.rstrip("x"))
        except ValueError:
            # N/A until the first frame is encoded
            logger.debug("Unparsed FFmpeg progress field %s=%s", key, value)

    def _notify(self, progress: FfmpegProgress) -> None:
        if not self.progress_callback:
            return
        try:
            self.progress_callback(progress)
        except Exception:
            logger.exception("Progress callback error")

    def _kill_process_tree(self) -> None:
        """SIGTERM FFmpeg and its children, then SIGKILL whatever outlives the grace period."""
        if not self._process:
            return
        try:
            parent = psutil.Process(self._process.pid)
            procs = [parent, *parent.children(recursive=True)]
        except psutil.NoSuchProcess:
            return

        for proc in procs:
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.terminate()

        _, survivors = psutil.wait_procs(procs, timeout=self.kill_grace_period_s)
        for proc in survivors:
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.kill()

        try:
            self._process.wait(timeout=self.kill_grace_period_s)
        except subprocess.TimeoutExpired:
            logger.error("FFmpeg process %s still running after SIGKILL", self._process.pid)

    def _classify_error(self, stderr: str) -> FfmpegErrorType:
        text = stderr.lower()
        if any(pattern in text for pattern in PERMANENT_ERROR_PATTERNS):
            return FfmpegErrorType.PERMANENT
        return FfmpegErrorType.TRANSIENT

    def _save_failure_artifacts(self, cmd: List[str], stderr: str) -> List[Path]:
        """Write ``ffmpeg_error_*.log`` and an executable ``ffmpeg_cmd_*.sh`` for a failed run."""
        temp_dir = self._get_temp_dir()
        stamp = f"{int(time.time())}_{os.getpid()}_{threading.get_ident()}"
        log_text = "\n".join([
            f"FFmpeg failure at {time.ctime()} (pid {os.getpid()})",
            "",
            "COMMAND:",
            shlex.join(cmd),
            "",
            "STDERR:",
            stderr or "(empty)",
            "",
        ])
        script_text = (
            "#!/bin/bash\n# Re-run a failed render\n"
            + " \\\n  ".join(shlex.quote(arg) for arg in cmd)
            + "\n"
        )

        saved: List[Path] = []
        for name, text, mode in (
            (f"ffmpeg_error_{stamp}.log", log_text, 0o644),
            (f"ffmpeg_cmd_{stamp}.sh", script_text, 0o755),
        ):
            path = temp_dir / name
            try:
                path.write_text(text, encoding="utf-8")
                path.chmod(mode)
            except OSError:
                logger.warning("Could not write FFmpeg failure artifact %s", path, exc_info=True)
                continue
            saved.append(path)

        if saved:
            logger.info("FFmpeg failure artifacts saved in %s", temp_dir)
        return saved

    def _get_temp_dir(self) -> Path:
        temp_dir = Path(self.temp_dir or os.environ.get("TMPDIR", "/tmp"))
        temp_dir.mkdir(parents=True, exist_ok=True)
        return temp_dir

    @staticmethod
    def _get_ffmpeg_exe() -> str:
        return imageio_ffmpeg.get_ffmpeg_exe()
