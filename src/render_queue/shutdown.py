"""Graceful shutdown: stop claiming, drain active renders, close the store.

The coordinator is triggered by SIGINT/SIGTERM or by an unexpected error
that is not connection-related. Connection-class errors are logged and the
worker keeps running, since the next retry usually recovers.
"""

import asyncio
import errno
import logging
import signal
import threading
import time
from typing import Any, Optional

from .queue.backends import QueueBackend
from .queue.retry import RetryExhaustedError
from .queue.worker import WorkerPool

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_STARTUP_FAILURE = 1
EXIT_FORCED_SHUTDOWN = 2

CONNECTION_ERROR_PATTERNS = (
    "connection",
    "econnreset",
    "econnrefused",
    "etimedout",
    "terminating connection",
    "statement timeout",
    "connect timeout",
    "timed out",
    "database is locked",
    "broken pipe",
)

NETWORK_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.EPIPE,
        errno.ENETDOWN,
        errno.ENETUNREACH,
        errno.EHOSTUNREACH,
    }
)


def is_connection_error(exc: Optional[BaseException]) -> bool:
    """True for network/database connectivity errors, including wrapped ones."""
    seen = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
            return True
        if isinstance(exc, OSError) and exc.errno in NETWORK_ERRNOS:
            return True
        message = str(exc).lower()
        if any(pattern in message for pattern in CONNECTION_ERROR_PATTERNS):
            return True
        if isinstance(exc, RetryExhaustedError) and exc.last_error is not None:
            exc = exc.last_error
        else:
            exc = exc.__cause__ or exc.__context__
    return False


class ShutdownCoordinator:
    """Owns the stop sequence for one worker process.

    ``request()`` is idempotent: the first call stops the pool from claiming,
    then waits up to ``timeout_s`` for active renders. The resulting exit code
    is EXIT_OK after a clean drain, EXIT_FORCED_SHUTDOWN when the deadline
    passes with renders still running.
    """

    def __init__(
        self,
        pool: WorkerPool,
        store: QueueBackend,
        timeout_s: float = 30.0,
        progress_log_interval_s: float = 1.0,
    ):
        self.pool = pool
        self.store = store
        self.timeout_s = timeout_s
        self.progress_log_interval_s = progress_log_interval_s
        self.reason: Optional[str] = None

        self._requested = asyncio.Event()
        self._task: Optional["asyncio.Task[int]"] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._signals: list = []
        self._previous_excepthook: Any = None

    @property
    def requested(self) -> bool:
        return self._task is not None

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------
    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register signal handlers, the loop exception handler and the thread excepthook."""
        self._loop = loop
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
                self._signals.append(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                # Windows, or not the main thread
                logger.warning("Cannot install handler for %s", sig.name)
        loop.set_exception_handler(self._on_loop_exception)
        self._previous_excepthook = threading.excepthook
        threading.excepthook = self._on_thread_exception

    def uninstall(self) -> None:
        if self._loop is None:
            return
        for sig in self._signals:
            self._loop.remove_signal_handler(sig)
        self._signals = []
        self._loop.set_exception_handler(None)
        if self._previous_excepthook is not None:
            threading.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def _on_signal(self, sig: signal.Signals) -> None:
        self.request(f"signal {sig.name}")

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception") or RuntimeError(context.get("message", "unknown loop error"))
        self.handle_unexpected_error(exc, source="event loop")

    def _on_thread_exception(self, args: Any) -> None:
        if args.exc_type is SystemExit:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(
            self.handle_unexpected_error, args.exc_value, f"thread {getattr(args.thread, 'name', '?')}"
        )

    def handle_unexpected_error(self, exc: BaseException, source: str = "unknown") -> bool:
        """Classify an error nobody handled.

        Returns:
            True if it triggered a shutdown, False if it was logged and ignored
        """
        if is_connection_error(exc):
            logger.warning(
                "Connection error from %s (continuing): %s",
                source,
                exc,
                extra={"event": "unexpected_connection_error"},
            )
            return False
        logger.error(
            "Unexpected error from %s: %s",
            source,
            exc,
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"event": "unexpected_error"},
        )
        self.request("unexpected error")
        return True

    # ------------------------------------------------------------------
    # Stop sequence
    # ------------------------------------------------------------------
    def request(self, reason: str) -> "asyncio.Task[int]":
        """Start the stop sequence (must run on the event loop)."""
        if self._task is None:
            self.reason = reason
            logger.warning(
                "Shutting down (%s): waiting for %d active renders",
                reason,
                self.pool.active_count,
                extra={"event": "shutdown_started"},
            )
            self.pool.request_stop()
            self._task = asyncio.get_running_loop().create_task(self._drain())
            self._requested.set()
        return self._task

    async def wait(self) -> int:
        """Block until a shutdown is requested and finished; return the exit code."""
        await self._requested.wait()
        assert self._task is not None
        return await self._task

    async def _drain(self) -> int:
        deadline = time.monotonic() + self.timeout_s
        while True:
            remaining = max(deadline - time.monotonic(), 0.0)
            if await self.pool.wait_idle(min(self.progress_log_interval_s, remaining)):
                await self._close_store()
                logger.info("Shutdown complete", extra={"event": "shutdown_complete"})
                return EXIT_OK
            if time.monotonic() >= deadline:
                logger.error(
                    "Shutdown deadline (%.0fs) passed with %d active renders; forcing exit",
                    self.timeout_s,
                    self.pool.active_count,
                    extra={"event": "shutdown_forced"},
                )
                return EXIT_FORCED_SHUTDOWN
            logger.info(
                "Waiting for %d active renders...",
                self.pool.active_count,
                extra={"event": "shutdown_waiting"},
            )

    async def _close_store(self) -> None:
        try:
            await self.store.close()
        except Exception:
            logger.warning("Error closing queue store", exc_info=True, extra={"event": "store_close_failed"})
