"""Fire-and-forget asyncio tasks whose failures are logged, never raised."""

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, Set

logger = logging.getLogger(__name__)

# Strong references; the loop only keeps weak ones
_pending: Set["asyncio.Task[Any]"] = set()


def spawn_detached(
    coro: Awaitable[Any],
    description: str,
    extra: Optional[Dict[str, Any]] = None,
) -> "asyncio.Task[Any]":
    """Schedule ``coro`` on the running loop without awaiting it.

    Args:
        coro: Coroutine to run
        description: Human-readable label used in the failure log line
        extra: Logging extras (job_id, event, ...) attached on failure

    Returns:
        The task, so callers that care can await it later.
    """
    task = asyncio.ensure_future(coro)
    _pending.add(task)

    def _done(t: "asyncio.Task[Any]") -> None:
        _pending.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.error(
                "Detached task failed: %s: %s",
                description,
                exc,
                exc_info=exc,
                extra=extra or {},
            )

    task.add_done_callback(_done)
    return task


def pending_count() -> int:
    return len(_pending)
