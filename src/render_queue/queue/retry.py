"""Linear-backoff retry for transient store failures."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


class RetryExhaustedError(Exception):
    """Every attempt of a retried operation failed."""

    def __init__(self, context: str, attempts: int, last_error: Optional[BaseException]):
        super().__init__(f"{context} failed after {attempts} attempts: {last_error}")
        self.context = context
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_delay_s: float = 1.0

    @classmethod
    def from_config(cls, settings: Any) -> "RetryPolicy":
        return cls(
            attempts=max(1, settings.db_retry_attempts),
            base_delay_s=max(0.0, settings.db_retry_delay_ms / 1000),
        )


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    context: str,
    attempts: int = 3,
    base_delay_s: float = 1.0,
    give_up_on: Tuple[Type[BaseException], ...] = (),
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``attempts`` times.

    Waits ``base_delay_s * attempt`` after each failed attempt (1s, 2s, ...).
    Exceptions in ``give_up_on`` propagate immediately; cancellation is never
    retried.

    Raises:
        RetryExhaustedError: if the final attempt fails.
    """
    attempts = max(1, attempts)
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except give_up_on:
            raise
        except Exception as e:
            last_error = e
            logger.warning(
                "%s failed (attempt %d/%d): %s",
                context,
                attempt,
                attempts,
                e,
                extra={"event": "retry_attempt_failed", "context": context, "attempt": attempt},
            )
            if attempt < attempts:
                await sleep(base_delay_s * attempt)

    raise RetryExhaustedError(context, attempts, last_error) from last_error
