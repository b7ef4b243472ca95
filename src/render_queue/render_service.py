"""In-process facade for submitting, inspecting and cancelling render jobs.

An HTTP layer (or the CLI) calls these methods; the worker pool picks the jobs
up from the same backend.
"""

import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from .models import RenderParameters
from .queue.backends import QueueBackend
from .queue.models import Job, JobNotFoundError

logger = logging.getLogger(__name__)


class InvalidRenderRequest(ValueError):
    """Submitted render parameters failed validation."""


class RenderService:
    def __init__(self, backend: QueueBackend):
        self.backend = backend

    async def create_job(
        self, user_id: str, data: Optional[Mapping[str, Any]] = None, job_id: Optional[str] = None
    ) -> str:
        """Validate render parameters and queue a job.

        Missing fields take the defaults of ``RenderParameters`` (basic style,
        540px caption padding, empty transcript, 30 fps).

        Returns:
            The new job id

        Raises:
            InvalidRenderRequest: a field has the wrong type or range
        """
        if not user_id:
            raise InvalidRenderRequest("user_id is required")
        try:
            params = RenderParameters.model_validate(dict(data or {}))
        except ValidationError as e:
            raise InvalidRenderRequest(_first_error(e)) from e

        job = await self.backend.enqueue(user_id, params.to_payload(), job_id=job_id)
        return job.id

    async def get_job(self, job_id: str) -> Job:
        """Raises JobNotFoundError for unknown ids."""
        job = await self.backend.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def cancel_job(self, job_id: str) -> bool:
        """Cancel a queued or rendering job.

        Returns:
            False if the job already finished (not cancellable)

        Raises:
            JobNotFoundError: unknown job id
            CancellationUnsupportedError: the backend cannot reach the renderer
        """
        cancelled = await self.backend.cancel(job_id)
        if not cancelled:
            logger.info("Job is not cancellable", extra={"job_id": job_id, "event": "cancel_rejected"})
        return cancelled


def _first_error(error: ValidationError) -> str:
    details: Dict[str, Any] = error.errors()[0]
    location = ".".join(str(part) for part in details.get("loc", ()))
    return f"{location}: {details.get('msg', 'invalid value')}" if location else details.get("msg", "invalid")
