"""Typed job registry.

Maps each job type tag to the queue it runs on, the pydantic model its
payload must satisfy and the coroutine that handles it. The registry is
built once at process start and handed to both the producer side
(JobQueueService) and the worker side (Dispatcher).
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ValidationError

from taskflow.services.job_queue import InvalidPayloadError, UnknownJobTypeError

if TYPE_CHECKING:
    from taskflow.worker.context import HandlerContext

logger = logging.getLogger(__name__)

# handle(context, payload) -> result. Raising is the only failure signal.
JobHandler = Callable[["HandlerContext", Any], Awaitable[dict[str, Any] | None]]


@dataclass(frozen=True)
class JobDefinition:
    """One registered job type."""

    job_type: str
    queue: str
    payload_model: type[BaseModel]
    handler: JobHandler

    def validate(self, payload: dict[str, Any]) -> BaseModel:
        """Parse a payload into the job type's model.

        Raises:
            InvalidPayloadError: If the payload does not match the model.
        """
        try:
            return self.payload_model.model_validate(payload)
        except ValidationError as e:
            raise InvalidPayloadError(
                self.job_type, e.errors(include_url=False, include_context=False)
            ) from e


class JobRegistry:
    """Job type -> JobDefinition table."""

    def __init__(self) -> None:
        self._definitions: dict[str, JobDefinition] = {}

    def register(
        self,
        job_type: str,
        queue: str,
        payload_model: type[BaseModel],
        handler: JobHandler,
    ) -> JobDefinition:
        """Register a handler. A job type can only be registered once."""
        if job_type in self._definitions:
            msg = f"Job type already registered: {job_type}"
            raise ValueError(msg)
        definition = JobDefinition(job_type, queue, payload_model, handler)
        self._definitions[job_type] = definition
        logger.debug("Registered handler: job_type=%s, queue=%s", job_type, queue)
        return definition

    def get(self, job_type: str) -> JobDefinition:
        """Look up a job type.

        Raises:
            UnknownJobTypeError: If nothing is registered under ``job_type``.
        """
        try:
            return self._definitions[job_type]
        except KeyError:
            raise UnknownJobTypeError(f"Unknown job type: {job_type}") from None

    def definitions(self) -> list[JobDefinition]:
        return list(self._definitions.values())

    def for_queue(self, queue: str) -> list[JobDefinition]:
        return [d for d in self._definitions.values() if d.queue == queue]

    def __contains__(self, job_type: object) -> bool:
        return job_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)
