"""
Route claimed jobs to their processors.

The registry is an explicit object built once at startup (see
omnicrm.jobs.processors.build_default_registry) and handed to the runner.
"""

from collections.abc import Awaitable, Callable
from typing import Any

from omnicrm.infrastructure.observability.logging import get_logger, log_job_event
from omnicrm.jobs.domain import (
    JobKind,
    JobPayload,
    JobRecord,
    payload_model_for,
    register_payload_model,
)
from omnicrm.jobs.errors import InvalidPayloadError, NoHandlerRegisteredError

logger = get_logger(__name__)

Processor = Callable[[JobRecord], Awaitable[Any]]


class ProcessorRegistry:
    """Mapping from job kind name to processor coroutine."""

    def __init__(self, processors: dict[JobKind | str, Processor] | None = None):
        self._processors: dict[str, Processor] = {}
        for kind, processor in (processors or {}).items():
            self.register(kind, processor)

    @staticmethod
    def _key(kind: JobKind | str) -> str:
        return kind.value if isinstance(kind, JobKind) else str(kind)

    def register(
        self,
        kind: JobKind | str,
        processor: Processor,
        payload_model: type[JobPayload] | None = None,
    ) -> None:
        """
        Register (or replace) the processor for a kind.

        Kinds outside JobKind need a payload_model before jobs of that kind can
        be enqueued; built-in kinds keep their own model.
        """
        key = self._key(kind)
        if payload_model is not None:
            register_payload_model(key, payload_model)
        if key in self._processors:
            logger.warning("Replacing registered processor", job_kind=key)
        self._processors[key] = processor

    def get(self, kind: JobKind | str) -> Processor | None:
        return self._processors.get(self._key(kind))

    def kinds(self) -> list[str]:
        return sorted(self._processors)

    def missing_kinds(self) -> list[str]:
        """JobKind members without a processor."""
        return [kind.value for kind in JobKind if kind.value not in self._processors]

    def __contains__(self, kind: JobKind | str) -> bool:
        return self._key(kind) in self._processors

    def __len__(self) -> int:
        return len(self._processors)


class JobDispatcher:
    """Invoke the registered processor for a job, logging start/success/failure."""

    def __init__(self, registry: ProcessorRegistry):
        self.registry = registry

    async def dispatch(self, job: JobRecord) -> Any:
        """
        Run the processor for job.kind.

        Raises:
            NoHandlerRegisteredError: No processor for the kind
            InvalidPayloadError: Stored payload no longer matches the kind's schema
            Exception: Whatever the processor raised, unchanged
        """
        kind_name = job.kind_name
        processor = self.registry.get(kind_name)
        if processor is None:
            log_job_event(
                "No handler registered for job kind",
                job.id,
                kind_name,
                job.user_id,
                failed=True,
                attempts=job.attempts,
            )
            raise NoHandlerRegisteredError(kind_name)

        if payload_model_for(kind_name) is not None and not isinstance(job.payload, JobPayload):
            raise InvalidPayloadError(
                f"Stored payload for job {job.id} does not match the {kind_name} schema",
                issues=[],
                job_kind=kind_name,
                user_id=job.user_id,
            )

        log_job_event(
            "Job processing started", job.id, kind_name, job.user_id, attempts=job.attempts
        )

        try:
            result = await processor(job)
        except Exception as e:
            log_job_event(
                "Job processing failed",
                job.id,
                kind_name,
                job.user_id,
                failed=True,
                attempts=job.attempts,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        log_job_event(
            "Job processing completed", job.id, kind_name, job.user_id, attempts=job.attempts
        )
        return result
