"""
Enqueue a single job.

De-duplication is a read-then-write: two concurrent callers can both miss
the in-flight row and both insert. That race is accepted. Processors write
business data with idempotent upserts, so a duplicate job costs work, not
correctness.
"""

from typing import Any

from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs import payload_validator
from omnicrm.jobs.domain import JobKind
from omnicrm.jobs.repository import JobRepository

logger = get_logger(__name__)


async def enqueue(
    kind: JobKind | str,
    payload: dict[str, Any] | None,
    user_id: str,
    batch_id: str | None = None,
    *,
    deduplicate: bool = True,
    repository: type[JobRepository] = JobRepository,
) -> str | None:
    """
    Validate and persist a queued job.

    Args:
        kind: Job kind
        payload: Kind-specific payload (camelCase keys)
        user_id: Owning user
        batch_id: Optional batch grouping; enables in-flight de-duplication
        deduplicate: False when the caller deliberately enqueues sibling jobs of one kind
        repository: Job store

    Returns:
        str | None: New job id, or None if an equivalent job is already in flight

    Raises:
        JobPayloadError: Payload rejected; nothing was written
    """
    validated = payload_validator.validate(kind, payload or {}, user_id)
    kind_name = kind.value if isinstance(kind, JobKind) else str(kind)

    if batch_id and deduplicate:
        existing_id = await repository.find_in_flight(user_id, kind_name, batch_id)
        if existing_id:
            logger.info(
                "Job already in flight for batch, skipping enqueue",
                user_id=user_id,
                job_kind=kind_name,
                batch_id=batch_id,
                existing_job_id=existing_id,
            )
            return None

    job_id = await repository.insert_job(user_id, kind_name, validated.to_json_dict(), batch_id)

    logger.info(
        "Job enqueued", job_id=job_id, user_id=user_id, job_kind=kind_name, batch_id=batch_id
    )
    return job_id
