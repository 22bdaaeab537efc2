"""
Batch-level orchestration over the jobs table.

Read operations (batch status, stats) log and swallow storage failures so
status polling never takes a caller down; mutating operations re-raise.
"""

import secrets
import time
from collections.abc import Sequence

from omnicrm.db.helpers import DatabaseError
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import BatchJob, BatchState, BatchStatus, JobKind, JobStatus
from omnicrm.jobs.enqueue import enqueue
from omnicrm.jobs.repository import JobRepository

logger = get_logger(__name__)


def generate_batch_id() -> str:
    """batch_<8 hex>_<unix ms>"""
    return f"batch_{secrets.token_hex(4)}_{int(time.time() * 1000)}"


def summarize_batch(batch_id: str, rows: Sequence[dict]) -> BatchStatus:
    """
    Fold job rows into a BatchStatus.

    cancelled jobs count as failed (and are also reported on their own), so
    completed + failed + pending == total for any mix of statuses.
    """
    counts = {status: 0 for status in JobStatus}
    for row in rows:
        counts[JobStatus(row["status"])] += 1

    total = len(rows)
    completed = counts[JobStatus.DONE]
    cancelled = counts[JobStatus.CANCELLED]
    failed = counts[JobStatus.ERROR] + cancelled
    pending = counts[JobStatus.QUEUED] + counts[JobStatus.PROCESSING]

    if total and cancelled == total:
        status = BatchState.CANCELLED
    elif pending > 0:
        status = BatchState.IN_PROGRESS
    elif completed == total:
        status = BatchState.COMPLETED
    elif failed > completed / 2:
        status = BatchState.FAILED
    else:
        status = BatchState.COMPLETED

    created = [row["created_at"] for row in rows if row.get("created_at")]
    updated = [row["updated_at"] for row in rows if row.get("updated_at")]

    return BatchStatus(
        batch_id=batch_id,
        total=total,
        completed=completed,
        failed=failed,
        pending=pending,
        cancelled=cancelled,
        status=status,
        created_at=min(created) if created else None,
        updated_at=max(updated) if updated else None,
    )


class QueueManager:
    """Enqueue, inspect and cancel batches of jobs."""

    def __init__(self, repository: type[JobRepository] = JobRepository):
        self.repository = repository

    async def enqueue_batch_job(
        self,
        user_id: str,
        kind: JobKind | str,
        jobs: Sequence[BatchJob | None],
        batch_id: str | None = None,
    ) -> list[str]:
        """
        Enqueue jobs of one kind under a shared batch id.

        Returns one `<batch_id>_<index>` handle per enqueued job. These are
        batch-local ordinals, not jobs table ids. None entries are skipped.
        """
        if not jobs:
            return []

        batch_id = batch_id or generate_batch_id()
        kind_name = kind.value if isinstance(kind, JobKind) else str(kind)

        job_ids: list[str] = []
        try:
            for index, job in enumerate(jobs):
                if job is None:
                    continue
                # Siblings in one batch share kind and batch id; they are not duplicates
                await enqueue(
                    kind,
                    job.payload,
                    user_id,
                    batch_id,
                    deduplicate=False,
                    repository=self.repository,
                )
                job_ids.append(f"{batch_id}_{index}")

        except Exception as e:
            logger.error(
                "Failed to enqueue batch jobs",
                user_id=user_id,
                job_kind=kind_name,
                batch_id=batch_id,
                enqueued=len(job_ids),
                error=str(e),
            )
            raise

        logger.info(
            "Enqueued batch jobs",
            user_id=user_id,
            job_kind=kind_name,
            batch_id=batch_id,
            job_count=len(job_ids),
        )
        return job_ids

    async def get_batch_status(self, batch_id: str) -> BatchStatus | None:
        """Aggregate status for a batch, or None if it has no jobs (or the lookup failed)."""
        try:
            rows = await self.repository.fetch_batch(batch_id)
        except DatabaseError as e:
            logger.error("Failed to get batch status", batch_id=batch_id, error=str(e))
            return None

        if not rows:
            return None

        return summarize_batch(batch_id, rows)

    async def cancel_batch(self, batch_id: str, user_id: str) -> int:
        """Cancel the user's still-queued jobs in a batch. Processing jobs run to completion."""
        try:
            cancelled = await self.repository.cancel_batch(batch_id, user_id)
        except DatabaseError as e:
            logger.error("Failed to cancel batch", batch_id=batch_id, user_id=user_id, error=str(e))
            raise

        logger.info("Cancelled batch jobs", batch_id=batch_id, user_id=user_id, cancelled=cancelled)
        return cancelled

    async def get_job_stats(self, user_id: str) -> dict[str, int]:
        """Job count per status for one user ({} if the lookup failed)."""
        try:
            return await self.repository.status_counts(user_id)
        except DatabaseError as e:
            logger.error("Failed to get job stats", user_id=user_id, error=str(e))
            return {}

    async def get_queue_depth(self, user_id: str | None = None) -> int:
        """Number of queued jobs, for one user or across all users."""
        return await self.repository.count_queued(user_id)
