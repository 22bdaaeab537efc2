"""
Polling job runner.

One invocation claims a batch of queued jobs and processes them one at a
time (sequentially, to keep provider API load predictable). Each job runs
under a timeout; failures are retried with exponential backoff until the
retry policy's ceiling, after which the job lands in `error`.

State machine:
    queued -> processing -> done
                         -> queued (retry, scheduled_at delayed)
                         -> error
    queued -> cancelled (batch cancel only, see QueueManager)
    processing -> queued | error (stale: outcome never recorded)
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog

from omnicrm.config import settings
from omnicrm.db.helpers import DatabaseError
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.dispatcher import JobDispatcher
from omnicrm.jobs.domain import JobRecord
from omnicrm.jobs.errors import JobTimeoutError, is_retryable
from omnicrm.jobs.repository import JobRepository
from omnicrm.jobs.retry_policy import RetryPolicy

logger = get_logger(__name__)


@dataclass(slots=True)
class RunSummary:
    """Counters for one runner invocation."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def record_success(self) -> None:
        self.processed += 1
        self.succeeded += 1

    def record_failure(self, job: JobRecord, error: str, attempts: int, terminal: bool) -> None:
        self.processed += 1
        self.failed += 1
        self.errors.append(
            {
                "job_id": job.id,
                "job_kind": job.kind_name,
                "error": error,
                "attempts": attempts,
                "terminal": terminal,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    def record_skip(self) -> None:
        self.skipped += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors_count": len(self.errors),
        }


class JobRunner:
    """Claims, dispatches and transitions jobs."""

    def __init__(
        self,
        dispatcher: JobDispatcher,
        repository: type[JobRepository] = JobRepository,
        policy: RetryPolicy | None = None,
        job_timeout_seconds: float | None = None,
    ):
        self.dispatcher = dispatcher
        self.repository = repository
        self.policy = policy or RetryPolicy.from_settings()
        self.job_timeout_seconds = job_timeout_seconds or settings.JOB_TIMEOUT_SECONDS

    async def process_jobs(self, batch_size: int | None = None) -> RunSummary:
        """Process up to batch_size runnable jobs across all users."""
        return await self._run(batch_size or settings.JOB_BATCH_SIZE)

    async def process_user_jobs(self, user_id: str, batch_size: int | None = None) -> RunSummary:
        """Process up to batch_size runnable jobs belonging to one user."""
        return await self._run(batch_size or settings.JOB_BATCH_SIZE, user_id=user_id)

    async def _run(self, batch_size: int, user_id: str | None = None) -> RunSummary:
        summary = RunSummary()
        run_id = uuid.uuid4().hex[:12]
        start = time.monotonic()

        with structlog.contextvars.bound_contextvars(run_id=run_id):
            await self._reclaim_stale(user_id)

            jobs = await self.repository.claim_queued(batch_size, user_id=user_id)
            if not jobs:
                logger.debug("No queued jobs to process", user_id=user_id)
                return summary

            logger.info("Processing job batch", claimed=len(jobs), user_id=user_id)

            for job in jobs:
                await self._process_one(job, summary)

            logger.info(
                "Job batch finished",
                duration_seconds=round(time.monotonic() - start, 2),
                user_id=user_id,
                **summary.to_dict(),
            )

        return summary

    async def _reclaim_stale(self, user_id: str | None) -> None:
        # A processing row outliving the job timeout has no runner left to finish it
        stale_after = self.job_timeout_seconds + settings.JOB_STALE_GRACE_SECONDS
        try:
            reclaimed = await self.repository.reclaim_stale(
                stale_after, self.policy.max_attempts, user_id=user_id
            )
        except DatabaseError as e:
            logger.error("Failed to reclaim stale jobs", user_id=user_id, error=str(e))
            return

        if reclaimed["queued"] or reclaimed["error"]:
            logger.warning(
                "Reclaimed stale processing jobs",
                requeued=reclaimed["queued"],
                failed=reclaimed["error"],
                stale_after_seconds=stale_after,
                user_id=user_id,
            )

    async def _process_one(self, job: JobRecord, summary: RunSummary) -> None:
        if not await self.repository.mark_processing(job.id):
            # Cancelled or claimed by an overlapping runner since the select
            logger.info("Job no longer queued, skipping", job_id=job.id, job_kind=job.kind_name)
            summary.record_skip()
            return

        try:
            await asyncio.wait_for(self.dispatcher.dispatch(job), timeout=self.job_timeout_seconds)
        except TimeoutError:
            error = JobTimeoutError(job.id, self.job_timeout_seconds)
            logger.warning(
                "Job timed out",
                job_id=job.id,
                job_kind=job.kind_name,
                timeout_seconds=self.job_timeout_seconds,
            )
            await self._handle_failure(job, error, summary)
            return
        except Exception as e:
            await self._handle_failure(job, e, summary)
            return

        try:
            await self.repository.mark_done(job.id)
        except DatabaseError as e:
            # Processor already ran; its writes are idempotent
            logger.error("Failed to mark job done", job_id=job.id, error=str(e))
            summary.record_failure(job, str(e), job.attempts, terminal=False)
            return

        summary.record_success()

    async def _handle_failure(self, job: JobRecord, error: BaseException, summary: RunSummary) -> None:
        attempts = job.attempts + 1
        message = str(error) or type(error).__name__
        retryable = is_retryable(error)

        try:
            if retryable and self.policy.should_retry(attempts):
                delay = self.policy.delay_for(attempts)
                await self.repository.reschedule(job.id, attempts, delay, message)
                logger.warning(
                    "Job failed, scheduled for retry",
                    job_id=job.id,
                    job_kind=job.kind_name,
                    user_id=job.user_id,
                    attempts=attempts,
                    max_attempts=self.policy.max_attempts,
                    retry_in_seconds=delay,
                    error=message,
                )
                summary.record_failure(job, message, attempts, terminal=False)
                return

            await self.repository.mark_failed(job.id, attempts, message)
            logger.error(
                "Job failed permanently",
                job_id=job.id,
                job_kind=job.kind_name,
                user_id=job.user_id,
                attempts=attempts,
                retryable=retryable,
                error=message,
            )
            summary.record_failure(job, message, attempts, terminal=True)

        except DatabaseError as e:
            logger.error(
                "Failed to record job failure",
                job_id=job.id,
                job_kind=job.kind_name,
                error=str(e),
                original_error=message,
            )
            summary.record_failure(job, message, attempts, terminal=False)

    async def cleanup_old_jobs(self, older_than_days: int | None = None) -> int:
        """Delete terminal jobs untouched for older_than_days (default JOB_RETENTION_DAYS)."""
        days = older_than_days or settings.JOB_RETENTION_DAYS
        deleted = await self.repository.delete_terminal_before(days)
        logger.info("Cleaned up old jobs", older_than_days=days, deleted=deleted)
        return deleted

    async def get_job_stats(self) -> dict[str, int]:
        """Job count per status across all users."""
        return await self.repository.status_counts()
