"""
Data retention sweep over raw_events and terminal jobs.

Without olderThanDays the sweep applies the policy windows across all users.
olderThanDays is a per-user override: it only touches rows owned by the
job's user, so one tenant cannot shorten another tenant's retention.
dryRun reports what would be deleted.
"""

from dataclasses import dataclass, field

from omnicrm.config import settings
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import JobRecord, RetentionPayload
from omnicrm.jobs.repository import JobRepository
from omnicrm.repositories.raw_events import RawEventRepository

logger = get_logger(__name__)


@dataclass(slots=True)
class RetentionResult:
    dry_run: bool
    target_table: str
    scope_user_id: str | None = None
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def total_cleaned(self) -> int:
        if self.dry_run:
            return 0
        return sum(self.counts.values())

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "target_table": self.target_table,
            "scope_user_id": self.scope_user_id,
            "counts": dict(self.counts),
            "total_cleaned": self.total_cleaned,
        }


async def run_data_retention(job: JobRecord) -> RetentionResult:
    payload = job.payload if isinstance(job.payload, RetentionPayload) else RetentionPayload()
    scope_user_id = job.user_id if payload.older_than_days else None
    raw_events_days = payload.older_than_days or settings.RETENTION_RAW_EVENTS_DAYS
    jobs_days = payload.older_than_days or settings.JOB_RETENTION_DAYS
    result = RetentionResult(
        dry_run=payload.dry_run, target_table=payload.target_table, scope_user_id=scope_user_id
    )

    logger.info(
        "Starting data retention cleanup",
        job_id=job.id,
        user_id=job.user_id,
        target_table=payload.target_table,
        dry_run=payload.dry_run,
        scope_user_id=scope_user_id,
        raw_events_days=raw_events_days,
        jobs_days=jobs_days,
    )

    if payload.target_table in ("all", "raw_events"):
        if payload.dry_run:
            result.counts["raw_events"] = await RawEventRepository.count_older_than(
                raw_events_days, user_id=scope_user_id
            )
        else:
            result.counts["raw_events"] = await RawEventRepository.delete_older_than(
                raw_events_days, user_id=scope_user_id
            )

    if payload.target_table in ("all", "jobs"):
        if payload.dry_run:
            result.counts["jobs"] = await JobRepository.count_terminal_before(
                jobs_days, user_id=scope_user_id
            )
        else:
            result.counts["jobs"] = await JobRepository.delete_terminal_before(
                jobs_days, user_id=scope_user_id
            )

    logger.info("Data retention cleanup completed", job_id=job.id, **result.to_dict())
    return result
