"""
Persistence layer for the jobs table.

Every job status transition goes through this class so the runner, enqueue
and queue manager never issue SQL of their own. All writes are single-row
(or single-statement) updates; nothing here spans job rows and business data.
"""

from typing import Any

from psycopg.types.json import Jsonb

from omnicrm.db.helpers import DatabaseError, execute_query, fetch_all, fetch_one, fetch_val, with_db_retry
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import JobRecord

logger = get_logger(__name__)

MAX_ERROR_LENGTH = 1000
STALE_JOB_ERROR = "Job outcome was never recorded; reclaimed from processing"


class JobRepositoryError(DatabaseError):
    """More specific exception for jobs table failures."""


class JobRepository:
    """SQL for the job queue."""

    JOB_SELECT_COLUMNS = """
        id, user_id, kind, payload, status, attempts, batch_id,
        last_error, scheduled_at, created_at, updated_at
    """

    TERMINAL_BEFORE = """
        status IN ('done', 'error', 'cancelled')
        AND updated_at < NOW() - make_interval(days => %s)
    """

    @classmethod
    async def insert_job(
        cls, user_id: str, kind: str, payload: dict[str, Any], batch_id: str | None = None
    ) -> str:
        """Insert a queued job (attempts 0) and return its id."""

        query = """
            INSERT INTO jobs (user_id, kind, payload, status, attempts, batch_id)
            VALUES (%s, %s, %s, 'queued', 0, %s)
            RETURNING id
        """

        row = await fetch_one(query, (user_id, kind, Jsonb(payload), batch_id))
        if not row:
            raise JobRepositoryError("Failed to insert job", operation="insert_job")
        return str(row["id"])

    @classmethod
    async def find_in_flight(cls, user_id: str, kind: str, batch_id: str) -> str | None:
        """Return the id of a queued/processing job with the same user, kind and batch."""

        query = """
            SELECT id
            FROM jobs
            WHERE user_id = %s
              AND kind = %s
              AND batch_id = %s
              AND status IN ('queued', 'processing')
            LIMIT 1
        """

        job_id = await fetch_val(query, (user_id, kind, batch_id))
        return str(job_id) if job_id else None

    @classmethod
    async def claim_queued(cls, limit: int, user_id: str | None = None) -> list[JobRecord]:
        """
        Select up to `limit` runnable queued jobs, oldest first.

        A job is runnable once its scheduled_at (retry delay) has passed. The
        rows are not locked; mark_processing() is the conditional claim.
        """

        if user_id:
            query = f"""
                SELECT {cls.JOB_SELECT_COLUMNS}
                FROM jobs
                WHERE status = 'queued'
                  AND user_id = %s
                  AND (scheduled_at IS NULL OR scheduled_at <= NOW())
                ORDER BY created_at ASC
                LIMIT %s
            """
            params: tuple = (user_id, limit)
        else:
            query = f"""
                SELECT {cls.JOB_SELECT_COLUMNS}
                FROM jobs
                WHERE status = 'queued'
                  AND (scheduled_at IS NULL OR scheduled_at <= NOW())
                ORDER BY created_at ASC
                LIMIT %s
            """
            params = (limit,)

        rows = await fetch_all(query, params)
        return [JobRecord.from_row(row) for row in rows]

    @classmethod
    async def mark_processing(cls, job_id: str) -> bool:
        """Move a queued job to processing. False if another runner (or a cancel) got there first."""

        query = """
            UPDATE jobs
            SET status = 'processing',
                updated_at = NOW()
            WHERE id = %s
              AND status = 'queued'
        """

        return await execute_query(query, (job_id,)) == 1

    @classmethod
    @with_db_retry()
    async def mark_done(cls, job_id: str) -> None:
        query = """
            UPDATE jobs
            SET status = 'done',
                last_error = NULL,
                updated_at = NOW()
            WHERE id = %s
        """

        await execute_query(query, (job_id,))

    @classmethod
    @with_db_retry()
    async def reschedule(
        cls, job_id: str, attempts: int, delay_seconds: float, error_message: str
    ) -> None:
        """Return a failed job to the queue with a backoff delay."""

        query = """
            UPDATE jobs
            SET status = 'queued',
                attempts = %s,
                last_error = %s,
                scheduled_at = NOW() + make_interval(secs => %s),
                updated_at = NOW()
            WHERE id = %s
        """

        await execute_query(
            query, (attempts, (error_message or "")[:MAX_ERROR_LENGTH], delay_seconds, job_id)
        )

    @classmethod
    @with_db_retry()
    async def mark_failed(cls, job_id: str, attempts: int, error_message: str) -> None:
        """Terminal failure."""

        query = """
            UPDATE jobs
            SET status = 'error',
                attempts = %s,
                last_error = %s,
                updated_at = NOW()
            WHERE id = %s
        """

        await execute_query(query, (attempts, (error_message or "")[:MAX_ERROR_LENGTH], job_id))

    @classmethod
    async def reclaim_stale(
        cls, stale_after_seconds: float, max_attempts: int, user_id: str | None = None
    ) -> dict[str, int]:
        """
        Recover jobs stuck in `processing` (worker died or the outcome write failed).

        Each stale job is charged one attempt; it goes back to `queued` while
        attempts remain and to `error` otherwise. Returns counts by new status.
        """

        query = """
            UPDATE jobs
            SET attempts = attempts + 1,
                status = CASE WHEN attempts + 1 >= %s THEN 'error' ELSE 'queued' END,
                last_error = %s,
                scheduled_at = NULL,
                updated_at = NOW()
            WHERE status = 'processing'
              AND updated_at < NOW() - make_interval(secs => %s)
              AND (%s::text IS NULL OR user_id::text = %s)
            RETURNING id, status
        """

        rows = await fetch_all(
            query, (max_attempts, STALE_JOB_ERROR, stale_after_seconds, user_id, user_id)
        )
        counts = {"queued": 0, "error": 0}
        for row in rows:
            counts[row["status"]] += 1
        return counts

    @classmethod
    async def fetch_batch(cls, batch_id: str) -> list[dict[str, Any]]:
        """Status and timestamps of every job in a batch."""

        query = """
            SELECT id, status, created_at, updated_at
            FROM jobs
            WHERE batch_id = %s
        """

        return await fetch_all(query, (batch_id,))

    @classmethod
    async def cancel_batch(cls, batch_id: str, user_id: str) -> int:
        """Cancel the user's still-queued jobs in a batch. Returns the affected row count."""

        query = """
            UPDATE jobs
            SET status = 'cancelled',
                updated_at = NOW()
            WHERE batch_id = %s
              AND user_id = %s
              AND status = 'queued'
        """

        return await execute_query(query, (batch_id, user_id))

    @classmethod
    async def status_counts(cls, user_id: str | None = None) -> dict[str, int]:
        """Histogram of jobs by status, for one user or the whole table."""

        if user_id:
            query = """
                SELECT status, COUNT(*) AS count
                FROM jobs
                WHERE user_id = %s
                GROUP BY status
            """
            params: tuple = (user_id,)
        else:
            query = """
                SELECT status, COUNT(*) AS count
                FROM jobs
                GROUP BY status
            """
            params = ()

        rows = await fetch_all(query, params)
        return {row["status"]: int(row["count"]) for row in rows}

    @classmethod
    async def delete_terminal_before(cls, older_than_days: int, user_id: str | None = None) -> int:
        """Delete done/error/cancelled jobs not touched for `older_than_days`, for one user or all."""

        if user_id:
            query = f"DELETE FROM jobs WHERE {cls.TERMINAL_BEFORE} AND user_id = %s"
            params: tuple = (older_than_days, user_id)
        else:
            query = f"DELETE FROM jobs WHERE {cls.TERMINAL_BEFORE}"
            params = (older_than_days,)

        return await execute_query(query, params)

    @classmethod
    async def count_terminal_before(cls, older_than_days: int, user_id: str | None = None) -> int:
        if user_id:
            query = f"SELECT COUNT(*) AS count FROM jobs WHERE {cls.TERMINAL_BEFORE} AND user_id = %s"
            params: tuple = (older_than_days, user_id)
        else:
            query = f"SELECT COUNT(*) AS count FROM jobs WHERE {cls.TERMINAL_BEFORE}"
            params = (older_than_days,)

        return int(await fetch_val(query, params) or 0)

    @classmethod
    async def count_queued(cls, user_id: str | None = None) -> int:
        """Queue depth (runnable or not)."""

        if user_id:
            query = "SELECT COUNT(*) AS count FROM jobs WHERE status = 'queued' AND user_id = %s"
            params: tuple = (user_id,)
        else:
            query = "SELECT COUNT(*) AS count FROM jobs WHERE status = 'queued'"
            params = ()

        return int(await fetch_val(query, params) or 0)
