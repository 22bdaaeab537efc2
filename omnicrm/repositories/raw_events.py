"""
Persistence for raw_events: provider-native Gmail messages and Calendar events.
"""

from collections.abc import Iterable
from datetime import datetime

from psycopg.types.json import Jsonb

from omnicrm.db.helpers import execute_query, fetch_all, fetch_val
from omnicrm.db.pool import get_db_connection
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.models.domain import RawEventRecord

logger = get_logger(__name__)


class RawEventRepository:
    """Persistence helpers for raw events."""

    @classmethod
    async def latest_occurred_at(cls, user_id: str, provider: str) -> datetime | None:
        """Most recent occurred_at already ingested for a provider (incremental sync bound)."""

        query = """
            SELECT MAX(occurred_at) AS latest
            FROM raw_events
            WHERE user_id = %s AND provider = %s
        """

        return await fetch_val(query, (user_id, provider))

    @classmethod
    async def insert_events(cls, records: Iterable[RawEventRecord]) -> int:
        """Insert events, ignoring ones already stored. Returns the number of new rows."""

        records = list(records)
        if not records:
            return 0

        query = """
            INSERT INTO raw_events (user_id, provider, source_id, payload, occurred_at, batch_id)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, provider, source_id) DO NOTHING
        """

        inserted = 0
        async with await get_db_connection() as conn:
            for record in records:
                inserted += await execute_query(
                    query,
                    (
                        record.user_id,
                        record.provider,
                        record.source_id,
                        Jsonb(record.payload),
                        record.occurred_at,
                        record.batch_id,
                    ),
                    connection=conn,
                )

        logger.info(
            "Raw events stored",
            provider=records[0].provider,
            received=len(records),
            inserted=inserted,
        )
        return inserted

    @classmethod
    async def list_for_batch(cls, user_id: str, provider: str, batch_id: str) -> list[RawEventRecord]:
        query = """
            SELECT id, user_id, provider, source_id, payload, occurred_at, batch_id
            FROM raw_events
            WHERE user_id = %s AND provider = %s AND batch_id = %s
            ORDER BY occurred_at ASC
        """

        rows = await fetch_all(query, (user_id, provider, batch_id))
        return [
            RawEventRecord(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                provider=row["provider"],
                source_id=row["source_id"],
                payload=row["payload"] or {},
                occurred_at=row["occurred_at"],
                batch_id=row.get("batch_id"),
            )
            for row in rows
        ]

    @staticmethod
    def _age_filter(days: int, user_id: str | None) -> tuple[str, tuple]:
        if user_id:
            return "created_at < NOW() - make_interval(days => %s) AND user_id = %s", (days, user_id)
        return "created_at < NOW() - make_interval(days => %s)", (days,)

    @classmethod
    async def count_older_than(cls, days: int, user_id: str | None = None) -> int:
        condition, params = cls._age_filter(days, user_id)
        return int(await fetch_val(f"SELECT COUNT(*) AS count FROM raw_events WHERE {condition}", params) or 0)

    @classmethod
    async def delete_older_than(cls, days: int, user_id: str | None = None) -> int:
        """Delete raw events ingested more than `days` ago, for one user or all users."""
        condition, params = cls._age_filter(days, user_id)
        return await execute_query(f"DELETE FROM raw_events WHERE {condition}", params)
