"""
Persistence for interactions, the normalized contact touchpoints.

(user_id, source, source_id) is unique; re-ingesting the same provider item
is a no-op.
"""

from datetime import datetime
from typing import Any

from psycopg.types.json import Jsonb

from omnicrm.db.helpers import execute_query, fetch_all, fetch_one, fetch_val
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.models.domain import InteractionRecord

logger = get_logger(__name__)


class InteractionRepository:
    """Persistence helpers for interactions."""

    SELECT_COLUMNS = """
        id, user_id, contact_id, type, subject, body_text, occurred_at,
        source, source_id, source_meta, batch_id
    """

    @classmethod
    def _row_to_interaction(cls, row: dict[str, Any] | None) -> InteractionRecord | None:
        if not row:
            return None

        return InteractionRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            contact_id=str(row["contact_id"]) if row.get("contact_id") else None,
            type=row["type"],
            subject=row.get("subject"),
            body_text=row.get("body_text"),
            occurred_at=row["occurred_at"],
            source=row["source"],
            source_id=row["source_id"],
            source_meta=row.get("source_meta") or {},
            batch_id=row.get("batch_id"),
        )

    @classmethod
    async def upsert(cls, record: InteractionRecord) -> bool:
        """Insert unless already ingested. True if a new row was written."""

        query = """
            INSERT INTO interactions (
                user_id, type, subject, body_text, occurred_at,
                source, source_id, source_meta, batch_id
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, source, source_id) DO NOTHING
        """

        inserted = await execute_query(
            query,
            (
                record.user_id,
                record.type,
                record.subject,
                record.body_text,
                record.occurred_at,
                record.source,
                record.source_id,
                Jsonb(record.source_meta),
                record.batch_id,
            ),
        )
        return inserted == 1

    @classmethod
    async def get_unlinked(cls, user_id: str, limit: int, lookback_days: int) -> list[InteractionRecord]:
        """Recent interactions without a contact, newest first."""

        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM interactions
            WHERE user_id = %s
              AND contact_id IS NULL
              AND created_at > NOW() - make_interval(days => %s)
            ORDER BY created_at DESC
            LIMIT %s
        """

        rows = await fetch_all(query, (user_id, lookback_days, limit))
        return [cls._row_to_interaction(row) for row in rows]

    @classmethod
    async def get_unlinked_by_id(cls, user_id: str, interaction_id: str) -> InteractionRecord | None:
        query = f"""
            SELECT {cls.SELECT_COLUMNS}
            FROM interactions
            WHERE id = %s AND user_id = %s AND contact_id IS NULL
        """

        return cls._row_to_interaction(await fetch_one(query, (interaction_id, user_id)))

    @classmethod
    async def link_contact(cls, interaction_id: str, contact_id: str) -> bool:
        query = """
            UPDATE interactions
            SET contact_id = %s
            WHERE id = %s AND contact_id IS NULL
        """

        return await execute_query(query, (contact_id, interaction_id)) == 1

    @classmethod
    async def list_recent(
        cls, user_id: str, contact_id: str | None = None, days: int = 30, limit: int = 50
    ) -> list[InteractionRecord]:
        """Interactions from the last `days`, newest first, optionally for one contact."""

        if contact_id:
            query = f"""
                SELECT {cls.SELECT_COLUMNS}
                FROM interactions
                WHERE user_id = %s
                  AND contact_id = %s
                  AND occurred_at > NOW() - make_interval(days => %s)
                ORDER BY occurred_at DESC
                LIMIT %s
            """
            params: tuple = (user_id, contact_id, days, limit)
        else:
            query = f"""
                SELECT {cls.SELECT_COLUMNS}
                FROM interactions
                WHERE user_id = %s
                  AND occurred_at > NOW() - make_interval(days => %s)
                ORDER BY occurred_at DESC
                LIMIT %s
            """
            params = (user_id, days, limit)

        rows = await fetch_all(query, params)
        return [cls._row_to_interaction(row) for row in rows]

    @classmethod
    async def newest_occurred_at(cls, user_id: str, contact_id: str | None = None) -> datetime | None:
        if contact_id:
            query = "SELECT MAX(occurred_at) AS newest FROM interactions WHERE user_id = %s AND contact_id = %s"
            params: tuple = (user_id, contact_id)
        else:
            query = "SELECT MAX(occurred_at) AS newest FROM interactions WHERE user_id = %s"
            params = (user_id,)

        return await fetch_val(query, params)
