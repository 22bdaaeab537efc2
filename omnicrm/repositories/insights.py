from psycopg.types.json import Jsonb

from omnicrm.db.helpers import execute_query, fetch_val
from omnicrm.models.domain import InsightRecord


class InsightRepository:
    """ai_insights reads/writes keyed by fingerprint."""

    @classmethod
    async def fingerprint_exists(cls, user_id: str, fingerprint: str) -> bool:
        query = "SELECT 1 AS found FROM ai_insights WHERE user_id = %s AND fingerprint = %s LIMIT 1"
        return bool(await fetch_val(query, (user_id, fingerprint)))

    @classmethod
    async def insert(cls, record: InsightRecord) -> bool:
        query = """
            INSERT INTO ai_insights (
                user_id, subject_type, subject_id, kind, content, model, fingerprint
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, fingerprint) DO NOTHING
        """

        inserted = await execute_query(
            query,
            (
                record.user_id,
                record.subject_type,
                record.subject_id,
                record.kind,
                Jsonb(record.content),
                record.model,
                record.fingerprint,
            ),
        )
        return inserted == 1
