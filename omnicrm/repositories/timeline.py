from psycopg.types.json import Jsonb

from omnicrm.db.helpers import execute_query
from omnicrm.models.domain import TimelineEntry


class TimelineRepository:
    """contact_timeline writes."""

    @classmethod
    async def insert_entry(cls, entry: TimelineEntry) -> bool:
        """False when the entry already exists (same user, contact and interaction)."""

        query = """
            INSERT INTO contact_timeline (
                user_id, contact_id, interaction_id, event_type,
                title, description, event_data, occurred_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, contact_id, interaction_id) DO NOTHING
        """

        inserted = await execute_query(
            query,
            (
                entry.user_id,
                entry.contact_id,
                entry.interaction_id,
                entry.event_type,
                entry.title,
                entry.description,
                Jsonb(entry.event_data),
                entry.occurred_at,
            ),
        )
        return inserted == 1
