"""
Persistence for embeddings (pgvector).

At most one embedding per (user_id, owner_type, owner_id).
"""

from psycopg.types.json import Jsonb

from omnicrm.db.helpers import execute_query, fetch_all
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.models.domain import EmbeddingOwner

logger = get_logger(__name__)

# Text fed to the embedding model for each owner type
_OWNER_QUERIES = {
    "interaction": """
        SELECT i.id AS owner_id,
               CONCAT_WS(E'\\n', i.subject, i.body_text) AS text
        FROM interactions i
        LEFT JOIN embeddings e
               ON e.user_id = i.user_id
              AND e.owner_type = 'interaction'
              AND e.owner_id = i.id
        WHERE i.user_id = %s
          AND e.id IS NULL
          AND LENGTH(BTRIM(CONCAT_WS(E'\\n', i.subject, i.body_text), E' \\t\\r\\n')) >= %s
          {owner_filter}
        ORDER BY i.occurred_at DESC
        LIMIT %s
    """,
    "document": """
        SELECT d.id AS owner_id,
               CONCAT_WS(E'\\n', d.title, d.text) AS text
        FROM documents d
        LEFT JOIN embeddings e
               ON e.user_id = d.user_id
              AND e.owner_type = 'document'
              AND e.owner_id = d.id
        WHERE d.user_id = %s
          AND e.id IS NULL
          AND LENGTH(BTRIM(CONCAT_WS(E'\\n', d.title, d.text), E' \\t\\r\\n')) >= %s
          {owner_filter}
        ORDER BY d.created_at DESC
        LIMIT %s
    """,
}


def _vector_literal(vector: list[float]) -> str:
    return "[" + ",".join(repr(float(value)) for value in vector) + "]"


class EmbeddingRepository:
    """Persistence helpers for embeddings."""

    @classmethod
    async def find_owners_without_embedding(
        cls,
        user_id: str,
        owner_type: str,
        limit: int,
        owner_id: str | None = None,
        min_text_length: int = 0,
    ) -> list[EmbeddingOwner]:
        """
        Owners of one type with no embedding yet, newest first.

        Owners whose trimmed text is shorter than min_text_length never get an
        embedding, so they are excluded here rather than taking up the limit.
        """
        if owner_type not in _OWNER_QUERIES:
            raise ValueError(f"Unsupported embedding owner type: {owner_type}")

        alias = "i" if owner_type == "interaction" else "d"
        if owner_id:
            query = _OWNER_QUERIES[owner_type].format(owner_filter=f"AND {alias}.id = %s")
            params: tuple = (user_id, min_text_length, owner_id, limit)
        else:
            query = _OWNER_QUERIES[owner_type].format(owner_filter="")
            params = (user_id, min_text_length, limit)

        rows = await fetch_all(query, params)
        return [
            EmbeddingOwner(owner_type=owner_type, owner_id=str(row["owner_id"]), text=row["text"] or "")
            for row in rows
        ]

    @classmethod
    async def insert(
        cls,
        user_id: str,
        owner_type: str,
        owner_id: str,
        vector: list[float],
        content_hash: str,
        meta: dict | None = None,
    ) -> bool:
        """False when the owner already has an embedding."""

        query = """
            INSERT INTO embeddings (user_id, owner_type, owner_id, embedding, content_hash, meta)
            VALUES (%s, %s, %s, %s::vector, %s, %s)
            ON CONFLICT (user_id, owner_type, owner_id) DO NOTHING
        """

        inserted = await execute_query(
            query,
            (user_id, owner_type, owner_id, _vector_literal(vector), content_hash, Jsonb(meta or {})),
        )
        return inserted == 1
