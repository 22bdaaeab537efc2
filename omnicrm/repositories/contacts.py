"""
Contact lookups used by contact extraction.

Resolution order: contact_identities (exact kind/value/provider), then the
contact's primary email, then its primary phone.
"""

import re
from collections.abc import Iterable

from omnicrm.db.helpers import execute_query, fetch_val
from omnicrm.db.pool import get_db_connection
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.models.domain import CandidateIdentity

logger = get_logger(__name__)

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone: str) -> str:
    return _NON_DIGITS.sub("", phone)


class ContactRepository:
    """Direct contact field lookups."""

    @classmethod
    async def find_by_email(cls, user_id: str, email: str) -> str | None:
        query = """
            SELECT id
            FROM contacts
            WHERE user_id = %s AND primary_email = %s
            LIMIT 1
        """

        contact_id = await fetch_val(query, (user_id, email.lower()))
        return str(contact_id) if contact_id else None

    @classmethod
    async def find_by_phone(cls, user_id: str, phone: str) -> str | None:
        normalized = normalize_phone(phone)
        if not normalized:
            return None

        query = """
            SELECT id
            FROM contacts
            WHERE user_id = %s AND primary_phone = %s
            LIMIT 1
        """

        contact_id = await fetch_val(query, (user_id, normalized))
        return str(contact_id) if contact_id else None


class ContactIdentityRepository:
    """Persistence helpers for contact identities."""

    @classmethod
    async def find_contact(cls, user_id: str, identity: CandidateIdentity) -> str | None:
        query = """
            SELECT contact_id
            FROM contact_identities
            WHERE user_id = %s
              AND kind = %s
              AND value = %s
              AND COALESCE(provider, '') = %s
            LIMIT 1
        """

        contact_id = await fetch_val(
            query, (user_id, identity.kind, identity.value, identity.provider or "")
        )
        return str(contact_id) if contact_id else None

    @classmethod
    async def store_identities(
        cls, user_id: str, contact_id: str, identities: Iterable[CandidateIdentity]
    ) -> int:
        """Record identities observed for a contact. Already-known identities are skipped."""

        payload = [
            (user_id, contact_id, identity.kind, identity.value, identity.provider)
            for identity in identities
        ]
        if not payload:
            return 0

        query = """
            INSERT INTO contact_identities (user_id, contact_id, kind, value, provider)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (user_id, kind, value, (COALESCE(provider, ''))) DO NOTHING
        """

        stored = 0
        async with await get_db_connection() as conn:
            for params in payload:
                stored += await execute_query(query, params, connection=conn)

        logger.debug("Contact identities stored", contact_id=contact_id, stored=stored)
        return stored
