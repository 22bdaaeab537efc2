"""
Embedding generation for interactions and documents without one.

Owners are found with a LEFT JOIN anti-join, so an owner embedded by an
earlier run is never selected again; the insert also ignores conflicts on
(user_id, owner_type, owner_id). Owners whose text is too short to embed
are never selected. Per-item failures are logged and skipped.
"""

import hashlib
from dataclasses import dataclass
from typing import Any

from omnicrm.config import settings
from omnicrm.db.helpers import DatabaseError
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import EmbedPayload, JobRecord
from omnicrm.repositories.embeddings import EmbeddingRepository
from omnicrm.services.openai_service import OpenAIService, OpenAIServiceError, openai_service

logger = get_logger(__name__)

OWNER_TYPES = ("interaction", "document")


@dataclass(slots=True)
class EmbedResult:
    candidates: int = 0
    embedded: int = 0
    already_embedded: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "candidates": self.candidates,
            "embedded": self.embedded,
            "already_embedded": self.already_embedded,
            "errors": self.errors,
        }


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


async def run_embed(job: JobRecord, *, embedder: OpenAIService = openai_service) -> EmbedResult:
    payload = job.payload if isinstance(job.payload, EmbedPayload) else EmbedPayload()
    owner_types = [payload.owner_type] if payload.owner_type else list(OWNER_TYPES)
    remaining = payload.max_items or settings.EMBED_DEFAULT_MAX_ITEMS
    result = EmbedResult()

    for owner_type in owner_types:
        if remaining <= 0:
            break

        owners = await EmbeddingRepository.find_owners_without_embedding(
            job.user_id,
            owner_type,
            remaining,
            owner_id=payload.owner_id,
            min_text_length=settings.EMBED_MIN_TEXT_LENGTH,
        )
        remaining -= len(owners)
        result.candidates += len(owners)

        for owner in owners:
            text = (owner.text or "").strip()
            try:
                vector = await embedder.generate_embedding(job.user_id, text)
                inserted = await EmbeddingRepository.insert(
                    job.user_id,
                    owner.owner_type,
                    owner.owner_id,
                    vector,
                    content_hash(text),
                    meta={"source": payload.source} if payload.source else None,
                )
            except OpenAIServiceError as e:
                if not e.recoverable:
                    # Missing key or rejected request
                    raise
                result.errors += 1
                logger.warning(
                    "Embedding generation failed",
                    job_id=job.id,
                    owner_type=owner.owner_type,
                    owner_id=owner.owner_id,
                    error=str(e),
                )
                continue
            except DatabaseError as e:
                result.errors += 1
                logger.warning(
                    "Embedding insert failed",
                    job_id=job.id,
                    owner_type=owner.owner_type,
                    owner_id=owner.owner_id,
                    error=str(e),
                )
                continue

            if inserted:
                result.embedded += 1
            else:
                result.already_embedded += 1

    logger.info(
        "Embedding job completed",
        job_id=job.id,
        user_id=job.user_id,
        source=payload.source,
        **result.to_dict(),
    )
    return result
