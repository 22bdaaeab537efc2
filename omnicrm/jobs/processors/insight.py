"""
Insight generation.

Each insight kind has a generator reading recent interactions for the
subject (one contact, or the whole inbox). thread_summary and llm call the
LLM; weekly_digest, lead_score and next_best_action are computed locally.

The fingerprint covers the kind, the subject, the newest interaction in scope
and the request context, so re-running a job with nothing new to say writes
nothing. A generator failure fails the job and no insight row is written.
"""

import hashlib
import json
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from omnicrm.config import settings
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import InsightPayload, JobRecord
from omnicrm.models.domain import InsightRecord, InteractionRecord
from omnicrm.repositories.insights import InsightRepository
from omnicrm.repositories.interactions import InteractionRepository
from omnicrm.services.openai_service import OpenAIService, openai_service

logger = get_logger(__name__)

DIGEST_WINDOW_DAYS = 7
SCORE_WINDOW_DAYS = 30
RECENT_LIMIT = 50
THREAD_EXCERPT_LENGTH = 1000
THREAD_MAX_MESSAGES = 20
DIGEST_TOP_CONTACTS = 5
RECONNECT_AFTER_DAYS = 14
DORMANT_AFTER_DAYS = 60

LLM_KINDS = {"thread_summary", "llm"}

THREAD_SUMMARY_SYSTEM_PROMPT = (
    "You summarize email threads for a small practice owner. Respond with a JSON object "
    'with keys "summary" (string), "keyPoints" (list of strings) and "followUps" '
    "(list of strings)."
)
LLM_SYSTEM_PROMPT = (
    "You are an assistant for a small practice CRM. Answer the request using only the "
    'interactions provided. Respond with a JSON object with keys "title" and "body".'
)


@dataclass(slots=True)
class InsightResult:
    kind: str
    subject_type: str
    subject_id: str | None
    fingerprint: str
    created: bool = False
    duplicate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "fingerprint": self.fingerprint,
            "created": self.created,
            "duplicate": self.duplicate,
        }


@dataclass(slots=True)
class InsightRequest:
    user_id: str
    kind: str
    subject_type: str
    subject_id: str | None
    context: dict[str, Any]


Generator = Callable[[InsightRequest, OpenAIService], Awaitable[dict[str, Any]]]


def compute_fingerprint(
    kind: str,
    subject_type: str,
    subject_id: str | None,
    newest: datetime | None,
    context: dict[str, Any] | None,
) -> str:
    material = [kind, subject_type, subject_id, newest.isoformat() if newest else None, context or {}]
    encoded = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _contact_filter(request: InsightRequest) -> str | None:
    return request.subject_id if request.subject_type == "contact" else None


def _days_since(moment: datetime | None) -> int | None:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return (datetime.now(UTC) - moment).days


def _interaction_line(interaction: InteractionRecord) -> str:
    body = (interaction.body_text or "")[:THREAD_EXCERPT_LENGTH]
    return (
        f"[{interaction.occurred_at.isoformat()}] {interaction.type} "
        f"{interaction.subject or '(no subject)'}\n{body}"
    )


# =================================================================
# DETERMINISTIC GENERATORS
# =================================================================


async def generate_weekly_digest(request: InsightRequest, llm: OpenAIService) -> dict[str, Any]:
    interactions = await InteractionRepository.list_recent(
        request.user_id, _contact_filter(request), days=DIGEST_WINDOW_DAYS, limit=RECENT_LIMIT
    )

    by_type = Counter(interaction.type for interaction in interactions)
    by_contact = Counter(interaction.contact_id for interaction in interactions if interaction.contact_id)

    return {
        "title": "Weekly digest",
        "windowDays": DIGEST_WINDOW_DAYS,
        "totalInteractions": len(interactions),
        "byType": dict(by_type),
        "topContacts": [
            {"contactId": contact_id, "interactions": count}
            for contact_id, count in by_contact.most_common(DIGEST_TOP_CONTACTS)
        ],
        "unlinked": sum(1 for interaction in interactions if not interaction.contact_id),
    }


async def generate_lead_score(request: InsightRequest, llm: OpenAIService) -> dict[str, Any]:
    interactions = await InteractionRepository.list_recent(
        request.user_id, _contact_filter(request), days=SCORE_WINDOW_DAYS, limit=RECENT_LIMIT
    )

    meetings = sum(1 for interaction in interactions if interaction.type == "meeting")
    emails = sum(1 for interaction in interactions if interaction.type == "email")
    days_since_last = _days_since(interactions[0].occurred_at) if interactions else None

    # 10 per meeting, 4 per email, up to 30 for recency
    recency = 0 if days_since_last is None else max(0, 30 - days_since_last)
    score = min(100, meetings * 10 + emails * 4 + recency)

    if score >= 70:
        band = "hot"
    elif score >= 40:
        band = "warm"
    else:
        band = "cold"

    return {
        "title": "Lead score",
        "score": score,
        "band": band,
        "signals": {
            "meetings": meetings,
            "emails": emails,
            "daysSinceLastInteraction": days_since_last,
            "windowDays": SCORE_WINDOW_DAYS,
        },
    }


async def generate_next_best_action(request: InsightRequest, llm: OpenAIService) -> dict[str, Any]:
    interactions = await InteractionRepository.list_recent(
        request.user_id, _contact_filter(request), days=DORMANT_AFTER_DAYS, limit=RECENT_LIMIT
    )

    if not interactions:
        newest = await InteractionRepository.newest_occurred_at(request.user_id, _contact_filter(request))
        days = _days_since(newest)
        return {
            "title": "Next best action",
            "action": "re_engage",
            "reason": "No interactions in the last 60 days",
            "daysSinceLastInteraction": days,
        }

    latest = interactions[0]
    days = _days_since(latest.occurred_at)

    if latest.type == "meeting" and days is not None and days <= 2:
        action, reason = "send_follow_up", "Recent meeting without a follow-up"
    elif days is not None and days >= RECONNECT_AFTER_DAYS:
        action, reason = "check_in", f"Last contact {days} days ago"
    else:
        action, reason = "maintain", "Regular contact in progress"

    return {
        "title": "Next best action",
        "action": action,
        "reason": reason,
        "daysSinceLastInteraction": days,
        "lastInteractionId": latest.id,
    }


# =================================================================
# LLM GENERATORS
# =================================================================


async def generate_thread_summary(request: InsightRequest, llm: OpenAIService) -> dict[str, Any]:
    interactions = await InteractionRepository.list_recent(
        request.user_id, _contact_filter(request), days=SCORE_WINDOW_DAYS, limit=RECENT_LIMIT
    )

    thread_id = request.context.get("threadId")
    emails = [
        interaction
        for interaction in interactions
        if interaction.type == "email"
        and (not thread_id or (interaction.source_meta or {}).get("threadId") == thread_id)
    ][:THREAD_MAX_MESSAGES]

    if not emails:
        return {"title": "Thread summary", "summary": "No recent email activity.", "keyPoints": [], "followUps": []}

    # Oldest first reads as a conversation
    transcript = "\n\n".join(_interaction_line(email) for email in reversed(emails))
    content = await llm.generate_insight(request.user_id, THREAD_SUMMARY_SYSTEM_PROMPT, transcript)
    return {"title": "Thread summary", "messageCount": len(emails), **content}


async def generate_llm_insight(request: InsightRequest, llm: OpenAIService) -> dict[str, Any]:
    interactions = await InteractionRepository.list_recent(
        request.user_id, _contact_filter(request), days=SCORE_WINDOW_DAYS, limit=RECENT_LIMIT
    )

    prompt = request.context.get("prompt") or "Summarize what needs my attention."
    lines = "\n\n".join(_interaction_line(interaction) for interaction in interactions)
    user_message = f"Request: {prompt}\n\nInteractions:\n{lines or '(none)'}"

    return await llm.generate_insight(request.user_id, LLM_SYSTEM_PROMPT, user_message)


GENERATORS: dict[str, Generator] = {
    "thread_summary": generate_thread_summary,
    "next_best_action": generate_next_best_action,
    "weekly_digest": generate_weekly_digest,
    "lead_score": generate_lead_score,
    "llm": generate_llm_insight,
}


async def run_insight(job: JobRecord, *, llm: OpenAIService = openai_service) -> InsightResult:
    """Generate and store one insight unless an identical one already exists."""
    payload = job.payload if isinstance(job.payload, InsightPayload) else InsightPayload()
    subject_type = payload.subject_type or ("contact" if payload.subject_id else "inbox")
    request = InsightRequest(
        user_id=job.user_id,
        kind=payload.kind,
        subject_type=subject_type,
        subject_id=payload.subject_id,
        context=dict(payload.context or {}),
    )

    newest = await InteractionRepository.newest_occurred_at(job.user_id, _contact_filter(request))
    fingerprint = compute_fingerprint(request.kind, subject_type, request.subject_id, newest, request.context)
    result = InsightResult(
        kind=request.kind, subject_type=subject_type, subject_id=request.subject_id, fingerprint=fingerprint
    )

    if await InsightRepository.fingerprint_exists(job.user_id, fingerprint):
        result.duplicate = True
        logger.info("Insight already generated, skipping", job_id=job.id, **result.to_dict())
        return result

    content = await GENERATORS[request.kind](request, llm)

    result.created = await InsightRepository.insert(
        InsightRecord(
            user_id=job.user_id,
            subject_type=subject_type,
            subject_id=request.subject_id,
            kind=request.kind,
            content=content,
            fingerprint=fingerprint,
            model=settings.OPENAI_MODEL if request.kind in LLM_KINDS else None,
        )
    )
    # Lost a race with a concurrent run for the same fingerprint
    result.duplicate = not result.created

    logger.info("Insight job completed", job_id=job.id, user_id=job.user_id, **result.to_dict())
    return result
