"""
Normalize raw Gmail messages / Calendar events into interactions.

Each raw event maps to one interaction keyed by (user_id, source, source_id);
already-ingested items are skipped, not errors. A job stops early once its
wall-clock deadline passes and still completes; it then queues a continuation
job for the same batch, which skips what is already ingested.
"""

import base64
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from omnicrm.config import settings
from omnicrm.db.helpers import DatabaseError
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import JobKind, JobRecord
from omnicrm.jobs.enqueue import enqueue
from omnicrm.jobs.processors.sync import CALENDAR_PROVIDER, GMAIL_PROVIDER, resolve_batch_id
from omnicrm.models.domain import InteractionRecord, RawEventRecord
from omnicrm.repositories.interactions import InteractionRepository
from omnicrm.repositories.raw_events import RawEventRepository

logger = get_logger(__name__)

GMAIL_SOURCE = "gmail"
CALENDAR_SOURCE = "google_calendar"
MAX_BODY_LENGTH = 20_000

# Share of the runner timeout a normalize job may use before stopping itself
RUNNER_TIMEOUT_SHARE = 0.8


@dataclass(slots=True)
class NormalizeResult:
    batch_id: str
    total: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: int = 0
    timed_out: bool = False

    @property
    def processed(self) -> int:
        return self.inserted + self.skipped + self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "batch_id": self.batch_id,
            "total": self.total,
            "processed": self.processed,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "errors": self.errors,
            "timed_out": self.timed_out,
        }


# =================================================================
# GMAIL
# =================================================================


def _headers(message: dict[str, Any]) -> dict[str, str]:
    headers = (message.get("payload") or {}).get("headers") or []
    return {header.get("name", "").lower(): header.get("value", "") for header in headers}


def _addresses(value: str | None) -> list[str]:
    if not value:
        return []
    return [address.lower() for _, address in getaddresses([value]) if address and "@" in address]


def _decode_body(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _find_plain_text(part: dict[str, Any]) -> str | None:
    if part.get("mimeType") == "text/plain":
        data = (part.get("body") or {}).get("data")
        if data:
            return _decode_body(data)

    for child in part.get("parts") or []:
        text = _find_plain_text(child)
        if text:
            return text
    return None


def normalize_gmail_message(event: RawEventRecord) -> InteractionRecord:
    message = event.payload
    headers = _headers(message)

    from_addresses = _addresses(headers.get("from"))
    body = _find_plain_text(message.get("payload") or {}) or message.get("snippet") or ""

    occurred_at = event.occurred_at
    if occurred_at is None and headers.get("date"):
        occurred_at = parsedate_to_datetime(headers["date"])

    return InteractionRecord(
        user_id=event.user_id,
        type="email",
        source=GMAIL_SOURCE,
        source_id=message.get("id") or event.source_id,
        occurred_at=occurred_at or datetime.now(UTC),
        subject=headers.get("subject") or None,
        body_text=body[:MAX_BODY_LENGTH] or None,
        source_meta={
            "from": from_addresses[0] if from_addresses else None,
            "to": _addresses(headers.get("to")),
            "cc": _addresses(headers.get("cc")),
            "subject": headers.get("subject"),
            "threadId": message.get("threadId"),
            "messageId": headers.get("message-id") or message.get("id"),
            "labelIds": message.get("labelIds") or [],
        },
        batch_id=event.batch_id,
    )


# =================================================================
# CALENDAR
# =================================================================


def normalize_calendar_event(event: RawEventRecord) -> InteractionRecord:
    item = event.payload
    start = item.get("start") or {}
    end = item.get("end") or {}
    organizer = item.get("organizer") or {}

    attendees = [
        {
            "email": attendee["email"].lower(),
            "name": attendee.get("displayName"),
            "responseStatus": attendee.get("responseStatus"),
        }
        for attendee in item.get("attendees") or []
        if attendee.get("email")
    ]

    return InteractionRecord(
        user_id=event.user_id,
        type="meeting",
        source=CALENDAR_SOURCE,
        source_id=item.get("id") or event.source_id,
        occurred_at=event.occurred_at,
        subject=item.get("summary") or None,
        body_text=(item.get("description") or "")[:MAX_BODY_LENGTH] or None,
        source_meta={
            "attendees": attendees,
            "organizer": (
                {"email": organizer["email"].lower(), "name": organizer.get("displayName")}
                if organizer.get("email")
                else None
            ),
            "eventId": item.get("id") or event.source_id,
            "calendarId": organizer.get("email") if organizer.get("self") else "primary",
            "summary": item.get("summary"),
            "description": item.get("description"),
            "location": item.get("location"),
            "startTime": start.get("dateTime") or start.get("date"),
            "endTime": end.get("dateTime") or end.get("date"),
            "isAllDay": "date" in start and "dateTime" not in start,
            "recurring": bool(item.get("recurringEventId") or item.get("recurrence")),
            "status": item.get("status", "confirmed"),
        },
        batch_id=event.batch_id,
    )


NORMALIZERS: dict[JobKind, tuple[str, Callable[[RawEventRecord], InteractionRecord]]] = {
    JobKind.NORMALIZE_GOOGLE_EMAIL: (GMAIL_PROVIDER, normalize_gmail_message),
    JobKind.NORMALIZE_GOOGLE_EVENT: (CALENDAR_PROVIDER, normalize_calendar_event),
}


async def run_normalize(
    job: JobRecord,
    *,
    deadline_seconds: float | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> NormalizeResult:
    """Upsert the batch's raw events as interactions, then enqueue extract_contacts."""
    provider, normalizer = NORMALIZERS[JobKind(job.kind_name)]
    batch_id = resolve_batch_id(job)
    result = NormalizeResult(batch_id=batch_id)

    budget = deadline_seconds if deadline_seconds is not None else settings.NORMALIZE_DEADLINE_SECONDS
    budget = min(budget, settings.JOB_TIMEOUT_SECONDS * RUNNER_TIMEOUT_SHARE)
    deadline = clock() + budget

    events = await RawEventRepository.list_for_batch(job.user_id, provider, batch_id)
    result.total = len(events)

    for event in events:
        if clock() >= deadline:
            result.timed_out = True
            logger.warning(
                "Normalize deadline reached, stopping early",
                job_id=job.id,
                user_id=job.user_id,
                deadline_seconds=budget,
                remaining=result.total - result.processed,
            )
            break

        try:
            interaction = normalizer(event)
        except (KeyError, TypeError, ValueError) as e:
            result.errors += 1
            logger.warning(
                "Failed to normalize raw event",
                job_id=job.id,
                source_id=event.source_id,
                provider=provider,
                error=str(e),
            )
            continue

        try:
            inserted = await InteractionRepository.upsert(interaction)
        except DatabaseError as e:
            if e.recoverable:
                raise
            result.errors += 1
            logger.warning(
                "Failed to store interaction", job_id=job.id, source_id=event.source_id, error=str(e)
            )
            continue

        if inserted:
            result.inserted += 1
        else:
            result.skipped += 1

    if result.inserted > 0:
        await enqueue(
            JobKind.EXTRACT_CONTACTS,
            {"mode": "batch", "batchId": batch_id},
            job.user_id,
            batch_id,
        )

    if result.timed_out:
        # This job is still `processing`, so the batch dedupe would drop the continuation
        continuation_id = await enqueue(
            job.kind_name, {"batchId": batch_id}, job.user_id, batch_id, deduplicate=False
        )
        logger.info(
            "Normalize continuation queued",
            job_id=job.id,
            continuation_job_id=continuation_id,
            batch_id=batch_id,
        )

    logger.info("Normalize completed", job_id=job.id, user_id=job.user_id, job_kind=job.kind_name, **result.to_dict())
    return result
