"""
Gmail and Calendar sync processors.

Each run pages through the provider API from the newest already-ingested
item (or a fixed lookback on first run), writes accepted items to raw_events
tagged with the run's batch id, then enqueues the matching normalize job for
that batch. Items already in raw_events are ignored by the insert, so a
re-run only adds what is new.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from omnicrm.config import settings
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import JobKind, JobRecord, SyncPayload
from omnicrm.jobs.enqueue import enqueue
from omnicrm.models.domain import RawEventRecord, SyncPreferences
from omnicrm.repositories.raw_events import RawEventRepository
from omnicrm.repositories.sync_prefs import SyncPrefsRepository
from omnicrm.services.calendar.google_client import (
    CALENDAR_PRIMARY,
    GoogleCalendarError,
    GoogleCalendarService,
)
from omnicrm.services.gmail.google_client import GoogleGmailError, GoogleGmailService
from omnicrm.services.token_service import TokenService, token_service

logger = get_logger(__name__)

GMAIL_PROVIDER = "gmail"
CALENDAR_PROVIDER = "calendar"

# Friendly label names from user_sync_prefs -> Gmail system labels / search terms
GMAIL_CATEGORY_LABELS = {
    "primary": "CATEGORY_PERSONAL",
    "promotions": "CATEGORY_PROMOTIONS",
    "social": "CATEGORY_SOCIAL",
    "updates": "CATEGORY_UPDATES",
    "forums": "CATEGORY_FORUMS",
}


@dataclass(slots=True)
class SyncResult:
    provider: str
    batch_id: str
    fetched: int = 0
    inserted: int = 0
    filtered: int = 0
    errors: int = 0
    pages: int = 0
    capped: bool = False
    error_details: list[dict[str, Any]] = field(default_factory=list)

    def record_error(self, source_id: str, error: str) -> None:
        self.errors += 1
        self.error_details.append({"source_id": source_id, "error": error})

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "batch_id": self.batch_id,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "filtered": self.filtered,
            "errors": self.errors,
            "pages": self.pages,
            "capped": self.capped,
        }


def resolve_batch_id(job: JobRecord) -> str:
    """payload batchId, else the job's batch_id, else the job id."""
    payload_batch = getattr(job.payload, "batch_id", None)
    return payload_batch or job.batch_id or job.id


async def _sync_lower_bound(user_id: str, provider: str) -> datetime:
    now = datetime.now(UTC)
    latest = await RawEventRepository.latest_occurred_at(user_id, provider)
    if latest:
        # Calendar events ingested ahead of time start in the future
        return min(latest, now)
    return now - timedelta(days=settings.GOOGLE_SYNC_LOOKBACK_DAYS)


# =================================================================
# GMAIL
# =================================================================


def build_gmail_filters(prefs: SyncPreferences, since: datetime) -> tuple[str, list[str]]:
    """
    Gmail search query and required label ids for a sync run.

    Included friendly names become label ids (all must match); excluded ones
    become negated search terms.
    """
    terms = [prefs.gmail_query.strip()] if prefs.gmail_query else []
    terms.append(f"after:{int(since.timestamp())}")

    for name in prefs.gmail_label_excludes:
        key = name.strip().lower()
        if not key:
            continue
        if key in GMAIL_CATEGORY_LABELS:
            terms.append(f"-category:{key}")
        else:
            terms.append(f"-label:{name.strip()}")

    label_ids = []
    for name in prefs.gmail_label_includes:
        key = name.strip().lower()
        if key:
            label_ids.append(GMAIL_CATEGORY_LABELS.get(key, name.strip()))

    return " ".join(term for term in terms if term), label_ids


def _gmail_occurred_at(message: dict[str, Any]) -> datetime:
    internal_date = message.get("internalDate")
    if internal_date:
        return datetime.fromtimestamp(int(internal_date) / 1000, tz=UTC)
    return datetime.now(UTC)


async def run_gmail_sync(
    job: JobRecord,
    *,
    gmail_client: GoogleGmailService | None = None,
    tokens: TokenService = token_service,
) -> SyncResult:
    """Ingest new Gmail messages into raw_events and enqueue normalize_google_email."""
    payload = job.payload if isinstance(job.payload, SyncPayload) else SyncPayload()
    batch_id = resolve_batch_id(job)
    result = SyncResult(provider=GMAIL_PROVIDER, batch_id=batch_id)

    access_token = await tokens.get_valid_access_token(job.user_id)
    prefs = await SyncPrefsRepository.get(job.user_id)
    since = await _sync_lower_bound(job.user_id, GMAIL_PROVIDER)
    query, label_ids = build_gmail_filters(prefs, since)

    logger.info(
        "Starting Gmail sync",
        job_id=job.id,
        user_id=job.user_id,
        batch_id=batch_id,
        payload_batch_id=payload.batch_id,
        since=since.isoformat(),
        query=query,
        label_ids=label_ids,
    )

    client = gmail_client or GoogleGmailService()
    max_items = settings.GOOGLE_SYNC_MAX_ITEMS
    try:
        page_token: str | None = None
        while True:
            # A failure listing a page invalidates the run and propagates
            message_ids, page_token = await client.list_message_ids(
                access_token,
                query=query,
                label_ids=label_ids or None,
                page_token=page_token,
                max_results=settings.GOOGLE_SYNC_PAGE_SIZE,
            )
            result.pages += 1

            remaining = max_items - result.fetched
            if len(message_ids) > remaining:
                message_ids = message_ids[:remaining]
                result.capped = True

            records = []
            for message_id in message_ids:
                try:
                    message = await client.get_message(access_token, message_id)
                except GoogleGmailError as e:
                    if not e.recoverable and e.status_code in (401, 403):
                        raise
                    logger.warning(
                        "Failed to fetch Gmail message", message_id=message_id, error=str(e)
                    )
                    result.record_error(message_id, str(e))
                    continue

                result.fetched += 1
                records.append(
                    RawEventRecord(
                        user_id=job.user_id,
                        provider=GMAIL_PROVIDER,
                        source_id=message.get("id") or message_id,
                        payload=message,
                        occurred_at=_gmail_occurred_at(message),
                        batch_id=batch_id,
                    )
                )

            result.inserted += await RawEventRepository.insert_events(records)

            if not page_token or result.fetched >= max_items:
                if page_token:
                    result.capped = True
                break

            await asyncio.sleep(settings.GOOGLE_SYNC_PAGE_DELAY_SECONDS)
    finally:
        if gmail_client is None:
            await client.close()

    await enqueue(JobKind.NORMALIZE_GOOGLE_EMAIL, {"batchId": batch_id}, job.user_id, batch_id)

    logger.info("Gmail sync completed", job_id=job.id, user_id=job.user_id, **result.to_dict())
    return result


# =================================================================
# CALENDAR
# =================================================================


def accept_calendar_event(event: dict[str, Any], prefs: SyncPreferences) -> bool:
    """Apply cancellation, visibility and organizer filters."""
    if event.get("status") == "cancelled":
        return False

    if event.get("visibility") in ("private", "confidential") and not prefs.calendar_include_private:
        return False

    organizer = event.get("organizer") or {}
    if organizer.get("self") and not prefs.calendar_include_organizer_self:
        return False

    return True


def calendar_event_start(event: dict[str, Any]) -> datetime | None:
    start = event.get("start") or {}
    value = start.get("dateTime") or start.get("date")
    if not value:
        return None

    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


async def run_calendar_sync(
    job: JobRecord,
    *,
    calendar_client: GoogleCalendarService | None = None,
    tokens: TokenService = token_service,
) -> SyncResult:
    """Ingest new Calendar events into raw_events and enqueue normalize_google_event."""
    batch_id = resolve_batch_id(job)
    result = SyncResult(provider=CALENDAR_PROVIDER, batch_id=batch_id)

    access_token = await tokens.get_valid_access_token(job.user_id)
    prefs = await SyncPrefsRepository.get(job.user_id)
    since = await _sync_lower_bound(job.user_id, CALENDAR_PROVIDER)
    until = datetime.now(UTC) + timedelta(days=prefs.calendar_time_window_days)

    logger.info(
        "Starting Calendar sync",
        job_id=job.id,
        user_id=job.user_id,
        batch_id=batch_id,
        time_min=since.isoformat(),
        time_max=until.isoformat(),
        include_private=prefs.calendar_include_private,
        include_organizer_self=prefs.calendar_include_organizer_self,
    )

    client = calendar_client or GoogleCalendarService()
    max_items = settings.GOOGLE_SYNC_MAX_ITEMS
    try:
        page_token: str | None = None
        while True:
            events, page_token = await client.list_events(
                access_token,
                calendar_id=CALENDAR_PRIMARY,
                time_min=since,
                time_max=until,
                page_token=page_token,
                max_results=settings.GOOGLE_SYNC_PAGE_SIZE,
            )
            result.pages += 1

            records = []
            for event in events:
                if result.fetched >= max_items:
                    result.capped = True
                    break

                event_id = event.get("id")
                if not event_id:
                    result.record_error("", "event without id")
                    continue

                if not accept_calendar_event(event, prefs):
                    result.filtered += 1
                    continue

                try:
                    occurred_at = calendar_event_start(event)
                except ValueError as e:
                    result.record_error(event_id, f"unparseable start: {e}")
                    continue

                result.fetched += 1
                records.append(
                    RawEventRecord(
                        user_id=job.user_id,
                        provider=CALENDAR_PROVIDER,
                        source_id=event_id,
                        payload=event,
                        occurred_at=occurred_at or datetime.now(UTC),
                        batch_id=batch_id,
                    )
                )

            result.inserted += await RawEventRepository.insert_events(records)

            if not page_token or result.fetched >= max_items:
                if page_token:
                    result.capped = True
                break

            await asyncio.sleep(settings.GOOGLE_SYNC_PAGE_DELAY_SECONDS)
    except GoogleCalendarError:
        logger.error("Calendar sync failed", job_id=job.id, user_id=job.user_id, **result.to_dict())
        raise
    finally:
        if calendar_client is None:
            await client.close()

    await enqueue(JobKind.NORMALIZE_GOOGLE_EVENT, {"batchId": batch_id}, job.user_id, batch_id)

    logger.info("Calendar sync completed", job_id=job.id, user_id=job.user_id, **result.to_dict())
    return result
