"""
Link unlinked interactions to contacts.

Candidate identities (email addresses, phone numbers) come from the
interaction's source_meta. Resolution tries contact_identities first
(confidence 1.0), then a contact's primary email (0.9), then primary phone
(0.8). Calendar interactions also get a contact_timeline entry; an existing
entry for the same interaction counts as already recorded.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from omnicrm.config import settings
from omnicrm.db.helpers import DatabaseError
from omnicrm.infrastructure.observability.logging import get_logger
from omnicrm.jobs.domain import ExtractContactsPayload, JobKind, JobRecord
from omnicrm.jobs.enqueue import enqueue
from omnicrm.jobs.processors.normalize import CALENDAR_SOURCE, GMAIL_SOURCE
from omnicrm.models.domain import CandidateIdentity, InteractionRecord, TimelineEntry
from omnicrm.repositories.contacts import ContactIdentityRepository, ContactRepository
from omnicrm.repositories.interactions import InteractionRepository
from omnicrm.repositories.timeline import TimelineRepository

logger = get_logger(__name__)

IDENTITY_MATCH_CONFIDENCE = 1.0
EMAIL_MATCH_CONFIDENCE = 0.9
PHONE_MATCH_CONFIDENCE = 0.8


@dataclass(slots=True)
class ContactResolution:
    contact_id: str | None
    confidence: float
    matched_by: str | None
    new_identities: list[CandidateIdentity] | None = None


@dataclass(slots=True)
class ExtractContactsResult:
    processed: int = 0
    linked: int = 0
    timeline_created: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed,
            "linked": self.linked,
            "timeline_created": self.timeline_created,
            "errors": self.errors,
        }


def extract_candidate_identities(interaction: InteractionRecord) -> list[CandidateIdentity]:
    meta = interaction.source_meta or {}
    identities: list[CandidateIdentity] = []

    if interaction.source == GMAIL_SOURCE:
        if meta.get("from"):
            identities.append(CandidateIdentity("email", meta["from"].lower(), GMAIL_SOURCE))
        for address in meta.get("to") or []:
            identities.append(CandidateIdentity("email", address.lower(), GMAIL_SOURCE))

    elif interaction.source == CALENDAR_SOURCE:
        for attendee in meta.get("attendees") or []:
            if attendee.get("email"):
                identities.append(CandidateIdentity("email", attendee["email"].lower(), CALENDAR_SOURCE))
        organizer = meta.get("organizer") or {}
        if organizer.get("email"):
            identities.append(CandidateIdentity("email", organizer["email"].lower(), CALENDAR_SOURCE))

    for phone in meta.get("phones") or []:
        identities.append(CandidateIdentity("phone", phone, interaction.source))

    return identities


async def resolve_contact(user_id: str, candidates: list[CandidateIdentity]) -> ContactResolution:
    if not candidates:
        return ContactResolution(contact_id=None, confidence=0.0, matched_by=None)

    for identity in candidates:
        contact_id = await ContactIdentityRepository.find_contact(user_id, identity)
        if contact_id:
            return ContactResolution(contact_id, IDENTITY_MATCH_CONFIDENCE, identity.kind)

    for identity in candidates:
        if identity.kind == "email":
            contact_id = await ContactRepository.find_by_email(user_id, identity.value)
            if contact_id:
                return ContactResolution(contact_id, EMAIL_MATCH_CONFIDENCE, "email", candidates)

        if identity.kind == "phone":
            contact_id = await ContactRepository.find_by_phone(user_id, identity.value)
            if contact_id:
                return ContactResolution(contact_id, PHONE_MATCH_CONFIDENCE, "phone", candidates)

    return ContactResolution(contact_id=None, confidence=0.0, matched_by=None, new_identities=candidates)


def timeline_event_type(subject: str | None) -> str:
    text = (subject or "").lower()
    if "meeting" in text or "call" in text:
        return "meeting_attended"
    if "workshop" in text or "class" in text or "training" in text:
        return "class_attended"
    if "consultation" in text or "session" in text:
        return "consultation_completed"
    return "appointment_scheduled"


def _duration_minutes(start: str | None, end: str | None) -> int | None:
    if not start or not end:
        return None
    try:
        delta = datetime.fromisoformat(end.replace("Z", "+00:00")) - datetime.fromisoformat(
            start.replace("Z", "+00:00")
        )
    except ValueError:
        return None
    return round(delta.total_seconds() / 60)


def build_timeline_entry(user_id: str, contact_id: str, interaction: InteractionRecord) -> TimelineEntry:
    meta = interaction.source_meta or {}
    event_type = timeline_event_type(interaction.subject)
    start_time = meta.get("startTime")
    end_time = meta.get("endTime")

    return TimelineEntry(
        user_id=user_id,
        contact_id=contact_id,
        interaction_id=interaction.id,
        event_type=event_type,
        title=interaction.subject or "Calendar Event",
        description=interaction.body_text or event_type.replace("_", " ").capitalize(),
        event_data={
            "googleEventId": meta.get("eventId") or interaction.source_id,
            "calendarId": meta.get("calendarId"),
            "interactionId": interaction.id,
            "location": meta.get("location"),
            "startTime": start_time,
            "endTime": end_time,
            "duration": _duration_minutes(start_time, end_time),
            "isAllDay": meta.get("isAllDay", False),
            "recurring": meta.get("recurring", False),
            "status": meta.get("status", "confirmed"),
            "attendees": meta.get("attendees") or [],
        },
        occurred_at=interaction.occurred_at,
    )


async def _process_interaction(
    user_id: str, interaction: InteractionRecord, result: ExtractContactsResult
) -> None:
    result.processed += 1

    candidates = extract_candidate_identities(interaction)
    if not candidates:
        logger.debug("No candidate identities for interaction", interaction_id=interaction.id)
        return

    resolution = await resolve_contact(user_id, candidates)
    if not resolution.contact_id:
        return

    if not await InteractionRepository.link_contact(interaction.id, resolution.contact_id):
        # Linked concurrently by another run
        return

    result.linked += 1
    logger.debug(
        "Interaction linked to contact",
        interaction_id=interaction.id,
        contact_id=resolution.contact_id,
        matched_by=resolution.matched_by,
        confidence=resolution.confidence,
    )

    if resolution.new_identities:
        await ContactIdentityRepository.store_identities(
            user_id, resolution.contact_id, resolution.new_identities
        )

    if interaction.source == CALENDAR_SOURCE:
        entry = build_timeline_entry(user_id, resolution.contact_id, interaction)
        if await TimelineRepository.insert_entry(entry):
            result.timeline_created += 1


async def run_extract_contacts(job: JobRecord) -> ExtractContactsResult:
    """Resolve contacts for one interaction (mode=single) or recent unlinked ones (batch)."""
    payload = job.payload if isinstance(job.payload, ExtractContactsPayload) else ExtractContactsPayload()
    batch_id = payload.batch_id or job.batch_id
    result = ExtractContactsResult()

    logger.info(
        "Starting contact extraction",
        job_id=job.id,
        user_id=job.user_id,
        mode=payload.mode or "batch",
        interaction_id=payload.interaction_id,
        max_items=payload.max_items,
        batch_id=batch_id,
    )

    if payload.mode == "single" and payload.interaction_id:
        interaction = await InteractionRepository.get_unlinked_by_id(job.user_id, payload.interaction_id)
        interactions = [interaction] if interaction else []
        if not interaction:
            result.processed = 1
            result.errors = 1
            logger.warning(
                "Interaction not found or already linked",
                job_id=job.id,
                interaction_id=payload.interaction_id,
            )
    else:
        interactions = await InteractionRepository.get_unlinked(
            job.user_id,
            payload.max_items or settings.EXTRACT_CONTACTS_DEFAULT_MAX_ITEMS,
            settings.EXTRACT_CONTACTS_LOOKBACK_DAYS,
        )

    for interaction in interactions:
        try:
            await _process_interaction(job.user_id, interaction, result)
        except DatabaseError as e:
            if e.recoverable:
                raise
            result.errors += 1
            logger.warning(
                "Failed to process interaction for contact extraction",
                job_id=job.id,
                interaction_id=interaction.id,
                error=str(e),
            )

    logger.info("Contact extraction completed", job_id=job.id, user_id=job.user_id, **result.to_dict())

    if result.linked > 0:
        await enqueue(
            JobKind.EMBED,
            {"ownerType": "interaction", "source": "extract_contacts"},
            job.user_id,
            batch_id,
        )

    return result
