from datetime import UTC, datetime

import pytest

from omnicrm.jobs.domain import JobKind
from omnicrm.jobs.processors.extract_contacts import (
    EMAIL_MATCH_CONFIDENCE,
    IDENTITY_MATCH_CONFIDENCE,
    PHONE_MATCH_CONFIDENCE,
    extract_candidate_identities,
    resolve_contact,
    run_extract_contacts,
    timeline_event_type,
)
from omnicrm.models.domain import CandidateIdentity


def _email(crm_store, sender="ana@example.com", **fields):
    return crm_store.add_interaction(source_meta={"from": sender}, subject="Booking", **fields)


def _meeting(crm_store, attendee="ana@example.com", subject="Yoga class"):
    return crm_store.add_interaction(
        type="meeting",
        source="google_calendar",
        subject=subject,
        occurred_at=datetime(2024, 3, 1, 10, tzinfo=UTC),
        source_meta={
            "eventId": "evt-1",
            "attendees": [{"email": attendee}],
            "startTime": "2024-03-01T10:00:00Z",
            "endTime": "2024-03-01T11:30:00Z",
        },
    )


def test_candidate_identities_for_email(crm_store):
    interaction = crm_store.add_interaction(
        source_meta={"from": "Ana@Example.com", "to": ["bob@example.com"], "phones": ["+1 555 0100"]}
    )

    identities = extract_candidate_identities(interaction)

    assert identities == [
        CandidateIdentity("email", "ana@example.com", "gmail"),
        CandidateIdentity("email", "bob@example.com", "gmail"),
        CandidateIdentity("phone", "+1 555 0100", "gmail"),
    ]


@pytest.mark.asyncio
async def test_resolution_confidence_by_match_source(crm_store):
    crm_store.identities.append(("user-1", "c-identity", "email", "known@example.com", "gmail"))
    crm_store.add_contact("user-1", "c-email", email="Ana@Example.com")
    crm_store.add_contact("user-1", "c-phone", phone="+1 (555) 0100")

    by_identity = await resolve_contact("user-1", [CandidateIdentity("email", "known@example.com", "gmail")])
    by_email = await resolve_contact("user-1", [CandidateIdentity("email", "ana@example.com", "gmail")])
    by_phone = await resolve_contact("user-1", [CandidateIdentity("phone", "15550100", "gmail")])
    unknown = await resolve_contact("user-1", [CandidateIdentity("email", "who@example.com", "gmail")])

    assert (by_identity.contact_id, by_identity.confidence) == ("c-identity", IDENTITY_MATCH_CONFIDENCE)
    assert (by_email.contact_id, by_email.confidence) == ("c-email", EMAIL_MATCH_CONFIDENCE)
    assert (by_phone.contact_id, by_phone.confidence) == ("c-phone", PHONE_MATCH_CONFIDENCE)
    assert unknown.contact_id is None
    assert unknown.confidence == 0.0


@pytest.mark.asyncio
async def test_identity_match_wins_over_primary_email(crm_store):
    crm_store.identities.append(("user-1", "c-identity", "email", "ana@example.com", "gmail"))
    crm_store.add_contact("user-1", "c-email", email="ana@example.com")

    resolution = await resolve_contact("user-1", [CandidateIdentity("email", "ana@example.com", "gmail")])

    assert resolution.contact_id == "c-identity"


@pytest.mark.asyncio
async def test_batch_links_and_stores_identities(job_store, crm_store, make_job):
    crm_store.add_contact("user-1", "c-ana", email="ana@example.com")
    linked = _email(crm_store)
    stranger = _email(crm_store, sender="stranger@example.com")

    result = await run_extract_contacts(make_job(JobKind.EXTRACT_CONTACTS, {"mode": "batch", "batchId": "B1"}))

    assert result.processed == 2
    assert result.linked == 1
    assert linked.contact_id == "c-ana"
    assert stranger.contact_id is None
    assert ("user-1", "c-ana", "email", "ana@example.com", "gmail") in crm_store.identities


@pytest.mark.asyncio
async def test_linking_enqueues_embed(job_store, crm_store, make_job):
    crm_store.add_contact("user-1", "c-ana", email="ana@example.com")
    _email(crm_store)

    await run_extract_contacts(make_job(JobKind.EXTRACT_CONTACTS, {"mode": "batch", "batchId": "B1"}))

    [embed] = job_store.by_kind("embed")
    assert embed["payload"] == {"ownerType": "interaction", "source": "extract_contacts"}
    assert embed["batch_id"] == "B1"


@pytest.mark.asyncio
async def test_nothing_linked_enqueues_nothing(job_store, crm_store, make_job):
    _email(crm_store, sender="stranger@example.com")

    result = await run_extract_contacts(make_job(JobKind.EXTRACT_CONTACTS, {"mode": "batch"}))

    assert result.linked == 0
    assert job_store.rows == {}


@pytest.mark.asyncio
async def test_calendar_link_creates_timeline_entry_once(job_store, crm_store, make_job):
    crm_store.add_contact("user-1", "c-ana", email="ana@example.com")
    meeting = _meeting(crm_store)
    job = make_job(JobKind.EXTRACT_CONTACTS, {"mode": "batch"})

    first = await run_extract_contacts(job)
    second = await run_extract_contacts(job)

    assert first.timeline_created == 1
    assert second.linked == 0
    assert len(crm_store.timeline) == 1

    [entry] = crm_store.timeline
    assert entry.interaction_id == meeting.id
    assert entry.event_type == "class_attended"
    assert entry.event_data["googleEventId"] == "evt-1"
    assert entry.event_data["duration"] == 90


@pytest.mark.asyncio
async def test_single_mode_links_one_interaction(job_store, crm_store, make_job):
    crm_store.add_contact("user-1", "c-ana", email="ana@example.com")
    target = _email(crm_store)
    other = _email(crm_store)

    result = await run_extract_contacts(
        make_job(JobKind.EXTRACT_CONTACTS, {"mode": "single", "interactionId": target.id})
    )

    assert result.processed == 1
    assert target.contact_id == "c-ana"
    assert other.contact_id is None


@pytest.mark.asyncio
async def test_single_mode_missing_interaction(job_store, crm_store, make_job):
    result = await run_extract_contacts(
        make_job(JobKind.EXTRACT_CONTACTS, {"mode": "single", "interactionId": "int-missing"})
    )

    assert result.processed == 1
    assert result.errors == 1
    assert result.linked == 0


@pytest.mark.asyncio
async def test_already_linked_interaction_is_not_relinked(job_store, crm_store, make_job):
    crm_store.add_contact("user-1", "c-ana", email="ana@example.com")
    interaction = _email(crm_store, contact_id="c-other")

    result = await run_extract_contacts(make_job(JobKind.EXTRACT_CONTACTS, {"mode": "batch"}))

    assert result.processed == 0
    assert interaction.contact_id == "c-other"


@pytest.mark.parametrize(
    "subject, event_type",
    [
        ("Discovery call", "meeting_attended"),
        ("Team Meeting", "meeting_attended"),
        ("Pilates Class", "class_attended"),
        ("Breathwork workshop", "class_attended"),
        ("Initial consultation", "consultation_completed"),
        ("Massage session", "consultation_completed"),
        ("Dentist", "appointment_scheduled"),
        (None, "appointment_scheduled"),
    ],
)
def test_timeline_event_type(subject, event_type):
    assert timeline_event_type(subject) == event_type
