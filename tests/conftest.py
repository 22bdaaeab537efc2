import itertools
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from omnicrm.jobs.domain import JobRecord, JobStatus
from omnicrm.jobs.repository import JobRepository
from omnicrm.models.domain import (
    CandidateIdentity,
    EmbeddingOwner,
    InsightRecord,
    InteractionRecord,
    RawEventRecord,
    SyncPreferences,
    TimelineEntry,
)
from omnicrm.repositories.contacts import (
    ContactIdentityRepository,
    ContactRepository,
    normalize_phone,
)
from omnicrm.repositories.embeddings import EmbeddingRepository
from omnicrm.repositories.insights import InsightRepository
from omnicrm.repositories.interactions import InteractionRepository
from omnicrm.repositories.raw_events import RawEventRepository
from omnicrm.repositories.sync_prefs import SyncPrefsRepository
from omnicrm.repositories.timeline import TimelineRepository

TERMINAL = {"done", "error", "cancelled"}


class FakeJobStore:
    """In-memory jobs table with the same methods as JobRepository."""

    def __init__(self):
        self.rows: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=UTC)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add(self, user_id: str, kind: str, payload: dict | None = None, **fields) -> str:
        """Insert a row directly, bypassing validation."""
        job_id = f"job-{next(self._ids)}"
        now = self._tick()
        row = {
            "id": job_id,
            "user_id": user_id,
            "kind": kind,
            "payload": payload or {},
            "status": "queued",
            "attempts": 0,
            "batch_id": None,
            "last_error": None,
            "scheduled_at": None,
            "created_at": now,
            "updated_at": now,
        }
        row.update(fields)
        self.rows[job_id] = row
        return job_id

    def by_kind(self, kind: str) -> list[dict[str, Any]]:
        return [row for row in self.rows.values() if row["kind"] == kind]

    async def insert_job(self, user_id, kind, payload, batch_id=None) -> str:
        return self.add(user_id, kind, payload, batch_id=batch_id)

    async def find_in_flight(self, user_id, kind, batch_id):
        for row in self.rows.values():
            if (
                row["user_id"] == user_id
                and row["kind"] == kind
                and row["batch_id"] == batch_id
                and row["status"] in ("queued", "processing")
            ):
                return row["id"]
        return None

    async def claim_queued(self, limit, user_id=None) -> list[JobRecord]:
        candidates = [
            row
            for row in self.rows.values()
            if row["status"] == "queued"
            and (row["scheduled_at"] is None or row["scheduled_at"] <= self._clock)
            and (user_id is None or row["user_id"] == user_id)
        ]
        candidates.sort(key=lambda row: row["created_at"])
        return [JobRecord.from_row(dict(row)) for row in candidates[:limit]]

    async def mark_processing(self, job_id) -> bool:
        row = self.rows.get(job_id)
        if not row or row["status"] != "queued":
            return False
        row["status"] = "processing"
        row["updated_at"] = self._tick()
        return True

    async def mark_done(self, job_id) -> None:
        row = self.rows[job_id]
        row.update(status="done", last_error=None, updated_at=self._tick())

    async def reschedule(self, job_id, attempts, delay_seconds, error_message) -> None:
        row = self.rows[job_id]
        now = self._tick()
        row.update(
            status="queued",
            attempts=attempts,
            last_error=error_message,
            scheduled_at=now + timedelta(seconds=delay_seconds),
            updated_at=now,
        )

    async def mark_failed(self, job_id, attempts, error_message) -> None:
        row = self.rows[job_id]
        row.update(status="error", attempts=attempts, last_error=error_message, updated_at=self._tick())

    async def reclaim_stale(self, stale_after_seconds, max_attempts, user_id=None) -> dict[str, int]:
        cutoff = self._clock - timedelta(seconds=stale_after_seconds)
        counts = {"queued": 0, "error": 0}
        for row in self.rows.values():
            if row["status"] != "processing" or row["updated_at"] >= cutoff:
                continue
            if user_id is not None and row["user_id"] != user_id:
                continue
            attempts = row["attempts"] + 1
            status = "error" if attempts >= max_attempts else "queued"
            row.update(
                status=status,
                attempts=attempts,
                last_error="reclaimed from processing",
                scheduled_at=None,
                updated_at=self._tick(),
            )
            counts[status] += 1
        return counts

    async def fetch_batch(self, batch_id) -> list[dict[str, Any]]:
        return [
            {key: row[key] for key in ("id", "status", "created_at", "updated_at")}
            for row in self.rows.values()
            if row["batch_id"] == batch_id
        ]

    async def cancel_batch(self, batch_id, user_id) -> int:
        cancelled = 0
        for row in self.rows.values():
            if row["batch_id"] == batch_id and row["user_id"] == user_id and row["status"] == "queued":
                row.update(status="cancelled", updated_at=self._tick())
                cancelled += 1
        return cancelled

    async def status_counts(self, user_id=None) -> dict[str, int]:
        counts: dict[str, int] = {}
        for row in self.rows.values():
            if user_id is None or row["user_id"] == user_id:
                counts[row["status"]] = counts.get(row["status"], 0) + 1
        return counts

    def _terminal_before(self, older_than_days, user_id=None) -> list[str]:
        cutoff = self._clock - timedelta(days=older_than_days)
        return [
            job_id
            for job_id, row in self.rows.items()
            if row["status"] in TERMINAL
            and row["updated_at"] < cutoff
            and (user_id is None or row["user_id"] == user_id)
        ]

    async def delete_terminal_before(self, older_than_days, user_id=None) -> int:
        stale = self._terminal_before(older_than_days, user_id)
        for job_id in stale:
            del self.rows[job_id]
        return len(stale)

    async def count_terminal_before(self, older_than_days, user_id=None) -> int:
        return len(self._terminal_before(older_than_days, user_id))

    async def count_queued(self, user_id=None) -> int:
        return sum(
            1
            for row in self.rows.values()
            if row["status"] == "queued" and (user_id is None or row["user_id"] == user_id)
        )

    def advance(self, seconds: float) -> None:
        self._clock += timedelta(seconds=seconds)

    def status_of(self, job_id: str) -> JobStatus:
        return JobStatus(self.rows[job_id]["status"])


JOB_REPOSITORY_METHODS = (
    "insert_job",
    "find_in_flight",
    "claim_queued",
    "mark_processing",
    "mark_done",
    "reschedule",
    "mark_failed",
    "reclaim_stale",
    "fetch_batch",
    "cancel_batch",
    "status_counts",
    "delete_terminal_before",
    "count_terminal_before",
    "count_queued",
)


@pytest.fixture
def job_store(monkeypatch):
    """FakeJobStore wired in place of JobRepository for code that uses the default store."""
    store = FakeJobStore()
    for name in JOB_REPOSITORY_METHODS:
        monkeypatch.setattr(JobRepository, name, getattr(store, name))
    return store


class FakeCrmStore:
    """In-memory business tables behind the processor repositories."""

    def __init__(self):
        self.raw_events: list[RawEventRecord] = []
        self.interactions: list[InteractionRecord] = []
        self.contacts: list[dict[str, Any]] = []
        self.identities: list[tuple[str, str, str, str, str | None]] = []
        self.timeline: list[TimelineEntry] = []
        self.embeddings: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.documents: list[dict[str, Any]] = []
        self.insights: list[InsightRecord] = []
        self.prefs: dict[str, SyncPreferences] = {}
        self._ids = itertools.count(1)

    # raw_events

    async def latest_occurred_at(self, user_id, provider):
        dates = [e.occurred_at for e in self.raw_events if e.user_id == user_id and e.provider == provider]
        return max(dates) if dates else None

    async def insert_events(self, records) -> int:
        inserted = 0
        for record in records:
            exists = any(
                e.user_id == record.user_id
                and e.provider == record.provider
                and e.source_id == record.source_id
                for e in self.raw_events
            )
            if exists:
                continue
            record.id = record.id or f"raw-{next(self._ids)}"
            self.raw_events.append(record)
            inserted += 1
        return inserted

    async def list_for_batch(self, user_id, provider, batch_id):
        events = [
            e
            for e in self.raw_events
            if e.user_id == user_id and e.provider == provider and e.batch_id == batch_id
        ]
        return sorted(events, key=lambda e: e.occurred_at)

    def _expired(self, days, user_id=None) -> list:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        return [
            e for e in self.raw_events if e.occurred_at < cutoff and (user_id is None or e.user_id == user_id)
        ]

    async def count_older_than(self, days, user_id=None) -> int:
        return len(self._expired(days, user_id))

    async def delete_older_than(self, days, user_id=None) -> int:
        expired = {id(e) for e in self._expired(days, user_id)}
        self.raw_events = [e for e in self.raw_events if id(e) not in expired]
        return len(expired)

    # interactions

    async def upsert(self, record) -> bool:
        exists = any(
            i.user_id == record.user_id and i.source == record.source and i.source_id == record.source_id
            for i in self.interactions
        )
        if exists:
            return False
        record.id = record.id or f"int-{next(self._ids)}"
        self.interactions.append(record)
        return True

    async def get_unlinked(self, user_id, limit, lookback_days):
        unlinked = [i for i in self.interactions if i.user_id == user_id and i.contact_id is None]
        return list(reversed(unlinked))[:limit]

    async def get_unlinked_by_id(self, user_id, interaction_id):
        for i in self.interactions:
            if i.id == interaction_id and i.user_id == user_id and i.contact_id is None:
                return i
        return None

    async def link_contact(self, interaction_id, contact_id) -> bool:
        for i in self.interactions:
            if i.id == interaction_id and i.contact_id is None:
                i.contact_id = contact_id
                return True
        return False

    def _scoped(self, user_id, contact_id):
        return [
            i
            for i in self.interactions
            if i.user_id == user_id and (contact_id is None or i.contact_id == contact_id)
        ]

    async def list_recent(self, user_id, contact_id=None, days=30, limit=50):
        cutoff = datetime.now(UTC) - timedelta(days=days)
        recent = [i for i in self._scoped(user_id, contact_id) if i.occurred_at > cutoff]
        return sorted(recent, key=lambda i: i.occurred_at, reverse=True)[:limit]

    async def newest_occurred_at(self, user_id, contact_id=None):
        dates = [i.occurred_at for i in self._scoped(user_id, contact_id)]
        return max(dates) if dates else None

    # contacts

    def add_contact(self, user_id, contact_id, email=None, phone=None) -> str:
        self.contacts.append(
            {
                "id": contact_id,
                "user_id": user_id,
                "primary_email": email.lower() if email else None,
                "primary_phone": normalize_phone(phone) if phone else None,
            }
        )
        return contact_id

    async def find_by_email(self, user_id, email):
        for contact in self.contacts:
            if contact["user_id"] == user_id and contact["primary_email"] == email.lower():
                return contact["id"]
        return None

    async def find_by_phone(self, user_id, phone):
        normalized = normalize_phone(phone)
        for contact in self.contacts:
            if normalized and contact["user_id"] == user_id and contact["primary_phone"] == normalized:
                return contact["id"]
        return None

    async def find_contact(self, user_id, identity: CandidateIdentity):
        for uid, contact_id, kind, value, provider in self.identities:
            if (
                uid == user_id
                and kind == identity.kind
                and value == identity.value
                and (provider or "") == (identity.provider or "")
            ):
                return contact_id
        return None

    async def store_identities(self, user_id, contact_id, identities) -> int:
        stored = 0
        for identity in identities:
            if await self.find_contact(user_id, identity):
                continue
            self.identities.append((user_id, contact_id, identity.kind, identity.value, identity.provider))
            stored += 1
        return stored

    async def insert_entry(self, entry: TimelineEntry) -> bool:
        for existing in self.timeline:
            if (existing.user_id, existing.contact_id, existing.interaction_id) == (
                entry.user_id,
                entry.contact_id,
                entry.interaction_id,
            ):
                return False
        self.timeline.append(entry)
        return True

    # embeddings

    async def find_owners_without_embedding(self, user_id, owner_type, limit, owner_id=None, min_text_length=0):
        if owner_type == "interaction":
            newest_first = sorted(
                self.interactions, key=lambda i: i.occurred_at or datetime.min.replace(tzinfo=UTC), reverse=True
            )
            owners = [
                EmbeddingOwner(
                    "interaction", i.id, "\n".join(part for part in (i.subject, i.body_text) if part)
                )
                for i in newest_first
                if i.user_id == user_id
            ]
        else:
            owners = [
                EmbeddingOwner(
                    "document", d["id"], "\n".join(part for part in (d.get("title"), d.get("text")) if part)
                )
                for d in self.documents
                if d["user_id"] == user_id
            ]
        owners = [
            owner
            for owner in owners
            if (user_id, owner_type, owner.owner_id) not in self.embeddings
            and (owner_id is None or owner.owner_id == owner_id)
            and len(owner.text.strip()) >= min_text_length
        ]
        return owners[:limit]

    async def insert_embedding(self, user_id, owner_type, owner_id, vector, content_hash, meta=None) -> bool:
        key = (user_id, owner_type, owner_id)
        if key in self.embeddings:
            return False
        self.embeddings[key] = {"vector": vector, "content_hash": content_hash, "meta": meta or {}}
        return True

    # insights

    async def fingerprint_exists(self, user_id, fingerprint) -> bool:
        return any(i.user_id == user_id and i.fingerprint == fingerprint for i in self.insights)

    async def insert_insight(self, record: InsightRecord) -> bool:
        if await self.fingerprint_exists(record.user_id, record.fingerprint):
            return False
        self.insights.append(record)
        return True

    async def get_prefs(self, user_id) -> SyncPreferences:
        return self.prefs.get(user_id, SyncPreferences())

    # helpers

    def add_interaction(self, user_id="user-1", **fields) -> InteractionRecord:
        defaults = {
            "type": "email",
            "source": "gmail",
            "source_id": f"src-{next(self._ids)}",
            "occurred_at": datetime.now(UTC),
        }
        defaults.update(fields)
        record = InteractionRecord(user_id=user_id, **defaults)
        record.id = record.id or f"int-{next(self._ids)}"
        self.interactions.append(record)
        return record


@pytest.fixture
def crm_store(monkeypatch):
    """FakeCrmStore wired in place of the business repositories."""
    store = FakeCrmStore()

    patches = {
        RawEventRepository: {
            "latest_occurred_at": store.latest_occurred_at,
            "insert_events": store.insert_events,
            "list_for_batch": store.list_for_batch,
            "count_older_than": store.count_older_than,
            "delete_older_than": store.delete_older_than,
        },
        InteractionRepository: {
            "upsert": store.upsert,
            "get_unlinked": store.get_unlinked,
            "get_unlinked_by_id": store.get_unlinked_by_id,
            "link_contact": store.link_contact,
            "list_recent": store.list_recent,
            "newest_occurred_at": store.newest_occurred_at,
        },
        ContactRepository: {
            "find_by_email": store.find_by_email,
            "find_by_phone": store.find_by_phone,
        },
        ContactIdentityRepository: {
            "find_contact": store.find_contact,
            "store_identities": store.store_identities,
        },
        TimelineRepository: {"insert_entry": store.insert_entry},
        EmbeddingRepository: {
            "find_owners_without_embedding": store.find_owners_without_embedding,
            "insert": store.insert_embedding,
        },
        InsightRepository: {
            "fingerprint_exists": store.fingerprint_exists,
            "insert": store.insert_insight,
        },
        SyncPrefsRepository: {"get": store.get_prefs},
    }

    for repository, methods in patches.items():
        for name, fake in methods.items():
            monkeypatch.setattr(repository, name, fake)

    return store


class FakeTokenService:
    def __init__(self, token: str = "access-token", error: Exception | None = None):
        self.token = token
        self.error = error
        self.calls: list[str] = []

    async def get_valid_access_token(self, user_id: str, provider: str = "google") -> str:
        self.calls.append(user_id)
        if self.error:
            raise self.error
        return self.token


@pytest.fixture
def fake_tokens():
    return FakeTokenService()


def _make_job(kind, payload=None, *, user_id="user-1", job_id="job-1", batch_id=None, attempts=0) -> JobRecord:
    kind_value = kind.value if hasattr(kind, "value") else kind
    return JobRecord.from_row(
        {
            "id": job_id,
            "user_id": user_id,
            "kind": kind_value,
            "payload": payload or {},
            "status": "processing",
            "attempts": attempts,
            "batch_id": batch_id,
        }
    )


@pytest.fixture
def make_job():
    """Factory for JobRecords built the way the runner builds them from a row."""
    return _make_job
