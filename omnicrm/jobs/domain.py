"""
Domain models for the job pipeline.

JobKind and JobStatus mirror the `kind` / `status` columns of the jobs
table. Each kind has its own pydantic payload model; PAYLOAD_MODELS is the
mapping from kind to model used by the validator and by JobRecord.from_row.
Kinds added at runtime bring their own model via register_payload_model().
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator


class JobKind(str, Enum):
    GOOGLE_GMAIL_SYNC = "google_gmail_sync"
    GOOGLE_CALENDAR_SYNC = "google_calendar_sync"
    NORMALIZE_GOOGLE_EMAIL = "normalize_google_email"
    NORMALIZE_GOOGLE_EVENT = "normalize_google_event"
    EXTRACT_CONTACTS = "extract_contacts"
    EMBED = "embed"
    INSIGHT = "insight"
    DATA_RETENTION = "data_retention"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (JobStatus.DONE, JobStatus.ERROR, JobStatus.CANCELLED)
IN_FLIGHT_STATUSES = (JobStatus.QUEUED, JobStatus.PROCESSING)


class BatchState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# =================================================================
# PAYLOADS
# =================================================================

MAX_BATCH_ITEMS = 500
MAX_ID_LENGTH = 64
BATCH_ID_PATTERN = r"^[A-Za-z0-9_-]+$"


def _batch_id_field():
    return Field(default=None, alias="batchId", max_length=MAX_ID_LENGTH, pattern=BATCH_ID_PATTERN)


class JobPayload(BaseModel):
    """Base for all job payloads: camelCase on the wire, unknown keys rejected."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class SyncPayload(JobPayload):
    batch_id: str | None = _batch_id_field()


class NormalizePayload(JobPayload):
    batch_id: str | None = _batch_id_field()


class ExtractContactsPayload(JobPayload):
    mode: Literal["single", "batch"] | None = None
    interaction_id: str | None = Field(default=None, alias="interactionId", max_length=MAX_ID_LENGTH)
    max_items: int | None = Field(default=None, alias="maxItems", ge=1, le=MAX_BATCH_ITEMS)
    batch_id: str | None = _batch_id_field()

    @model_validator(mode="after")
    def _single_needs_interaction(self):
        if self.mode == "single" and not self.interaction_id:
            raise ValueError("interactionId is required when mode is 'single'")
        return self


class EmbedPayload(JobPayload):
    owner_type: Literal["interaction", "document"] | None = Field(default=None, alias="ownerType")
    owner_id: str | None = Field(default=None, alias="ownerId", max_length=MAX_ID_LENGTH)
    max_items: int | None = Field(default=None, alias="maxItems", ge=1, le=MAX_BATCH_ITEMS)
    source: str | None = Field(default=None, max_length=MAX_ID_LENGTH)


InsightKind = Literal["thread_summary", "next_best_action", "weekly_digest", "lead_score", "llm"]


class InsightPayload(JobPayload):
    subject_type: Literal["contact", "segment", "inbox"] | None = Field(
        default=None, alias="subjectType"
    )
    subject_id: str | None = Field(default=None, alias="subjectId", max_length=MAX_ID_LENGTH)
    kind: InsightKind = "weekly_digest"
    context: dict[str, Any] | None = None


class RetentionPayload(JobPayload):
    dry_run: bool = Field(default=False, alias="dryRun")
    older_than_days: int | None = Field(default=None, alias="olderThanDays", ge=1, le=3650)
    target_table: Literal["raw_events", "jobs", "all"] = Field(default="all", alias="targetTable")


PAYLOAD_MODELS: dict[JobKind, type[JobPayload]] = {
    JobKind.GOOGLE_GMAIL_SYNC: SyncPayload,
    JobKind.GOOGLE_CALENDAR_SYNC: SyncPayload,
    JobKind.NORMALIZE_GOOGLE_EMAIL: NormalizePayload,
    JobKind.NORMALIZE_GOOGLE_EVENT: NormalizePayload,
    JobKind.EXTRACT_CONTACTS: ExtractContactsPayload,
    JobKind.EMBED: EmbedPayload,
    JobKind.INSIGHT: InsightPayload,
    JobKind.DATA_RETENTION: RetentionPayload,
}

# Runtime-registered kinds (names outside JobKind)
EXTRA_PAYLOAD_MODELS: dict[str, type[JobPayload]] = {}


def register_payload_model(kind: str, model: type[JobPayload]) -> None:
    """Register the payload model for a job kind added at runtime."""
    if kind in {k.value for k in JobKind}:
        raise ValueError(f"{kind} is a built-in job kind; its payload model is fixed")
    EXTRA_PAYLOAD_MODELS[kind] = model


def payload_model_for(kind: JobKind | str) -> type[JobPayload] | None:
    """Payload model for a kind, or None when the kind is unknown."""
    if isinstance(kind, JobKind):
        return PAYLOAD_MODELS[kind]
    try:
        return PAYLOAD_MODELS[JobKind(kind)]
    except ValueError:
        return EXTRA_PAYLOAD_MODELS.get(kind)


# =================================================================
# RECORDS
# =================================================================


@dataclass(slots=True)
class JobRecord:
    """Represents a jobs row with its payload parsed for its kind."""

    id: str
    user_id: str
    kind: JobKind | str
    payload: JobPayload | dict[str, Any]
    status: JobStatus
    attempts: int = 0
    batch_id: str | None = None
    last_error: str | None = None
    scheduled_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def kind_name(self) -> str:
        return self.kind.value if isinstance(self.kind, JobKind) else str(self.kind)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "JobRecord":
        raw_kind = row["kind"]
        raw_payload = row.get("payload") or {}
        try:
            kind: JobKind | str = JobKind(raw_kind)
        except ValueError:
            kind = raw_kind

        payload: JobPayload | dict[str, Any] = raw_payload
        model = payload_model_for(kind)
        if model is not None:
            try:
                payload = model.model_validate(raw_payload)
            except ValidationError:
                # Left as a dict; the dispatcher rejects it as a non-retryable failure
                payload = raw_payload

        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            kind=kind,
            payload=payload,
            status=JobStatus(row["status"]),
            attempts=row.get("attempts") or 0,
            batch_id=str(row["batch_id"]) if row.get("batch_id") else None,
            last_error=row.get("last_error"),
            scheduled_at=row.get("scheduled_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )


@dataclass(slots=True)
class BatchStatus:
    """Aggregate view over every job sharing a batch_id."""

    batch_id: str
    total: int
    completed: int
    failed: int
    pending: int
    cancelled: int
    status: BatchState
    created_at: datetime | None
    updated_at: datetime | None


@dataclass(slots=True)
class BatchJob:
    """One entry of QueueManager.enqueue_batch_job. Options are accepted but not applied."""

    payload: dict[str, Any]
    options: dict[str, Any] = field(default_factory=dict)
