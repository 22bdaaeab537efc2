"""
Domain models for the business tables the processors read and write.

Plain dataclasses shared by repositories and processors.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class RawEventRecord:
    """Provider-native record awaiting normalization (raw_events row)."""

    user_id: str
    provider: str  # "gmail" or "calendar"
    source_id: str
    payload: dict[str, Any]
    occurred_at: datetime
    batch_id: str | None = None
    id: str | None = None


@dataclass(slots=True)
class InteractionRecord:
    """Normalized contact touchpoint; unique per (user_id, source, source_id)."""

    user_id: str
    type: str  # "email" or "meeting"
    source: str  # "gmail" or "google_calendar"
    source_id: str
    occurred_at: datetime
    subject: str | None = None
    body_text: str | None = None
    source_meta: dict[str, Any] = field(default_factory=dict)
    batch_id: str | None = None
    contact_id: str | None = None
    id: str | None = None


@dataclass(slots=True)
class CandidateIdentity:
    kind: str  # "email" or "phone"
    value: str
    provider: str | None = None


@dataclass(slots=True)
class TimelineEntry:
    user_id: str
    contact_id: str
    interaction_id: str
    event_type: str
    title: str
    description: str | None
    event_data: dict[str, Any]
    occurred_at: datetime


@dataclass(slots=True)
class EmbeddingOwner:
    """An interaction or document lacking an embedding row."""

    owner_type: str
    owner_id: str
    text: str


@dataclass(slots=True)
class InsightRecord:
    user_id: str
    subject_type: str
    subject_id: str | None
    kind: str
    content: dict[str, Any]
    fingerprint: str
    model: str | None = None


@dataclass(slots=True)
class SyncPreferences:
    """user_sync_prefs row, with the column defaults for users who never saved one."""

    gmail_query: str = "category:primary -in:chats -in:drafts"
    gmail_label_includes: list[str] = field(default_factory=list)
    gmail_label_excludes: list[str] = field(
        default_factory=lambda: ["Promotions", "Social", "Forums", "Updates"]
    )
    calendar_include_organizer_self: bool = True
    calendar_include_private: bool = False
    calendar_time_window_days: int = 60
