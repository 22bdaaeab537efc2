"""Processors for every job kind, and the registry wiring them to the dispatcher."""

from omnicrm.jobs.dispatcher import Processor, ProcessorRegistry
from omnicrm.jobs.domain import JobKind
from omnicrm.jobs.processors.embed import run_embed
from omnicrm.jobs.processors.extract_contacts import run_extract_contacts
from omnicrm.jobs.processors.insight import run_insight
from omnicrm.jobs.processors.normalize import run_normalize
from omnicrm.jobs.processors.retention import run_data_retention
from omnicrm.jobs.processors.sync import run_calendar_sync, run_gmail_sync

DEFAULT_PROCESSORS: dict[JobKind, Processor] = {
    JobKind.GOOGLE_GMAIL_SYNC: run_gmail_sync,
    JobKind.GOOGLE_CALENDAR_SYNC: run_calendar_sync,
    JobKind.NORMALIZE_GOOGLE_EMAIL: run_normalize,
    JobKind.NORMALIZE_GOOGLE_EVENT: run_normalize,
    JobKind.EXTRACT_CONTACTS: run_extract_contacts,
    JobKind.EMBED: run_embed,
    JobKind.INSIGHT: run_insight,
    JobKind.DATA_RETENTION: run_data_retention,
}


def build_default_registry() -> ProcessorRegistry:
    """Registry covering every JobKind. Raises RuntimeError if one is left out."""
    registry = ProcessorRegistry(DEFAULT_PROCESSORS)

    missing = registry.missing_kinds()
    if missing:
        raise RuntimeError(f"No processor registered for job kinds: {', '.join(missing)}")
    return registry


__all__ = ["DEFAULT_PROCESSORS", "build_default_registry"]
