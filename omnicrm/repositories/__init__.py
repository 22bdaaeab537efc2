"""
SQL repositories for the business tables the processors read and write.
"""

from omnicrm.repositories.contacts import ContactIdentityRepository, ContactRepository
from omnicrm.repositories.embeddings import EmbeddingRepository
from omnicrm.repositories.insights import InsightRepository
from omnicrm.repositories.interactions import InteractionRepository
from omnicrm.repositories.raw_events import RawEventRepository
from omnicrm.repositories.sync_prefs import SyncPrefsRepository
from omnicrm.repositories.timeline import TimelineRepository

__all__ = [
    "ContactIdentityRepository",
    "ContactRepository",
    "EmbeddingRepository",
    "InsightRepository",
    "InteractionRepository",
    "RawEventRepository",
    "SyncPrefsRepository",
    "TimelineRepository",
]
