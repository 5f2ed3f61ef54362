from __future__ import annotations

from typing import Optional

from ..config import JourneyflowConfig, load_config
from .crm_db import CrmDB
from .inmemory import InMemoryCrmStore
from .models import Contact, ContactIdentifier, Conversation, Lead, Message
from .store import CrmStore, LeadSegment

_store_instance: CrmStore | None = None


async def get_crm_store(
    database_url: Optional[str] = None, config: Optional[JourneyflowConfig] = None
) -> CrmStore:
    """Return the configured CRM store, creating tables on first use.

    Without ``crm_database_url`` an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = database_url or config.crm_database_url
    if not database_url:
        _store_instance = InMemoryCrmStore()
        return _store_instance

    crm = CrmDB(database_url)
    await crm.init_db()
    _store_instance = crm
    return _store_instance


__all__ = [
    "Contact",
    "ContactIdentifier",
    "Conversation",
    "Lead",
    "Message",
    "CrmStore",
    "CrmDB",
    "InMemoryCrmStore",
    "LeadSegment",
    "get_crm_store",
]
