"""CRM store abstraction consumed by the journey engine."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from .models import Contact, ContactIdentifier, Conversation, Lead, Message


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by SQLite) as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class LeadSegment(BaseModel):
    """Lead selection used by scheduled triggers."""

    stages: list[str] = Field(default_factory=list)
    tags_all: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)
    last_active_within_days: Optional[int] = None

    def cutoff(self, now: datetime) -> Optional[datetime]:
        if not self.last_active_within_days:
            return None
        return now - timedelta(days=self.last_active_within_days)

    def includes(self, lead: Lead, now: datetime) -> bool:
        if self.stages and lead.stage not in self.stages:
            return False
        if self.tags_all and not set(self.tags_all).issubset(lead.tags or []):
            return False
        if self.sources and lead.source not in self.sources:
            return False
        cutoff = self.cutoff(now)
        if cutoff is not None:
            last_activity = as_utc(lead.last_activity_at)
            if last_activity is not None:
                return last_activity >= cutoff
            return as_utc(lead.created_at) >= cutoff
        return True


class CrmStore(Protocol):
    """Protocol for tenant CRM data the engine reads and writes."""

    async def find_lead(self, lead_id: str) -> Lead | None:
        """Retrieve a lead by id."""

    async def update_lead(
        self,
        lead_id: str,
        tags: list[str] | None = None,
        stage: str | None = None,
    ) -> Lead | None:
        """Replace a lead's tags and/or stage."""

    async def find_leads_by_segment(
        self, organization_id: str, segment: LeadSegment, now: datetime
    ) -> list[Lead]:
        """Leads of a tenant that fall into ``segment``."""

    async def find_contact(self, contact_id: str) -> Contact | None:
        """Retrieve a contact by id."""

    async def contact_identifiers(self, contact_id: str) -> list[ContactIdentifier]:
        """Platform identifiers of a contact."""

    async def ensure_conversation(
        self,
        organization_id: str,
        channel_id: str,
        contact_id: str,
        external_id: str,
        now: datetime,
    ) -> Conversation:
        """Return the open conversation for ``(channel_id, external_id)``."""

    async def create_message(self, message: Message) -> Message:
        """Persist an outbound message record."""
