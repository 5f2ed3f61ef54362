"""In-memory CRM store for tests and local runs."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List

from sqlmodel import SQLModel

from .models import Contact, ContactIdentifier, Conversation, Lead, Message
from .store import CrmStore, LeadSegment


class InMemoryCrmStore(CrmStore):
    """Keep leads, contacts, conversations and messages in dictionaries."""

    def __init__(self) -> None:
        self.leads: Dict[str, Lead] = {}
        self.contacts: Dict[str, Contact] = {}
        self.identifiers: List[ContactIdentifier] = []
        self.conversations: Dict[str, Conversation] = {}
        self.messages: Dict[str, Message] = {}

    async def add(self, *records: SQLModel) -> None:
        for record in records:
            if isinstance(record, Lead):
                self.leads[record.id] = record
            elif isinstance(record, Contact):
                self.contacts[record.id] = record
            elif isinstance(record, ContactIdentifier):
                self.identifiers.append(record)
            elif isinstance(record, Conversation):
                self.conversations[record.id] = record
            elif isinstance(record, Message):
                self.messages[record.id] = record
            else:
                raise TypeError(f"Unsupported record type: {type(record).__name__}")

    async def find_lead(self, lead_id: str) -> Lead | None:
        return self.leads.get(lead_id)

    async def update_lead(
        self,
        lead_id: str,
        tags: list[str] | None = None,
        stage: str | None = None,
    ) -> Lead | None:
        lead = self.leads.get(lead_id)
        if lead is None:
            return None
        if tags is not None:
            lead.tags = list(tags)
        if stage is not None:
            lead.stage = stage
        return lead

    async def find_leads_by_segment(
        self, organization_id: str, segment: LeadSegment, now: datetime
    ) -> list[Lead]:
        return [
            lead
            for lead in self.leads.values()
            if lead.organization_id == organization_id and segment.includes(lead, now)
        ]

    async def find_contact(self, contact_id: str) -> Contact | None:
        return self.contacts.get(contact_id)

    async def contact_identifiers(self, contact_id: str) -> list[ContactIdentifier]:
        return [i for i in self.identifiers if i.contact_id == contact_id]

    async def ensure_conversation(
        self,
        organization_id: str,
        channel_id: str,
        contact_id: str,
        external_id: str,
        now: datetime,
    ) -> Conversation:
        conversation = next(
            (
                c
                for c in self.conversations.values()
                if c.channel_id == channel_id and c.external_id == external_id
            ),
            None,
        )
        if conversation is None:
            conversation = Conversation(
                organization_id=organization_id,
                channel_id=channel_id,
                contact_id=contact_id,
                external_id=external_id,
            )
            self.conversations[conversation.id] = conversation
        conversation.status = "open"
        conversation.last_message_at = now
        return conversation

    async def create_message(self, message: Message) -> Message:
        self.messages[message.id] = message
        return message
