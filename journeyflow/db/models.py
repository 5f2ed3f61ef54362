from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from ..contracts import utcnow


def _new_id() -> str:
    return str(uuid4())


class Contact(SQLModel, table=True):
    """A person reachable on one or more channels."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(index=True)
    name: Optional[str] = None
    phone: Optional[str] = None


class ContactIdentifier(SQLModel, table=True):
    """Platform-specific address of a contact."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    contact_id: str = Field(foreign_key="contact.id", index=True)
    platform: str = "whatsapp"
    external_id: str


class Lead(SQLModel, table=True):
    """Sales lead whose tags and stage drive journeys."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(index=True)
    contact_id: Optional[str] = Field(default=None, foreign_key="contact.id")
    conversation_id: Optional[str] = None
    tags: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    stage: Optional[str] = None
    source: Optional[str] = None
    last_activity_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class Conversation(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("channel_id", "external_id"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(index=True)
    channel_id: str
    contact_id: Optional[str] = None
    platform: str = "whatsapp"
    external_id: str
    status: str = "open"
    last_message_at: Optional[datetime] = None


class Message(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    organization_id: str = Field(index=True)
    conversation_id: str = Field(index=True)
    channel_id: str
    contact_id: Optional[str] = None
    platform: str = "whatsapp"
    type: str = "text"
    direction: str = "outbound"
    status: str = "pending"
    content: dict = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
