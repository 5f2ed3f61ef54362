from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from .models import Contact, ContactIdentifier, Conversation, Lead, Message
from .store import CrmStore, LeadSegment


class CrmDB(CrmStore):
    """Async SQLModel-backed CRM store."""

    def __init__(self, database_url: str) -> None:
        connect_args = (
            {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        )
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def add(self, *records: SQLModel) -> None:
        """Insert seed records (contacts, identifiers, leads)."""
        async with self.session() as session:
            session.add_all(records)
            await session.commit()

    # ------------------------------------------------------------------
    async def find_lead(self, lead_id: str) -> Lead | None:
        async with self.session() as session:
            return await session.get(Lead, lead_id)

    async def update_lead(
        self,
        lead_id: str,
        tags: list[str] | None = None,
        stage: str | None = None,
    ) -> Lead | None:
        async with self.session() as session:
            lead = await session.get(Lead, lead_id)
            if lead is None:
                return None
            if tags is not None:
                lead.tags = list(tags)
            if stage is not None:
                lead.stage = stage
            session.add(lead)
            await session.commit()
            await session.refresh(lead)
        return lead

    async def find_leads_by_segment(
        self, organization_id: str, segment: LeadSegment, now: datetime
    ) -> list[Lead]:
        query = select(Lead).where(Lead.organization_id == organization_id)
        if segment.stages:
            query = query.where(Lead.stage.in_(segment.stages))
        if segment.sources:
            query = query.where(Lead.source.in_(segment.sources))
        async with self.session() as session:
            result = await session.execute(query)
            leads = list(result.scalars().all())
        # tag containment and the activity window are portable only in Python
        return [lead for lead in leads if segment.includes(lead, now)]

    async def find_contact(self, contact_id: str) -> Contact | None:
        async with self.session() as session:
            return await session.get(Contact, contact_id)

    async def contact_identifiers(self, contact_id: str) -> list[ContactIdentifier]:
        async with self.session() as session:
            result = await session.execute(
                select(ContactIdentifier).where(ContactIdentifier.contact_id == contact_id)
            )
            return list(result.scalars().all())

    async def ensure_conversation(
        self,
        organization_id: str,
        channel_id: str,
        contact_id: str,
        external_id: str,
        now: datetime,
    ) -> Conversation:
        query = select(Conversation).where(
            Conversation.channel_id == channel_id,
            Conversation.external_id == external_id,
        )
        async with self.session() as session:
            conversation = (await session.execute(query)).scalars().first()
            if conversation is None:
                conversation = Conversation(
                    organization_id=organization_id,
                    channel_id=channel_id,
                    contact_id=contact_id,
                    external_id=external_id,
                )
            conversation.status = "open"
            conversation.last_message_at = now
            session.add(conversation)
            try:
                await session.commit()
            except IntegrityError:
                # a concurrent insert won the unique (channel_id, external_id) race
                await session.rollback()
                conversation = (await session.execute(query)).scalars().one()
        return conversation

    async def create_message(self, message: Message) -> Message:
        async with self.session() as session:
            session.add(message)
            await session.commit()
            await session.refresh(message)
        return message
