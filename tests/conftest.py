"""Shared fixtures: a controllable clock and an engine over in-memory backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
import pytest

from journeyflow.config import JourneyflowConfig
from journeyflow.contracts import Journey, JourneyEdge, JourneyNode, JourneyTrigger
from journeyflow.db import Contact, ContactIdentifier, InMemoryCrmStore, Lead
from journeyflow.engine import JourneyEngine
from journeyflow.persistence import InMemoryJourneyRepository
from journeyflow.transports import InMemoryTransport

ORG = "org-1"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class WebhookRecorder:
    """httpx.MockTransport handler that records requests."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.status_code = 200

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": self.status_code < 300})


@dataclass
class BuiltJourney:
    journey: Journey
    trigger: JourneyTrigger
    nodes: Dict[str, JourneyNode] = field(default_factory=dict)
    edges: List[JourneyEdge] = field(default_factory=list)


class JourneyBuilder:
    """Create journeys and CRM records with little ceremony."""

    def __init__(self, repository: InMemoryJourneyRepository, crm: InMemoryCrmStore) -> None:
        self.repository = repository
        self.crm = crm

    async def journey(
        self,
        nodes: Dict[str, Tuple[str, Optional[Dict[str, Any]]]],
        edges: Sequence[Tuple[str, ...]] = (),
        trigger_type: str = "inbound_message",
        trigger_config: Optional[Dict[str, Any]] = None,
        status: str = "active",
        organization_id: str = ORG,
    ) -> BuiltJourney:
        journey = Journey(organization_id=organization_id, name="Test journey", status=status)
        await self.repository.create_journey(journey)
        trigger = JourneyTrigger(
            organization_id=organization_id,
            journey_id=journey.id,
            type=trigger_type,
            config=trigger_config,
        )
        await self.repository.save_trigger(trigger)

        built = BuiltJourney(journey=journey, trigger=trigger)
        for key, (node_type, config) in nodes.items():
            node = JourneyNode(
                organization_id=organization_id,
                journey_id=journey.id,
                type=node_type,
                label=key,
                config=config,
            )
            await self.repository.save_node(node)
            built.nodes[key] = node
        for entry in edges:
            source, target = entry[0], entry[1]
            edge = JourneyEdge(
                organization_id=organization_id,
                journey_id=journey.id,
                from_node_id=built.nodes[source].id,
                to_node_id=built.nodes[target].id,
                label=entry[2] if len(entry) > 2 else None,
            )
            await self.repository.save_edge(edge)
            built.edges.append(edge)
        return built

    async def lead(
        self,
        tags: Sequence[str] = (),
        stage: Optional[str] = None,
        phone: Optional[str] = "+1 555 0100",
        identifier: Optional[str] = None,
        organization_id: str = ORG,
        **extra: Any,
    ) -> Lead:
        contact = Contact(organization_id=organization_id, name="Ada", phone=phone)
        lead = Lead(
            organization_id=organization_id,
            contact_id=contact.id,
            tags=list(tags),
            stage=stage,
            **extra,
        )
        records: List[Any] = [contact, lead]
        if identifier:
            records.append(ContactIdentifier(contact_id=contact.id, external_id=identifier))
        await self.crm.add(*records)
        return lead


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def webhook() -> WebhookRecorder:
    return WebhookRecorder()


@pytest.fixture
def repository() -> InMemoryJourneyRepository:
    return InMemoryJourneyRepository()


@pytest.fixture
def crm() -> InMemoryCrmStore:
    return InMemoryCrmStore()


@pytest.fixture
def transport(clock: FakeClock) -> InMemoryTransport:
    return InMemoryTransport(clock=clock)


@pytest.fixture
def engine(repository, crm, transport, clock, webhook) -> JourneyEngine:
    return JourneyEngine(
        repository=repository,
        crm=crm,
        transport=transport,
        http=httpx.AsyncClient(transport=httpx.MockTransport(webhook)),
        config=JourneyflowConfig(),
        clock=clock,
    )


@pytest.fixture
def builder(repository, crm) -> JourneyBuilder:
    return JourneyBuilder(repository, crm)
