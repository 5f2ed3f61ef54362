"""Node behaviors of the journey DAG interpreter.

Each node type has its own configuration model and handler. Configuration
is parsed when the step executes, so an edited journey takes effect for
steps that have not run yet.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Optional, Type

import httpx
from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic.alias_generators import to_camel

from .contracts import (
    JourneyEdge,
    JourneyNode,
    JourneyRun,
    JourneyRunStep,
    JourneyStepError,
)
from .db import Contact, ContactIdentifier, CrmStore, Lead, Message
from .matching import MatchContext, evaluate_condition, select_edges_for_condition, to_string_list
from .outbound import OutboundDelivery


def _number_or_none(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _string_or_none(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _string_map(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(k): str(v) for k, v in value.items()}


StringList = Annotated[List[str], BeforeValidator(to_string_list)]
OptionalNumber = Annotated[Optional[float], BeforeValidator(_number_or_none)]
OptionalString = Annotated[Optional[str], BeforeValidator(_string_or_none)]
StringMap = Annotated[Dict[str, str], BeforeValidator(_string_map)]


class NodeConfig(BaseModel):
    """Base for per-type node configuration (camelCase keys when stored)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DelayConfig(NodeConfig):
    delay_ms: OptionalNumber = None
    delay_minutes: OptionalNumber = None
    delay_seconds: OptionalNumber = None

    def resolve_ms(self) -> int:
        if self.delay_ms is not None:
            return max(0, math.floor(self.delay_ms))
        if self.delay_minutes is not None:
            return max(0, math.floor(self.delay_minutes) * 60_000)
        if self.delay_seconds is not None:
            return max(0, math.floor(self.delay_seconds) * 1000)
        return 0


class ConditionConfig(NodeConfig):
    stages: StringList = []
    tags_any: StringList = []
    tags_all: StringList = []
    text_includes: StringList = []

    def as_filter(self) -> Dict[str, List[str]]:
        return self.model_dump(by_alias=True)


class TagUpdateConfig(NodeConfig):
    add_tags: StringList = []
    remove_tags: StringList = []
    stage: OptionalString = None


class WebhookConfig(NodeConfig):
    url: OptionalString = None
    method: OptionalString = None
    headers: StringMap = {}
    body: Any = None


class SendMessageConfig(NodeConfig):
    text: OptionalString = None
    channel_id: OptionalString = None


NODE_CONFIGS: Dict[str, Type[NodeConfig]] = {
    "delay": DelayConfig,
    "condition": ConditionConfig,
    "tag_update": TagUpdateConfig,
    "webhook": WebhookConfig,
    "send_message": SendMessageConfig,
}


def parse_node_config(node: JourneyNode) -> NodeConfig:
    return NODE_CONFIGS[node.type].model_validate(node.config or {})


@dataclass
class StepContext:
    """Everything a node behavior may read or call."""

    step: JourneyRunStep
    run: JourneyRun
    node: JourneyNode
    edges: List[JourneyEdge]
    lead: Optional[Lead]
    contact: Optional[Contact]
    now: datetime
    crm: CrmStore
    outbound: OutboundDelivery
    http: httpx.AsyncClient

    def match_context(self) -> MatchContext:
        return MatchContext(
            tags=list(self.lead.tags or []) if self.lead else [],
            stage=self.lead.stage if self.lead else None,
            text=self.run.trigger_payload.text,
        )


@dataclass
class NodeResult:
    """Outcome of a node behavior.

    A result with ``error`` set is a failed step that still carries output
    (for example the webhook response status).
    """

    output: Dict[str, Any]
    next_edges: List[JourneyEdge] = field(default_factory=list)
    delay_ms: int = 0
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


def normalize_phone(phone: str) -> str:
    return re.sub(r"^\+", "", re.sub(r"[^\d+]", "", phone))


def resolve_recipient(
    contact: Contact, identifiers: List[ContactIdentifier]
) -> Optional[str]:
    """Contact phone, else the first platform identifier, normalized."""
    if contact.phone:
        return normalize_phone(contact.phone) or None
    identifier = next((i for i in identifiers if i.external_id), None)
    if identifier is None:
        return None
    return normalize_phone(identifier.external_id) or None


def tags_after_update(
    current: List[str], add_tags: List[str], remove_tags: List[str]
) -> List[str]:
    """(current - remove) | add, without duplicates, in first-seen order."""
    removed = set(remove_tags)
    updated: List[str] = []
    for tag in [t for t in current if t not in removed] + add_tags:
        if tag not in updated:
            updated.append(tag)
    return updated


# ----------------------------------------------------------------------
# Behaviors


async def run_delay(ctx: StepContext, config: DelayConfig) -> NodeResult:
    delay_ms = config.resolve_ms()
    return NodeResult(output={"delayMs": delay_ms}, next_edges=ctx.edges, delay_ms=delay_ms)


async def run_condition(ctx: StepContext, config: ConditionConfig) -> NodeResult:
    filter_config = config.as_filter() if ctx.node.config is not None else None
    outcome = evaluate_condition(filter_config, ctx.match_context())
    return NodeResult(
        output={"outcome": outcome},
        next_edges=select_edges_for_condition(ctx.edges, outcome),
    )


async def run_tag_update(ctx: StepContext, config: TagUpdateConfig) -> NodeResult:
    if ctx.lead is None:
        raise JourneyStepError("journey_lead_missing")

    tags = tags_after_update(list(ctx.lead.tags or []), config.add_tags, config.remove_tags)
    await ctx.crm.update_lead(ctx.lead.id, tags=tags, stage=config.stage)
    return NodeResult(output={"tags": tags, "stage": config.stage}, next_edges=ctx.edges)


async def run_webhook(ctx: StepContext, config: WebhookConfig) -> NodeResult:
    if not config.url:
        raise JourneyStepError("webhook_url_missing")

    body = {
        "journeyId": ctx.run.journey_id,
        "runId": ctx.run.id,
        "nodeId": ctx.node.id,
        "leadId": ctx.lead.id if ctx.lead else None,
        "contactId": ctx.contact.id if ctx.contact else None,
        "payload": config.body,
    }
    response = await ctx.http.request(
        config.method or "POST", config.url, json=body, headers=config.headers
    )
    output = {"status": response.status_code}
    if not response.is_success:
        return NodeResult(
            output=output, error=response.reason_phrase or f"HTTP {response.status_code}"
        )
    return NodeResult(output=output, next_edges=ctx.edges)


async def run_send_message(ctx: StepContext, config: SendMessageConfig) -> NodeResult:
    if ctx.lead is None or ctx.contact is None:
        raise JourneyStepError("journey_contact_missing")

    text = (config.text or "").strip()
    if not text:
        raise JourneyStepError("journey_message_missing")

    channel_id = (config.channel_id or "").strip() or ctx.run.channel_id
    if not channel_id:
        raise JourneyStepError("journey_channel_missing")

    identifiers = await ctx.crm.contact_identifiers(ctx.contact.id)
    recipient = resolve_recipient(ctx.contact, identifiers)
    if not recipient:
        raise JourneyStepError("journey_recipient_missing")

    conversation = await ctx.crm.ensure_conversation(
        organization_id=ctx.run.organization_id,
        channel_id=channel_id,
        contact_id=ctx.contact.id,
        external_id=recipient,
        now=ctx.now,
    )
    message = await ctx.crm.create_message(
        Message(
            organization_id=ctx.run.organization_id,
            conversation_id=conversation.id,
            channel_id=channel_id,
            contact_id=ctx.contact.id,
            content={"text": text, "journeyId": ctx.run.journey_id, "runId": ctx.run.id},
            created_at=ctx.now,
        )
    )
    await ctx.outbound.enqueue_outbound(message.id)
    return NodeResult(
        output={"messageId": message.id},
        next_edges=ctx.edges,
        message_id=message.id,
    )


NodeHandler = Callable[[StepContext, Any], Awaitable[NodeResult]]

NODE_HANDLERS: Dict[str, NodeHandler] = {
    "delay": run_delay,
    "condition": run_condition,
    "tag_update": run_tag_update,
    "webhook": run_webhook,
    "send_message": run_send_message,
}


async def execute_node(ctx: StepContext) -> NodeResult:
    """Run the behavior registered for ``ctx.node.type``."""
    config = parse_node_config(ctx.node)
    return await NODE_HANDLERS[ctx.node.type](ctx, config)
