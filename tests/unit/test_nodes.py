"""Node configuration parsing and individual node behaviors."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from journeyflow.contracts import (
    JourneyNode,
    JourneyRun,
    JourneyRunStep,
    JourneyStepError,
    TriggerSnapshot,
)
from journeyflow.db import Contact, ContactIdentifier, InMemoryCrmStore, Lead
from journeyflow.nodes import (
    DelayConfig,
    StepContext,
    TagUpdateConfig,
    execute_node,
    normalize_phone,
    parse_node_config,
    resolve_recipient,
    tags_after_update,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class RecordingOutbound:
    def __init__(self):
        self.message_ids = []

    async def enqueue_outbound(self, message_id: str) -> None:
        self.message_ids.append(message_id)


def _context(node_type, config, handler=None, lead=None, contact=None, crm=None, channel_id="ch-1"):
    run = JourneyRun(
        id="run-1",
        organization_id="org-1",
        journey_id="j-1",
        lead_id=lead.id if lead else None,
        contact_id=contact.id if contact else None,
        channel_id=channel_id,
        trigger_type="inbound_message",
        trigger_payload=TriggerSnapshot(text="Hello"),
    )
    node = JourneyNode(
        id="n-1", organization_id="org-1", journey_id="j-1", type=node_type, config=config
    )
    step = JourneyRunStep(organization_id="org-1", run_id=run.id, node_id=node.id)
    handler = handler or (lambda request: httpx.Response(200))
    return StepContext(
        step=step,
        run=run,
        node=node,
        edges=[],
        lead=lead,
        contact=contact,
        now=NOW,
        crm=crm or InMemoryCrmStore(),
        outbound=RecordingOutbound(),
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


def test_delay_resolution_order():
    assert DelayConfig.model_validate({"delayMinutes": 5}).resolve_ms() == 300000
    assert DelayConfig.model_validate({"delayMs": 1500.9, "delayMinutes": 5}).resolve_ms() == 1500
    assert DelayConfig.model_validate({"delaySeconds": 2.7}).resolve_ms() == 2000
    assert DelayConfig.model_validate({"delayMinutes": 1.9}).resolve_ms() == 60000
    assert DelayConfig.model_validate({}).resolve_ms() == 0


def test_delay_is_never_negative_and_ignores_non_numbers():
    assert DelayConfig.model_validate({"delayMs": -50}).resolve_ms() == 0
    assert DelayConfig.model_validate({"delayMs": "soon", "delaySeconds": 3}).resolve_ms() == 3000
    assert DelayConfig.model_validate({"delayMs": True}).resolve_ms() == 0


def test_tag_update_config_keeps_string_entries():
    node = JourneyNode(
        organization_id="org-1",
        journey_id="j-1",
        type="tag_update",
        config={"addTags": [" vip ", 7], "removeTags": "x", "stage": 3},
    )
    config = parse_node_config(node)
    assert isinstance(config, TagUpdateConfig)
    assert config.add_tags == ["vip"]
    assert config.remove_tags == []
    assert config.stage is None


def test_tags_after_update_has_set_semantics():
    assert set(tags_after_update(["a", "b"], ["c", "b"], ["a"])) == {"b", "c"}
    assert tags_after_update(["a", "b"], ["c", "b"], ["a"]) == ["b", "c"]
    assert tags_after_update(["a", "a"], [], []) == ["a"]


def test_phone_normalization():
    assert normalize_phone("+1 (555) 010-0100") == "15550100100"
    assert normalize_phone("0044 20 7946") == "0044207946"


def test_recipient_falls_back_to_identifier():
    contact = Contact(id="c-1", organization_id="org-1", phone=None)
    identifiers = [ContactIdentifier(contact_id="c-1", external_id="+4915112345")]
    assert resolve_recipient(contact, identifiers) == "4915112345"
    assert resolve_recipient(contact, []) is None
    contact.phone = "+49 151"
    assert resolve_recipient(contact, identifiers) == "49151"


@pytest.mark.asyncio
async def test_webhook_posts_run_identifiers():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    lead = Lead(id="lead-1", organization_id="org-1", contact_id="c-1")
    ctx = _context(
        "webhook",
        {"url": "https://hooks.test/journey", "headers": {"X-Token": "abc"}, "body": {"k": 1}},
        handler=handler,
        lead=lead,
    )

    result = await execute_node(ctx)

    assert not result.failed
    assert result.output == {"status": 204}
    request = seen[0]
    assert request.method == "POST"
    assert request.headers["x-token"] == "abc"
    assert request.headers["content-type"] == "application/json"
    assert json.loads(request.content) == {
        "journeyId": "j-1",
        "runId": "run-1",
        "nodeId": "n-1",
        "leadId": "lead-1",
        "contactId": None,
        "payload": {"k": 1},
    }


@pytest.mark.asyncio
async def test_webhook_non_2xx_fails_with_reason():
    ctx = _context(
        "webhook",
        {"url": "https://hooks.test/journey", "method": "PUT"},
        handler=lambda request: httpx.Response(503),
    )

    result = await execute_node(ctx)

    assert result.failed
    assert result.error == "Service Unavailable"
    assert result.output == {"status": 503}
    assert result.next_edges == []


@pytest.mark.asyncio
async def test_webhook_without_url_is_a_configuration_error():
    ctx = _context("webhook", {"url": ""})
    with pytest.raises(JourneyStepError) as exc:
        await execute_node(ctx)
    assert exc.value.code == "webhook_url_missing"


@pytest.mark.asyncio
async def test_tag_update_requires_lead():
    ctx = _context("tag_update", {"addTags": ["x"]})
    with pytest.raises(JourneyStepError) as exc:
        await execute_node(ctx)
    assert exc.value.code == "journey_lead_missing"


@pytest.mark.asyncio
async def test_send_message_creates_message_and_hands_off():
    crm = InMemoryCrmStore()
    contact = Contact(id="c-1", organization_id="org-1", phone="+1 555 0100")
    lead = Lead(id="lead-1", organization_id="org-1", contact_id="c-1")
    await crm.add(contact, lead)
    ctx = _context(
        "send_message", {"text": "  Welcome!  "}, lead=lead, contact=contact, crm=crm
    )

    result = await execute_node(ctx)

    message = crm.messages[result.message_id]
    assert message.content == {"text": "Welcome!", "journeyId": "j-1", "runId": "run-1"}
    assert message.direction == "outbound"
    assert message.status == "pending"
    assert message.channel_id == "ch-1"
    conversation = crm.conversations[message.conversation_id]
    assert conversation.external_id == "15550100"
    assert ctx.outbound.message_ids == [message.id]
    assert result.output == {"messageId": message.id}


@pytest.mark.asyncio
async def test_send_message_prefers_configured_channel():
    crm = InMemoryCrmStore()
    contact = Contact(id="c-1", organization_id="org-1", phone="5550100")
    lead = Lead(id="lead-1", organization_id="org-1", contact_id="c-1")
    ctx = _context(
        "send_message",
        {"text": "Hi", "channelId": "ch-9"},
        lead=lead,
        contact=contact,
        crm=crm,
        channel_id=None,
    )

    result = await execute_node(ctx)

    assert crm.messages[result.message_id].channel_id == "ch-9"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "config, contact_phone, channel_id, code",
    [
        ({"text": "   "}, "555", "ch-1", "journey_message_missing"),
        ({"text": "Hi"}, "555", None, "journey_channel_missing"),
        ({"text": "Hi"}, None, "ch-1", "journey_recipient_missing"),
    ],
)
async def test_send_message_configuration_errors(config, contact_phone, channel_id, code):
    contact = Contact(id="c-1", organization_id="org-1", phone=contact_phone)
    lead = Lead(id="lead-1", organization_id="org-1", contact_id="c-1")
    ctx = _context("send_message", config, lead=lead, contact=contact, channel_id=channel_id)

    with pytest.raises(JourneyStepError) as exc:
        await execute_node(ctx)
    assert exc.value.code == code


@pytest.mark.asyncio
async def test_send_message_requires_contact():
    lead = Lead(id="lead-1", organization_id="org-1")
    ctx = _context("send_message", {"text": "Hi"}, lead=lead)
    with pytest.raises(JourneyStepError) as exc:
        await execute_node(ctx)
    assert exc.value.code == "journey_contact_missing"
