"""Welcome journey: message, wait five minutes, then retag the lead."""

import pytest

from journeyflow.constants import JOURNEY_RUNS_QUEUE, OUTBOUND_JOB_NAME, OUTBOUND_MESSAGES_QUEUE
from journeyflow.contracts import OutboundJob, TriggerJob


async def _welcome(builder):
    return await builder.journey(
        {
            "greet": ("send_message", {"text": "Welcome aboard!"}),
            "wait": ("delay", {"delayMinutes": 5}),
            "tag": (
                "tag_update",
                {"addTags": ["welcomed"], "removeTags": ["new"], "stage": "engaged"},
            ),
        },
        edges=[("greet", "wait"), ("wait", "tag")],
        trigger_config={"tagsAny": ["new"]},
    )


@pytest.mark.asyncio
async def test_welcome_journey_end_to_end(engine, builder, repository, transport, crm, clock):
    built = await _welcome(builder)
    lead = await builder.lead(tags=["new"], stage="lead", phone="+1 (555) 010-0100")

    await engine.emit_trigger(
        TriggerJob(
            trigger_type="inbound_message",
            organization_id="org-1",
            lead_id=lead.id,
            channel_id="ch-1",
            text="hi!",
        )
    )
    await engine.worker.drain()

    [run] = await repository.list_runs(built.journey.id)
    assert run.status == "running"

    [message] = crm.messages.values()
    assert message.channel_id == "ch-1"
    assert message.content == {"text": "Welcome aboard!", "journeyId": built.journey.id, "runId": run.id}
    [conversation] = crm.conversations.values()
    assert conversation.external_id == "15550100100"
    assert message.conversation_id == conversation.id

    [outbound] = transport.pending(OUTBOUND_MESSAGES_QUEUE)
    assert outbound.name == OUTBOUND_JOB_NAME
    assert outbound.data == OutboundJob(message_id=message.id)

    [delayed] = transport.pending(JOURNEY_RUNS_QUEUE)
    assert (delayed.available_at - clock()).total_seconds() == 300

    clock.advance(minutes=5)
    await engine.worker.drain()

    updated = await crm.find_lead(lead.id)
    assert updated.tags == ["welcomed"]
    assert updated.stage == "engaged"

    finished = await repository.get_run(run.id)
    assert finished.status == "completed"
    steps = await repository.list_steps(run.id)
    assert [s.status for s in steps] == ["completed", "completed", "completed"]
    assert steps[0].message_id == message.id


@pytest.mark.asyncio
async def test_welcome_journey_ignores_leads_without_tag(engine, builder, repository, crm):
    built = await _welcome(builder)
    lead = await builder.lead(tags=["returning"])

    await engine.emit_trigger(
        TriggerJob(trigger_type="inbound_message", organization_id="org-1", lead_id=lead.id)
    )
    await engine.worker.drain()

    assert await repository.list_runs(built.journey.id) == []
    assert crm.messages == {}
