"""Time-trigger polling."""

from datetime import datetime, timedelta, timezone

import pytest

from journeyflow.constants import JOURNEY_RUNS_QUEUE
from journeyflow.scheduler import parse_schedule_at, segment_from_config


def test_parse_schedule_at_accepts_iso_and_epoch_ms():
    expected = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
    assert parse_schedule_at("2026-03-02T08:00:00Z") == expected
    assert parse_schedule_at("2026-03-02T09:00:00+01:00") == expected
    assert parse_schedule_at("2026-03-02T08:00:00") == expected
    assert parse_schedule_at(int(expected.timestamp() * 1000)) == expected


@pytest.mark.parametrize("value", [None, "", "tomorrow", True, [], {"at": 1}])
def test_parse_schedule_at_rejects_garbage(value):
    assert parse_schedule_at(value) is None


def test_segment_from_config():
    segment = segment_from_config(
        {"stages": ["new", 1], "tagsAll": ["vip"], "sources": "web", "lastActiveWithinDays": 7.8}
    )
    assert segment.stages == ["new"]
    assert segment.tags_all == ["vip"]
    assert segment.sources == []
    assert segment.last_active_within_days == 7


@pytest.mark.asyncio
async def test_poller_fires_once_and_records_poll_time(engine, builder, repository, transport, clock, crm):
    built = await builder.journey(
        {"tag": ("tag_update", {"addTags": ["reminded"]})},
        trigger_type="time",
        trigger_config={
            "scheduleAt": (clock() - timedelta(minutes=1)).isoformat(),
            "tagsAll": ["vip"],
            "channelId": "ch-1",
        },
    )
    vip = await builder.lead(tags=["vip"], stage="new")
    await builder.lead(tags=["other"])

    jobs = await engine.poller.tick()

    assert [j.lead_id for j in jobs] == [vip.id]
    assert jobs[0].trigger_id == built.trigger.id
    assert jobs[0].channel_id == "ch-1"
    assert jobs[0].contact_id == vip.contact_id
    assert jobs[0].tags == ["vip"]
    assert jobs[0].stage == "new"
    assert len(transport.pending(JOURNEY_RUNS_QUEUE)) == 1
    assert (await repository.get_trigger(built.trigger.id)).last_fired_at == clock()

    clock.advance(minutes=1)
    assert await engine.poller.tick() == []

    await engine.worker.drain()
    [run] = await repository.list_runs(built.journey.id)
    assert run.trigger_type == "time"
    assert run.status == "completed"
    assert (await crm.find_lead(vip.id)).tags == ["vip", "reminded"]


@pytest.mark.asyncio
async def test_rescheduled_trigger_fires_again(engine, builder, repository, clock):
    built = await builder.journey(
        {"a": ("delay", None)},
        trigger_type="time",
        trigger_config={"scheduleAt": clock().isoformat()},
    )
    await builder.lead()

    assert len(await engine.poller.tick()) == 1

    clock.advance(hours=1)
    built.trigger.config = {"scheduleAt": clock().isoformat()}
    built.trigger.last_fired_at = (await repository.get_trigger(built.trigger.id)).last_fired_at
    await repository.save_trigger(built.trigger)

    assert len(await engine.poller.tick()) == 1


@pytest.mark.asyncio
async def test_future_and_unset_schedules_do_not_fire(engine, builder, repository, clock):
    future = await builder.journey(
        {"a": ("delay", None)},
        trigger_type="time",
        trigger_config={"scheduleAt": int((clock() + timedelta(hours=1)).timestamp() * 1000)},
    )
    unset = await builder.journey({"a": ("delay", None)}, trigger_type="time")
    await builder.lead()

    assert await engine.poller.tick() == []
    assert (await repository.get_trigger(future.trigger.id)).last_fired_at is None
    assert (await repository.get_trigger(unset.trigger.id)).last_fired_at is None


@pytest.mark.asyncio
async def test_inactive_journey_is_not_polled(engine, builder, clock):
    await builder.journey(
        {"a": ("delay", None)},
        trigger_type="time",
        trigger_config={"scheduleAt": clock().isoformat()},
        status="draft",
    )
    await builder.lead()

    assert await engine.poller.tick() == []


@pytest.mark.asyncio
async def test_lead_id_must_belong_to_tenant(engine, builder, repository, clock):
    foreign = await builder.lead(organization_id="org-2")
    built = await builder.journey(
        {"a": ("delay", None)},
        trigger_type="time",
        trigger_config={"scheduleAt": clock().isoformat(), "leadId": foreign.id},
    )

    assert await engine.poller.tick() == []
    assert (await repository.get_trigger(built.trigger.id)).last_fired_at == clock()


@pytest.mark.asyncio
async def test_activity_window_segment(engine, builder, clock):
    await builder.journey(
        {"a": ("delay", None)},
        trigger_type="time",
        trigger_config={"scheduleAt": clock().isoformat(), "lastActiveWithinDays": 7},
    )
    recent = await builder.lead(last_activity_at=clock() - timedelta(days=2))
    await builder.lead(last_activity_at=clock() - timedelta(days=30))
    fresh = await builder.lead(created_at=clock() - timedelta(days=1))
    await builder.lead(created_at=clock() - timedelta(days=60))

    jobs = await engine.poller.tick()

    assert {j.lead_id for j in jobs} == {recent.id, fresh.id}


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(engine):
    engine.poller._running = True
    assert await engine.poller.tick() is None
