from datetime import datetime, timedelta, timezone

import pytest

import journeyflow.persistence as persistence
from journeyflow.contracts import (
    Journey,
    JourneyEdge,
    JourneyNode,
    JourneyRun,
    JourneyRunStep,
    JourneyTrigger,
    TriggerSnapshot,
)
from journeyflow.persistence import (
    InMemoryJourneyRepository,
    PostgresJourneyRepository,
    SQLiteJourneyRepository,
    get_repository,
    repository_from_url,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteJourneyRepository(tmp_path / "journeys.db")
    return InMemoryJourneyRepository()


async def _journey(repo, status="active", organization_id="org-1") -> Journey:
    journey = Journey(organization_id=organization_id, name="j", status=status, created_at=T0)
    await repo.create_journey(journey)
    return journey


async def _run(repo, journey, started_at=T0) -> JourneyRun:
    run = JourneyRun(
        organization_id=journey.organization_id,
        journey_id=journey.id,
        lead_id="lead-1",
        trigger_type="inbound_message",
        trigger_payload=TriggerSnapshot(text="hi", tags=["a"]),
        started_at=started_at,
    )
    await repo.create_run(run)
    return run


@pytest.mark.asyncio
async def test_journey_graph_crud(repo):
    journey = await _journey(repo, status="draft")
    a = JourneyNode(
        organization_id="org-1",
        journey_id=journey.id,
        type="send_message",
        config={"text": "Hi"},
        position={"x": 1, "y": 2},
    )
    b = JourneyNode(organization_id="org-1", journey_id=journey.id, type="delay")
    for node in (a, b):
        await repo.save_node(node)
    edge = JourneyEdge(
        organization_id="org-1",
        journey_id=journey.id,
        from_node_id=a.id,
        to_node_id=b.id,
        label="true",
    )
    await repo.save_edge(edge)

    graph = await repo.load_graph(journey.id)
    assert [n.id for n in graph.nodes] == [a.id, b.id]
    assert graph.nodes[0].config == {"text": "Hi"}
    assert graph.nodes[0].position == {"x": 1, "y": 2}
    assert [e.id for e in graph.edges] == [edge.id]
    assert [e.id for e in await repo.outgoing_edges(journey.id, a.id)] == [edge.id]
    assert await repo.outgoing_edges(journey.id, b.id) == []

    a.config = {"text": "Hello"}
    await repo.save_node(a)
    assert (await repo.get_node(a.id)).config == {"text": "Hello"}

    await repo.delete_node(b.id)
    graph = await repo.load_graph(journey.id)
    assert [n.id for n in graph.nodes] == [a.id]
    assert graph.edges == []

    updated = await repo.set_journey_status(journey.id, "active")
    assert updated.status == "active"
    assert [j.id for j in await repo.list_journeys("org-1")] == [journey.id]
    assert await repo.list_journeys("org-2") == []
    assert await repo.load_graph("missing") is None


@pytest.mark.asyncio
async def test_trigger_queries(repo):
    active = await _journey(repo)
    paused = await _journey(repo, status="paused")
    inbound = JourneyTrigger(
        organization_id="org-1", journey_id=active.id, type="inbound_message", config={"tagsAny": ["x"]}
    )
    disabled = JourneyTrigger(
        organization_id="org-1", journey_id=active.id, type="inbound_message", enabled=False
    )
    on_paused = JourneyTrigger(organization_id="org-1", journey_id=paused.id, type="inbound_message")
    timed = JourneyTrigger(organization_id="org-1", journey_id=active.id, type="time")
    for trigger in (inbound, disabled, on_paused, timed):
        await repo.save_trigger(trigger)

    found = await repo.find_triggers("org-1", trigger_type="inbound_message")
    assert [t.id for t in found] == [inbound.id]
    assert found[0].config == {"tagsAny": ["x"]}
    assert await repo.find_triggers("org-2", trigger_type="inbound_message") == []
    assert [t.id for t in await repo.find_triggers("org-1", trigger_id=timed.id)] == [timed.id]
    assert await repo.find_triggers("org-1", trigger_id=disabled.id) == []
    assert await repo.find_triggers("org-2", trigger_id=timed.id) == []

    assert [t.id for t in await repo.list_time_triggers()] == [timed.id]
    await repo.mark_trigger_fired(timed.id, T0)
    assert (await repo.get_trigger(timed.id)).last_fired_at == T0

    await repo.delete_trigger(timed.id)
    assert await repo.get_trigger(timed.id) is None


@pytest.mark.asyncio
async def test_step_claim_is_compare_and_set(repo):
    journey = await _journey(repo)
    run = await _run(repo, journey)
    step = JourneyRunStep(organization_id="org-1", run_id=run.id, node_id="n-1", created_at=T0)
    await repo.create_steps([step])

    claimed = await repo.claim_step(step.id, T0)
    assert claimed.status == "running"
    assert claimed.attempt == 1
    assert claimed.started_at == T0
    assert await repo.claim_step(step.id, T0) is None
    assert await repo.claim_step("missing", T0) is None


@pytest.mark.asyncio
async def test_step_outcomes_and_open_count(repo):
    journey = await _journey(repo)
    run = await _run(repo, journey)
    later = T0 + timedelta(minutes=5)
    done = JourneyRunStep(organization_id="org-1", run_id=run.id, node_id="a", created_at=T0)
    broken = JourneyRunStep(organization_id="org-1", run_id=run.id, node_id="b", created_at=T0)
    waiting = JourneyRunStep(
        organization_id="org-1", run_id=run.id, node_id="c", created_at=T0, scheduled_for=later
    )
    await repo.create_steps([done, broken, waiting])
    assert await repo.count_open_steps(run.id) == 3

    await repo.claim_step(done.id, T0)
    await repo.complete_step(done.id, T0, output={"messageId": "m-1"}, message_id="m-1")
    await repo.claim_step(broken.id, T0)
    await repo.fail_step(broken.id, T0, "Bad Gateway", output={"status": 502})

    assert await repo.count_open_steps(run.id) == 1
    steps = {s.node_id: s for s in await repo.list_steps(run.id)}
    assert steps["a"].status == "completed"
    assert steps["a"].output == {"messageId": "m-1"}
    assert steps["a"].message_id == "m-1"
    assert steps["b"].status == "failed"
    assert steps["b"].error_message == "Bad Gateway"
    assert steps["b"].output == {"status": 502}
    assert steps["c"].scheduled_for == later


@pytest.mark.asyncio
async def test_finish_run_only_from_running(repo):
    journey = await _journey(repo)
    run = await _run(repo, journey)

    loaded = await repo.get_run(run.id)
    assert loaded.trigger_payload.text == "hi"
    assert loaded.trigger_payload.tags == ["a"]

    assert await repo.finish_run(run.id, "completed", T0) is True
    assert await repo.finish_run(run.id, "failed", T0) is False
    finished = await repo.get_run(run.id)
    assert finished.status == "completed"
    assert finished.completed_at == T0


@pytest.mark.asyncio
async def test_list_runs_newest_first_with_paging(repo):
    journey = await _journey(repo)
    runs = [await _run(repo, journey, started_at=T0 + timedelta(minutes=i)) for i in range(3)]

    listed = await repo.list_runs(journey.id)
    assert [r.id for r in listed] == [r.id for r in reversed(runs)]
    page = await repo.list_runs(journey.id, limit=1, offset=1)
    assert [r.id for r in page] == [runs[1].id]


def test_get_repository_selects_backend(tmp_path, monkeypatch):
    monkeypatch.setattr(persistence, "_repository_instance", None)
    monkeypatch.delenv("JOURNEYFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    repo = get_repository(f"sqlite://{tmp_path / 'repo.db'}")
    assert isinstance(repo, SQLiteJourneyRepository)

    with pytest.raises(ValueError):
        get_repository("mysql://nope")


def test_repository_from_url():
    assert isinstance(repository_from_url(None), InMemoryJourneyRepository)
    assert isinstance(repository_from_url("postgresql://db/x"), PostgresJourneyRepository)
    with pytest.raises(ValueError):
        repository_from_url("not-a-url")
