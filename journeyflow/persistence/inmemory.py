"""In-memory implementation of the journey repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, TypeVar

from pydantic import BaseModel

from ..contracts import (
    OPEN_STEP_STATUSES,
    Journey,
    JourneyEdge,
    JourneyNode,
    JourneyRun,
    JourneyRunStep,
    JourneyStatus,
    JourneyTrigger,
    RunStatus,
    TriggerType,
    utcnow,
)
from ..graph import JourneyGraph
from .repository import JourneyRepository

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(record: ModelT) -> ModelT:
    return record.model_copy(deep=True)


class InMemoryJourneyRepository(JourneyRepository):
    """Store journeys and run state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied in and out so
    callers never share state with the store.
    """

    def __init__(self) -> None:
        self._journeys: Dict[str, Journey] = {}
        self._triggers: Dict[str, JourneyTrigger] = {}
        self._nodes: Dict[str, JourneyNode] = {}
        self._edges: Dict[str, JourneyEdge] = {}
        self._runs: Dict[str, JourneyRun] = {}
        self._steps: Dict[str, JourneyRunStep] = {}

    # ------------------------------------------------------------------
    async def create_journey(self, journey: Journey) -> Journey:
        self._journeys[journey.id] = _copy(journey)
        return journey

    async def get_journey(self, journey_id: str) -> Journey | None:
        journey = self._journeys.get(journey_id)
        return _copy(journey) if journey else None

    async def list_journeys(self, organization_id: str) -> list[Journey]:
        return [
            _copy(j) for j in self._journeys.values() if j.organization_id == organization_id
        ]

    async def set_journey_status(
        self, journey_id: str, status: JourneyStatus
    ) -> Journey | None:
        journey = self._journeys.get(journey_id)
        if not journey:
            return None
        journey.status = status
        journey.updated_at = utcnow()
        return _copy(journey)

    async def save_trigger(self, trigger: JourneyTrigger) -> JourneyTrigger:
        self._triggers[trigger.id] = _copy(trigger)
        return trigger

    async def get_trigger(self, trigger_id: str) -> JourneyTrigger | None:
        trigger = self._triggers.get(trigger_id)
        return _copy(trigger) if trigger else None

    async def delete_trigger(self, trigger_id: str) -> None:
        self._triggers.pop(trigger_id, None)

    async def save_node(self, node: JourneyNode) -> JourneyNode:
        self._nodes[node.id] = _copy(node)
        return node

    async def get_node(self, node_id: str) -> JourneyNode | None:
        node = self._nodes.get(node_id)
        return _copy(node) if node else None

    async def delete_node(self, node_id: str) -> None:
        self._nodes.pop(node_id, None)
        for edge_id, edge in list(self._edges.items()):
            if node_id in (edge.from_node_id, edge.to_node_id):
                del self._edges[edge_id]

    async def save_edge(self, edge: JourneyEdge) -> JourneyEdge:
        self._edges[edge.id] = _copy(edge)
        return edge

    async def delete_edge(self, edge_id: str) -> None:
        self._edges.pop(edge_id, None)

    async def load_graph(self, journey_id: str) -> JourneyGraph | None:
        journey = self._journeys.get(journey_id)
        if not journey:
            return None
        return JourneyGraph(
            journey=_copy(journey),
            nodes=[_copy(n) for n in self._nodes.values() if n.journey_id == journey_id],
            edges=[_copy(e) for e in self._edges.values() if e.journey_id == journey_id],
        )

    async def outgoing_edges(self, journey_id: str, node_id: str) -> list[JourneyEdge]:
        return [
            _copy(e)
            for e in self._edges.values()
            if e.journey_id == journey_id and e.from_node_id == node_id
        ]

    # ------------------------------------------------------------------
    def _journey_active(self, journey_id: str) -> bool:
        journey = self._journeys.get(journey_id)
        return journey is not None and journey.status == "active"

    async def find_triggers(
        self,
        organization_id: str,
        trigger_type: TriggerType | None = None,
        trigger_id: str | None = None,
    ) -> list[JourneyTrigger]:
        if trigger_id:
            trigger = self._triggers.get(trigger_id)
            if trigger and trigger.enabled and trigger.organization_id == organization_id:
                return [_copy(trigger)]
            return []
        return [
            _copy(t)
            for t in self._triggers.values()
            if t.organization_id == organization_id
            and t.type == trigger_type
            and t.enabled
            and self._journey_active(t.journey_id)
        ]

    async def list_time_triggers(self) -> list[JourneyTrigger]:
        return [
            _copy(t)
            for t in self._triggers.values()
            if t.type == "time" and t.enabled and self._journey_active(t.journey_id)
        ]

    async def mark_trigger_fired(self, trigger_id: str, fired_at: datetime) -> None:
        trigger = self._triggers.get(trigger_id)
        if trigger:
            trigger.last_fired_at = fired_at

    # ------------------------------------------------------------------
    async def create_run(self, run: JourneyRun) -> JourneyRun:
        self._runs[run.id] = _copy(run)
        return run

    async def get_run(self, run_id: str) -> JourneyRun | None:
        run = self._runs.get(run_id)
        return _copy(run) if run else None

    async def finish_run(
        self, run_id: str, status: RunStatus, completed_at: datetime
    ) -> bool:
        run = self._runs.get(run_id)
        if not run or run.status != "running":
            return False
        run.status = status
        run.completed_at = completed_at
        return True

    async def list_runs(
        self, journey_id: str, limit: int = 50, offset: int = 0
    ) -> list[JourneyRun]:
        runs = sorted(
            (r for r in self._runs.values() if r.journey_id == journey_id),
            key=lambda r: r.started_at,
            reverse=True,
        )
        return [_copy(r) for r in runs[offset : offset + limit]]

    # ------------------------------------------------------------------
    async def create_steps(self, steps: list[JourneyRunStep]) -> list[JourneyRunStep]:
        for step in steps:
            self._steps[step.id] = _copy(step)
        return steps

    async def get_step(self, step_id: str) -> JourneyRunStep | None:
        step = self._steps.get(step_id)
        return _copy(step) if step else None

    async def claim_step(
        self, step_id: str, started_at: datetime
    ) -> JourneyRunStep | None:
        # check and write happen without yielding to the event loop
        step = self._steps.get(step_id)
        if not step or step.status != "pending":
            return None
        step.status = "running"
        step.attempt += 1
        step.started_at = started_at
        return _copy(step)

    async def complete_step(
        self,
        step_id: str,
        completed_at: datetime,
        output: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> None:
        step = self._steps.get(step_id)
        if not step:
            return
        step.status = "completed"
        step.completed_at = completed_at
        step.output = output
        step.message_id = message_id

    async def fail_step(
        self,
        step_id: str,
        completed_at: datetime,
        error_message: str,
        output: dict[str, Any] | None = None,
    ) -> None:
        step = self._steps.get(step_id)
        if not step:
            return
        step.status = "failed"
        step.completed_at = completed_at
        step.error_message = error_message
        if output is not None:
            step.output = output

    async def count_open_steps(self, run_id: str) -> int:
        return sum(
            1
            for s in self._steps.values()
            if s.run_id == run_id and s.status in OPEN_STEP_STATUSES
        )

    async def list_steps(self, run_id: str) -> list[JourneyRunStep]:
        return [_copy(s) for s in self._steps.values() if s.run_id == run_id]
