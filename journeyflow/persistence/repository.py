"""Repository abstraction for journey definitions and run state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..contracts import (
    Journey,
    JourneyEdge,
    JourneyNode,
    JourneyRun,
    JourneyRunStep,
    JourneyStatus,
    JourneyTrigger,
    RunStatus,
    TriggerType,
)
from ..graph import JourneyGraph


class JourneyRepository(Protocol):
    """Protocol for journey persistence backends."""

    # -- authoring -----------------------------------------------------
    async def create_journey(self, journey: Journey) -> Journey:
        """Persist a new journey definition."""

    async def get_journey(self, journey_id: str) -> Journey | None:
        """Retrieve a journey by id."""

    async def list_journeys(self, organization_id: str) -> list[Journey]:
        """Return all journeys of a tenant."""

    async def set_journey_status(
        self, journey_id: str, status: JourneyStatus
    ) -> Journey | None:
        """Change a journey's lifecycle status."""

    async def save_trigger(self, trigger: JourneyTrigger) -> JourneyTrigger:
        """Insert or replace a trigger."""

    async def get_trigger(self, trigger_id: str) -> JourneyTrigger | None:
        """Retrieve a trigger by id."""

    async def delete_trigger(self, trigger_id: str) -> None:
        """Remove a trigger."""

    async def save_node(self, node: JourneyNode) -> JourneyNode:
        """Insert or replace a node."""

    async def get_node(self, node_id: str) -> JourneyNode | None:
        """Retrieve a node by id."""

    async def delete_node(self, node_id: str) -> None:
        """Remove a node and every edge touching it."""

    async def save_edge(self, edge: JourneyEdge) -> JourneyEdge:
        """Insert or replace an edge."""

    async def delete_edge(self, edge_id: str) -> None:
        """Remove an edge."""

    async def load_graph(self, journey_id: str) -> JourneyGraph | None:
        """Load a journey with its nodes and edges."""

    async def outgoing_edges(self, journey_id: str, node_id: str) -> list[JourneyEdge]:
        """Return edges leaving ``node_id``."""

    # -- triggers ------------------------------------------------------
    async def find_triggers(
        self,
        organization_id: str,
        trigger_type: TriggerType | None = None,
        trigger_id: str | None = None,
    ) -> list[JourneyTrigger]:
        """Enabled triggers for a tenant.

        With ``trigger_id`` only that trigger is returned. Otherwise every
        trigger of ``trigger_type`` whose journey is active.
        """

    async def list_time_triggers(self) -> list[JourneyTrigger]:
        """Enabled ``time`` triggers of active journeys, across tenants."""

    async def mark_trigger_fired(self, trigger_id: str, fired_at: datetime) -> None:
        """Record the poll time a time trigger last fired at."""

    # -- runs ----------------------------------------------------------
    async def create_run(self, run: JourneyRun) -> JourneyRun:
        """Persist a new run."""

    async def get_run(self, run_id: str) -> JourneyRun | None:
        """Retrieve a run by id."""

    async def finish_run(
        self, run_id: str, status: RunStatus, completed_at: datetime
    ) -> bool:
        """Move a ``running`` run to a terminal status.

        Returns ``False`` when the run was already terminal.
        """

    async def list_runs(
        self, journey_id: str, limit: int = 50, offset: int = 0
    ) -> list[JourneyRun]:
        """Runs of a journey, newest first."""

    # -- steps ---------------------------------------------------------
    async def create_steps(self, steps: list[JourneyRunStep]) -> list[JourneyRunStep]:
        """Persist new pending steps."""

    async def get_step(self, step_id: str) -> JourneyRunStep | None:
        """Retrieve a step by id."""

    async def claim_step(
        self, step_id: str, started_at: datetime
    ) -> JourneyRunStep | None:
        """Atomically move a ``pending`` step to ``running``.

        Returns the claimed step, or ``None`` when another delivery won.
        """

    async def complete_step(
        self,
        step_id: str,
        completed_at: datetime,
        output: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> None:
        """Mark a step completed."""

    async def fail_step(
        self,
        step_id: str,
        completed_at: datetime,
        error_message: str,
        output: dict[str, Any] | None = None,
    ) -> None:
        """Mark a step failed."""

    async def count_open_steps(self, run_id: str) -> int:
        """Number of ``pending`` or ``running`` steps of a run."""

    async def list_steps(self, run_id: str) -> list[JourneyRunStep]:
        """Steps of a run in creation order."""
