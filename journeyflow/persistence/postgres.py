"""PostgreSQL implementation of the journey repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

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
    utcnow,
)
from ..graph import JourneyGraph
from .repository import JourneyRepository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS journeys (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_triggers (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        type TEXT NOT NULL,
        enabled BOOLEAN NOT NULL,
        config JSONB,
        last_fired_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_nodes (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        type TEXT NOT NULL,
        label TEXT,
        config JSONB,
        position JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_edges (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        from_node_id TEXT NOT NULL,
        to_node_id TEXT NOT NULL,
        label TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_runs (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        lead_id TEXT,
        contact_id TEXT,
        channel_id TEXT,
        trigger_type TEXT NOT NULL,
        trigger_payload JSONB NOT NULL,
        status TEXT NOT NULL,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_run_steps (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 0,
        scheduled_for TIMESTAMPTZ,
        output JSONB,
        error_message TEXT,
        message_id TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_journey_run_steps_run ON journey_run_steps (run_id, status)",
    "CREATE INDEX IF NOT EXISTS ix_journey_runs_journey ON journey_runs (journey_id, started_at)",
)

_TRIGGER_COLUMNS = "id, organization_id, journey_id, type, enabled, config, last_fired_at"
_NODE_COLUMNS = "id, organization_id, journey_id, type, label, config, position"
_EDGE_COLUMNS = "id, organization_id, journey_id, from_node_id, to_node_id, label"
_RUN_COLUMNS = (
    "id, organization_id, journey_id, lead_id, contact_id, channel_id, "
    "trigger_type, trigger_payload, status, started_at, completed_at"
)
_STEP_COLUMNS = (
    "id, organization_id, run_id, node_id, status, attempt, scheduled_for, "
    "output, error_message, message_id, created_at, started_at, completed_at"
)


class PostgresJourneyRepository(JourneyRepository):
    """Persist journeys and run state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    async def _execute(self, query: str, *params: Any) -> str:
        conn = await self._connect()
        try:
            return await conn.execute(query, *params)
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def create_journey(self, journey: Journey) -> Journey:
        await self._execute(
            "INSERT INTO journeys (id, organization_id, name, status, created_at, updated_at) VALUES ($1, $2, $3, $4, $5, $6)",
            journey.id,
            journey.organization_id,
            journey.name,
            journey.status,
            journey.created_at,
            journey.updated_at,
        )
        return journey

    async def get_journey(self, journey_id: str) -> Journey | None:
        row = await self._fetchrow(
            "SELECT id, organization_id, name, status, created_at, updated_at FROM journeys WHERE id = $1",
            journey_id,
        )
        return Journey.model_validate(dict(row)) if row else None

    async def list_journeys(self, organization_id: str) -> list[Journey]:
        rows = await self._fetch(
            "SELECT id, organization_id, name, status, created_at, updated_at FROM journeys WHERE organization_id = $1 ORDER BY created_at",
            organization_id,
        )
        return [Journey.model_validate(dict(r)) for r in rows]

    async def set_journey_status(
        self, journey_id: str, status: JourneyStatus
    ) -> Journey | None:
        await self._execute(
            "UPDATE journeys SET status = $1, updated_at = $2 WHERE id = $3",
            status,
            utcnow(),
            journey_id,
        )
        return await self.get_journey(journey_id)

    async def save_trigger(self, trigger: JourneyTrigger) -> JourneyTrigger:
        await self._execute(
            f"""
            INSERT INTO journey_triggers ({_TRIGGER_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                journey_id = EXCLUDED.journey_id, type = EXCLUDED.type, enabled = EXCLUDED.enabled,
                config = EXCLUDED.config, last_fired_at = EXCLUDED.last_fired_at
            """,
            trigger.id,
            trigger.organization_id,
            trigger.journey_id,
            trigger.type,
            trigger.enabled,
            trigger.config,
            trigger.last_fired_at,
        )
        return trigger

    async def get_trigger(self, trigger_id: str) -> JourneyTrigger | None:
        row = await self._fetchrow(
            f"SELECT {_TRIGGER_COLUMNS} FROM journey_triggers WHERE id = $1", trigger_id
        )
        return JourneyTrigger.model_validate(dict(row)) if row else None

    async def delete_trigger(self, trigger_id: str) -> None:
        await self._execute("DELETE FROM journey_triggers WHERE id = $1", trigger_id)

    async def save_node(self, node: JourneyNode) -> JourneyNode:
        await self._execute(
            f"""
            INSERT INTO journey_nodes ({_NODE_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                type = EXCLUDED.type, label = EXCLUDED.label,
                config = EXCLUDED.config, position = EXCLUDED.position
            """,
            node.id,
            node.organization_id,
            node.journey_id,
            node.type,
            node.label,
            node.config,
            node.position,
        )
        return node

    async def get_node(self, node_id: str) -> JourneyNode | None:
        row = await self._fetchrow(
            f"SELECT {_NODE_COLUMNS} FROM journey_nodes WHERE id = $1", node_id
        )
        return JourneyNode.model_validate(dict(row)) if row else None

    async def delete_node(self, node_id: str) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM journey_edges WHERE from_node_id = $1 OR to_node_id = $1",
                    node_id,
                )
                await conn.execute("DELETE FROM journey_nodes WHERE id = $1", node_id)
        finally:
            await conn.close()

    async def save_edge(self, edge: JourneyEdge) -> JourneyEdge:
        await self._execute(
            f"""
            INSERT INTO journey_edges ({_EDGE_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (id) DO UPDATE SET
                from_node_id = EXCLUDED.from_node_id, to_node_id = EXCLUDED.to_node_id,
                label = EXCLUDED.label
            """,
            edge.id,
            edge.organization_id,
            edge.journey_id,
            edge.from_node_id,
            edge.to_node_id,
            edge.label,
        )
        return edge

    async def delete_edge(self, edge_id: str) -> None:
        await self._execute("DELETE FROM journey_edges WHERE id = $1", edge_id)

    async def load_graph(self, journey_id: str) -> JourneyGraph | None:
        journey = await self.get_journey(journey_id)
        if not journey:
            return None
        conn = await self._connect()
        try:
            node_rows = await conn.fetch(
                f"SELECT {_NODE_COLUMNS} FROM journey_nodes WHERE journey_id = $1 ORDER BY seq",
                journey_id,
            )
            edge_rows = await conn.fetch(
                f"SELECT {_EDGE_COLUMNS} FROM journey_edges WHERE journey_id = $1 ORDER BY seq",
                journey_id,
            )
        finally:
            await conn.close()
        return JourneyGraph(
            journey=journey,
            nodes=[JourneyNode.model_validate(dict(r)) for r in node_rows],
            edges=[JourneyEdge.model_validate(dict(r)) for r in edge_rows],
        )

    async def outgoing_edges(self, journey_id: str, node_id: str) -> list[JourneyEdge]:
        rows = await self._fetch(
            f"SELECT {_EDGE_COLUMNS} FROM journey_edges WHERE journey_id = $1 AND from_node_id = $2 ORDER BY seq",
            journey_id,
            node_id,
        )
        return [JourneyEdge.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    async def find_triggers(
        self,
        organization_id: str,
        trigger_type: TriggerType | None = None,
        trigger_id: str | None = None,
    ) -> list[JourneyTrigger]:
        if trigger_id:
            rows = await self._fetch(
                f"SELECT {_TRIGGER_COLUMNS} FROM journey_triggers WHERE id = $1 AND organization_id = $2 AND enabled",
                trigger_id,
                organization_id,
            )
        else:
            rows = await self._fetch(
                """
                SELECT t.id, t.organization_id, t.journey_id, t.type, t.enabled, t.config, t.last_fired_at
                FROM journey_triggers t JOIN journeys j ON j.id = t.journey_id
                WHERE t.organization_id = $1 AND t.type = $2 AND t.enabled AND j.status = 'active'
                ORDER BY t.seq
                """,
                organization_id,
                trigger_type,
            )
        return [JourneyTrigger.model_validate(dict(r)) for r in rows]

    async def list_time_triggers(self) -> list[JourneyTrigger]:
        rows = await self._fetch(
            """
            SELECT t.id, t.organization_id, t.journey_id, t.type, t.enabled, t.config, t.last_fired_at
            FROM journey_triggers t JOIN journeys j ON j.id = t.journey_id
            WHERE t.type = 'time' AND t.enabled AND j.status = 'active'
            ORDER BY t.seq
            """
        )
        return [JourneyTrigger.model_validate(dict(r)) for r in rows]

    async def mark_trigger_fired(self, trigger_id: str, fired_at: datetime) -> None:
        await self._execute(
            "UPDATE journey_triggers SET last_fired_at = $1 WHERE id = $2",
            fired_at,
            trigger_id,
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: JourneyRun) -> JourneyRun:
        await self._execute(
            f"INSERT INTO journey_runs ({_RUN_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
            run.id,
            run.organization_id,
            run.journey_id,
            run.lead_id,
            run.contact_id,
            run.channel_id,
            run.trigger_type,
            run.trigger_payload.to_payload(),
            run.status,
            run.started_at,
            run.completed_at,
        )
        return run

    async def get_run(self, run_id: str) -> JourneyRun | None:
        row = await self._fetchrow(
            f"SELECT {_RUN_COLUMNS} FROM journey_runs WHERE id = $1", run_id
        )
        return JourneyRun.model_validate(dict(row)) if row else None

    async def finish_run(
        self, run_id: str, status: RunStatus, completed_at: datetime
    ) -> bool:
        result = await self._execute(
            "UPDATE journey_runs SET status = $1, completed_at = $2 WHERE id = $3 AND status = 'running'",
            status,
            completed_at,
            run_id,
        )
        return result == "UPDATE 1"

    async def list_runs(
        self, journey_id: str, limit: int = 50, offset: int = 0
    ) -> list[JourneyRun]:
        rows = await self._fetch(
            f"SELECT {_RUN_COLUMNS} FROM journey_runs WHERE journey_id = $1 ORDER BY started_at DESC, seq DESC LIMIT $2 OFFSET $3",
            journey_id,
            limit,
            offset,
        )
        return [JourneyRun.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    async def create_steps(self, steps: list[JourneyRunStep]) -> list[JourneyRunStep]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.executemany(
                    f"INSERT INTO journey_run_steps ({_STEP_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)",
                    [
                        (
                            s.id,
                            s.organization_id,
                            s.run_id,
                            s.node_id,
                            s.status,
                            s.attempt,
                            s.scheduled_for,
                            s.output,
                            s.error_message,
                            s.message_id,
                            s.created_at,
                            s.started_at,
                            s.completed_at,
                        )
                        for s in steps
                    ],
                )
        finally:
            await conn.close()
        return steps

    async def get_step(self, step_id: str) -> JourneyRunStep | None:
        row = await self._fetchrow(
            f"SELECT {_STEP_COLUMNS} FROM journey_run_steps WHERE id = $1", step_id
        )
        return JourneyRunStep.model_validate(dict(row)) if row else None

    async def claim_step(
        self, step_id: str, started_at: datetime
    ) -> JourneyRunStep | None:
        row = await self._fetchrow(
            f"""
            UPDATE journey_run_steps
            SET status = 'running', attempt = attempt + 1, started_at = $1
            WHERE id = $2 AND status = 'pending'
            RETURNING {_STEP_COLUMNS}
            """,
            started_at,
            step_id,
        )
        return JourneyRunStep.model_validate(dict(row)) if row else None

    async def complete_step(
        self,
        step_id: str,
        completed_at: datetime,
        output: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> None:
        await self._execute(
            """
            UPDATE journey_run_steps
            SET status = 'completed', completed_at = $1, output = $2, message_id = $3
            WHERE id = $4
            """,
            completed_at,
            output,
            message_id,
            step_id,
        )

    async def fail_step(
        self,
        step_id: str,
        completed_at: datetime,
        error_message: str,
        output: dict[str, Any] | None = None,
    ) -> None:
        await self._execute(
            """
            UPDATE journey_run_steps
            SET status = 'failed', completed_at = $1, error_message = $2, output = COALESCE($3, output)
            WHERE id = $4
            """,
            completed_at,
            error_message,
            output,
            step_id,
        )

    async def count_open_steps(self, run_id: str) -> int:
        row = await self._fetchrow(
            "SELECT COUNT(*) AS open_steps FROM journey_run_steps WHERE run_id = $1 AND status IN ('pending', 'running')",
            run_id,
        )
        return int(row["open_steps"]) if row else 0

    async def list_steps(self, run_id: str) -> list[JourneyRunStep]:
        rows = await self._fetch(
            f"SELECT {_STEP_COLUMNS} FROM journey_run_steps WHERE run_id = $1 ORDER BY created_at, seq",
            run_id,
        )
        return [JourneyRunStep.model_validate(dict(r)) for r in rows]
