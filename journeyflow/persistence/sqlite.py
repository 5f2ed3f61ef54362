"""SQLite implementation of the journey repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

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
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_triggers (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        type TEXT NOT NULL,
        enabled INTEGER NOT NULL,
        config TEXT,
        last_fired_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_nodes (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        type TEXT NOT NULL,
        label TEXT,
        config TEXT,
        position TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_edges (
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
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        journey_id TEXT NOT NULL,
        lead_id TEXT,
        contact_id TEXT,
        channel_id TEXT,
        trigger_type TEXT NOT NULL,
        trigger_payload TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journey_run_steps (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        run_id TEXT NOT NULL,
        node_id TEXT NOT NULL,
        status TEXT NOT NULL,
        attempt INTEGER NOT NULL DEFAULT 0,
        scheduled_for TEXT,
        output TEXT,
        error_message TEXT,
        message_id TEXT,
        created_at TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT
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


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _decode(row: sqlite3.Row, json_fields: Iterable[str] = ()) -> dict[str, Any]:
    data = dict(row)
    for field in json_fields:
        if data.get(field) is not None:
            data[field] = json.loads(data[field])
    return data


class SQLiteJourneyRepository(JourneyRepository):
    """Persist journeys and run state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _executemany(self, query: str, rows: list[tuple]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.executemany(query, rows)
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _one(self, query: str, *params: Any) -> sqlite3.Row | None:
        return await asyncio.to_thread(self._fetchone, query, *params)

    async def _all(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._fetchall, query, *params)

    async def _write(self, query: str, *params: Any) -> int:
        return await asyncio.to_thread(self._execute, query, *params)

    # ------------------------------------------------------------------
    # Authoring
    async def create_journey(self, journey: Journey) -> Journey:
        await self._write(
            "INSERT INTO journeys (id, organization_id, name, status, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            journey.id,
            journey.organization_id,
            journey.name,
            journey.status,
            _iso(journey.created_at),
            _iso(journey.updated_at),
        )
        return journey

    async def get_journey(self, journey_id: str) -> Journey | None:
        row = await self._one("SELECT * FROM journeys WHERE id = ?", journey_id)
        return Journey.model_validate(dict(row)) if row else None

    async def list_journeys(self, organization_id: str) -> list[Journey]:
        rows = await self._all(
            "SELECT * FROM journeys WHERE organization_id = ? ORDER BY created_at",
            organization_id,
        )
        return [Journey.model_validate(dict(r)) for r in rows]

    async def set_journey_status(
        self, journey_id: str, status: JourneyStatus
    ) -> Journey | None:
        await self._write(
            "UPDATE journeys SET status = ?, updated_at = ? WHERE id = ?",
            status,
            _iso(utcnow()),
            journey_id,
        )
        return await self.get_journey(journey_id)

    async def save_trigger(self, trigger: JourneyTrigger) -> JourneyTrigger:
        await self._write(
            f"INSERT OR REPLACE INTO journey_triggers ({_TRIGGER_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            trigger.id,
            trigger.organization_id,
            trigger.journey_id,
            trigger.type,
            int(trigger.enabled),
            _dumps(trigger.config),
            _iso(trigger.last_fired_at),
        )
        return trigger

    async def get_trigger(self, trigger_id: str) -> JourneyTrigger | None:
        row = await self._one(
            f"SELECT {_TRIGGER_COLUMNS} FROM journey_triggers WHERE id = ?", trigger_id
        )
        return JourneyTrigger.model_validate(_decode(row, ["config"])) if row else None

    async def delete_trigger(self, trigger_id: str) -> None:
        await self._write("DELETE FROM journey_triggers WHERE id = ?", trigger_id)

    async def save_node(self, node: JourneyNode) -> JourneyNode:
        await self._write(
            f"INSERT OR REPLACE INTO journey_nodes ({_NODE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
            node.id,
            node.organization_id,
            node.journey_id,
            node.type,
            node.label,
            _dumps(node.config),
            _dumps(node.position),
        )
        return node

    async def get_node(self, node_id: str) -> JourneyNode | None:
        row = await self._one(f"SELECT {_NODE_COLUMNS} FROM journey_nodes WHERE id = ?", node_id)
        return JourneyNode.model_validate(_decode(row, ["config", "position"])) if row else None

    async def delete_node(self, node_id: str) -> None:
        await self._write(
            "DELETE FROM journey_edges WHERE from_node_id = ? OR to_node_id = ?",
            node_id,
            node_id,
        )
        await self._write("DELETE FROM journey_nodes WHERE id = ?", node_id)

    async def save_edge(self, edge: JourneyEdge) -> JourneyEdge:
        await self._write(
            f"INSERT OR REPLACE INTO journey_edges ({_EDGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            edge.id,
            edge.organization_id,
            edge.journey_id,
            edge.from_node_id,
            edge.to_node_id,
            edge.label,
        )
        return edge

    async def delete_edge(self, edge_id: str) -> None:
        await self._write("DELETE FROM journey_edges WHERE id = ?", edge_id)

    async def load_graph(self, journey_id: str) -> JourneyGraph | None:
        journey = await self.get_journey(journey_id)
        if not journey:
            return None
        node_rows = await self._all(
            f"SELECT {_NODE_COLUMNS} FROM journey_nodes WHERE journey_id = ? ORDER BY rowid",
            journey_id,
        )
        edge_rows = await self._all(
            f"SELECT {_EDGE_COLUMNS} FROM journey_edges WHERE journey_id = ? ORDER BY rowid",
            journey_id,
        )
        return JourneyGraph(
            journey=journey,
            nodes=[JourneyNode.model_validate(_decode(r, ["config", "position"])) for r in node_rows],
            edges=[JourneyEdge.model_validate(dict(r)) for r in edge_rows],
        )

    async def outgoing_edges(self, journey_id: str, node_id: str) -> list[JourneyEdge]:
        rows = await self._all(
            f"SELECT {_EDGE_COLUMNS} FROM journey_edges WHERE journey_id = ? AND from_node_id = ? ORDER BY rowid",
            journey_id,
            node_id,
        )
        return [JourneyEdge.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Triggers
    async def find_triggers(
        self,
        organization_id: str,
        trigger_type: TriggerType | None = None,
        trigger_id: str | None = None,
    ) -> list[JourneyTrigger]:
        if trigger_id:
            rows = await self._all(
                f"SELECT {_TRIGGER_COLUMNS} FROM journey_triggers WHERE id = ? AND organization_id = ? AND enabled = 1",
                trigger_id,
                organization_id,
            )
        else:
            rows = await self._all(
                """
                SELECT t.id, t.organization_id, t.journey_id, t.type, t.enabled, t.config, t.last_fired_at
                FROM journey_triggers t JOIN journeys j ON j.id = t.journey_id
                WHERE t.organization_id = ? AND t.type = ? AND t.enabled = 1 AND j.status = 'active'
                ORDER BY t.rowid
                """,
                organization_id,
                trigger_type,
            )
        return [JourneyTrigger.model_validate(_decode(r, ["config"])) for r in rows]

    async def list_time_triggers(self) -> list[JourneyTrigger]:
        rows = await self._all(
            """
            SELECT t.id, t.organization_id, t.journey_id, t.type, t.enabled, t.config, t.last_fired_at
            FROM journey_triggers t JOIN journeys j ON j.id = t.journey_id
            WHERE t.type = 'time' AND t.enabled = 1 AND j.status = 'active'
            ORDER BY t.rowid
            """
        )
        return [JourneyTrigger.model_validate(_decode(r, ["config"])) for r in rows]

    async def mark_trigger_fired(self, trigger_id: str, fired_at: datetime) -> None:
        await self._write(
            "UPDATE journey_triggers SET last_fired_at = ? WHERE id = ?",
            _iso(fired_at),
            trigger_id,
        )

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: JourneyRun) -> JourneyRun:
        await self._write(
            f"INSERT INTO journey_runs ({_RUN_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            run.id,
            run.organization_id,
            run.journey_id,
            run.lead_id,
            run.contact_id,
            run.channel_id,
            run.trigger_type,
            json.dumps(run.trigger_payload.to_payload()),
            run.status,
            _iso(run.started_at),
            _iso(run.completed_at),
        )
        return run

    async def get_run(self, run_id: str) -> JourneyRun | None:
        row = await self._one(f"SELECT {_RUN_COLUMNS} FROM journey_runs WHERE id = ?", run_id)
        return JourneyRun.model_validate(_decode(row, ["trigger_payload"])) if row else None

    async def finish_run(
        self, run_id: str, status: RunStatus, completed_at: datetime
    ) -> bool:
        updated = await self._write(
            "UPDATE journey_runs SET status = ?, completed_at = ? WHERE id = ? AND status = 'running'",
            status,
            _iso(completed_at),
            run_id,
        )
        return updated == 1

    async def list_runs(
        self, journey_id: str, limit: int = 50, offset: int = 0
    ) -> list[JourneyRun]:
        rows = await self._all(
            f"SELECT {_RUN_COLUMNS} FROM journey_runs WHERE journey_id = ? ORDER BY started_at DESC, rowid DESC LIMIT ? OFFSET ?",
            journey_id,
            limit,
            offset,
        )
        return [JourneyRun.model_validate(_decode(r, ["trigger_payload"])) for r in rows]

    # ------------------------------------------------------------------
    # Steps
    async def create_steps(self, steps: list[JourneyRunStep]) -> list[JourneyRunStep]:
        await asyncio.to_thread(
            self._executemany,
            f"INSERT INTO journey_run_steps ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    s.id,
                    s.organization_id,
                    s.run_id,
                    s.node_id,
                    s.status,
                    s.attempt,
                    _iso(s.scheduled_for),
                    _dumps(s.output),
                    s.error_message,
                    s.message_id,
                    _iso(s.created_at),
                    _iso(s.started_at),
                    _iso(s.completed_at),
                )
                for s in steps
            ],
        )
        return steps

    async def get_step(self, step_id: str) -> JourneyRunStep | None:
        row = await self._one(
            f"SELECT {_STEP_COLUMNS} FROM journey_run_steps WHERE id = ?", step_id
        )
        return JourneyRunStep.model_validate(_decode(row, ["output"])) if row else None

    async def claim_step(
        self, step_id: str, started_at: datetime
    ) -> JourneyRunStep | None:
        claimed = await self._write(
            """
            UPDATE journey_run_steps
            SET status = 'running', attempt = attempt + 1, started_at = ?
            WHERE id = ? AND status = 'pending'
            """,
            _iso(started_at),
            step_id,
        )
        if claimed != 1:
            return None
        return await self.get_step(step_id)

    async def complete_step(
        self,
        step_id: str,
        completed_at: datetime,
        output: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> None:
        await self._write(
            """
            UPDATE journey_run_steps
            SET status = 'completed', completed_at = ?, output = ?, message_id = ?
            WHERE id = ?
            """,
            _iso(completed_at),
            _dumps(output),
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
        await self._write(
            """
            UPDATE journey_run_steps
            SET status = 'failed', completed_at = ?, error_message = ?, output = COALESCE(?, output)
            WHERE id = ?
            """,
            _iso(completed_at),
            error_message,
            _dumps(output),
            step_id,
        )

    async def count_open_steps(self, run_id: str) -> int:
        row = await self._one(
            "SELECT COUNT(*) AS open_steps FROM journey_run_steps WHERE run_id = ? AND status IN ('pending', 'running')",
            run_id,
        )
        return int(row["open_steps"]) if row else 0

    async def list_steps(self, run_id: str) -> list[JourneyRunStep]:
        rows = await self._all(
            f"SELECT {_STEP_COLUMNS} FROM journey_run_steps WHERE run_id = ? ORDER BY created_at, rowid",
            run_id,
        )
        return [JourneyRunStep.model_validate(_decode(r, ["output"])) for r in rows]
