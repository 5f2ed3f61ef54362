"""Trigger fan-out and run creation."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from .config import JobConfig
from .constants import JOURNEY_RUNS_QUEUE, STEP_JOB_NAME, TRIGGER_JOB_NAME
from .contracts import (
    Clock,
    JobData,
    JobEnvelope,
    JourneyRun,
    JourneyRunStep,
    JourneyTrigger,
    StepJob,
    TriggerJob,
    TriggerSnapshot,
    utcnow,
)
from .db import CrmStore
from .graph import JourneyGraph
from .matching import MatchContext, matches
from .persistence import JourneyRepository
from .transports import BaseTransport

logger = logging.getLogger(__name__)


def build_envelope(name: str, data: JobData, jobs: JobConfig) -> JobEnvelope:
    return JobEnvelope(
        name=name,
        data=data,
        max_attempts=jobs.max_attempts,
        backoff_ms=jobs.backoff_ms,
    )


async def schedule_steps(
    repository: JourneyRepository,
    transport: BaseTransport,
    jobs: JobConfig,
    run: JourneyRun,
    node_ids: Sequence[str],
    now: datetime,
    delay_ms: int = 0,
) -> List[JourneyRunStep]:
    """Create pending steps for ``node_ids`` and enqueue one job per step.

    Steps are persisted before any job is published so a consumer never sees
    a job for a step that does not exist yet.
    """

    if not node_ids:
        return []

    scheduled_for = now + timedelta(milliseconds=delay_ms) if delay_ms > 0 else None
    steps = [
        JourneyRunStep(
            organization_id=run.organization_id,
            run_id=run.id,
            node_id=node_id,
            scheduled_for=scheduled_for,
            created_at=now,
        )
        for node_id in node_ids
    ]
    await repository.create_steps(steps)

    for step in steps:
        envelope = build_envelope(STEP_JOB_NAME, StepJob(run_step_id=step.id), jobs)
        await transport.publish(JOURNEY_RUNS_QUEUE, envelope, delay_ms=delay_ms)
    return steps


class LaunchContext(BaseModel):
    """Subject and event data a run is started with."""

    organization_id: str
    tags: List[str] = Field(default_factory=list)
    stage: Optional[str] = None
    text: Optional[str] = None
    lead_id: Optional[str] = None
    contact_id: Optional[str] = None
    channel_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


class RunLauncher:
    """Match trigger jobs against journey triggers and start runs."""

    def __init__(
        self,
        repository: JourneyRepository,
        crm: CrmStore,
        transport: BaseTransport,
        jobs: JobConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._crm = crm
        self._transport = transport
        self._jobs = jobs or JobConfig()
        self._clock = clock

    async def emit_trigger(self, job: TriggerJob) -> None:
        """Enqueue a business event for trigger matching."""
        await self._transport.publish(
            JOURNEY_RUNS_QUEUE, build_envelope(TRIGGER_JOB_NAME, job, self._jobs)
        )

    async def handle_trigger(self, job: TriggerJob) -> List[JourneyRun]:
        """Start a run for every active journey whose trigger matches ``job``."""

        lead = await self._crm.find_lead(job.lead_id) if job.lead_id else None
        tags = job.tags
        if tags is None:
            tags = list(lead.tags or []) if lead else []
        stage = job.stage
        if stage is None and lead:
            stage = lead.stage

        triggers = await self._repository.find_triggers(
            job.organization_id,
            trigger_type=job.trigger_type,
            trigger_id=job.trigger_id,
        )

        context = LaunchContext(
            organization_id=job.organization_id,
            tags=tags,
            stage=stage,
            text=job.text,
            lead_id=job.lead_id or (lead.id if lead else None),
            contact_id=job.contact_id or (lead.contact_id if lead else None),
            channel_id=job.channel_id,
            conversation_id=job.conversation_id or (lead.conversation_id if lead else None),
            message_id=job.message_id,
        )
        match_context = MatchContext(tags=tags, stage=stage, text=job.text)

        runs: List[JourneyRun] = []
        for trigger in triggers:
            try:
                if not matches(trigger.config, match_context):
                    continue
                graph = await self._repository.load_graph(trigger.journey_id)
                if graph is None or graph.journey.status != "active":
                    continue
                run = await self.launch(trigger, graph, context)
            except Exception:
                logger.exception(
                    f"Failed to launch journey {trigger.journey_id} for trigger {trigger.id}"
                )
                continue
            if run is not None:
                runs.append(run)
        return runs

    async def launch(
        self, trigger: JourneyTrigger, graph: JourneyGraph, context: LaunchContext
    ) -> Optional[JourneyRun]:
        """Create a run of ``graph`` and schedule its start nodes."""

        start_nodes = graph.start_nodes()
        if not start_nodes:
            logger.warning(
                f"Journey {graph.journey.id} has no start node; trigger {trigger.id} skipped"
            )
            return None

        now = self._clock()
        run = JourneyRun(
            organization_id=context.organization_id,
            journey_id=graph.journey.id,
            lead_id=context.lead_id,
            contact_id=context.contact_id,
            channel_id=context.channel_id,
            trigger_type=trigger.type,
            trigger_payload=TriggerSnapshot(
                conversation_id=context.conversation_id,
                message_id=context.message_id,
                text=context.text,
                tags=context.tags,
                stage=context.stage,
            ),
            status="running",
            started_at=now,
        )
        await self._repository.create_run(run)
        await schedule_steps(
            self._repository,
            self._transport,
            self._jobs,
            run,
            [node.id for node in start_nodes],
            now,
        )
        logger.info(
            f"Started run {run.id} of journey {graph.journey.id} "
            f"({trigger.type}) with {len(start_nodes)} start node(s)"
        )
        return run
