"""Step execution and the journey queue worker."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

import httpx

from .config import JobConfig
from .constants import JOURNEY_RUNS_QUEUE
from .contracts import (
    Clock,
    JobEnvelope,
    JourneyRun,
    JourneyRunStep,
    JourneyStepError,
    StepJob,
    TriggerJob,
    utcnow,
)
from .db import CrmStore
from .launcher import RunLauncher, schedule_steps
from .monitor import CompletionMonitor
from .nodes import NodeResult, StepContext, execute_node
from .outbound import OutboundDelivery, QueueOutboundDelivery
from .persistence import JourneyRepository
from .transports import BaseTransport, InMemoryTransport
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)


def _error_message(exc: Exception) -> str:
    if isinstance(exc, JourneyStepError):
        return exc.code
    return str(exc) or type(exc).__name__


class StepDispatcher:
    """Executes one DAG hop per step job."""

    def __init__(
        self,
        repository: JourneyRepository,
        crm: CrmStore,
        transport: BaseTransport,
        http: httpx.AsyncClient,
        outbound: OutboundDelivery | None = None,
        monitor: CompletionMonitor | None = None,
        jobs: JobConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._crm = crm
        self._transport = transport
        self._http = http
        self._jobs = jobs or JobConfig()
        self._outbound = outbound or QueueOutboundDelivery(transport, self._jobs)
        self._monitor = monitor or CompletionMonitor(repository, clock)
        self._clock = clock

    async def dispatch(self, run_step_id: str) -> Optional[JourneyRunStep]:
        """Claim and execute the step, returning it when this call ran it.

        Redelivered or stale jobs return ``None`` without side effects.
        """

        step = await self._repository.get_step(run_step_id)
        if step is None:
            logger.debug(f"Step {run_step_id} not found; job dropped")
            return None

        run = await self._repository.get_run(step.run_id)
        if run is None or run.status != "running" or step.status != "pending":
            logger.debug(
                f"Step {step.id} is {step.status}, run {step.run_id} is "
                f"{run.status if run else 'missing'}; nothing to do"
            )
            return None

        claimed = await self._repository.claim_step(step.id, self._clock())
        if claimed is None:
            logger.debug(f"Step {step.id} already claimed")
            return None

        try:
            context = await self._build_context(claimed, run)
            result = await execute_node(context)
        except Exception as exc:
            await self._monitor.step_failed(claimed, _error_message(exc))
            return claimed

        if result.failed:
            await self._monitor.step_failed(claimed, result.error, output=result.output)
            return claimed

        await self._continue(claimed, run, context, result)
        return claimed

    async def _build_context(self, step: JourneyRunStep, run: JourneyRun) -> StepContext:
        node = await self._repository.get_node(step.node_id)
        if node is None or node.journey_id != run.journey_id:
            raise JourneyStepError("journey_node_missing")

        edges = await self._repository.outgoing_edges(run.journey_id, node.id)
        lead = await self._crm.find_lead(run.lead_id) if run.lead_id else None
        contact_id = run.contact_id or (lead.contact_id if lead else None)
        contact = await self._crm.find_contact(contact_id) if contact_id else None

        return StepContext(
            step=step,
            run=run,
            node=node,
            edges=edges,
            lead=lead,
            contact=contact,
            now=self._clock(),
            crm=self._crm,
            outbound=self._outbound,
            http=self._http,
        )

    async def _continue(
        self,
        step: JourneyRunStep,
        run: JourneyRun,
        context: StepContext,
        result: NodeResult,
    ) -> None:
        now = self._clock()
        try:
            await self._repository.complete_step(
                step.id, now, output=result.output, message_id=result.message_id
            )
        except Exception as exc:
            logger.exception(f"Could not record completion of step {step.id}")
            await self._monitor.step_failed(step, _error_message(exc))
            return
        logger.info(f"Step {step.id} ({context.node.type}) of run {run.id} completed")

        # Successors that cannot be queued close the run as failed.
        next_node_ids = list(dict.fromkeys(edge.to_node_id for edge in result.next_edges))
        try:
            await schedule_steps(
                self._repository,
                self._transport,
                self._jobs,
                run,
                next_node_ids,
                now,
                delay_ms=result.delay_ms,
            )
            await self._monitor.step_completed(step)
        except Exception as exc:
            logger.exception(f"Could not continue run {run.id} after step {step.id}")
            await self._monitor.run_failed(step, _error_message(exc))


class JourneyWorker:
    """Consumes the ``journey.runs`` queue."""

    def __init__(
        self,
        transport: BaseTransport,
        launcher: RunLauncher,
        dispatcher: StepDispatcher,
        queue: str = JOURNEY_RUNS_QUEUE,
    ) -> None:
        self._transport = transport
        self._launcher = launcher
        self._dispatcher = dispatcher
        self._queue = queue

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for journey jobs."""
        async for raw_message, envelope in self._transport.subscribe(
            self._queue, lifespan=lifespan
        ):
            await self.process(envelope)
            await self._transport.ack(raw_message)

    async def process(self, envelope: JobEnvelope) -> Any:
        """Handle one delivery, re-publishing it with backoff on failure."""
        try:
            return await self.handle(envelope)
        except Exception:
            if envelope.exhausted:
                logger.exception(
                    f"Job {envelope.job_id} ({envelope.name}) dead-lettered after "
                    f"{envelope.attempt} attempt(s)"
                )
                return None
            delay_ms = compute_backoff(envelope.attempt, envelope.backoff_ms)
            logger.warning(
                f"Job {envelope.job_id} ({envelope.name}) attempt {envelope.attempt} "
                f"failed; retrying in {delay_ms} ms",
                exc_info=True,
            )
            await self._transport.publish(
                self._queue, envelope.bump_attempt(), delay_ms=delay_ms
            )
            return None

    async def handle(self, envelope: JobEnvelope) -> Any:
        data = envelope.data
        if isinstance(data, TriggerJob):
            return await self._launcher.handle_trigger(data)
        if isinstance(data, StepJob):
            return await self._dispatcher.dispatch(data.run_step_id)
        logger.warning(f"Job {envelope.job_id} ({envelope.name}) has no handler on {self._queue}")
        return None

    async def drain(self, max_jobs: int = 1000) -> List[JobEnvelope]:
        """Process every job that is due now on an in-memory transport.

        Returns the processed envelopes in delivery order.
        """

        if not isinstance(self._transport, InMemoryTransport):
            raise TypeError("drain() requires an InMemoryTransport")

        processed: List[JobEnvelope] = []
        while len(processed) < max_jobs:
            received = await self._transport.receive(self._queue)
            if received is None:
                break
            raw_message, envelope = received
            await self.process(envelope)
            await self._transport.ack(raw_message)
            processed.append(envelope)
        return processed
