"""Wiring of the journey engine components."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .config import JourneyflowConfig, load_config
from .contracts import Clock, JourneyRun, TriggerJob, utcnow
from .db import CrmStore, get_crm_store
from .execute import JourneyWorker, StepDispatcher
from .launcher import RunLauncher
from .monitor import CompletionMonitor
from .outbound import OutboundDelivery, QueueOutboundDelivery
from .persistence import JourneyRepository, get_repository
from .scheduler import TimeTriggerPoller
from .transports import BaseTransport, get_transport

logger = logging.getLogger(__name__)


class JourneyEngine:
    """Launcher, dispatcher, monitor, poller and worker over shared backends."""

    def __init__(
        self,
        repository: JourneyRepository,
        crm: CrmStore,
        transport: BaseTransport,
        http: httpx.AsyncClient | None = None,
        outbound: OutboundDelivery | None = None,
        config: JourneyflowConfig | None = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or JourneyflowConfig()
        self.repository = repository
        self.crm = crm
        self.transport = transport
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(timeout=self.config.webhook.timeout_seconds)
        self.outbound = outbound or QueueOutboundDelivery(transport, self.config.jobs)
        self.clock = clock

        self.monitor = CompletionMonitor(repository, clock)
        self.launcher = RunLauncher(repository, crm, transport, self.config.jobs, clock)
        self.dispatcher = StepDispatcher(
            repository,
            crm,
            transport,
            self.http,
            outbound=self.outbound,
            monitor=self.monitor,
            jobs=self.config.jobs,
            clock=clock,
        )
        self.worker = JourneyWorker(transport, self.launcher, self.dispatcher)
        self.poller = TimeTriggerPoller(
            repository, crm, self.launcher, self.config.scheduler.interval_ms, clock
        )

    @classmethod
    async def from_config(cls, config: Optional[JourneyflowConfig] = None) -> "JourneyEngine":
        """Build an engine from configuration and environment."""
        config = config or load_config()
        return cls(
            repository=get_repository(config=config),
            crm=await get_crm_store(config=config),
            transport=get_transport(config=config),
            config=config,
        )

    async def emit_trigger(self, job: TriggerJob) -> None:
        await self.launcher.emit_trigger(job)

    async def handle_trigger(self, job: TriggerJob) -> list[JourneyRun]:
        """Match and launch synchronously, bypassing the queue."""
        return await self.launcher.handle_trigger(job)

    async def start(self) -> None:
        await self.transport.connect()

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()
        await self.transport.disconnect()

    async def __aenter__(self) -> "JourneyEngine":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
