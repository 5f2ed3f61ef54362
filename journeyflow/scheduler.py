"""Polling of one-shot ``time`` triggers."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, List, Optional

from .constants import DEFAULT_SCHEDULER_INTERVAL_MS
from .contracts import Clock, JourneyTrigger, TriggerJob, utcnow
from .db import CrmStore, Lead, LeadSegment
from .db.store import as_utc
from .launcher import RunLauncher
from .matching import to_string_list
from .persistence import JourneyRepository

logger = logging.getLogger(__name__)


def parse_schedule_at(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(raw))
        except ValueError:
            return None
    return None


def segment_from_config(config: dict[str, Any]) -> LeadSegment:
    days = config.get("lastActiveWithinDays")
    if isinstance(days, bool) or not isinstance(days, (int, float)):
        days = None
    return LeadSegment(
        stages=to_string_list(config.get("stages")),
        tags_all=to_string_list(config.get("tagsAll")),
        sources=to_string_list(config.get("sources")),
        last_active_within_days=math.floor(days) if days is not None else None,
    )


class TimeTriggerPoller:
    """Fires due ``time`` triggers once per ``scheduleAt``."""

    def __init__(
        self,
        repository: JourneyRepository,
        crm: CrmStore,
        launcher: RunLauncher,
        interval_ms: int = DEFAULT_SCHEDULER_INTERVAL_MS,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._crm = crm
        self._launcher = launcher
        self.interval_ms = interval_ms if interval_ms > 0 else DEFAULT_SCHEDULER_INTERVAL_MS
        self._clock = clock
        self._running = False

    async def tick(self) -> Optional[List[TriggerJob]]:
        """Run one poll. Returns ``None`` when a previous poll is still running."""
        if self._running:
            logger.debug("Previous scheduler tick still running; skipped")
            return None

        self._running = True
        try:
            now = self._clock()
            emitted: List[TriggerJob] = []
            for trigger in await self._repository.list_time_triggers():
                emitted.extend(await self._fire(trigger, now))
            return emitted
        finally:
            self._running = False

    async def _fire(self, trigger: JourneyTrigger, now: datetime) -> List[TriggerJob]:
        config = trigger.config or {}
        schedule_at = parse_schedule_at(config.get("scheduleAt"))
        if schedule_at is None or schedule_at > now:
            return []
        last_fired_at = as_utc(trigger.last_fired_at)
        if last_fired_at is not None and schedule_at <= last_fired_at:
            return []

        lead_id = config.get("leadId") if isinstance(config.get("leadId"), str) else None
        channel_id = config.get("channelId") if isinstance(config.get("channelId"), str) else None
        leads = await self._target_leads(trigger, config, lead_id, now)

        jobs = [
            TriggerJob(
                trigger_type="time",
                trigger_id=trigger.id,
                organization_id=trigger.organization_id,
                lead_id=lead.id,
                contact_id=lead.contact_id,
                channel_id=channel_id,
                tags=list(lead.tags or []),
                stage=lead.stage,
            )
            for lead in leads
        ]
        for job in jobs:
            await self._launcher.emit_trigger(job)

        await self._repository.mark_trigger_fired(trigger.id, now)
        logger.info(
            f"Time trigger {trigger.id} of journey {trigger.journey_id} fired for {len(jobs)} lead(s)"
        )
        return jobs

    async def _target_leads(
        self,
        trigger: JourneyTrigger,
        config: dict[str, Any],
        lead_id: Optional[str],
        now: datetime,
    ) -> List[Lead]:
        if lead_id:
            lead = await self._crm.find_lead(lead_id)
            if lead is None or lead.organization_id != trigger.organization_id:
                return []
            return [lead]
        return await self._crm.find_leads_by_segment(
            trigger.organization_id, segment_from_config(config), now
        )

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll every ``interval_ms`` until ``lifespan`` seconds have elapsed."""
        loop = asyncio.get_event_loop()
        start_time = loop.time()
        logger.info(f"Journey scheduler polling every {self.interval_ms} ms")
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Journey scheduler tick failed")
            if lifespan and loop.time() - start_time >= lifespan:
                break
            await asyncio.sleep(self.interval_ms / 1000)
