"""Run completion and failure bookkeeping."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .contracts import Clock, JourneyRunStep, utcnow
from .persistence import JourneyRepository

logger = logging.getLogger(__name__)


class CompletionMonitor:
    """Sole writer of terminal run status.

    Terminal transitions are conditional on the run still ``running``, so a
    completed or failed run is never rewritten.
    """

    def __init__(self, repository: JourneyRepository, clock: Clock = utcnow) -> None:
        self._repository = repository
        self._clock = clock

    async def step_failed(
        self,
        step: JourneyRunStep,
        error_message: str,
        output: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record ``step`` as failed and fail its whole run.

        Sibling steps already queued stay ``pending``; their jobs find the
        run closed and do nothing.
        """
        now = self._clock()
        try:
            await self._repository.fail_step(step.id, now, error_message, output=output)
        finally:
            await self.run_failed(step, error_message)

    async def run_failed(self, step: JourneyRunStep, error_message: str) -> bool:
        """Fail the run of ``step`` without touching the step record.

        Used when a step completed but its successors could not be scheduled.
        """
        closed = await self._repository.finish_run(step.run_id, "failed", self._clock())
        if closed:
            logger.warning(
                f"Run {step.run_id} failed at step {step.id} (node {step.node_id}): {error_message}"
            )
        return closed

    async def step_completed(self, step: JourneyRunStep) -> bool:
        """Complete the run once no step is pending or running.

        Returns ``True`` when this call closed the run.
        """
        remaining = await self._repository.count_open_steps(step.run_id)
        if remaining > 0:
            return False
        closed = await self._repository.finish_run(step.run_id, "completed", self._clock())
        if closed:
            logger.info(f"Run {step.run_id} completed")
        return closed
