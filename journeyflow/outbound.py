"""Hand-off of created messages to the channel send pipeline."""

from __future__ import annotations

import logging
from typing import Protocol

from .config import JobConfig
from .constants import OUTBOUND_JOB_NAME, OUTBOUND_MESSAGES_QUEUE
from .contracts import JobEnvelope, OutboundJob
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class OutboundDelivery(Protocol):
    async def enqueue_outbound(self, message_id: str) -> None:
        """Queue a persisted message for channel delivery."""


class QueueOutboundDelivery:
    """Publish outbound message jobs on the ``outbound.messages`` queue."""

    def __init__(self, transport: BaseTransport, jobs: JobConfig | None = None) -> None:
        self._transport = transport
        self._jobs = jobs or JobConfig()

    async def enqueue_outbound(self, message_id: str) -> None:
        envelope = JobEnvelope(
            name=OUTBOUND_JOB_NAME,
            data=OutboundJob(message_id=message_id),
            max_attempts=self._jobs.max_attempts,
            backoff_ms=self._jobs.backoff_ms,
        )
        await self._transport.publish(OUTBOUND_MESSAGES_QUEUE, envelope)
        logger.debug(f"Queued outbound message {message_id}")
