"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import defaultdict
from datetime import datetime
from typing import AsyncIterator, Dict, List, Optional, Tuple

from ..contracts import Clock, JobEnvelope, utcnow
from .base import BaseTransport

_Entry = Tuple[datetime, int, str, JobEnvelope]


class InMemoryTransport(BaseTransport[Tuple[str, str]]):
    """In-process delayed queue driven by an injectable clock.

    Raw messages are ``(queue, json)`` pairs.
    """

    def __init__(self, clock: Clock = utcnow) -> None:
        self._queues: Dict[str, List[_Entry]] = defaultdict(list)
        self._lock = asyncio.Lock()
        self._sequence = itertools.count()
        self._clock = clock

    async def publish(self, queue: str, envelope: JobEnvelope, delay_ms: int = 0) -> None:
        """Publish envelope to the in-memory queue."""
        envelope = envelope.schedule(self._clock(), delay_ms)
        async with self._lock:
            heapq.heappush(
                self._queues[queue],
                (envelope.available_at, next(self._sequence), envelope.to_json(), envelope),
            )

    async def receive(self, queue: str) -> Optional[Tuple[Tuple[str, str], JobEnvelope]]:
        """Pop the next due job from ``queue`` without waiting."""
        async with self._lock:
            heap = self._queues[queue]
            if heap and heap[0][0] <= self._clock():
                _, _, raw, envelope = heapq.heappop(heap)
                return (queue, raw), envelope
        return None

    def pending(self, queue: str) -> List[JobEnvelope]:
        """Return queued envelopes (due or not) ordered by availability."""
        return [entry[3] for entry in sorted(self._queues[queue])]

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], JobEnvelope]]:
        """Subscribe to due jobs on ``queue``.

        Args:
            queue: The queue to consume from
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            received = await self.receive(queue)
            if received is not None:
                yield received
                continue

            await asyncio.sleep(0.1)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue:
            queue, raw = raw_message
            await self.publish(queue, JobEnvelope.from_json(raw))
