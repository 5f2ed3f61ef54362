"""Base transport interface for journey job queues."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import JobEnvelope

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Abstract at-least-once job queue."""

    async def connect(self) -> None:
        """Open connection to broker (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to broker (no-op by default)."""
        pass

    @abc.abstractmethod
    async def publish(self, queue: str, envelope: JobEnvelope, delay_ms: int = 0) -> None:
        """Enqueue ``envelope`` on ``queue``, deliverable after ``delay_ms``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, JobEnvelope]]:
        """Yield raw transport message and envelope pairs as jobs become due.

        Args:
            queue: The queue to consume from
            lifespan: Maximum time in seconds to keep consuming. If None, runs indefinitely.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def ack(self, raw_message: RawMessageT) -> None:
        """Acknowledge successful processing."""
        raise NotImplementedError

    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Negatively acknowledge (default to ack if unsupported)."""
        await self.ack(raw_message)
