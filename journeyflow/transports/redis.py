"""Redis transport for cross-process job queues."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Optional, Tuple

try:
    import redis.asyncio as redis
except ImportError:
    redis = None

from pydantic import ValidationError

from ..contracts import JobEnvelope, utcnow
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-backed queue.

    Ready jobs live in a list per queue; delayed jobs wait in a sorted set
    scored by their due time (epoch milliseconds) and are moved to the list
    once due.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        url: Optional[str] = None,
        prefix: str = "journeyflow",
    ) -> None:
        if redis is None:
            raise ImportError("redis package is required for RedisTransport")

        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.url = url
        self.prefix = prefix
        self._redis: Optional[Any] = None

    def _ready_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}"

    def _delayed_key(self, queue: str) -> str:
        return f"{self.prefix}:{queue}:delayed"

    async def connect(self) -> None:
        """Connect to Redis."""
        if self.url:
            self._redis = redis.Redis.from_url(self.url, decode_responses=True)
        else:
            self._redis = redis.Redis(
                host=self.host,
                port=self.port,
                db=self.db,
                password=self.password,
                decode_responses=True,
            )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, queue: str, envelope: JobEnvelope, delay_ms: int = 0) -> None:
        """Push onto the ready list, or the delayed set when ``delay_ms > 0``."""
        if not self._redis:
            await self.connect()

        envelope = envelope.schedule(utcnow(), delay_ms)
        message_json = envelope.to_json()
        if delay_ms > 0:
            due_ms = int(envelope.available_at.timestamp() * 1000)
            await self._redis.zadd(self._delayed_key(queue), {message_json: due_ms})
        else:
            await self._redis.lpush(self._ready_key(queue), message_json)

    async def _promote_due(self, queue: str) -> None:
        now_ms = int(time.time() * 1000)
        delayed_key = self._delayed_key(queue)
        due = await self._redis.zrangebyscore(delayed_key, 0, now_ms)
        for message_json in due:
            # zrem succeeds for exactly one competing consumer
            if await self._redis.zrem(delayed_key, message_json):
                await self._redis.lpush(self._ready_key(queue), message_json)

    async def subscribe(
        self, queue: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, str], JobEnvelope]]:
        """Subscribe to due jobs on ``queue``."""
        if not self._redis:
            await self.connect()

        start_time = asyncio.get_event_loop().time() if lifespan else None

        while True:
            if lifespan and start_time:
                elapsed = asyncio.get_event_loop().time() - start_time
                if elapsed >= lifespan:
                    break

            await self._promote_due(queue)
            result = await self._redis.brpop(self._ready_key(queue), timeout=1)

            if result:
                _, message_json = result
                try:
                    envelope = JobEnvelope.from_json(message_json)
                except ValidationError as e:
                    logger.warning(f"Dropping unparsable job on {queue}: {e}")
                    continue
                yield (queue, message_json), envelope

            await asyncio.sleep(0.01)

    async def ack(self, raw_message: Tuple[str, str]) -> None:
        """No-op acknowledgment for Redis transport (message already popped)."""
        pass

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if requeue:
            queue, message_json = raw_message
            await self._redis.lpush(self._ready_key(queue), message_json)
