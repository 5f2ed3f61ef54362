"""Job queue transports for the ``journey.runs`` and ``outbound.messages`` queues."""

from __future__ import annotations

import os
from typing import Optional

from ..config import JourneyflowConfig, RedisConfig, load_config
from .base import BaseTransport
from .inmemory import InMemoryTransport


def _redis_transport(redis_conf: RedisConfig) -> BaseTransport:
    from .redis import RedisTransport

    if redis_conf.url:
        return RedisTransport(url=redis_conf.url)
    return RedisTransport(
        host=redis_conf.host,
        port=redis_conf.port,
        db=redis_conf.db,
        password=redis_conf.password,
    )


def get_transport(
    backend: Optional[str] = None, config: Optional[JourneyflowConfig] = None
) -> BaseTransport:
    """Build the job transport named by ``backend``.

    Falls back to ``JOURNEYFLOW_TRANSPORT`` and then ``transport.backend``
    from config. Redis connects from ``transport.redis.url`` (or
    ``REDIS_URL``) when set, otherwise from host, port and db.
    """

    config = config or load_config()
    name = (backend or os.getenv("JOURNEYFLOW_TRANSPORT") or config.transport.backend).lower()

    if name == "inmemory":
        return InMemoryTransport()
    if name == "redis":
        return _redis_transport(config.transport.redis)
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
