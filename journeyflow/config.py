from __future__ import annotations

import math
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_BACKOFF_MS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SCHEDULER_INTERVAL_MS,
    DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class JobConfig(BaseModel):
    """Retry policy applied to every enqueued job."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_ms: int = DEFAULT_BACKOFF_MS


class SchedulerConfig(BaseModel):
    """Time-trigger poller settings."""

    interval_ms: int = DEFAULT_SCHEDULER_INTERVAL_MS


class WebhookConfig(BaseModel):
    """HTTP client settings for webhook nodes."""

    timeout_seconds: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS


class JourneyflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    jobs: JobConfig = JobConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    webhook: WebhookConfig = WebhookConfig()
    database_url: Optional[str] = None
    crm_database_url: Optional[str] = None


def _resolve_interval_ms(raw: Optional[str], fallback: int) -> int:
    if not raw:
        return fallback
    try:
        parsed = float(raw)
    except ValueError:
        return DEFAULT_SCHEDULER_INTERVAL_MS
    if not math.isfinite(parsed) or parsed <= 0:
        return DEFAULT_SCHEDULER_INTERVAL_MS
    return int(parsed)


def load_config(path: Optional[str] = None) -> JourneyflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to JOURNEYFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("JOURNEYFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = JourneyflowConfig(**data)
    else:
        config = JourneyflowConfig()

    env_db_url = os.getenv("JOURNEYFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url

    env_crm_url = os.getenv("JOURNEYFLOW_CRM_DATABASE_URL")
    if env_crm_url:
        config.crm_database_url = env_crm_url

    env_redis_url = os.getenv("REDIS_URL")
    if env_redis_url:
        config.transport.redis.url = env_redis_url

    if config.scheduler.interval_ms <= 0:
        config.scheduler.interval_ms = DEFAULT_SCHEDULER_INTERVAL_MS
    config.scheduler.interval_ms = _resolve_interval_ms(
        os.getenv("JOURNEY_SCHEDULER_INTERVAL_MS"), config.scheduler.interval_ms
    )
    return config
