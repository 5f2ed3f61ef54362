"""Persistence layer for journey definitions and run state."""

from __future__ import annotations

from typing import Optional

from ..config import JourneyflowConfig, load_config
from .inmemory import InMemoryJourneyRepository
from .postgres import PostgresJourneyRepository
from .repository import JourneyRepository
from .sqlite import SQLiteJourneyRepository

_repository_instance: JourneyRepository | None = None


def repository_from_url(database_url: Optional[str]) -> JourneyRepository:
    """Build a repository for ``database_url``; in-memory when unset.

    ``sqlite://<path>`` opens a file database, ``postgres://`` and
    ``postgresql://`` URLs are passed to asyncpg unchanged.
    """

    if not database_url:
        return InMemoryJourneyRepository()

    scheme, sep, rest = database_url.partition("://")
    if not sep:
        raise ValueError(f"Unsupported database backend: {database_url}")
    if scheme == "sqlite":
        return SQLiteJourneyRepository(rest)
    if scheme in ("postgres", "postgresql"):
        return PostgresJourneyRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[JourneyflowConfig] = None
) -> JourneyRepository:
    """Return the process-wide journey repository.

    Without arguments the cached repository is reused. Otherwise the URL is
    taken from ``database_url`` or ``config.database_url``, which
    ``load_config`` fills from ``JOURNEYFLOW_DATABASE_URL``/``DATABASE_URL``.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    _repository_instance = repository_from_url(database_url or config.database_url)
    return _repository_instance


__all__ = [
    "JourneyRepository",
    "InMemoryJourneyRepository",
    "SQLiteJourneyRepository",
    "PostgresJourneyRepository",
    "get_repository",
    "repository_from_url",
]
