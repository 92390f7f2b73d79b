"""Process-wide repository selection."""

from __future__ import annotations

import logging
from typing import Optional

from washmap.config import get_settings
from washmap.db.repository import Repository

LOGGER = logging.getLogger(__name__)

_REPOSITORY: Optional[Repository] = None


def _build_repository() -> Repository:
    settings = get_settings()
    if settings.store == "memory":
        from washmap.db.memory_repository import InMemoryRepository

        LOGGER.warning("Using the in-memory store; campaign state will not survive a restart")
        return InMemoryRepository()
    if settings.store != "neo4j":
        raise ValueError(f"Unsupported WASHMAP_STORE value: {settings.store}")

    from washmap.db.neo4j_client import ensure_constraints, get_driver
    from washmap.db.neo4j_repository import Neo4jRepository

    driver = get_driver()
    ensure_constraints(driver, settings.neo4j_database)
    return Neo4jRepository(driver, database=settings.neo4j_database)


def get_repository() -> Repository:
    """Return the shared repository, creating it on first use."""
    global _REPOSITORY

    if _REPOSITORY is None:
        _REPOSITORY = _build_repository()
    return _REPOSITORY


def set_repository(repository: Optional[Repository]) -> None:
    global _REPOSITORY
    _REPOSITORY = repository


def close_repository() -> None:
    global _REPOSITORY

    if _REPOSITORY is None:
        return
    if get_settings().store == "neo4j":
        from washmap.db.neo4j_client import close_driver

        close_driver()
    _REPOSITORY = None


__all__ = ["get_repository", "set_repository", "close_repository"]
