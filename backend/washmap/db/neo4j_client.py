"""Utility helpers for managing the shared Neo4j driver instance."""

import logging
from typing import Optional

from neo4j import GraphDatabase, Driver
from neo4j.exceptions import Neo4jError

from washmap.config import get_settings

LOGGER = logging.getLogger(__name__)

_DRIVER: Optional[Driver] = None


def _build_driver() -> Driver:
    """Create and return a new Neo4j driver from the service settings."""
    settings = get_settings()
    uri = settings.neo4j_uri
    user = settings.neo4j_user
    password = settings.neo4j_password

    if not uri or not user or not password:
        missing = [key for key, value in {
            "NEO4J_URI": uri,
            "NEO4J_USER": user,
            "NEO4J_PASSWORD": password,
        }.items() if not value]
        raise ValueError(
            "Missing Neo4j configuration. Please supply the following environment variables: "
            + ", ".join(missing)
        )

    LOGGER.info("Initializing Neo4j driver for %s", uri)
    return GraphDatabase.driver(uri, auth=(user, password))


def get_driver() -> Driver:
    """Return the shared Neo4j driver instance, creating it if needed."""
    global _DRIVER

    if _DRIVER is None:
        try:
            _DRIVER = _build_driver()
        except (Neo4jError, ValueError) as exc:
            LOGGER.exception("Unable to initialize Neo4j driver: %s", exc)
            raise

    return _DRIVER


def ensure_constraints(driver: Driver, database: Optional[str] = None) -> None:
    """Create the uniqueness constraints the repository relies on."""
    statements = [
        "CREATE CONSTRAINT wash_map_id IF NOT EXISTS FOR (m:WashMap) REQUIRE m.id IS UNIQUE",
        "CREATE CONSTRAINT address_node_id IF NOT EXISTS FOR (n:AddressNode) REQUIRE n.id IS UNIQUE",
        "CREATE CONSTRAINT task_campaign_id IF NOT EXISTS FOR (c:TaskCampaign) REQUIRE c.id IS UNIQUE",
        "CREATE CONSTRAINT task_id IF NOT EXISTS FOR (t:Task) REQUIRE t.id IS UNIQUE",
    ]
    session = driver.session(database=database) if database else driver.session()
    with session:
        for statement in statements:
            session.run(statement)
    LOGGER.info("Ensured %d Neo4j constraints", len(statements))


def close_driver() -> None:
    """Close the shared Neo4j driver if it has been initialized."""
    global _DRIVER

    if _DRIVER is not None:
        LOGGER.info("Closing Neo4j driver")
        _DRIVER.close()
        _DRIVER = None


__all__ = ["get_driver", "ensure_constraints", "close_driver"]
