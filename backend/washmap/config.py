"""Service settings read from the environment (and a local ``.env`` file)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import List, Optional

from dotenv import load_dotenv

load_dotenv()

DEFAULT_CORS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


def _cors_origins() -> List[str]:
    env_origins = os.getenv("CORS_ALLOW_ORIGINS")
    if not env_origins:
        return list(DEFAULT_CORS)
    origins = [origin.strip() for origin in env_origins.split(",") if origin.strip()]
    return origins or list(DEFAULT_CORS)


@dataclass(frozen=True)
class Settings:
    neo4j_uri: Optional[str] = None
    neo4j_user: Optional[str] = None
    neo4j_password: Optional[str] = None
    neo4j_database: Optional[str] = None
    # "neo4j" for the graph database, "memory" for a process-local store
    store: str = "neo4j"

    transfer_url: Optional[str] = None
    rpc_url: Optional[str] = None
    key_service_url: Optional[str] = None
    http_timeout_s: float = 30.0

    transfer_timeout_s: float = 60.0
    max_concurrent_transfers: int = 10
    max_attempts: int = 3
    retry_backoff_s: float = 2.0
    poll_interval_s: float = 10.0
    campaign_ttl_s: float = 15 * 60.0
    # extra time past transfer_timeout_s before an unsigned claim counts as abandoned
    claim_grace_s: float = 60.0
    root_reuse_window_s: float = 120.0

    cors_origins: List[str] = field(default_factory=lambda: list(DEFAULT_CORS))
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings(
        neo4j_uri=os.getenv("NEO4J_URI"),
        neo4j_user=os.getenv("NEO4J_USER"),
        neo4j_password=os.getenv("NEO4J_PASSWORD"),
        neo4j_database=os.getenv("NEO4J_DATABASE") or None,
        store=os.getenv("WASHMAP_STORE", "neo4j").strip().lower(),
        transfer_url=os.getenv("WASHMAP_TRANSFER_URL"),
        rpc_url=os.getenv("WASHMAP_RPC_URL"),
        key_service_url=os.getenv("WASHMAP_KEY_SERVICE_URL"),
        http_timeout_s=_env_float("WASHMAP_HTTP_TIMEOUT_S", 30.0),
        transfer_timeout_s=_env_float("WASHMAP_TRANSFER_TIMEOUT_S", 60.0),
        max_concurrent_transfers=_env_int("WASHMAP_MAX_CONCURRENT_TRANSFERS", 10),
        max_attempts=_env_int("WASHMAP_MAX_ATTEMPTS", 3),
        retry_backoff_s=_env_float("WASHMAP_RETRY_BACKOFF_S", 2.0),
        poll_interval_s=_env_float("WASHMAP_POLL_INTERVAL_S", 10.0),
        campaign_ttl_s=_env_float("WASHMAP_CAMPAIGN_TTL_S", 15 * 60.0),
        claim_grace_s=_env_float("WASHMAP_CLAIM_GRACE_S", 60.0),
        root_reuse_window_s=_env_float("WASHMAP_ROOT_REUSE_WINDOW_S", 120.0),
        cors_origins=_cors_origins(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


__all__ = ["Settings", "load_settings", "get_settings"]
