"""FastAPI entry point for the wash map scheduler service."""

from __future__ import annotations

import logging
from typing import Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from washmap.api import api_router
from washmap.config import get_settings
from washmap.db.store import close_repository


LOGGER = logging.getLogger(__name__)

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

app = FastAPI(
	title="Wash Map Scheduler",
	version="1.0.0",
	description="Plans and executes tree-shaped token distribution and collection campaigns.",
)

app.add_middleware(
	CORSMiddleware,
	allow_origins=settings.cors_origins,
	allow_credentials=False,
	allow_methods=["*"],
	allow_headers=["*"],
)

app.include_router(api_router)


@app.get("/health")
def healthcheck() -> Dict[str, str]:
	"""Basic readiness probe."""
	return {"status": "ok", "store": settings.store}


@app.on_event("shutdown")
def shutdown_event() -> None:
	"""Release the store (and its Neo4j driver) when the service stops."""
	LOGGER.info("Shutting down, closing the %s store", settings.store)
	close_repository()
