"""Endpoints for single transfer tasks."""

from __future__ import annotations

import logging

from fastapi import APIRouter

from washmap.api.errors import to_http
from washmap.core.aggregator import StatusAggregator
from washmap.core.errors import WashMapError
from washmap.db.store import get_repository
from washmap.models import TaskOut, TaskUpdateRequest

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("/{task_id}", response_model=TaskOut)
def get_task_route(task_id: str) -> TaskOut:
    try:
        task = get_repository().get_task(task_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return TaskOut.model_validate(task)


@router.patch("/{task_id}", response_model=TaskOut)
def update_task_route(task_id: str, payload: TaskUpdateRequest) -> TaskOut:
    """Correct the amount or gas of a task that has not been executed yet."""
    try:
        task = StatusAggregator(get_repository()).update_task(task_id, amount=payload.amount, gas=payload.gas)
    except (WashMapError, ValueError, RuntimeError) as exc:
        raise to_http(exc) from exc
    LOGGER.info("Updated task %s (amount=%s, gas=%s)", task_id, task.amount, task.gas)
    return TaskOut.model_validate(task)


@router.post("/{task_id}/retry", response_model=TaskOut)
def retry_task_route(task_id: str) -> TaskOut:
    try:
        task = StatusAggregator(get_repository()).retry_task(task_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return TaskOut.model_validate(task)


__all__ = ["router"]
