"""Endpoints for inspecting and steering campaigns."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query

from washmap.api.errors import to_http
from washmap.core.aggregator import StatusAggregator
from washmap.core.errors import InsufficientRootBalance, WashMapError
from washmap.db.repository import TASK_ORDER_FIELDS
from washmap.db.store import get_repository
from washmap.models import (
    CampaignOut,
    CampaignStatusOut,
    CampaignUpdateRequest,
    RetryResponse,
    RunScheduled,
    TaskOut,
    TaskPageOut,
)
from washmap.services.execution import run_campaign

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


async def _run_in_background(campaign_id: str) -> None:
    try:
        report = await run_campaign(get_repository(), campaign_id)
    except InsufficientRootBalance as exc:
        LOGGER.warning("Campaign %s not started: %s", campaign_id, exc)
        return
    except (WashMapError, ValueError, RuntimeError) as exc:
        LOGGER.exception("Background run of campaign %s failed: %s", campaign_id, exc)
        return
    LOGGER.info(
        "Background run of campaign %s ended with status %s (%d ok, %d failed)",
        campaign_id,
        report.status.value,
        len(report.succeeded),
        len(report.failed),
    )


@router.get("", response_model=List[CampaignOut])
def list_campaigns_route(
    project_id: Optional[int] = Query(default=None, ge=0),
    enabled: Optional[bool] = Query(default=None),
) -> List[CampaignOut]:
    try:
        campaigns = get_repository().list_campaigns(project_id=project_id, enabled=enabled)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return [CampaignOut.model_validate(campaign) for campaign in campaigns]


@router.get("/{campaign_id}", response_model=CampaignStatusOut)
def get_campaign_route(campaign_id: str) -> CampaignStatusOut:
    """Return the stored campaign together with the status its tasks imply."""
    try:
        summary = StatusAggregator(get_repository()).get_status(campaign_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return CampaignStatusOut(
        campaign=CampaignOut.model_validate(summary.campaign),
        derived_status=summary.status,
        counts=summary.counts,
        failed_task_ids=[task.id for task in summary.failed_tasks],
    )


@router.get("/{campaign_id}/tasks", response_model=TaskPageOut)
def list_tasks_route(
    campaign_id: str,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=500),
    order_by: str = Query(default="sort_id"),
    direction: Literal["asc", "desc"] = Query(default="asc"),
) -> TaskPageOut:
    if order_by not in TASK_ORDER_FIELDS:
        LOGGER.warning("Rejected task ordering by %s", order_by)
        raise HTTPException(status_code=400, detail=f"Cannot order tasks by {order_by}")
    try:
        result = get_repository().page_tasks(
            campaign_id,
            page=page,
            page_size=page_size,
            order_field=order_by,
            descending=direction == "desc",
        )
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return TaskPageOut(
        tasks=[TaskOut.model_validate(task) for task in result.tasks],
        total=result.total,
        page=page,
        page_size=page_size,
    )


@router.patch("/{campaign_id}", response_model=CampaignOut)
def update_campaign_route(campaign_id: str, payload: CampaignUpdateRequest) -> CampaignOut:
    try:
        campaign = StatusAggregator(get_repository()).update_campaign(
            campaign_id, task_gas=payload.task_gas, endpoint=payload.endpoint
        )
    except (WashMapError, ValueError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return CampaignOut.model_validate(campaign)


@router.post("/{campaign_id}/enable", response_model=CampaignOut)
def enable_campaign_route(campaign_id: str) -> CampaignOut:
    try:
        campaign = StatusAggregator(get_repository()).set_enabled(campaign_id, True)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return CampaignOut.model_validate(campaign)


@router.post("/{campaign_id}/disable", response_model=CampaignOut)
def disable_campaign_route(campaign_id: str) -> CampaignOut:
    """Stop new dispatches; transfers already in flight still complete."""
    try:
        campaign = StatusAggregator(get_repository()).set_enabled(campaign_id, False)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return CampaignOut.model_validate(campaign)


@router.post("/{campaign_id}/resume", response_model=CampaignOut)
def resume_campaign_route(campaign_id: str, background_tasks: BackgroundTasks) -> CampaignOut:
    """Re-enable a paused campaign and continue it from its unfinished tasks."""
    try:
        campaign = StatusAggregator(get_repository()).resume(campaign_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    background_tasks.add_task(_run_in_background, campaign_id)
    return CampaignOut.model_validate(campaign)


@router.post("/{campaign_id}/retry", response_model=RetryResponse)
def retry_campaign_route(campaign_id: str) -> RetryResponse:
    try:
        reset = StatusAggregator(get_repository()).retry_failed(campaign_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return RetryResponse(campaign_id=campaign_id, reset_tasks=reset)


@router.post("/{campaign_id}/run", response_model=RunScheduled, status_code=202)
def run_campaign_route(campaign_id: str, background_tasks: BackgroundTasks) -> RunScheduled:
    try:
        campaign = get_repository().get_campaign(campaign_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    if not campaign.enabled:
        LOGGER.warning("Run requested for disabled campaign %s", campaign_id)
        raise HTTPException(status_code=409, detail=f"Campaign {campaign_id} is disabled")
    background_tasks.add_task(_run_in_background, campaign_id)
    LOGGER.info("Scheduled a run of campaign %s", campaign_id)
    return RunScheduled(campaign_id=campaign_id)


__all__ = ["router"]
