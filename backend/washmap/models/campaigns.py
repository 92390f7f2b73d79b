"""Schemas for campaign inspection and control."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from washmap.core.status import Status
from .tasks import TaskOut


class CampaignOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    map_id: str
    task_count: int
    task_gas: Decimal
    token: str
    decimals: int
    total_amount: Decimal
    leaf_count: int
    split_policy: str
    reverse: bool
    enabled: bool
    root_has_enough_token: bool
    status: Status
    endpoint: str = ""
    max_attempts: int
    gas_budget: Decimal
    required_funds: Decimal
    created_at: datetime
    updated_at: datetime


class CampaignStatusOut(BaseModel):
    """Stored campaign plus the status derived from its tasks right now."""

    campaign: CampaignOut
    derived_status: Status
    counts: Dict[str, int] = Field(default_factory=dict)
    failed_task_ids: List[str] = Field(default_factory=list)


class PlanOut(BaseModel):
    campaign: CampaignOut
    tasks: List[TaskOut]


class CampaignUpdateRequest(BaseModel):
    task_gas: Optional[Decimal] = Field(None, ge=0)
    endpoint: Optional[str] = None


class RetryResponse(BaseModel):
    campaign_id: str
    reset_tasks: int = Field(default=0, ge=0)


class RunScheduled(BaseModel):
    campaign_id: str
    scheduled: bool = True


__all__ = [
    "CampaignOut",
    "CampaignStatusOut",
    "PlanOut",
    "CampaignUpdateRequest",
    "RetryResponse",
    "RunScheduled",
]
