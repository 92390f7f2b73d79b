"""Pydantic data models exposed by the wash map scheduler API."""

from .maps import (
	AutoCreateRequest,
	EdgeOut,
	MapCreateRequest,
	MapDetail,
	MapOut,
	NodeOut,
	PlanCreateRequest,
)
from .tasks import TaskOut, TaskPageOut, TaskUpdateRequest
from .campaigns import (
	CampaignOut,
	CampaignStatusOut,
	CampaignUpdateRequest,
	PlanOut,
	RetryResponse,
	RunScheduled,
)

__all__ = [
	"MapCreateRequest",
	"MapOut",
	"MapDetail",
	"NodeOut",
	"EdgeOut",
	"PlanCreateRequest",
	"AutoCreateRequest",
	"TaskOut",
	"TaskPageOut",
	"TaskUpdateRequest",
	"CampaignOut",
	"CampaignStatusOut",
	"CampaignUpdateRequest",
	"PlanOut",
	"RetryResponse",
	"RunScheduled",
]
