"""Campaign status derivation and manual-intervention operations."""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from washmap.core.records import CampaignRecord, TaskRecord, utcnow
from washmap.core.status import Status

LOGGER = logging.getLogger(__name__)


def derive_campaign_status(
    statuses: Iterable[Status],
    enabled: bool,
    root_has_enough_token: bool = False,
) -> Status:
    """Derive a campaign's status from its task statuses.

    A failed task alone does not fail the campaign while it is enabled, since
    the next scheduler run retries it. Only a disabled campaign with failed
    tasks and nothing in flight is ``failed``.
    """
    counts = Counter(Status(status) for status in statuses)
    total = sum(counts.values())
    if total == 0:
        return Status.UNPROCESSED
    if counts[Status.PROCESSED] == total:
        return Status.PROCESSED
    if counts[Status.PROCESSING]:
        return Status.PROCESSING
    if counts[Status.FAILED] and not enabled:
        return Status.FAILED
    if counts[Status.UNPROCESSED] == total:
        return Status.PROCESSING if enabled and root_has_enough_token else Status.UNPROCESSED
    return Status.PROCESSING


@dataclass
class CampaignSummary:
    campaign: CampaignRecord
    status: Status
    counts: Dict[str, int] = field(default_factory=dict)
    failed_tasks: List[TaskRecord] = field(default_factory=list)

    @property
    def pending(self) -> int:
        return self.counts.get(Status.UNPROCESSED.value, 0) + self.counts.get(Status.FAILED.value, 0)


class StatusAggregator:
    """Reads task states to keep each campaign's status current."""

    def __init__(self, repository) -> None:
        self._repository = repository

    def get_status(self, campaign_id: str) -> CampaignSummary:
        campaign = self._repository.get_campaign(campaign_id)
        tasks = self._repository.list_tasks(campaign_id)
        counts = Counter(task.status.value for task in tasks)
        status = derive_campaign_status(
            (task.status for task in tasks),
            campaign.enabled,
            campaign.root_has_enough_token,
        )
        return CampaignSummary(
            campaign=campaign,
            status=status,
            counts={state.value: counts.get(state.value, 0) for state in Status},
            failed_tasks=[task for task in tasks if task.status is Status.FAILED],
        )

    def refresh(self, campaign_id: str) -> CampaignRecord:
        """Persist the derived status; a fully processed campaign is switched off."""
        summary = self.get_status(campaign_id)
        campaign = summary.campaign
        # an explicit failure mark sticks until the campaign is re-enabled
        if campaign.status is Status.FAILED and not campaign.enabled and summary.status is not Status.PROCESSED:
            return campaign
        changes = {}
        if summary.status is not summary.campaign.status:
            changes["status"] = summary.status
        if summary.status is Status.PROCESSED and summary.campaign.enabled:
            changes["enabled"] = False
        if not changes:
            return summary.campaign

        LOGGER.info(
            "Campaign %s status %s -> %s (%s)",
            campaign_id,
            summary.campaign.status.value,
            summary.status.value,
            ", ".join(f"{name}={count}" for name, count in summary.counts.items()),
        )
        return self._repository.update_campaign(campaign_id, **changes)

    def set_enabled(self, campaign_id: str, enabled: bool) -> CampaignRecord:
        """Pause or un-pause dispatch; in-flight transfers are left to finish."""
        self._repository.update_campaign(campaign_id, enabled=enabled)
        LOGGER.info("Campaign %s %s", campaign_id, "enabled" if enabled else "disabled")
        return self.refresh(campaign_id)

    def resume(self, campaign_id: str) -> CampaignRecord:
        return self.set_enabled(campaign_id, True)

    def retry_failed(self, campaign_id: str) -> int:
        """Queue every failed task of the campaign again and enable it."""
        reset = self._repository.reset_campaign_tasks(campaign_id, Status.FAILED, Status.UNPROCESSED)
        LOGGER.info("Reset %d failed tasks of campaign %s for retry", reset, campaign_id)
        self.set_enabled(campaign_id, True)
        return reset

    def retry_task(self, task_id: str) -> TaskRecord:
        task = self._repository.reset_task(task_id)
        self.refresh(task.campaign_id)
        return task

    def update_task(
        self,
        task_id: str,
        amount: Optional[Decimal] = None,
        gas: Optional[Decimal] = None,
    ) -> TaskRecord:
        if amount is None and gas is None:
            raise ValueError("At least one of amount or gas must be provided")
        if amount is not None and Decimal(amount) <= 0:
            raise ValueError("Task amount must be positive")
        if gas is not None and Decimal(gas) < 0:
            raise ValueError("Task gas cannot be negative")
        return self._repository.update_task(task_id, amount=amount, gas=gas)

    def update_campaign(
        self,
        campaign_id: str,
        task_gas: Optional[Decimal] = None,
        endpoint: Optional[str] = None,
    ) -> CampaignRecord:
        changes = {}
        if task_gas is not None:
            if Decimal(task_gas) < 0:
                raise ValueError("Task gas cannot be negative")
            changes["task_gas"] = Decimal(task_gas)
        if endpoint is not None:
            changes["endpoint"] = endpoint
        if not changes:
            raise ValueError("At least one campaign field must be provided")
        return self._repository.update_campaign(campaign_id, **changes)

    def release_stalled(self, campaign_id: str, lease_s: float, now: Optional[datetime] = None) -> int:
        """Return claims older than ``lease_s`` that never produced a signature to ``unprocessed``.

        Younger claims may belong to a run whose transfer is still in flight.
        """
        cutoff = (now or utcnow()) - timedelta(seconds=lease_s)
        released = self._repository.reset_campaign_tasks(
            campaign_id, Status.PROCESSING, Status.UNPROCESSED, unsigned_only=True, claimed_before=cutoff
        )
        if released:
            LOGGER.info("Released %d stalled tasks of campaign %s", released, campaign_id)
            self.refresh(campaign_id)
        return released

    def close_expired(self, ttl_s: float, now: Optional[datetime] = None) -> List[str]:
        """Disable and fail enabled campaigns that outlived ``ttl_s`` without finishing."""
        now = now or utcnow()
        deadline = now - timedelta(seconds=ttl_s)
        closed: List[str] = []
        for campaign in self._repository.list_campaigns(enabled=True):
            if campaign.created_at > deadline or campaign.status is Status.PROCESSED:
                continue
            self._repository.update_campaign(campaign.id, enabled=False, status=Status.FAILED)
            LOGGER.warning(
                "Campaign %s expired after %.0fs (created %s) and was closed",
                campaign.id,
                ttl_s,
                campaign.created_at.isoformat(),
            )
            closed.append(campaign.id)
        return closed


__all__ = ["derive_campaign_status", "CampaignSummary", "StatusAggregator"]
