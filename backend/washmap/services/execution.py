"""Wire a campaign to its transfer and balance clients and run it."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi.concurrency import run_in_threadpool

from washmap.clients.balance import RpcBalanceClient
from washmap.clients.transfer import HttpTransferClient
from washmap.config import Settings, get_settings
from washmap.core.records import CampaignRecord
from washmap.core.scheduler import CampaignScheduler, RunReport, SchedulerConfig

LOGGER = logging.getLogger(__name__)


def scheduler_config(settings: Settings) -> SchedulerConfig:
    return SchedulerConfig(
        max_concurrent_transfers=settings.max_concurrent_transfers,
        transfer_timeout_s=settings.transfer_timeout_s,
        retry_backoff_s=settings.retry_backoff_s,
    )


def build_scheduler(repository, campaign: CampaignRecord, settings: Optional[Settings] = None) -> CampaignScheduler:
    """Create a scheduler whose clients target the campaign's RPC endpoint when it has one."""
    settings = settings or get_settings()
    rpc_url = campaign.endpoint or settings.rpc_url
    if not settings.transfer_url:
        raise ValueError("WASHMAP_TRANSFER_URL is required to execute campaigns")
    if not rpc_url:
        raise ValueError("WASHMAP_RPC_URL or a campaign endpoint is required to check balances")

    transfer_client = HttpTransferClient(
        settings.transfer_url,
        rpc_endpoint=campaign.endpoint or None,
        timeout=settings.http_timeout_s,
    )
    balance_client = RpcBalanceClient(rpc_url, timeout=settings.http_timeout_s)
    return CampaignScheduler(repository, transfer_client, balance_client, config=scheduler_config(settings))


async def run_campaign(repository, campaign_id: str, settings: Optional[Settings] = None) -> RunReport:
    campaign = await run_in_threadpool(repository.get_campaign, campaign_id)
    scheduler = build_scheduler(repository, campaign, settings)
    LOGGER.info("Running campaign %s (%d tasks, token %s)", campaign_id, campaign.task_count, campaign.token)
    return await scheduler.run_campaign(campaign_id)


__all__ = ["scheduler_config", "build_scheduler", "run_campaign"]
