"""Background worker that keeps enabled campaigns moving.

Each poll closes campaigns past their time-to-live and then runs every
enabled campaign concurrently. On startup, tasks left ``processing`` without a
signature whose claim lease has run out are returned to ``unprocessed``.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from fastapi.concurrency import run_in_threadpool

from washmap.config import Settings, get_settings
from washmap.core.aggregator import StatusAggregator
from washmap.core.errors import InsufficientRootBalance, WashMapError
from washmap.core.records import CampaignRecord
from washmap.core.scheduler import CampaignScheduler, RunReport
from washmap.db.store import close_repository, get_repository
from washmap.services.execution import build_scheduler

LOGGER = logging.getLogger(__name__)

SchedulerFactory = Callable[[object, CampaignRecord, Settings], CampaignScheduler]


class CampaignWorker:
    def __init__(
        self,
        repository,
        settings: Settings,
        scheduler_factory: SchedulerFactory = build_scheduler,
    ) -> None:
        self._repository = repository
        self._settings = settings
        self._scheduler_factory = scheduler_factory
        self._aggregator = StatusAggregator(repository)

    @property
    def claim_lease_s(self) -> float:
        return self._settings.transfer_timeout_s + self._settings.claim_grace_s

    async def recover(self) -> int:
        """Release unsigned claims whose lease ran out, left behind by a crashed run."""
        campaigns = await run_in_threadpool(self._repository.list_campaigns, None, True)
        released = 0
        for campaign in campaigns:
            released += await run_in_threadpool(self._aggregator.release_stalled, campaign.id, self.claim_lease_s)
        if released:
            LOGGER.warning("Recovered %d stalled tasks across %d campaigns", released, len(campaigns))
        return released

    async def _run_one(self, campaign: CampaignRecord) -> Optional[RunReport]:
        try:
            scheduler = self._scheduler_factory(self._repository, campaign, self._settings)
            return await scheduler.run_campaign(campaign.id)
        except InsufficientRootBalance as exc:
            LOGGER.warning("Campaign %s waiting for funds: %s", campaign.id, exc)
        except (WashMapError, ValueError, RuntimeError) as exc:
            LOGGER.exception("Campaign %s run failed: %s", campaign.id, exc)
        return None

    async def tick(self, campaign_ids: Optional[Sequence[str]] = None) -> List[RunReport]:
        """Run one poll cycle and return the reports of the campaigns that ran."""
        expired = await run_in_threadpool(self._aggregator.close_expired, self._settings.campaign_ttl_s)
        for campaign_id in expired:
            LOGGER.info("Skipping expired campaign %s", campaign_id)

        campaigns = await run_in_threadpool(self._repository.list_campaigns, None, True)
        if campaign_ids:
            wanted = set(campaign_ids)
            campaigns = [campaign for campaign in campaigns if campaign.id in wanted]
        if not campaigns:
            LOGGER.debug("No enabled campaigns to run")
            return []

        LOGGER.info("Running %d enabled campaigns", len(campaigns))
        results = await asyncio.gather(*(self._run_one(campaign) for campaign in campaigns))
        return [report for report in results if report is not None]

    async def run_forever(self, stop: Optional[asyncio.Event] = None, campaign_ids: Optional[Sequence[str]] = None) -> None:
        stop = stop or asyncio.Event()
        await self.recover()
        while not stop.is_set():
            await self.tick(campaign_ids)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._settings.poll_interval_s)
            except asyncio.TimeoutError:
                continue


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="washmap-worker", description="Execute enabled wash map campaigns")
    p.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    p.add_argument("--campaign", action="append", default=None, help="Only run this campaign id (repeatable)")
    p.add_argument("--poll-interval", type=float, default=None, help="Seconds between poll cycles")
    return p


async def _main(args: argparse.Namespace, settings: Settings) -> None:
    worker = CampaignWorker(get_repository(), settings)
    if args.once:
        await worker.recover()
        reports = await worker.tick(args.campaign)
        for report in reports:
            LOGGER.info(
                "Campaign %s: status=%s calls=%d ok=%d failed=%d blocked=%d",
                report.campaign_id,
                report.status.value,
                report.transfer_calls,
                len(report.succeeded),
                len(report.failed),
                report.blocked,
            )
        return
    await worker.run_forever(campaign_ids=args.campaign)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    settings = get_settings()
    if args.poll_interval is not None:
        settings = replace(settings, poll_interval_s=args.poll_interval)
    logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO))

    try:
        asyncio.run(_main(args, settings))
    except KeyboardInterrupt:
        LOGGER.info("Worker interrupted, shutting down")
    finally:
        close_repository()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
