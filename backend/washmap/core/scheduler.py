"""Dependency-aware executor for campaign transfer tasks.

Tasks become ready once every task delivering funds into their source address
is processed. Ready tasks run concurrently on the event loop, bounded by a
semaphore around the transfer call, and each completion immediately
re-evaluates which tasks it unblocked. Pausing a campaign only stops new
dispatches; transfers already in flight run to completion and are recorded.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from fastapi.concurrency import run_in_threadpool

from washmap.clients.transfer import TransferError
from washmap.core.aggregator import StatusAggregator
from washmap.core.amounts import add_amounts
from washmap.core.errors import ClaimConflict, InsufficientRootBalance, StoreError, TransferFailure
from washmap.core.records import CampaignRecord, TaskRecord
from washmap.core.status import CLAIMABLE, Status

LOGGER = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """
    Attributes:
        max_concurrent_transfers: Upper bound on transfer calls in flight.
        transfer_timeout_s: Per-call timeout; a timeout counts as a failed transfer.
        retry_backoff_s: Base delay before retrying a failed transfer.
        retry_backoff_cap_s: Ceiling for the exponential backoff.
        store_attempts: Tries at writing a task outcome before giving up on it.
        store_retry_s: Base delay between those tries.
    """

    max_concurrent_transfers: int = 10
    transfer_timeout_s: float = 60.0
    retry_backoff_s: float = 2.0
    retry_backoff_cap_s: float = 30.0
    store_attempts: int = 3
    store_retry_s: float = 0.5


class RetryState:
    """Attempt bookkeeping for one campaign run.

    Lives only as long as the run, so concurrent campaigns never share
    counters.
    """

    def __init__(self, max_attempts: int, base_delay: float, cap: float) -> None:
        self.max_attempts = max(1, max_attempts)
        self._base_delay = base_delay
        self._cap = cap
        self._failures: Dict[str, int] = defaultdict(int)

    def record_failure(self, task_id: str) -> int:
        self._failures[task_id] += 1
        return self._failures[task_id]

    def failures(self, task_id: str) -> int:
        return self._failures.get(task_id, 0)

    def can_attempt(self, task_id: str) -> bool:
        return self._failures.get(task_id, 0) < self.max_attempts

    def delay(self, task_id: str) -> float:
        attempt = max(0, self._failures.get(task_id, 1) - 1)
        wait = min(self._cap, self._base_delay * (2 ** attempt))
        return wait * (0.7 + random.random() * 0.6)


@dataclass
class RunReport:
    campaign_id: str
    run_id: str = ""
    transfer_calls: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    attempted: int = 0
    skipped: int = 0
    blocked: int = 0
    paused: bool = False
    status: Status = Status.UNPROCESSED
    # signatures of transfers that landed but could not be written back
    unrecorded: Dict[str, str] = field(default_factory=dict)


class CampaignScheduler:
    def __init__(
        self,
        repository,
        transfer_client,
        balance_client,
        config: Optional[SchedulerConfig] = None,
        aggregator: Optional[StatusAggregator] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._repository = repository
        self._transfer_client = transfer_client
        self._balance_client = balance_client
        self._config = config or SchedulerConfig()
        self._aggregator = aggregator or StatusAggregator(repository)
        self._sleep = sleep

    async def _store(self, method: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        return await run_in_threadpool(method, *args, **kwargs)

    async def _invoke(self, method: Callable[..., Any], *args: Any) -> Any:
        """Call a collaborator that may be sync or async."""
        if inspect.iscoroutinefunction(method):
            return await method(*args)
        result = await run_in_threadpool(method, *args)
        if inspect.isawaitable(result):
            result = await result
        return result

    # --- precondition gate ---

    async def check_precondition(self, campaign: CampaignRecord, tasks: List[TaskRecord]) -> CampaignRecord:
        """Verify the funding balance before the first transfer of a campaign.

        Distribution draws everything from the root, so the root must hold the
        campaign amount plus the gas budget. Collection starts at the leaves,
        so each leaf must hold what it sends upward plus its gas.
        """
        if campaign.root_has_enough_token:
            return campaign

        delivered_to = {task.to_node_id for task in tasks}
        first_wave = [task for task in tasks if task.from_node_id not in delivered_to]

        if campaign.reverse:
            for task in first_wave:
                required = add_amounts((task.amount, task.gas))
                balance = Decimal(await self._invoke(self._balance_client.balance_of, task.from_address, campaign.token))
                if balance < required:
                    LOGGER.warning(
                        "Leaf %s of campaign %s holds %s, needs %s", task.from_address, campaign.id, balance, required
                    )
                    raise InsufficientRootBalance(task.from_address, balance, required)
        else:
            root_address = first_wave[0].from_address
            required = campaign.required_funds
            balance = Decimal(await self._invoke(self._balance_client.balance_of, root_address, campaign.token))
            if balance < required:
                LOGGER.warning(
                    "Root %s of campaign %s holds %s, needs %s", root_address, campaign.id, balance, required
                )
                raise InsufficientRootBalance(root_address, balance, required)

        LOGGER.info("Campaign %s passed the balance check", campaign.id)
        return await self._store(
            self._repository.update_campaign,
            campaign.id,
            root_has_enough_token=True,
            status=Status.PROCESSING,
        )

    # --- execution ---

    async def _transfer(self, task: TaskRecord, semaphore: asyncio.Semaphore, report: RunReport) -> str:
        async with semaphore:
            report.transfer_calls += 1
            try:
                return await asyncio.wait_for(
                    self._invoke(
                        self._transfer_client.submit,
                        task.from_address,
                        task.to_address,
                        task.token,
                        task.amount,
                        task.decimals,
                    ),
                    timeout=self._config.transfer_timeout_s,
                )
            except asyncio.TimeoutError as exc:
                raise TransferFailure(f"Transfer timed out after {self._config.transfer_timeout_s:g}s") from exc
            except TransferError as exc:
                raise TransferFailure(str(exc) or "Transfer rejected") from exc
            except Exception as exc:  # noqa: BLE001 - client errors are opaque
                LOGGER.exception("Transfer client crashed on task %s: %s", task.id, exc)
                raise TransferFailure(f"{type(exc).__name__}: {exc}") from exc

    async def _still_enabled(self, campaign_id: str) -> bool:
        campaign = await self._store(self._repository.get_campaign, campaign_id)
        return campaign.enabled

    async def _record_signature(self, task: TaskRecord, owner: str, signature: str, report: RunReport) -> Optional[TaskRecord]:
        """Write a landed transfer back, retrying store failures.

        The transfer already happened, so the signature is never dropped
        silently: if it cannot be stored it is logged and kept on the report.
        """
        attempts = max(1, self._config.store_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self._store(self._repository.complete_task, task.id, signature, owner)
            except ClaimConflict as exc:
                LOGGER.error("Task %s lost its claim before signature %s was recorded: %s", task.id, signature, exc)
                break
            except StoreError as exc:
                LOGGER.warning(
                    "Recording signature %s for task %s failed (%d/%d): %s", signature, task.id, attempt, attempts, exc
                )
                if attempt < attempts:
                    await self._sleep(self._config.store_retry_s * attempt)
        report.unrecorded[task.id] = signature
        LOGGER.error("Signature %s of task %s (sort %d) is not stored; task left processing", signature, task.id, task.sort_id)
        return None

    async def _run_task(
        self,
        task: TaskRecord,
        owner: str,
        retry: RetryState,
        semaphore: asyncio.Semaphore,
        report: RunReport,
    ) -> Optional[TaskRecord]:
        while True:
            try:
                claimed = await self._store(self._repository.claim_task, task.id, owner)
            except ClaimConflict:
                LOGGER.debug("Task %s was claimed by another worker", task.id)
                report.skipped += 1
                return None

            try:
                signature = await self._transfer(claimed, semaphore, report)
            except TransferFailure as exc:
                failures = retry.record_failure(task.id)
                try:
                    failed = await self._store(self._repository.fail_task, task.id, str(exc), owner)
                except (ClaimConflict, StoreError) as store_exc:
                    LOGGER.error("Could not record failure of task %s (%s): %s", task.id, exc, store_exc)
                    return None
                LOGGER.warning(
                    "Task %s (sort %d) failed attempt %d/%d: %s",
                    task.id,
                    task.sort_id,
                    failures,
                    retry.max_attempts,
                    exc,
                )
                if not retry.can_attempt(task.id) or not await self._still_enabled(task.campaign_id):
                    return failed
                await self._sleep(retry.delay(task.id))
                if not await self._still_enabled(task.campaign_id):
                    return failed
                continue

            done = await self._record_signature(claimed, owner, signature, report)
            if done is not None:
                LOGGER.info("Task %s (sort %d) processed with signature %s", task.id, task.sort_id, signature)
            return done

    async def run_campaign(self, campaign_id: str) -> RunReport:
        """Execute every pending task of an enabled campaign in dependency order.

        Claims carry this run's id as their lease owner. If the run hits an
        unexpected error it stops dispatching, waits for the transfers already
        in flight to be recorded, then re-raises.
        """
        report = RunReport(campaign_id=campaign_id, run_id=uuid.uuid4().hex)
        campaign = await self._store(self._repository.get_campaign, campaign_id)
        if not campaign.enabled:
            LOGGER.info("Campaign %s is disabled, nothing dispatched", campaign_id)
            report.paused = True
            report.status = campaign.status
            return report

        tasks = await self._store(self._repository.list_tasks, campaign_id)
        if all(task.status is Status.PROCESSED for task in tasks):
            refreshed = await self._store(self._aggregator.refresh, campaign_id)
            report.status = refreshed.status
            return report

        campaign = await self.check_precondition(campaign, tasks)

        latest: Dict[str, TaskRecord] = {task.id: task for task in tasks}
        inbound: Dict[str, List[str]] = defaultdict(list)
        for task in tasks:
            inbound[task.to_node_id].append(task.id)

        retry = RetryState(
            campaign.max_attempts,
            self._config.retry_backoff_s,
            self._config.retry_backoff_cap_s,
        )
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_transfers))
        in_flight: Dict[asyncio.Task, str] = {}
        dispatched: Set[str] = set()
        error: Optional[Exception] = None

        def is_ready(task: TaskRecord) -> bool:
            return (
                task.id not in dispatched
                and task.status in CLAIMABLE
                and all(latest[dep].status is Status.PROCESSED for dep in inbound.get(task.from_node_id, ()))
            )

        while True:
            ready = sorted((task for task in latest.values() if is_ready(task)), key=lambda task: task.sort_id)
            if ready and error is None:
                try:
                    enabled = await self._still_enabled(campaign_id)
                except Exception as exc:  # noqa: BLE001 - drained below, then re-raised
                    LOGGER.exception("Campaign %s could not be re-read: %s", campaign_id, exc)
                    error = exc
                    enabled = False
                if enabled:
                    for task in ready:
                        dispatched.add(task.id)
                        report.attempted += 1
                        job = asyncio.create_task(self._run_task(task, report.run_id, retry, semaphore, report))
                        in_flight[job] = task.id
                elif error is None:
                    report.paused = True

            if not in_flight:
                break

            finished, _ = await asyncio.wait(in_flight.keys(), return_when=asyncio.FIRST_COMPLETED)
            for job in finished:
                task_id = in_flight.pop(job)
                try:
                    outcome = job.result()
                except Exception as exc:  # noqa: BLE001 - drained below, then re-raised
                    LOGGER.exception("Task %s of campaign %s aborted: %s", task_id, campaign_id, exc)
                    if error is None:
                        error = exc
                    continue
                if outcome is None:
                    continue
                latest[task_id] = outcome
                if outcome.status is Status.PROCESSED:
                    report.succeeded.append(task_id)
                elif outcome.status is Status.FAILED:
                    report.failed.append(task_id)

        if error is not None:
            LOGGER.error(
                "Campaign %s run %s stopped after recording %d ok and %d failed tasks",
                campaign_id,
                report.run_id,
                len(report.succeeded),
                len(report.failed),
            )
            raise error

        report.blocked = sum(
            1 for task in latest.values() if task.status is Status.UNPROCESSED and task.id not in dispatched
        )
        refreshed = await self._store(self._aggregator.refresh, campaign_id)
        report.status = refreshed.status
        LOGGER.info(
            "Campaign %s run finished: calls=%d ok=%d failed=%d blocked=%d paused=%s status=%s",
            campaign_id,
            report.transfer_calls,
            len(report.succeeded),
            len(report.failed),
            report.blocked,
            report.paused,
            report.status.value,
        )
        return report


__all__ = ["SchedulerConfig", "RetryState", "RunReport", "CampaignScheduler"]
