"""In-process repository used for local runs and tests.

A single re-entrant lock guards every read-modify-write, which gives the same
atomicity the Neo4j repository gets from write transactions. Records are
copied on the way in and out so callers never share mutable state with the
store.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Set

from washmap.core.errors import (
    ClaimConflict,
    InvalidTransition,
    MapInUse,
    UnknownCampaign,
    UnknownMap,
    UnknownTask,
)
from washmap.core.records import (
    CampaignRecord,
    EdgeRecord,
    MapRecord,
    NodeRecord,
    NodeType,
    TaskPage,
    TaskRecord,
    utcnow,
)
from washmap.core.status import CLAIMABLE, Status, check_transition
from washmap.db.repository import TASK_ORDER_FIELDS, Repository

LOGGER = logging.getLogger(__name__)

CAMPAIGN_FIELDS = {"enabled", "status", "root_has_enough_token", "task_gas", "endpoint", "max_attempts"}


class InMemoryRepository(Repository):
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._maps: Dict[str, MapRecord] = {}
        self._nodes: Dict[str, List[NodeRecord]] = {}
        self._edges: Dict[str, List[EdgeRecord]] = {}
        self._campaigns: Dict[str, CampaignRecord] = {}
        self._tasks: Dict[str, TaskRecord] = {}

    # --- maps ---

    def create_graph(self, map_record, nodes, edges):
        with self._lock:
            self._maps[map_record.id] = replace(map_record)
            self._nodes[map_record.id] = [replace(node) for node in nodes]
            self._edges[map_record.id] = [replace(edge) for edge in edges]
        LOGGER.info("Stored map %s with %d nodes and %d edges", map_record.id, len(nodes), len(edges))
        return replace(map_record)

    def _map(self, map_id: str) -> MapRecord:
        record = self._maps.get(map_id)
        if record is None:
            raise UnknownMap(f"Map {map_id} not found")
        return record

    def get_map(self, map_id):
        with self._lock:
            return replace(self._map(map_id))

    def list_maps(self, project_id=None):
        with self._lock:
            return [
                replace(record)
                for record in sorted(self._maps.values(), key=lambda item: item.created_at)
                if project_id is None or record.project_id == project_id
            ]

    def list_nodes(self, map_id):
        with self._lock:
            self._map(map_id)
            return [replace(node) for node in self._nodes.get(map_id, [])]

    def list_edges(self, map_id):
        with self._lock:
            self._map(map_id)
            return [replace(edge) for edge in self._edges.get(map_id, [])]

    def delete_map(self, map_id):
        with self._lock:
            self._map(map_id)
            if any(campaign.map_id == map_id for campaign in self._campaigns.values()):
                raise MapInUse(f"Map {map_id} still has campaigns")
            del self._maps[map_id]
            self._nodes.pop(map_id, None)
            self._edges.pop(map_id, None)

    def recent_root_addresses(self, since: datetime) -> Set[str]:
        with self._lock:
            map_ids = {c.map_id for c in self._campaigns.values() if c.created_at >= since}
            return {
                node.address
                for map_id in map_ids
                for node in self._nodes.get(map_id, [])
                if node.node_type == NodeType.ROOT
            }

    # --- campaigns ---

    def create_plan(self, campaign, tasks):
        with self._lock:
            self._map(campaign.map_id)
            self._campaigns[campaign.id] = replace(campaign)
            for task in tasks:
                self._tasks[task.id] = replace(task)
        return replace(campaign)

    def _campaign(self, campaign_id: str) -> CampaignRecord:
        record = self._campaigns.get(campaign_id)
        if record is None:
            raise UnknownCampaign(f"Campaign {campaign_id} not found")
        return record

    def get_campaign(self, campaign_id):
        with self._lock:
            return replace(self._campaign(campaign_id))

    def list_campaigns(self, project_id=None, enabled=None):
        with self._lock:
            found = []
            for campaign in sorted(self._campaigns.values(), key=lambda item: item.created_at):
                if enabled is not None and campaign.enabled != enabled:
                    continue
                if project_id is not None and self._maps[campaign.map_id].project_id != project_id:
                    continue
                found.append(replace(campaign))
            return found

    def update_campaign(self, campaign_id, **fields):
        unknown = set(fields) - CAMPAIGN_FIELDS
        if unknown:
            raise ValueError(f"Unsupported campaign fields: {', '.join(sorted(unknown))}")
        with self._lock:
            campaign = self._campaign(campaign_id)
            if "status" in fields:
                fields["status"] = Status(fields["status"])
            updated = replace(campaign, updated_at=utcnow(), **fields)
            self._campaigns[campaign_id] = updated
            if "task_gas" in fields:
                for task in self._campaign_tasks(campaign_id):
                    if task.status is not Status.PROCESSED:
                        self._tasks[task.id] = replace(task, gas=Decimal(fields["task_gas"]), updated_at=utcnow())
            return replace(updated)

    # --- tasks ---

    def _campaign_tasks(self, campaign_id: str) -> List[TaskRecord]:
        return sorted(
            (task for task in self._tasks.values() if task.campaign_id == campaign_id),
            key=lambda task: task.sort_id,
        )

    def list_tasks(self, campaign_id):
        with self._lock:
            self._campaign(campaign_id)
            return [replace(task) for task in self._campaign_tasks(campaign_id)]

    def page_tasks(self, campaign_id, page=1, page_size=10, order_field="sort_id", descending=False):
        if order_field not in TASK_ORDER_FIELDS:
            order_field = "sort_id"
        with self._lock:
            self._campaign(campaign_id)
            tasks = self._campaign_tasks(campaign_id)

        def sort_key(task: TaskRecord):
            value = getattr(task, order_field)
            return (value.value if isinstance(value, Status) else value, task.sort_id)

        tasks.sort(key=sort_key, reverse=descending)
        offset = (page - 1) * page_size
        return TaskPage(tasks=[replace(task) for task in tasks[offset : offset + page_size]], total=len(tasks))

    def _task(self, task_id: str) -> TaskRecord:
        record = self._tasks.get(task_id)
        if record is None:
            raise UnknownTask(f"Task {task_id} not found")
        return record

    def get_task(self, task_id):
        with self._lock:
            return replace(self._task(task_id))

    def _transition(self, task_id: str, target: Status, **fields) -> TaskRecord:
        task = self._task(task_id)
        check_transition(task.status, target)
        updated = replace(task, status=target, updated_at=utcnow(), **fields)
        self._tasks[task_id] = updated
        return replace(updated)

    def claim_task(self, task_id, owner=None):
        with self._lock:
            task = self._task(task_id)
            if task.status not in CLAIMABLE:
                raise ClaimConflict(f"Task {task_id} is {task.status.value}")
            return self._transition(
                task_id,
                Status.PROCESSING,
                attempts=task.attempts + 1,
                error=None,
                claim_owner=owner,
                claimed_at=utcnow(),
            )

    def _check_lease(self, task_id: str, owner) -> None:
        if owner is None:
            return
        task = self._task(task_id)
        if task.status is not Status.PROCESSING or task.claim_owner != owner:
            raise ClaimConflict(f"Task {task_id} is no longer claimed by {owner}")

    def complete_task(self, task_id, signature, owner=None):
        with self._lock:
            self._check_lease(task_id, owner)
            return self._transition(task_id, Status.PROCESSED, signature=signature, is_success=True, error=None)

    def fail_task(self, task_id, error, owner=None):
        with self._lock:
            self._check_lease(task_id, owner)
            return self._transition(task_id, Status.FAILED, is_success=False, error=error)

    def reset_task(self, task_id):
        with self._lock:
            task = self._task(task_id)
            if task.status is not Status.FAILED:
                raise InvalidTransition(f"Only failed tasks can be retried, task {task_id} is {task.status.value}")
            return self._transition(task_id, Status.UNPROCESSED)

    def reset_campaign_tasks(self, campaign_id, from_status, to_status, unsigned_only=False, claimed_before=None):
        check_transition(from_status, to_status)
        with self._lock:
            self._campaign(campaign_id)
            count = 0
            for task in self._campaign_tasks(campaign_id):
                if task.status is not Status(from_status):
                    continue
                if unsigned_only and task.signature:
                    continue
                if claimed_before is not None and task.claimed_at is not None and task.claimed_at >= claimed_before:
                    continue
                self._tasks[task.id] = replace(
                    task,
                    status=Status(to_status),
                    claim_owner=None,
                    claimed_at=None,
                    updated_at=utcnow(),
                )
                count += 1
            return count

    def update_task(self, task_id, amount=None, gas=None):
        with self._lock:
            task = self._task(task_id)
            if task.status in (Status.PROCESSING, Status.PROCESSED):
                raise InvalidTransition(f"Task {task_id} is {task.status.value} and cannot be edited")
            changes = {}
            if amount is not None:
                changes["amount"] = Decimal(amount)
            if gas is not None:
                changes["gas"] = Decimal(gas)
            updated = replace(task, updated_at=utcnow(), **changes)
            self._tasks[task_id] = updated
            return replace(updated)


__all__ = ["InMemoryRepository"]
