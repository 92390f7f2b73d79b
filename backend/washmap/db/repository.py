"""Persistence interface consumed by the builder, planner, scheduler and API."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Sequence, Set

from washmap.core.records import (
    CampaignRecord,
    EdgeRecord,
    MapRecord,
    NodeRecord,
    TaskPage,
    TaskRecord,
)
from washmap.core.status import Status

TASK_ORDER_FIELDS = (
    "sort_id",
    "status",
    "amount",
    "gas",
    "from_address",
    "to_address",
    "attempts",
    "created_at",
    "updated_at",
)


class Repository(ABC):
    """Record store for maps, nodes, edges, campaigns and tasks.

    ``create_graph`` and ``create_plan`` are single atomic writes: either every
    row is visible afterwards or none is. Task status changes go through the
    transition methods, which enforce the task state machine atomically.
    """

    # --- maps ---

    @abstractmethod
    def create_graph(self, map_record: MapRecord, nodes: Sequence[NodeRecord], edges: Sequence[EdgeRecord]) -> MapRecord:
        raise NotImplementedError

    @abstractmethod
    def get_map(self, map_id: str) -> MapRecord:
        raise NotImplementedError

    @abstractmethod
    def list_maps(self, project_id: Optional[int] = None) -> List[MapRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_nodes(self, map_id: str) -> List[NodeRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_edges(self, map_id: str) -> List[EdgeRecord]:
        raise NotImplementedError

    @abstractmethod
    def delete_map(self, map_id: str) -> None:
        """Delete a map with its nodes and edges; refused while campaigns exist."""
        raise NotImplementedError

    @abstractmethod
    def recent_root_addresses(self, since: datetime) -> Set[str]:
        """Root addresses of maps that received a campaign at or after ``since``."""
        raise NotImplementedError

    # --- campaigns ---

    @abstractmethod
    def create_plan(self, campaign: CampaignRecord, tasks: Sequence[TaskRecord]) -> CampaignRecord:
        raise NotImplementedError

    @abstractmethod
    def get_campaign(self, campaign_id: str) -> CampaignRecord:
        raise NotImplementedError

    @abstractmethod
    def list_campaigns(self, project_id: Optional[int] = None, enabled: Optional[bool] = None) -> List[CampaignRecord]:
        raise NotImplementedError

    @abstractmethod
    def update_campaign(self, campaign_id: str, **fields) -> CampaignRecord:
        raise NotImplementedError

    # --- tasks ---

    @abstractmethod
    def list_tasks(self, campaign_id: str) -> List[TaskRecord]:
        """All tasks of a campaign ordered by ``sort_id``."""
        raise NotImplementedError

    @abstractmethod
    def page_tasks(
        self,
        campaign_id: str,
        page: int = 1,
        page_size: int = 10,
        order_field: str = "sort_id",
        descending: bool = False,
    ) -> TaskPage:
        raise NotImplementedError

    @abstractmethod
    def get_task(self, task_id: str) -> TaskRecord:
        raise NotImplementedError

    @abstractmethod
    def claim_task(self, task_id: str, owner: Optional[str] = None) -> TaskRecord:
        """Compare-and-set a claimable task to ``processing`` under ``owner``'s lease.

        Raises ``ClaimConflict`` if another claim won.
        """
        raise NotImplementedError

    @abstractmethod
    def complete_task(self, task_id: str, signature: str, owner: Optional[str] = None) -> TaskRecord:
        """Record a signature; with ``owner`` set, raise ``ClaimConflict`` unless that lease still holds."""
        raise NotImplementedError

    @abstractmethod
    def fail_task(self, task_id: str, error: str, owner: Optional[str] = None) -> TaskRecord:
        raise NotImplementedError

    @abstractmethod
    def reset_task(self, task_id: str) -> TaskRecord:
        """Explicit retry request: ``failed`` -> ``unprocessed``."""
        raise NotImplementedError

    @abstractmethod
    def reset_campaign_tasks(
        self,
        campaign_id: str,
        from_status: Status,
        to_status: Status,
        unsigned_only: bool = False,
        claimed_before: Optional[datetime] = None,
    ) -> int:
        """Bulk status change; ``claimed_before`` leaves claims taken at or after it alone."""
        raise NotImplementedError

    @abstractmethod
    def update_task(self, task_id: str, amount: Optional[Decimal] = None, gas: Optional[Decimal] = None) -> TaskRecord:
        """Edit amount/gas of a task that is not processing or processed."""
        raise NotImplementedError

    def close(self) -> None:
        """Release backend resources."""


__all__ = ["Repository", "TASK_ORDER_FIELDS"]
