"""Plain records exchanged between the scheduler core and the persistence layer."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from washmap.core.amounts import add_amounts, scale_amount
from washmap.core.status import Status


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeType:
    ROOT = "root"
    INTERMEDIATE = "intermediate"
    LEAF = "leaf"


class MapType:
    FAN_OUT = "fan_out"
    FAN_IN = "fan_in"

    ALL = (FAN_OUT, FAN_IN)


@dataclass
class MapRecord:
    """A distribution map and its immutable structural parameters."""

    id: str
    project_id: int
    project_label: str
    map_type: str
    params: Dict[str, Any]
    created_at: datetime = field(default_factory=utcnow)

    @property
    def reverse(self) -> bool:
        return self.map_type == MapType.FAN_IN


@dataclass
class NodeRecord:
    id: str
    map_id: str
    label: str
    address: str
    node_type: str
    chain_id: int
    depth_id: int
    ordinal: int = 1


@dataclass
class EdgeRecord:
    from_node_id: str
    to_node_id: str


@dataclass
class CampaignRecord:
    """One executable run of tasks planned from a map."""

    id: str
    map_id: str
    task_count: int
    task_gas: Decimal
    token: str
    decimals: int
    total_amount: Decimal
    leaf_count: int
    split_policy: str
    reverse: bool = False
    enabled: bool = False
    root_has_enough_token: bool = False
    status: Status = Status.UNPROCESSED
    endpoint: str = ""
    max_attempts: int = 3
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def gas_budget(self) -> Decimal:
        return scale_amount(self.task_gas, self.task_count)

    @property
    def required_funds(self) -> Decimal:
        return add_amounts((self.total_amount, self.gas_budget))


@dataclass
class TaskRecord:
    """One concrete transfer along one edge of the map."""

    id: str
    campaign_id: str
    map_id: str
    sort_id: int
    from_node_id: str
    to_node_id: str
    from_address: str
    to_address: str
    token: str
    decimals: int
    amount: Decimal
    gas: Decimal
    reverse: bool = False
    signature: str = ""
    is_success: bool = False
    status: Status = Status.UNPROCESSED
    error: Optional[str] = None
    attempts: int = 0
    # lease of the run that currently holds the task in ``processing``
    claim_owner: Optional[str] = None
    claimed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self, **changes: Any) -> "TaskRecord":
        return replace(self, **changes)


@dataclass
class TaskPage:
    tasks: List[TaskRecord]
    total: int


__all__ = [
    "utcnow",
    "NodeType",
    "MapType",
    "MapRecord",
    "NodeRecord",
    "EdgeRecord",
    "CampaignRecord",
    "TaskRecord",
    "TaskPage",
]
