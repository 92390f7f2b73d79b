"""Pydantic schemas for map construction and planning APIs."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from washmap.core.planner import DEFAULT_SPLIT_POLICY, SplitPolicy


class MapCreateRequest(BaseModel):
    """Shape of the tree to build below a funding root."""

    project_id: int = Field(..., ge=0)
    project_label: str = ""
    root_address: str = Field(..., description="Funding address at depth 0")
    branching: int = Field(..., ge=1, le=64, description="Children per non-leaf node")
    depth: int = Field(..., ge=1, le=12, description="Number of levels below the root")
    map_type: Literal["fan_out", "fan_in"] = "fan_out"
    root_label: str = "root"
    leaf_addresses: Optional[List[str]] = Field(
        None, description="Fixed leaf addresses in breadth-first order"
    )
    split_policy: SplitPolicy = DEFAULT_SPLIT_POLICY


class NodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    label: str
    address: str
    node_type: str
    chain_id: int
    depth_id: int


class EdgeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_node_id: str
    to_node_id: str


class MapOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: int
    project_label: str
    map_type: str
    params: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class MapDetail(BaseModel):
    map: MapOut
    nodes: List[NodeOut]
    edges: List[EdgeOut]


class PlanCreateRequest(BaseModel):
    """Amount and execution settings for one campaign over a map."""

    token: str = Field(..., description="Native token symbol or mint address")
    decimals: int = Field(..., ge=0, le=36)
    gas: Decimal = Field(Decimal("0"), ge=0, description="Gas reserved per task")
    total_amount: Optional[Decimal] = Field(None, gt=0)
    split_policy: Optional[SplitPolicy] = None
    branch_amounts: Optional[List[Decimal]] = Field(
        None, description="One amount per root child, for the per_branch policy"
    )
    reverse: Optional[bool] = Field(None, description="Override the map type's direction")
    endpoint: str = ""
    enabled: bool = False
    max_attempts: Optional[int] = Field(None, ge=1, le=20)


class AutoCreateRequest(MapCreateRequest):
    """Map shape plus the campaign to plan over it; the campaign starts enabled."""

    plan: PlanCreateRequest


__all__ = [
    "MapCreateRequest",
    "NodeOut",
    "EdgeOut",
    "MapOut",
    "MapDetail",
    "PlanCreateRequest",
    "AutoCreateRequest",
]
