"""Map lifecycle: build and persist a map, auto-plan it, delete it."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from washmap.core.errors import InvalidSpecification, RootAddressInUse
from washmap.core.graph import GraphStore, build_graph
from washmap.core.planner import DEFAULT_SPLIT_POLICY, Plan, PlanRequest, SplitPolicy, build_plan
from washmap.core.records import MapRecord, MapType, utcnow
from washmap.utils.addresses import normalize_address

LOGGER = logging.getLogger(__name__)


@dataclass
class MapSpec:
    project_id: int
    root_address: str
    branching: int
    depth: int
    project_label: str = ""
    map_type: str = MapType.FAN_OUT
    root_label: str = "root"
    leaf_addresses: Optional[List[str]] = None


def check_root_reuse(repository, root_address: str, window_s: float, now: Optional[datetime] = None) -> None:
    """Refuse a root that funded a campaign within the last ``window_s`` seconds."""
    if window_s <= 0:
        return
    since = (now or utcnow()) - timedelta(seconds=window_s)
    if root_address in repository.recent_root_addresses(since):
        raise RootAddressInUse(f"Root address {root_address} was used by a campaign in the last {window_s:g}s")


def _layout(
    repository,
    spec: MapSpec,
    address_provider,
    reuse_window_s: float,
    split_policy: SplitPolicy,
) -> Tuple[MapRecord, GraphStore]:
    if spec.map_type not in MapType.ALL:
        raise InvalidSpecification(f"Unknown map type: {spec.map_type}")
    try:
        root_address = normalize_address(spec.root_address)
        leaves = [normalize_address(address) for address in spec.leaf_addresses] if spec.leaf_addresses else None
    except ValueError as exc:
        raise InvalidSpecification(str(exc)) from exc
    check_root_reuse(repository, root_address, reuse_window_s)

    map_id = uuid.uuid4().hex
    root_label = spec.root_label or "root"
    graph = build_graph(
        map_id,
        root_address,
        spec.branching,
        spec.depth,
        address_provider.allocate,
        root_label=root_label,
        leaf_addresses=leaves,
    )
    record = MapRecord(
        id=map_id,
        project_id=spec.project_id,
        project_label=spec.project_label,
        map_type=spec.map_type,
        params={
            "root_label": root_label,
            "root_address": root_address,
            "branching": spec.branching,
            "depth": spec.depth,
            "split_policy": SplitPolicy(split_policy).value,
        },
    )
    return record, graph


def create_map(
    repository,
    spec: MapSpec,
    address_provider,
    reuse_window_s: float = 0.0,
    split_policy: SplitPolicy = DEFAULT_SPLIT_POLICY,
) -> Tuple[MapRecord, GraphStore]:
    """Lay out the tree for ``spec`` and store it in one write."""
    record, graph = _layout(repository, spec, address_provider, reuse_window_s, split_policy)
    repository.create_graph(record, graph.nodes(), graph.edges())
    LOGGER.info(
        "Created %s map %s for project %s: b=%d d=%d, %d nodes",
        spec.map_type,
        record.id,
        spec.project_id,
        spec.branching,
        spec.depth,
        len(graph),
    )
    return record, graph


def auto_create(
    repository,
    spec: MapSpec,
    request: PlanRequest,
    address_provider,
    reuse_window_s: float = 0.0,
) -> Tuple[MapRecord, Plan]:
    """Build a map and plan an enabled campaign over it.

    The plan is computed before anything is written, so a policy error leaves
    no orphan map behind.
    """
    record, graph = _layout(repository, spec, address_provider, reuse_window_s, request.split_policy)
    plan = build_plan(record, graph, replace(request, enabled=True))

    repository.create_graph(record, graph.nodes(), graph.edges())
    repository.create_plan(plan.campaign, plan.tasks)
    LOGGER.info("Auto-created map %s with enabled campaign %s", record.id, plan.campaign.id)
    return record, plan


def delete_map(repository, map_id: str) -> None:
    repository.delete_map(map_id)
    LOGGER.info("Deleted map %s", map_id)


__all__ = ["MapSpec", "check_root_reuse", "create_map", "auto_create", "delete_map"]
