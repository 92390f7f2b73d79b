"""Expand a distribution map into an ordered, amount-annotated task set."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional, Sequence

from washmap.core.amounts import add_amounts, from_units, to_units
from washmap.core.errors import AmountPolicyError, EmptyGraph
from washmap.core.graph import GraphStore
from washmap.core.records import CampaignRecord, MapRecord, NodeRecord, TaskRecord
from washmap.core.status import Status

LOGGER = logging.getLogger(__name__)


class SplitPolicy(str, Enum):
    """How the campaign amount is divided across the edges of the tree."""

    EQUAL_LEAF = "equal_leaf"
    EQUAL_FANOUT = "equal_fanout"
    PER_BRANCH = "per_branch"


DEFAULT_SPLIT_POLICY = SplitPolicy.EQUAL_LEAF


@dataclass
class PlanRequest:
    """Inputs for planning one campaign over an existing map."""

    token: str
    decimals: int
    gas: Decimal = Decimal("0")
    total_amount: Optional[Decimal] = None
    split_policy: SplitPolicy = DEFAULT_SPLIT_POLICY
    branch_amounts: Optional[Sequence[Decimal]] = None
    reverse: Optional[bool] = None
    endpoint: str = ""
    enabled: bool = False
    max_attempts: int = 3


@dataclass
class PlannedTransfer:
    sort_id: int
    source: NodeRecord
    destination: NodeRecord
    amount: Decimal


@dataclass
class Plan:
    campaign: CampaignRecord
    tasks: List[TaskRecord] = field(default_factory=list)


def token_quantum(decimals: int) -> Decimal:
    """Smallest representable amount for a token with ``decimals`` places."""
    if decimals < 0:
        raise AmountPolicyError("Token decimals cannot be negative")
    return Decimal(1).scaleb(-decimals)


def _split_units(units: int, parts: int) -> List[int]:
    if parts < 1:
        raise AmountPolicyError("Cannot split an amount into zero parts")
    base, remainder = divmod(units, parts)
    return [base + (1 if index < remainder else 0) for index in range(parts)]


def split_evenly(amount: Decimal, parts: int, quantum: Decimal) -> List[Decimal]:
    """Split ``amount`` into ``parts`` shares that sum to it exactly at ``quantum`` precision.

    The amount is first truncated to whole quanta; leftover base units go one
    each to the leading shares.
    """
    return [from_units(units, quantum) for units in _split_units(to_units(amount, quantum), parts)]


def _sum_leaves_bottom_up(graph: GraphStore, leaf_units: Dict[str, int]) -> Dict[str, int]:
    inbound: Dict[str, int] = dict(leaf_units)
    for level in reversed(graph.levels()):
        for node in level:
            children = graph.children_of(node.id)
            if children:
                inbound[node.id] = sum(inbound[child.id] for child in children)
    return inbound


def _equal_leaf(graph: GraphStore, total_units: int) -> Dict[str, int]:
    leaves = graph.leaves()
    shares = _split_units(total_units, len(leaves))
    return _sum_leaves_bottom_up(graph, {leaf.id: share for leaf, share in zip(leaves, shares)})


def _equal_fanout(graph: GraphStore, total_units: int) -> Dict[str, int]:
    inbound: Dict[str, int] = {graph.root.id: total_units}
    for node in graph.iter_breadth_first():
        children = graph.children_of(node.id)
        if not children:
            continue
        for child, share in zip(children, _split_units(inbound[node.id], len(children))):
            inbound[child.id] = share
    return inbound


def _per_branch(graph: GraphStore, branch_amounts: Sequence[Decimal], quantum: Decimal) -> Dict[str, int]:
    branches = graph.children_of(graph.root.id)
    if len(branch_amounts) != len(branches):
        raise AmountPolicyError(
            f"Expected {len(branches)} branch amounts, received {len(branch_amounts)}"
        )
    leaf_units: Dict[str, int] = {}
    for branch, amount in zip(branches, branch_amounts):
        leaves = graph.descendant_leaves(branch.id)
        for leaf, share in zip(leaves, _split_units(to_units(amount, quantum), len(leaves))):
            leaf_units[leaf.id] = share
    return _sum_leaves_bottom_up(graph, leaf_units)


def compute_inbound_amounts(
    graph: GraphStore,
    policy: SplitPolicy,
    decimals: int,
    total_amount: Optional[Decimal] = None,
    branch_amounts: Optional[Sequence[Decimal]] = None,
) -> Dict[str, Decimal]:
    """Return the amount carried by the inbound edge of every non-root node.

    Splitting happens in integer base units, so no amount ever exceeds what
    was requested or falls between two multiples of the token's quantum.
    """
    quantum = token_quantum(decimals)
    policy = SplitPolicy(policy)

    if policy is SplitPolicy.PER_BRANCH:
        if not branch_amounts:
            raise AmountPolicyError("per_branch policy requires branch amounts")
        inbound = _per_branch(graph, branch_amounts, quantum)
    else:
        if total_amount is None or Decimal(total_amount) <= 0:
            raise AmountPolicyError(f"{policy.value} policy requires a positive total amount")
        total_units = to_units(total_amount, quantum)
        if policy is SplitPolicy.EQUAL_LEAF:
            inbound = _equal_leaf(graph, total_units)
        else:
            inbound = _equal_fanout(graph, total_units)

    inbound.pop(graph.root.id, None)
    for node_id, units in inbound.items():
        if units <= 0:
            raise AmountPolicyError(
                f"Computed amount {from_units(units, quantum)} for node {graph.node(node_id).label} is not positive"
            )
    return {node_id: from_units(units, quantum) for node_id, units in inbound.items()}


def order_transfers(
    graph: GraphStore, inbound: Dict[str, Decimal], reverse: bool = False
) -> List[PlannedTransfer]:
    """Assign ``sort_id`` in execution order.

    Distribution walks breadth-first from the root. Collection walks the same
    edges reversed, deepest level first, so every child -> parent transfer is
    ordered before its parent's own transfer upward.
    """
    pairs = graph.parent_child_pairs()
    if not pairs:
        raise EmptyGraph("Map has no edges to plan")

    if reverse:
        pairs.sort(key=lambda pair: (-pair[1].depth_id, pair[1].ordinal))
        directed = [(child, parent) for parent, child in pairs]
    else:
        directed = list(pairs)

    return [
        PlannedTransfer(
            sort_id=index,
            source=source,
            destination=destination,
            amount=inbound[parent_child[1].id],
        )
        for index, ((source, destination), parent_child) in enumerate(zip(directed, pairs))
    ]


def build_plan(map_record: MapRecord, graph: GraphStore, request: PlanRequest) -> Plan:
    """Create the campaign and task records for ``map_record`` without persisting them."""
    if not graph.edges():
        raise EmptyGraph(f"Map {map_record.id} has no edges")
    if request.max_attempts < 1:
        raise AmountPolicyError("max_attempts must be at least 1")
    gas = Decimal(request.gas)
    if gas < 0:
        raise AmountPolicyError("Gas per task cannot be negative")

    reverse = map_record.reverse if request.reverse is None else bool(request.reverse)
    inbound = compute_inbound_amounts(
        graph,
        request.split_policy,
        request.decimals,
        total_amount=request.total_amount,
        branch_amounts=request.branch_amounts,
    )
    transfers = order_transfers(graph, inbound, reverse=reverse)

    total = add_amounts(inbound[child.id] for child in graph.children_of(graph.root.id))
    campaign = CampaignRecord(
        id=uuid.uuid4().hex,
        map_id=map_record.id,
        task_count=len(transfers),
        task_gas=gas,
        token=request.token,
        decimals=request.decimals,
        total_amount=total,
        leaf_count=len(graph.leaves()),
        split_policy=SplitPolicy(request.split_policy).value,
        reverse=reverse,
        enabled=request.enabled,
        status=Status.UNPROCESSED,
        endpoint=request.endpoint,
        max_attempts=request.max_attempts,
    )
    tasks = [
        TaskRecord(
            id=uuid.uuid4().hex,
            campaign_id=campaign.id,
            map_id=map_record.id,
            sort_id=transfer.sort_id,
            from_node_id=transfer.source.id,
            to_node_id=transfer.destination.id,
            from_address=transfer.source.address,
            to_address=transfer.destination.address,
            token=request.token,
            decimals=request.decimals,
            amount=transfer.amount,
            gas=gas,
            reverse=reverse,
        )
        for transfer in transfers
    ]

    LOGGER.info(
        "Planned campaign %s for map %s: %d tasks, total=%s %s, policy=%s, reverse=%s",
        campaign.id,
        map_record.id,
        len(tasks),
        total,
        request.token,
        campaign.split_policy,
        reverse,
    )
    return Plan(campaign=campaign, tasks=tasks)


def create_plan(repository, map_id: str, request: PlanRequest) -> Plan:
    """Plan a campaign for a stored map and persist it in one atomic write."""
    map_record = repository.get_map(map_id)
    graph = GraphStore(repository.list_nodes(map_id), repository.list_edges(map_id))
    plan = build_plan(map_record, graph, request)
    repository.create_plan(plan.campaign, plan.tasks)
    return plan


__all__ = [
    "SplitPolicy",
    "DEFAULT_SPLIT_POLICY",
    "PlanRequest",
    "PlannedTransfer",
    "Plan",
    "token_quantum",
    "split_evenly",
    "compute_inbound_amounts",
    "order_transfers",
    "build_plan",
    "create_plan",
]
