"""Arena-backed distribution tree and the builder that lays it out.

Nodes are held in a dict keyed by id with separate parent and children
indexes, so every structural query is a dict lookup.
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from washmap.core.errors import InvalidSpecification
from washmap.core.records import EdgeRecord, NodeRecord, NodeType

LOGGER = logging.getLogger(__name__)

AddressAllocator = Callable[[int], Sequence[str]]


class GraphStore:
    """Read-only view over one map's nodes and parent -> child edges."""

    def __init__(self, nodes: Iterable[NodeRecord], edges: Iterable[EdgeRecord]) -> None:
        self._nodes: Dict[str, NodeRecord] = {}
        self._parent: Dict[str, str] = {}
        self._children: Dict[str, List[str]] = defaultdict(list)
        self._root_id: Optional[str] = None

        for node in nodes:
            self._nodes[node.id] = node
            if node.node_type == NodeType.ROOT:
                if self._root_id is not None:
                    raise InvalidSpecification("Map has more than one root node")
                self._root_id = node.id

        for edge in edges:
            parent = self._nodes.get(edge.from_node_id)
            child = self._nodes.get(edge.to_node_id)
            if parent is None or child is None:
                raise InvalidSpecification(
                    f"Edge {edge.from_node_id} -> {edge.to_node_id} references an unknown node"
                )
            if child.id in self._parent:
                raise InvalidSpecification(f"Node {child.label} has more than one inbound edge")
            if child.depth_id != parent.depth_id + 1:
                raise InvalidSpecification(
                    f"Edge {parent.label} -> {child.label} does not step exactly one level down"
                )
            self._parent[child.id] = parent.id
            self._children[parent.id].append(child.id)

        for child_ids in self._children.values():
            child_ids.sort(key=lambda node_id: self._nodes[node_id].ordinal)

        if self._nodes and self._root_id is None:
            raise InvalidSpecification("Map has no root node")
        for node_id, node in self._nodes.items():
            if node_id != self._root_id and node_id not in self._parent:
                raise InvalidSpecification(f"Node {node.label} is not connected to the root")

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    @property
    def root(self) -> NodeRecord:
        if self._root_id is None:
            raise InvalidSpecification("Map has no root node")
        return self._nodes[self._root_id]

    def node(self, node_id: str) -> NodeRecord:
        return self._nodes[node_id]

    def nodes(self) -> List[NodeRecord]:
        return list(self.iter_breadth_first())

    def children_of(self, node_id: str) -> List[NodeRecord]:
        return [self._nodes[child_id] for child_id in self._children.get(node_id, ())]

    def parent_of(self, node_id: str) -> Optional[NodeRecord]:
        parent_id = self._parent.get(node_id)
        return self._nodes[parent_id] if parent_id is not None else None

    def depth_of(self, node_id: str) -> int:
        return self._nodes[node_id].depth_id

    def leaves(self) -> List[NodeRecord]:
        return [node for node in self.iter_breadth_first() if not self._children.get(node.id)]

    def descendant_leaves(self, node_id: str) -> List[NodeRecord]:
        stack = [node_id]
        found: List[NodeRecord] = []
        while stack:
            current = stack.pop()
            child_ids = self._children.get(current)
            if not child_ids:
                found.append(self._nodes[current])
                continue
            stack.extend(reversed(child_ids))
        return found

    def iter_breadth_first(self) -> Iterator[NodeRecord]:
        if self._root_id is None:
            return
        queue = [self._root_id]
        while queue:
            next_level: List[str] = []
            for node_id in queue:
                yield self._nodes[node_id]
                next_level.extend(self._children.get(node_id, ()))
            queue = next_level

    def levels(self) -> List[List[NodeRecord]]:
        grouped: Dict[int, List[NodeRecord]] = defaultdict(list)
        for node in self.iter_breadth_first():
            grouped[node.depth_id].append(node)
        return [grouped[depth] for depth in sorted(grouped)]

    def edges(self) -> List[EdgeRecord]:
        """Edges in breadth-first order of their parent node."""
        return [
            EdgeRecord(from_node_id=node.id, to_node_id=child_id)
            for node in self.iter_breadth_first()
            for child_id in self._children.get(node.id, ())
        ]

    def parent_child_pairs(self) -> List[Tuple[NodeRecord, NodeRecord]]:
        return [(self._nodes[edge.from_node_id], self._nodes[edge.to_node_id]) for edge in self.edges()]


def expected_node_count(branching: int, depth: int) -> int:
    if branching == 1:
        return depth + 1
    return (branching ** (depth + 1) - 1) // (branching - 1)


def _validate(root_address: str, branching: int, depth: int) -> None:
    if not root_address or not str(root_address).strip():
        raise InvalidSpecification("Root address cannot be empty")
    if branching < 1:
        raise InvalidSpecification("Branching factor must be at least 1")
    if depth < 1:
        raise InvalidSpecification("Depth must be at least 1")


def build_graph(
    map_id: str,
    root_address: str,
    branching: int,
    depth: int,
    allocate: AddressAllocator,
    root_label: str = "root",
    leaf_addresses: Optional[Sequence[str]] = None,
) -> GraphStore:
    """Lay out a complete ``branching``-ary tree of ``depth`` levels below the root.

    ``allocate(n)`` supplies fresh addresses for the non-root nodes that have no
    caller-provided address. When ``leaf_addresses`` is given it fixes the leaf
    addresses in breadth-first order and only intermediates are allocated.
    """
    _validate(root_address, branching, depth)

    leaf_count = branching ** depth
    non_root_count = expected_node_count(branching, depth) - 1
    if leaf_addresses is not None and len(leaf_addresses) != leaf_count:
        raise InvalidSpecification(
            f"Expected {leaf_count} leaf addresses, received {len(leaf_addresses)}"
        )

    allocated_count = non_root_count - (leaf_count if leaf_addresses is not None else 0)
    allocated = list(allocate(allocated_count)) if allocated_count else []
    if len(allocated) != allocated_count:
        raise InvalidSpecification(
            f"Address provider returned {len(allocated)} addresses, {allocated_count} required"
        )
    fresh = iter(allocated)
    fixed_leaves = iter(leaf_addresses or ())

    root = NodeRecord(
        id=uuid.uuid4().hex,
        map_id=map_id,
        label=root_label,
        address=root_address.strip(),
        node_type=NodeType.ROOT,
        chain_id=0,
        depth_id=0,
        ordinal=1,
    )
    nodes: List[NodeRecord] = [root]
    edges: List[EdgeRecord] = []

    level = [root]
    for current_depth in range(1, depth + 1):
        is_leaf_level = current_depth == depth
        next_level: List[NodeRecord] = []
        ordinal = 0
        for parent in level:
            for branch in range(1, branching + 1):
                ordinal += 1
                if is_leaf_level and leaf_addresses is not None:
                    address = next(fixed_leaves)
                else:
                    address = next(fresh)
                child = NodeRecord(
                    id=uuid.uuid4().hex,
                    map_id=map_id,
                    label=f"{root_label}-{current_depth}-{ordinal}",
                    address=address,
                    node_type=NodeType.LEAF if is_leaf_level else NodeType.INTERMEDIATE,
                    chain_id=branch if parent is root else parent.chain_id,
                    depth_id=current_depth,
                    ordinal=ordinal,
                )
                nodes.append(child)
                edges.append(EdgeRecord(from_node_id=parent.id, to_node_id=child.id))
                next_level.append(child)
        level = next_level

    addresses = [node.address for node in nodes]
    if len(set(addresses)) != len(addresses):
        raise InvalidSpecification("Map addresses must be unique")

    LOGGER.debug(
        "Built map %s: branching=%d depth=%d nodes=%d edges=%d",
        map_id,
        branching,
        depth,
        len(nodes),
        len(edges),
    )
    return GraphStore(nodes, edges)


__all__ = ["GraphStore", "AddressAllocator", "build_graph", "expected_node_count"]
