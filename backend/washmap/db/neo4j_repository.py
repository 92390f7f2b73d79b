"""Neo4j-backed repository.

Maps are stored as a property graph: ``(:WashMap)-[:HAS_NODE]->(:AddressNode)``,
tree edges as ``(:AddressNode)-[:FUNDS]->(:AddressNode)``, campaigns as
``(:TaskCampaign)-[:PLANNED_FROM]->(:WashMap)`` and tasks as
``(:Task)-[:PART_OF]->(:TaskCampaign)``. Every multi-row write runs inside one
managed write transaction.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Set

from neo4j import Driver, ManagedTransaction
from neo4j.exceptions import DriverError, Neo4jError

from washmap.core.errors import (
    ClaimConflict,
    InvalidTransition,
    MapInUse,
    StoreError,
    UnknownCampaign,
    UnknownMap,
    UnknownTask,
)
from washmap.core.records import (
    CampaignRecord,
    EdgeRecord,
    MapRecord,
    NodeRecord,
    TaskPage,
    TaskRecord,
    utcnow,
)
from washmap.core.status import CLAIMABLE, TASK_TRANSITIONS, Status, check_transition
from washmap.db.repository import TASK_ORDER_FIELDS, Repository

LOGGER = logging.getLogger(__name__)

_CREATE_GRAPH = """
CREATE (m:WashMap {
    id: $map.id,
    project_id: $map.project_id,
    project_label: $map.project_label,
    map_type: $map.map_type,
    params: $map.params,
    created_at: $map.created_at
})
WITH m
UNWIND $nodes AS node
CREATE (m)-[:HAS_NODE]->(:AddressNode {
    id: node.id,
    map_id: node.map_id,
    label: node.label,
    address: node.address,
    node_type: node.node_type,
    chain_id: node.chain_id,
    depth_id: node.depth_id,
    ordinal: node.ordinal
})
WITH DISTINCT m
UNWIND $edges AS edge
MATCH (m)-[:HAS_NODE]->(parent:AddressNode {id: edge.from_node_id})
MATCH (m)-[:HAS_NODE]->(child:AddressNode {id: edge.to_node_id})
CREATE (parent)-[:FUNDS]->(child)
RETURN count(*) AS edge_count
"""

_CREATE_PLAN = """
MATCH (m:WashMap {id: $campaign.map_id})
CREATE (c:TaskCampaign)-[:PLANNED_FROM]->(m)
SET c = $campaign
WITH c
UNWIND $tasks AS task
CREATE (t:Task)-[:PART_OF]->(c)
SET t = task
RETURN count(t) AS task_count
"""

# Re-reading the status after taking the node write lock keeps the CAS
# correct when two workers race for the same task.
_CLAIM_TASK = """
MATCH (t:Task {id: $task_id})
SET t.lock_version = coalesce(t.lock_version, 0) + 1
WITH t
WHERE t.status IN $claimable
SET t.status = $processing,
    t.attempts = coalesce(t.attempts, 0) + 1,
    t.error = null,
    t.claim_owner = $owner,
    t.claimed_at = $now,
    t.updated_at = $now
RETURN t
"""

_TRANSITION_TASK = """
MATCH (t:Task {id: $task_id})
SET t.lock_version = coalesce(t.lock_version, 0) + 1
WITH t
WHERE t.status IN $allowed_from
  AND ($owner IS NULL OR t.claim_owner = $owner)
SET t += $fields
RETURN t
"""


def _map_to_props(record: MapRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "project_id": record.project_id,
        "project_label": record.project_label,
        "map_type": record.map_type,
        "params": json.dumps(record.params, sort_keys=True, default=str),
        "created_at": record.created_at,
    }


def _map_from_props(props: Dict[str, Any]) -> MapRecord:
    return MapRecord(
        id=props["id"],
        project_id=int(props["project_id"]),
        project_label=props.get("project_label", ""),
        map_type=props["map_type"],
        params=json.loads(props.get("params") or "{}"),
        created_at=_to_datetime(props.get("created_at")),
    )


def _node_from_props(props: Dict[str, Any]) -> NodeRecord:
    return NodeRecord(
        id=props["id"],
        map_id=props["map_id"],
        label=props["label"],
        address=props["address"],
        node_type=props["node_type"],
        chain_id=int(props.get("chain_id", 0)),
        depth_id=int(props["depth_id"]),
        ordinal=int(props.get("ordinal", 1)),
    )


def _campaign_to_props(record: CampaignRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "map_id": record.map_id,
        "task_count": record.task_count,
        "task_gas": str(record.task_gas),
        "token": record.token,
        "decimals": record.decimals,
        "total_amount": str(record.total_amount),
        "leaf_count": record.leaf_count,
        "split_policy": record.split_policy,
        "reverse": record.reverse,
        "enabled": record.enabled,
        "root_has_enough_token": record.root_has_enough_token,
        "status": Status(record.status).value,
        "endpoint": record.endpoint,
        "max_attempts": record.max_attempts,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _campaign_from_props(props: Dict[str, Any]) -> CampaignRecord:
    return CampaignRecord(
        id=props["id"],
        map_id=props["map_id"],
        task_count=int(props["task_count"]),
        task_gas=Decimal(props.get("task_gas") or "0"),
        token=props["token"],
        decimals=int(props["decimals"]),
        total_amount=Decimal(props["total_amount"]),
        leaf_count=int(props["leaf_count"]),
        split_policy=props.get("split_policy", "equal_leaf"),
        reverse=bool(props.get("reverse", False)),
        enabled=bool(props.get("enabled", False)),
        root_has_enough_token=bool(props.get("root_has_enough_token", False)),
        status=Status(props.get("status", Status.UNPROCESSED.value)),
        endpoint=props.get("endpoint") or "",
        max_attempts=int(props.get("max_attempts", 3)),
        created_at=_to_datetime(props.get("created_at")),
        updated_at=_to_datetime(props.get("updated_at")),
    )


def _task_to_props(record: TaskRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "campaign_id": record.campaign_id,
        "map_id": record.map_id,
        "sort_id": record.sort_id,
        "from_node_id": record.from_node_id,
        "to_node_id": record.to_node_id,
        "from_address": record.from_address,
        "to_address": record.to_address,
        "token": record.token,
        "decimals": record.decimals,
        "amount": str(record.amount),
        "gas": str(record.gas),
        "reverse": record.reverse,
        "signature": record.signature,
        "is_success": record.is_success,
        "status": Status(record.status).value,
        "error": record.error,
        "attempts": record.attempts,
        "claim_owner": record.claim_owner,
        "claimed_at": record.claimed_at,
        "created_at": record.created_at,
        "updated_at": record.updated_at,
    }


def _task_from_props(props: Dict[str, Any]) -> TaskRecord:
    return TaskRecord(
        id=props["id"],
        campaign_id=props["campaign_id"],
        map_id=props["map_id"],
        sort_id=int(props["sort_id"]),
        from_node_id=props["from_node_id"],
        to_node_id=props["to_node_id"],
        from_address=props["from_address"],
        to_address=props["to_address"],
        token=props["token"],
        decimals=int(props["decimals"]),
        amount=Decimal(props["amount"]),
        gas=Decimal(props.get("gas") or "0"),
        reverse=bool(props.get("reverse", False)),
        signature=props.get("signature") or "",
        is_success=bool(props.get("is_success", False)),
        status=Status(props.get("status", Status.UNPROCESSED.value)),
        error=props.get("error"),
        attempts=int(props.get("attempts", 0)),
        claim_owner=props.get("claim_owner"),
        claimed_at=_to_datetime(props["claimed_at"]) if props.get("claimed_at") is not None else None,
        created_at=_to_datetime(props.get("created_at")),
        updated_at=_to_datetime(props.get("updated_at")),
    )


def _to_datetime(value: Any) -> datetime:
    if value is None:
        return utcnow()
    if hasattr(value, "to_native"):
        return value.to_native()
    return value


class Neo4jRepository(Repository):
    def __init__(self, driver: Driver, database: Optional[str] = None) -> None:
        self._driver = driver
        self._database = database

    def _session(self):
        if self._database:
            return self._driver.session(database=self._database)
        return self._driver.session()

    def _write(self, work: Callable[[ManagedTransaction], Any], action: str) -> Any:
        try:
            with self._session() as session:
                return session.execute_write(work)
        except (Neo4jError, DriverError) as exc:
            LOGGER.exception("Neo4j error while trying to %s: %s", action, exc)
            raise StoreError(f"Failed to {action}") from exc

    def _read(self, work: Callable[[ManagedTransaction], Any], action: str) -> Any:
        try:
            with self._session() as session:
                return session.execute_read(work)
        except (Neo4jError, DriverError) as exc:
            LOGGER.exception("Neo4j error while trying to %s: %s", action, exc)
            raise StoreError(f"Failed to {action}") from exc

    # --- maps ---

    def create_graph(self, map_record, nodes, edges):
        params = {
            "map": _map_to_props(map_record),
            "nodes": [node.__dict__ for node in nodes],
            "edges": [edge.__dict__ for edge in edges],
        }

        def work(tx: ManagedTransaction):
            return tx.run(_CREATE_GRAPH, params).single()

        self._write(work, "persist map graph")
        LOGGER.info("Persisted map %s with %d nodes and %d edges", map_record.id, len(nodes), len(edges))
        return map_record

    def get_map(self, map_id):
        def work(tx: ManagedTransaction):
            return tx.run("MATCH (m:WashMap {id: $map_id}) RETURN m", map_id=map_id).single()

        record = self._read(work, "load map")
        if record is None:
            raise UnknownMap(f"Map {map_id} not found")
        return _map_from_props(dict(record["m"]))

    def list_maps(self, project_id=None):
        def work(tx: ManagedTransaction):
            return list(
                tx.run(
                    """
                    MATCH (m:WashMap)
                    WHERE $project_id IS NULL OR m.project_id = $project_id
                    RETURN m ORDER BY m.created_at
                    """,
                    project_id=project_id,
                )
            )

        return [_map_from_props(dict(record["m"])) for record in self._read(work, "list maps")]

    def list_nodes(self, map_id):
        self.get_map(map_id)

        def work(tx: ManagedTransaction):
            return list(
                tx.run(
                    """
                    MATCH (:WashMap {id: $map_id})-[:HAS_NODE]->(n:AddressNode)
                    RETURN n ORDER BY n.depth_id, n.ordinal
                    """,
                    map_id=map_id,
                )
            )

        return [_node_from_props(dict(record["n"])) for record in self._read(work, "list map nodes")]

    def list_edges(self, map_id):
        self.get_map(map_id)

        def work(tx: ManagedTransaction):
            return list(
                tx.run(
                    """
                    MATCH (:WashMap {id: $map_id})-[:HAS_NODE]->(parent:AddressNode)-[:FUNDS]->(child:AddressNode)
                    RETURN parent.id AS from_node_id, child.id AS to_node_id
                    ORDER BY parent.depth_id, parent.ordinal, child.ordinal
                    """,
                    map_id=map_id,
                )
            )

        return [
            EdgeRecord(from_node_id=record["from_node_id"], to_node_id=record["to_node_id"])
            for record in self._read(work, "list map edges")
        ]

    def delete_map(self, map_id):
        def work(tx: ManagedTransaction):
            found = tx.run(
                """
                MATCH (m:WashMap {id: $map_id})
                OPTIONAL MATCH (c:TaskCampaign)-[:PLANNED_FROM]->(m)
                RETURN m.id AS id, count(c) AS campaigns
                """,
                map_id=map_id,
            ).single()
            if found is None or found["id"] is None:
                raise UnknownMap(f"Map {map_id} not found")
            if found["campaigns"]:
                raise MapInUse(f"Map {map_id} still has campaigns")
            tx.run(
                """
                MATCH (m:WashMap {id: $map_id})
                OPTIONAL MATCH (m)-[:HAS_NODE]->(n:AddressNode)
                DETACH DELETE n, m
                """,
                map_id=map_id,
            )

        self._write(work, "delete map")
        LOGGER.info("Deleted map %s", map_id)

    def recent_root_addresses(self, since: datetime) -> Set[str]:
        def work(tx: ManagedTransaction):
            return list(
                tx.run(
                    """
                    MATCH (c:TaskCampaign)-[:PLANNED_FROM]->(m:WashMap)-[:HAS_NODE]->(n:AddressNode {node_type: 'root'})
                    WHERE c.created_at >= $since
                    RETURN DISTINCT n.address AS address
                    """,
                    since=since,
                )
            )

        return {record["address"] for record in self._read(work, "load recent root addresses")}

    # --- campaigns ---

    def create_plan(self, campaign, tasks):
        params = {
            "campaign": _campaign_to_props(campaign),
            "tasks": [_task_to_props(task) for task in tasks],
        }

        def work(tx: ManagedTransaction):
            record = tx.run(_CREATE_PLAN, params).single()
            if record is None:
                raise UnknownMap(f"Map {campaign.map_id} not found")
            return record

        self._write(work, "persist campaign plan")
        LOGGER.info("Persisted campaign %s with %d tasks", campaign.id, len(tasks))
        return campaign

    def get_campaign(self, campaign_id):
        def work(tx: ManagedTransaction):
            return tx.run("MATCH (c:TaskCampaign {id: $campaign_id}) RETURN c", campaign_id=campaign_id).single()

        record = self._read(work, "load campaign")
        if record is None:
            raise UnknownCampaign(f"Campaign {campaign_id} not found")
        return _campaign_from_props(dict(record["c"]))

    def list_campaigns(self, project_id=None, enabled=None):
        def work(tx: ManagedTransaction):
            return list(
                tx.run(
                    """
                    MATCH (c:TaskCampaign)-[:PLANNED_FROM]->(m:WashMap)
                    WHERE ($project_id IS NULL OR m.project_id = $project_id)
                      AND ($enabled IS NULL OR c.enabled = $enabled)
                    RETURN c ORDER BY c.created_at
                    """,
                    project_id=project_id,
                    enabled=enabled,
                )
            )

        return [_campaign_from_props(dict(record["c"])) for record in self._read(work, "list campaigns")]

    def update_campaign(self, campaign_id, **fields):
        props: Dict[str, Any] = {}
        for key, value in fields.items():
            if key == "status":
                value = Status(value).value
            elif key == "task_gas":
                value = str(value)
            props[key] = value
        props["updated_at"] = utcnow()

        def work(tx: ManagedTransaction):
            record = tx.run(
                "MATCH (c:TaskCampaign {id: $campaign_id}) SET c += $props RETURN c",
                campaign_id=campaign_id,
                props=props,
            ).single()
            if record is None:
                raise UnknownCampaign(f"Campaign {campaign_id} not found")
            if "task_gas" in props:
                tx.run(
                    """
                    MATCH (t:Task)-[:PART_OF]->(:TaskCampaign {id: $campaign_id})
                    WHERE t.status <> $processed
                    SET t.gas = $gas, t.updated_at = $now
                    """,
                    campaign_id=campaign_id,
                    processed=Status.PROCESSED.value,
                    gas=props["task_gas"],
                    now=props["updated_at"],
                )
            return record

        return _campaign_from_props(dict(self._write(work, "update campaign")["c"]))

    # --- tasks ---

    def list_tasks(self, campaign_id):
        self.get_campaign(campaign_id)

        def work(tx: ManagedTransaction):
            return list(
                tx.run(
                    """
                    MATCH (t:Task)-[:PART_OF]->(:TaskCampaign {id: $campaign_id})
                    RETURN t ORDER BY t.sort_id
                    """,
                    campaign_id=campaign_id,
                )
            )

        return [_task_from_props(dict(record["t"])) for record in self._read(work, "list tasks")]

    def page_tasks(self, campaign_id, page=1, page_size=10, order_field="sort_id", descending=False):
        self.get_campaign(campaign_id)
        if order_field not in TASK_ORDER_FIELDS:
            order_field = "sort_id"
        direction = "DESC" if descending else "ASC"
        # amounts are stored as decimal strings
        sort_expr = f"toFloat(t.{order_field})" if order_field in ("amount", "gas") else f"t.{order_field}"
        # order_field is whitelisted above, so interpolation is safe
        query = f"""
        MATCH (t:Task)-[:PART_OF]->(:TaskCampaign {{id: $campaign_id}})
        WITH t ORDER BY {sort_expr} {direction}, t.sort_id
        WITH collect(t) AS tasks
        RETURN size(tasks) AS total, tasks[$offset..$offset + $limit] AS page
        """

        def work(tx: ManagedTransaction):
            return tx.run(
                query,
                campaign_id=campaign_id,
                offset=(page - 1) * page_size,
                limit=page_size,
            ).single()

        record = self._read(work, "page tasks")
        if record is None:
            return TaskPage(tasks=[], total=0)
        return TaskPage(
            tasks=[_task_from_props(dict(node)) for node in record["page"]],
            total=int(record["total"]),
        )

    def get_task(self, task_id):
        def work(tx: ManagedTransaction):
            return tx.run("MATCH (t:Task {id: $task_id}) RETURN t", task_id=task_id).single()

        record = self._read(work, "load task")
        if record is None:
            raise UnknownTask(f"Task {task_id} not found")
        return _task_from_props(dict(record["t"]))

    def claim_task(self, task_id, owner=None):
        def work(tx: ManagedTransaction):
            return tx.run(
                _CLAIM_TASK,
                task_id=task_id,
                claimable=[status.value for status in CLAIMABLE],
                processing=Status.PROCESSING.value,
                owner=owner,
                now=utcnow(),
            ).single()

        record = self._write(work, "claim task")
        if record is None:
            self.get_task(task_id)
            raise ClaimConflict(f"Task {task_id} is no longer claimable")
        return _task_from_props(dict(record["t"]))

    def _transition(self, task_id: str, target: Status, owner: Optional[str] = None, **fields) -> TaskRecord:
        allowed_from = [status.value for status in Status if target in TASK_TRANSITIONS[status]]
        props = dict(fields, status=target.value, updated_at=utcnow())

        def work(tx: ManagedTransaction):
            return tx.run(
                _TRANSITION_TASK,
                task_id=task_id,
                allowed_from=allowed_from,
                owner=owner,
                fields=props,
            ).single()

        record = self._write(work, f"move task to {target.value}")
        if record is None:
            current = self.get_task(task_id)
            if owner is not None and (current.status is not Status.PROCESSING or current.claim_owner != owner):
                raise ClaimConflict(f"Task {task_id} is no longer claimed by {owner}")
            check_transition(current.status, target)
            raise InvalidTransition(f"Task {task_id} changed concurrently")
        return _task_from_props(dict(record["t"]))

    def complete_task(self, task_id, signature, owner=None):
        return self._transition(task_id, Status.PROCESSED, owner, signature=signature, is_success=True, error=None)

    def fail_task(self, task_id, error, owner=None):
        return self._transition(task_id, Status.FAILED, owner, is_success=False, error=error)

    def reset_task(self, task_id):
        current = self.get_task(task_id)
        if current.status is not Status.FAILED:
            raise InvalidTransition(f"Only failed tasks can be retried, task {task_id} is {current.status.value}")
        return self._transition(task_id, Status.UNPROCESSED)

    def reset_campaign_tasks(self, campaign_id, from_status, to_status, unsigned_only=False, claimed_before=None):
        check_transition(from_status, to_status)
        self.get_campaign(campaign_id)

        def work(tx: ManagedTransaction):
            return tx.run(
                """
                MATCH (t:Task)-[:PART_OF]->(:TaskCampaign {id: $campaign_id})
                WHERE t.status = $from_status
                  AND (NOT $unsigned_only OR coalesce(t.signature, '') = '')
                  AND ($claimed_before IS NULL OR t.claimed_at IS NULL OR t.claimed_at < $claimed_before)
                SET t.status = $to_status, t.updated_at = $now,
                    t.claim_owner = null, t.claimed_at = null
                RETURN count(t) AS updated
                """,
                campaign_id=campaign_id,
                from_status=Status(from_status).value,
                to_status=Status(to_status).value,
                unsigned_only=unsigned_only,
                claimed_before=claimed_before,
                now=utcnow(),
            ).single()

        record = self._write(work, "reset campaign tasks")
        return int(record["updated"]) if record and record.get("updated") is not None else 0

    def update_task(self, task_id, amount=None, gas=None):
        props: Dict[str, Any] = {"updated_at": utcnow()}
        if amount is not None:
            props["amount"] = str(Decimal(amount))
        if gas is not None:
            props["gas"] = str(Decimal(gas))
        editable = [Status.UNPROCESSED.value, Status.FAILED.value]

        def work(tx: ManagedTransaction):
            return tx.run(
                _TRANSITION_TASK,
                task_id=task_id,
                allowed_from=editable,
                fields=props,
            ).single()

        record = self._write(work, "update task")
        if record is None:
            current = self.get_task(task_id)
            raise InvalidTransition(f"Task {task_id} is {current.status.value} and cannot be edited")
        return _task_from_props(dict(record["t"]))


__all__ = ["Neo4jRepository"]
