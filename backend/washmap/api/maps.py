"""Endpoints for building distribution maps and planning campaigns over them."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Query, Response

from washmap.api.errors import to_http
from washmap.clients.addresses import KeyServiceAddressProvider
from washmap.config import get_settings
from washmap.core.errors import WashMapError
from washmap.core.planner import DEFAULT_SPLIT_POLICY, PlanRequest, SplitPolicy, create_plan
from washmap.db.store import get_repository
from washmap.models import (
    AutoCreateRequest,
    CampaignOut,
    EdgeOut,
    MapCreateRequest,
    MapDetail,
    MapOut,
    NodeOut,
    PlanCreateRequest,
    PlanOut,
    TaskOut,
)
from washmap.services.maps import MapSpec, auto_create, create_map, delete_map

LOGGER = logging.getLogger(__name__)

router = APIRouter(prefix="/maps", tags=["maps"])


def get_address_provider() -> KeyServiceAddressProvider:
    settings = get_settings()
    return KeyServiceAddressProvider(settings.key_service_url, timeout=settings.http_timeout_s)


def _map_spec(payload: MapCreateRequest) -> MapSpec:
    return MapSpec(
        project_id=payload.project_id,
        project_label=payload.project_label,
        root_address=payload.root_address,
        branching=payload.branching,
        depth=payload.depth,
        map_type=payload.map_type,
        root_label=payload.root_label,
        leaf_addresses=payload.leaf_addresses,
    )


def _plan_request(payload: PlanCreateRequest, split_policy: Optional[str]) -> PlanRequest:
    return PlanRequest(
        token=payload.token,
        decimals=payload.decimals,
        gas=payload.gas,
        total_amount=payload.total_amount,
        split_policy=SplitPolicy(payload.split_policy or split_policy or DEFAULT_SPLIT_POLICY),
        branch_amounts=payload.branch_amounts,
        reverse=payload.reverse,
        endpoint=payload.endpoint,
        enabled=payload.enabled,
        max_attempts=payload.max_attempts or get_settings().max_attempts,
    )


def _plan_out(plan) -> PlanOut:
    return PlanOut(
        campaign=CampaignOut.model_validate(plan.campaign),
        tasks=[TaskOut.model_validate(task) for task in plan.tasks],
    )


@router.post("", response_model=MapDetail, status_code=201)
def create_map_route(payload: MapCreateRequest) -> MapDetail:
    """Build the tree for a funding root and persist it."""
    repository = get_repository()
    try:
        record, graph = create_map(
            repository,
            _map_spec(payload),
            get_address_provider(),
            reuse_window_s=get_settings().root_reuse_window_s,
            split_policy=payload.split_policy,
        )
    except (WashMapError, ValueError, RuntimeError) as exc:
        raise to_http(exc) from exc

    return MapDetail(
        map=MapOut.model_validate(record),
        nodes=[NodeOut.model_validate(node) for node in graph.nodes()],
        edges=[EdgeOut.model_validate(edge) for edge in graph.edges()],
    )


@router.get("", response_model=List[MapOut])
def list_maps_route(project_id: Optional[int] = Query(default=None, ge=0)) -> List[MapOut]:
    try:
        records = get_repository().list_maps(project_id=project_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return [MapOut.model_validate(record) for record in records]


@router.post("/auto", response_model=PlanOut, status_code=201)
def auto_create_route(payload: AutoCreateRequest) -> PlanOut:
    """Build a map and an enabled campaign over it in one request."""
    try:
        _, plan = auto_create(
            get_repository(),
            _map_spec(payload),
            _plan_request(payload.plan, payload.split_policy),
            get_address_provider(),
            reuse_window_s=get_settings().root_reuse_window_s,
        )
    except (WashMapError, ValueError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return _plan_out(plan)


@router.get("/{map_id}", response_model=MapOut)
def get_map_route(map_id: str) -> MapOut:
    try:
        record = get_repository().get_map(map_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return MapOut.model_validate(record)


@router.get("/{map_id}/nodes", response_model=List[NodeOut])
def list_nodes_route(map_id: str) -> List[NodeOut]:
    try:
        nodes = get_repository().list_nodes(map_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    nodes.sort(key=lambda node: (node.depth_id, node.ordinal))
    return [NodeOut.model_validate(node) for node in nodes]


@router.get("/{map_id}/edges", response_model=List[EdgeOut])
def list_edges_route(map_id: str) -> List[EdgeOut]:
    try:
        edges = get_repository().list_edges(map_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return [EdgeOut.model_validate(edge) for edge in edges]


@router.delete("/{map_id}", status_code=204)
def delete_map_route(map_id: str) -> Response:
    try:
        delete_map(get_repository(), map_id)
    except (WashMapError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return Response(status_code=204)


@router.post("/{map_id}/plan", response_model=PlanOut, status_code=201)
def plan_route(map_id: str, payload: PlanCreateRequest) -> PlanOut:
    """Plan a campaign over a stored map; the campaign starts disabled unless requested."""
    repository = get_repository()
    try:
        record = repository.get_map(map_id)
        plan = create_plan(repository, map_id, _plan_request(payload, record.params.get("split_policy")))
    except (WashMapError, ValueError, RuntimeError) as exc:
        raise to_http(exc) from exc
    return _plan_out(plan)


__all__ = ["router"]
