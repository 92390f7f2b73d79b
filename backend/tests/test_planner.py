from decimal import Decimal

import pytest

from washmap.core.amounts import add_amounts
from washmap.core.errors import AmountPolicyError, EmptyGraph, UnknownMap
from washmap.core.graph import GraphStore, build_graph
from washmap.core.planner import (
    PlanRequest,
    SplitPolicy,
    build_plan,
    compute_inbound_amounts,
    create_plan,
    order_transfers,
    split_evenly,
    token_quantum,
)
from washmap.core.records import MapRecord, MapType, NodeRecord, NodeType
from washmap.core.status import Status

ROOT = '0x' + 'a' * 40


def sequential(count):
    return ['0x' + format(index + 1, '040x') for index in range(count)]


def make_map(branching, depth, map_type=MapType.FAN_OUT):
    graph = build_graph('map-1', ROOT, branching, depth, sequential)
    record = MapRecord(id='map-1', project_id=1, project_label='demo', map_type=map_type, params={})
    return record, graph


def test_two_by_two_equal_leaf_plan():
    record, graph = make_map(2, 2)
    plan = build_plan(record, graph, PlanRequest(token='sol', decimals=0, total_amount=Decimal('10000')))

    assert len(plan.tasks) == 6
    assert [task.sort_id for task in plan.tasks] == list(range(6))
    root_tasks = [task for task in plan.tasks if task.from_address == ROOT]
    assert [task.sort_id for task in root_tasks] == [0, 1]
    assert all(task.amount == Decimal('5000') for task in root_tasks)
    leaf_tasks = plan.tasks[2:]
    assert all(task.amount == Decimal('2500') for task in leaf_tasks)

    campaign = plan.campaign
    assert campaign.status is Status.UNPROCESSED
    assert campaign.enabled is False
    assert campaign.task_count == 6
    assert campaign.leaf_count == 4
    assert campaign.total_amount == Decimal('10000')
    assert campaign.split_policy == 'equal_leaf'


def test_sort_id_increases_along_every_path():
    record, graph = make_map(3, 3)
    plan = build_plan(record, graph, PlanRequest(token='sol', decimals=0, total_amount=Decimal('27000')))
    inbound_sort = {task.to_node_id: task.sort_id for task in plan.tasks}

    assert len(plan.tasks) == len(graph.edges())
    for task in plan.tasks:
        parent_sort = inbound_sort.get(task.from_node_id)
        if parent_sort is not None:
            assert parent_sort < task.sort_id


def test_equal_leaf_keeps_total_exact_at_token_precision():
    record, graph = make_map(3, 1)
    inbound = compute_inbound_amounts(graph, SplitPolicy.EQUAL_LEAF, 2, total_amount=Decimal('100'))
    leaf_amounts = [inbound[leaf.id] for leaf in graph.leaves()]

    assert leaf_amounts == [Decimal('33.34'), Decimal('33.33'), Decimal('33.33')]
    assert sum(leaf_amounts) == Decimal('100')


def test_equal_leaf_intermediate_edges_sum_children():
    _, graph = make_map(2, 3)
    inbound = compute_inbound_amounts(graph, SplitPolicy.EQUAL_LEAF, 6, total_amount=Decimal('1'))
    for node in graph.nodes():
        children = graph.children_of(node.id)
        if node.id in inbound and children:
            assert inbound[node.id] == sum(inbound[child.id] for child in children)


def test_equal_fanout_splits_each_parent():
    _, graph = make_map(3, 2)
    inbound = compute_inbound_amounts(graph, SplitPolicy.EQUAL_FANOUT, 0, total_amount=Decimal('90'))
    level_one = graph.children_of(graph.root.id)
    assert [inbound[node.id] for node in level_one] == [Decimal('30')] * 3
    assert all(inbound[leaf.id] == Decimal('10') for leaf in graph.leaves())


def test_per_branch_amounts():
    _, graph = make_map(2, 2)
    inbound = compute_inbound_amounts(
        graph, SplitPolicy.PER_BRANCH, 0, branch_amounts=[Decimal('100'), Decimal('40')]
    )
    first, second = graph.children_of(graph.root.id)
    assert inbound[first.id] == Decimal('100')
    assert inbound[second.id] == Decimal('40')
    assert [inbound[leaf.id] for leaf in graph.descendant_leaves(second.id)] == [Decimal('20'), Decimal('20')]


def test_per_branch_requires_one_amount_per_branch():
    _, graph = make_map(2, 2)
    with pytest.raises(AmountPolicyError):
        compute_inbound_amounts(graph, SplitPolicy.PER_BRANCH, 0, branch_amounts=[Decimal('1')])


def test_non_positive_amounts_rejected():
    _, graph = make_map(2, 2)
    with pytest.raises(AmountPolicyError):
        compute_inbound_amounts(graph, SplitPolicy.EQUAL_LEAF, 0, total_amount=Decimal('3'))
    with pytest.raises(AmountPolicyError):
        compute_inbound_amounts(graph, SplitPolicy.EQUAL_LEAF, 0, total_amount=Decimal('0'))


def test_split_evenly_hands_remainder_to_leading_parts():
    assert split_evenly(Decimal('10'), 3, Decimal('1')) == [Decimal('4'), Decimal('3'), Decimal('3')]


def test_reverse_plan_collects_deepest_level_first():
    record, graph = make_map(2, 2, MapType.FAN_IN)
    plan = build_plan(record, graph, PlanRequest(token='sol', decimals=0, total_amount=Decimal('400')))

    assert plan.campaign.reverse is True
    leaf_ids = {leaf.id for leaf in graph.leaves()}
    assert all(task.from_node_id in leaf_ids for task in plan.tasks[:4])
    assert all(task.to_address == ROOT for task in plan.tasks[4:])
    assert all(task.reverse for task in plan.tasks)

    # every transfer into a node is ordered before that node sends upward
    sort_by_source = {task.from_node_id: task.sort_id for task in plan.tasks}
    for task in plan.tasks:
        if task.to_node_id in sort_by_source:
            assert task.sort_id < sort_by_source[task.to_node_id]


def test_request_can_override_direction():
    record, graph = make_map(2, 1)
    plan = build_plan(
        record, graph, PlanRequest(token='sol', decimals=0, total_amount=Decimal('10'), reverse=True)
    )
    assert all(task.to_address == ROOT for task in plan.tasks)


def test_order_transfers_rejects_empty_graph():
    root = NodeRecord(id='r', map_id='m', label='root', address=ROOT, node_type=NodeType.ROOT, chain_id=0, depth_id=0)
    with pytest.raises(EmptyGraph):
        order_transfers(GraphStore([root], []), {})


def test_create_plan_persists_campaign_and_tasks(repository, planned):
    plan = planned(enabled=False)
    stored = repository.get_campaign(plan.campaign.id)
    assert stored.task_count == 6
    assert [task.sort_id for task in repository.list_tasks(plan.campaign.id)] == list(range(6))


def test_create_plan_for_unknown_map(repository):
    with pytest.raises(UnknownMap):
        create_plan(repository, 'missing', PlanRequest(token='sol', decimals=0, total_amount=Decimal('1')))


WIDE_AMOUNT = Decimal('123456789012.123456789012345678')


def test_split_evenly_is_exact_beyond_default_precision():
    assert split_evenly(WIDE_AMOUNT, 1, token_quantum(18)) == [WIDE_AMOUNT]
    assert split_evenly(Decimal('123456789012.1234567890123456789'), 1, token_quantum(18)) == [WIDE_AMOUNT]

    shares = split_evenly(WIDE_AMOUNT, 3, token_quantum(18))
    assert add_amounts(shares) == WIDE_AMOUNT
    assert shares[0] == Decimal('41152263004.041152263004115226')


@pytest.mark.parametrize('policy', [SplitPolicy.EQUAL_LEAF, SplitPolicy.EQUAL_FANOUT])
def test_eighteen_decimal_plan_never_exceeds_total(policy):
    record, graph = make_map(2, 2)
    plan = build_plan(
        record,
        graph,
        PlanRequest(token='weth', decimals=18, total_amount=WIDE_AMOUNT, split_policy=policy),
    )

    assert plan.campaign.total_amount == WIDE_AMOUNT
    leaf_ids = {leaf.id for leaf in graph.leaves()}
    leaf_amounts = [task.amount for task in plan.tasks if task.to_node_id in leaf_ids]
    assert all(amount.as_tuple().exponent >= -18 for amount in leaf_amounts)
    assert add_amounts(leaf_amounts) == WIDE_AMOUNT
    assert plan.campaign.required_funds == WIDE_AMOUNT
