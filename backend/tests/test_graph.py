import pytest

from washmap.core.errors import InvalidSpecification
from washmap.core.graph import GraphStore, build_graph, expected_node_count
from washmap.core.records import EdgeRecord, NodeRecord, NodeType

ROOT = '0x' + 'a' * 40


def sequential(count):
    return ['0x' + format(index + 1, '040x') for index in range(count)]


@pytest.mark.parametrize('branching,depth', [(1, 1), (1, 4), (2, 1), (2, 2), (3, 3), (4, 2)])
def test_tree_shape(branching, depth):
    graph = build_graph('map-1', ROOT, branching, depth, sequential)

    assert len(graph) == expected_node_count(branching, depth)
    assert len(graph.edges()) == len(graph) - 1
    assert len(graph.leaves()) == branching ** depth

    root = graph.root
    assert root.depth_id == 0
    assert root.address == ROOT
    for node in graph.nodes():
        if node.id == root.id:
            assert graph.parent_of(node.id) is None
            continue
        parent = graph.parent_of(node.id)
        assert parent is not None
        assert node.depth_id == parent.depth_id + 1
        if node.depth_id < depth:
            assert len(graph.children_of(node.id)) == branching
            assert node.node_type == NodeType.INTERMEDIATE
        else:
            assert node.node_type == NodeType.LEAF


def test_node_count_formula():
    assert expected_node_count(2, 2) == 7
    assert expected_node_count(3, 2) == 13
    assert expected_node_count(1, 5) == 6


def test_labels_and_chain_ids():
    graph = build_graph('map-1', ROOT, 2, 2, sequential, root_label='alpha')
    labels = [node.label for node in graph.nodes()]
    assert labels == ['alpha', 'alpha-1-1', 'alpha-1-2', 'alpha-2-1', 'alpha-2-2', 'alpha-2-3', 'alpha-2-4']

    chains = {node.label: node.chain_id for node in graph.nodes()}
    assert chains['alpha'] == 0
    assert chains['alpha-1-1'] == chains['alpha-2-1'] == chains['alpha-2-2'] == 1
    assert chains['alpha-1-2'] == chains['alpha-2-3'] == chains['alpha-2-4'] == 2


def test_fixed_leaf_addresses_only_allocate_intermediates():
    requested = []

    def allocate(count):
        requested.append(count)
        return ['0x' + format(900 + index, '040x') for index in range(count)]

    leaves = ['0x' + format(100 + index, '040x') for index in range(4)]
    graph = build_graph('map-1', ROOT, 2, 2, allocate, leaf_addresses=leaves)

    assert requested == [2]
    assert [leaf.address for leaf in graph.leaves()] == leaves


def test_descendant_leaves_follow_branch():
    graph = build_graph('map-1', ROOT, 2, 2, sequential)
    first_branch = graph.children_of(graph.root.id)[0]
    assert [leaf.label for leaf in graph.descendant_leaves(first_branch.id)] == ['root-2-1', 'root-2-2']


@pytest.mark.parametrize(
    'root,branching,depth',
    [('', 2, 2), ('   ', 2, 2), (ROOT, 0, 2), (ROOT, 2, 0)],
)
def test_invalid_parameters_rejected(root, branching, depth):
    with pytest.raises(InvalidSpecification):
        build_graph('map-1', root, branching, depth, sequential)


def test_wrong_leaf_count_rejected():
    with pytest.raises(InvalidSpecification):
        build_graph('map-1', ROOT, 2, 2, sequential, leaf_addresses=sequential(3))


def test_short_allocation_rejected():
    with pytest.raises(InvalidSpecification):
        build_graph('map-1', ROOT, 2, 2, lambda count: sequential(count - 1))


def test_duplicate_addresses_rejected():
    with pytest.raises(InvalidSpecification):
        build_graph('map-1', ROOT, 2, 1, lambda count: [ROOT] * count)


def _node(node_id, depth, node_type=NodeType.INTERMEDIATE):
    return NodeRecord(
        id=node_id,
        map_id='m',
        label=node_id,
        address=node_id,
        node_type=node_type,
        chain_id=1,
        depth_id=depth,
    )


def test_store_rejects_second_parent():
    nodes = [_node('r', 0, NodeType.ROOT), _node('a', 1), _node('b', 1), _node('c', 2, NodeType.LEAF)]
    edges = [
        EdgeRecord('r', 'a'),
        EdgeRecord('r', 'b'),
        EdgeRecord('a', 'c'),
        EdgeRecord('b', 'c'),
    ]
    with pytest.raises(InvalidSpecification):
        GraphStore(nodes, edges)


def test_store_rejects_depth_skip_and_orphans():
    with pytest.raises(InvalidSpecification):
        GraphStore([_node('r', 0, NodeType.ROOT), _node('a', 2)], [EdgeRecord('r', 'a')])
    with pytest.raises(InvalidSpecification):
        GraphStore([_node('r', 0, NodeType.ROOT), _node('a', 1)], [])
