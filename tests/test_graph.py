import itertools

import numpy as np
import pytest

from alloygrad import errors, graph, ops, ordering
from alloygrad.ndarray import NDArray


### construction ###
def test_leaf_infers_shape_from_value() -> None:
    node = graph.Node([[1, 2, 3], [4, 5, 6]], label="x")
    assert node.shape == (2, 3)
    assert node.is_leaf and not node.is_placeholder
    assert node.data is not None and node.data.dtype == np.float32
    assert node.data.tolist() == [1, 2, 3, 4, 5, 6]


def test_leaf_with_explicit_shape() -> None:
    node = graph.Node([1, 2, 3, 4], shape=(2, 2))
    assert node.shape == (2, 2)
    assert node.to_list() == [[1, 2], [3, 4]]


def test_scalar_leaf() -> None:
    node = graph.Node(3.0)
    assert node.shape == ()
    assert node.size == 1 and node.ndims == 0
    assert node.to_list() == 3.0


def test_placeholder_leaf() -> None:
    node = graph.Node(shape=(3,), label="x")
    assert node.is_leaf and node.is_placeholder
    assert node.data is None


@pytest.mark.parametrize(
    "value, shape",
    [
        ([1, 2, 3], (2, 2)),  # too few elements
        ([1, 2, 3, 4, 5], (2, 2)),  # too many elements
        ([1.0], (2,)),
    ],
)
def test_value_shape_mismatch_fails(value, shape) -> None:
    with pytest.raises(AssertionError):
        graph.Node(value, shape=shape)


@pytest.mark.parametrize("shape", [(0,), (2, 0), (-1, 3)])
def test_non_positive_dims_fail(shape) -> None:
    with pytest.raises(AssertionError):
        graph.Node(shape=shape)
    with pytest.raises(AssertionError):
        graph.Node.from_op(shape, (), ops.Lowering(ops.OpKind.NEG, 1))


def test_leaf_needs_value_or_shape() -> None:
    with pytest.raises(AssertionError):
        graph.Node()


def test_data_is_read_only() -> None:
    node = graph.Node([1, 2])
    assert node.data is not None
    with pytest.raises(ValueError):
        node.data[0] = 5
    with pytest.raises(AttributeError):
        node.data = np.zeros(2)  # type: ignore[misc]


def test_materialize_checks_size() -> None:
    node = graph.Node(shape=(2, 2))
    node.materialize([1, 2, 3, 4])
    assert node.to_list() == [[1, 2], [3, 4]]
    with pytest.raises(errors.DimensionMismatchError):
        node.materialize([1, 2, 3])


def test_numpy_without_data_raises() -> None:
    with pytest.raises(errors.OperationError):
        graph.Node(shape=(2,)).numpy()


def test_internal_node() -> None:
    a, b = graph.Node([1.0]), graph.Node([2.0])
    c = ops.add(a, b, label="c")
    assert c.parents == (a, b)
    assert not c.is_leaf and not c.is_placeholder
    assert c.lowering == ops.Lowering(ops.OpKind.ADD, 2)
    assert c.data is None
    assert "label='c'" in repr(c) and "unrealized" in repr(c)


def test_identity_semantics() -> None:
    a, b = graph.Node([1.0]), graph.Node([1.0])
    assert a != b
    assert len({a, b, a}) == 2
    assert {a: 1, b: 2}[a] == 1


### ordering ###
def random_dag(n_ops: int) -> list[graph.Node]:
    nodes = [graph.Node(np.random.normal(size=(2,)), label=f"leaf{i}") for i in range(3)]
    for i in range(n_ops):
        a, b = (nodes[j] for j in np.random.randint(0, len(nodes), size=2))
        nodes.append(ops.add(a, b, label=f"n{i}") if i % 2 else ops.mul(a, b, label=f"n{i}"))
    return nodes


@pytest.mark.parametrize("n_ops", [1, 5, 40])
def test_ordering_lists_each_node_once(n_ops: int) -> None:
    nodes = random_dag(n_ops)
    order = graph.multi_root_topological_sort(nodes[-3:])
    assert len(order) == len(set(order))
    reachable = {n for root in nodes[-3:] for n in graph.topological_sort(root)}
    assert set(order) == reachable


@pytest.mark.parametrize("n_ops", [1, 5, 40])
def test_ordering_puts_parents_first(n_ops: int) -> None:
    nodes = random_dag(n_ops)
    order = graph.multi_root_topological_sort([nodes[-1], nodes[len(nodes) // 2]])
    position = {node: i for i, node in enumerate(order)}
    for child in order:
        for parent in child.parents:
            assert position[parent] < position[child], f"{parent=} comes after {child=}"


def test_ordering_shared_parent_and_repeated_roots() -> None:
    a = graph.Node([1.0], label="a")
    b = ops.add(a, a, label="b")
    c = ops.mul(b, a, label="c")
    order = graph.multi_root_topological_sort([c, b, c])
    assert order == [a, b, c]


def test_ordering_empty_roots() -> None:
    assert graph.multi_root_topological_sort([]) == []


def test_ordering_deep_chain_does_not_recurse() -> None:
    node = graph.Node([1.0])
    for _ in range(5000):
        node = ops.neg(node)
    order = graph.topological_sort(node)
    assert len(order) == 5001
    assert order[-1] is node


def test_generic_ordering() -> None:
    parents = {"d": ["b", "c"], "b": ["a"], "c": ["a"], "a": []}
    order = ordering.topological_sort(["d"], parents.__getitem__)
    assert order[0] == "a" and order[-1] == "d"
    assert sorted(order) == ["a", "b", "c", "d"]


def test_deduplicate_is_stable() -> None:
    assert ordering.deduplicate([3, 1, 3, 2, 1]) == [3, 1, 2]


### ndarray ###
def test_ndarray_operators_keep_type() -> None:
    x = NDArray([1.0, 2.0], label="x")
    for node in (x + 1, 1 + x, x - 1, 1 - x, x * 2, 2 * x, x / 2, 2 / x, x**2, -x, x.sum()):
        assert isinstance(node, NDArray)
    assert all(isinstance(p, NDArray) for p in (1 - x).parents)


def test_ndarray_constructors() -> None:
    assert NDArray.zeros(2, 3).to_list() == [[0.0] * 3] * 2
    assert NDArray.ones(2).to_list() == [1.0, 1.0]
    assert NDArray.full(2, 2, fill_value=7).to_list() == [[7.0, 7.0]] * 2
    assert NDArray.placeholder(4, label="x").is_placeholder
    values = NDArray.random_uniform(100, lb=-1, ub=1).numpy()
    assert np.all((-1 <= values) & (values <= 1))


def test_ndarray_randn_is_lazy() -> None:
    x = NDArray.randn(3, 2, seed=7, label="noise")
    assert isinstance(x, NDArray)
    assert not x.is_leaf and x.parents == () and x.data is None
    first, second = x.realize(), x.realize()
    assert first == second
    assert np.allclose(first, np.random.default_rng(7).normal(0, 1, (3, 2)))


def test_combinations_of_operators_have_expected_shapes() -> None:
    x = NDArray.zeros(4, 1)
    y = NDArray.zeros(3)
    for left, right in itertools.permutations((x, y)):
        assert (left + right).shape == (4, 3)
