"""
Lowers a DAG of nodes into a fresh backend graph
"""

from __future__ import annotations

import logging

from alloygrad import errors, graph
from alloygrad.backend import llops, tensor_graph

logger = logging.getLogger(__name__)


def build_graph(*roots: graph.Node) -> tuple[tensor_graph.TensorGraph, dict[graph.Node, llops.Symbol]]:
    """
    Lower every node reachable from `roots`, parents first.
    Data-bearing leaves become constants, leaves without data become placeholders
    and internal nodes call their lowering on the parents' symbols.
    Nothing is cached between calls.
    """
    if not (order := graph.multi_root_topological_sort(roots)):
        raise errors.EmptyGraphError("empty DAG")

    backend = tensor_graph.TensorGraph()
    mapping: dict[graph.Node, llops.Symbol] = {}
    for node in order:
        if node.is_leaf:
            mapping[node] = (
                backend.placeholder(node.shape, name=node.label)
                if node.data is None
                else backend.constant(node.data, node.shape, name=node.label)
            )
        else:
            mapping[node] = lower(backend, node, mapping)

    logger.debug("lowered %d nodes (%d placeholders)", len(order), len(backend.placeholders))
    return backend, mapping


def lower(
    backend: tensor_graph.TensorGraph,
    node: graph.Node,
    mapping: dict[graph.Node, llops.Symbol],
) -> llops.Symbol:
    try:
        parent_symbols = [mapping[parent] for parent in node.parents]
    except KeyError as exc:
        raise errors.MissingMappingError(f"Missing parent tensor for node {describe(node)}") from exc

    assert node.lowering is not None
    try:
        symbol = node.lowering(backend, parent_symbols, node.label)
    except errors.AlloyError:
        raise
    except Exception as exc:
        raise errors.OperationError(f"Lowering {describe(node)} failed: {exc!r}") from exc

    if not isinstance(symbol, llops.Symbol):
        raise errors.OperationError(f"Lowering {describe(node)} returned {type(symbol).__name__}, not a symbol")
    if symbol.shape.dims != node.shape:
        raise errors.OperationError(f"Lowering {describe(node)} produced shape {symbol.shape.dims}, not {node.shape}")
    return symbol


def describe(node: graph.Node) -> str:
    return node.label or repr(node)
