"""
Runs graphs of nodes on a device and writes the results back into the nodes
"""

from __future__ import annotations

import logging
from typing import Iterable, Mapping

import numpy as np

from alloygrad import builder, config, errors, graph
from alloygrad.backend import engines, llops

Feeds = Mapping[graph.Node, graph.ArrayLike]
logger = logging.getLogger(__name__)


def run(*roots: graph.Node, feeds: Feeds | None = None, device: engines.Device | None = None) -> None:
    """
    Materialize every root.
    One submission computes all roots; their data is only written once every result is read back.
    Placeholder roots are left without data so they can be fed again.
    """
    backend, mapping = builder.build_graph(*roots)
    targets = [symbol_of(root, mapping) for root in roots]
    results = backend.run(make_queue(device), translate_feeds(feeds, mapping), targets)
    buffers = [read_back(results, target, root) for root, target in zip(roots, targets)]
    for root, buffer in zip(roots, buffers):
        if not root.is_placeholder:
            root.materialize(buffer)
    logger.debug("wrote back %d roots", len(roots))
    config.Configuration.on_run(roots)


def backward(
    loss: graph.Node,
    parameters: Iterable[graph.Node],
    feeds: Feeds | None = None,
    device: engines.Device | None = None,
    *,
    strict: bool = False,
) -> dict[graph.Node, np.ndarray]:
    """
    Gradient of `loss` with respect to each parameter, as flat float32 buffers.

    Parameters the loss does not depend on get an all-zero gradient, whether they are
    missing from the graph altogether or the backend produced no gradient for them.
    With `strict=True` a parameter missing from the graph raises `MissingMappingError` instead.
    The forward pass runs in the same submission and `loss` is materialized on success.
    """
    backend, mapping = builder.build_graph(loss)
    if (loss_symbol := mapping.get(loss)) is None:
        raise errors.EmptyGraphError("no final tensor")

    params = list(dict.fromkeys(parameters))
    wrt: dict[graph.Node, llops.Symbol] = {}
    for param in params:
        if param in mapping:
            wrt[param] = mapping[param]
        elif strict:
            raise errors.MissingMappingError(f"Parameter {builder.describe(param)} is not part of the loss graph")

    grad_symbols = backend.gradients(loss_symbol, list(wrt.values()))
    param_grads = {param: grad_symbols[symbol] for param, symbol in wrt.items() if symbol in grad_symbols}
    logger.debug("differentiating w.r.t. %d of %d parameters", len(param_grads), len(params))

    feed_symbols = translate_feeds(feeds, mapping)
    results = backend.run(make_queue(device), feed_symbols, [loss_symbol, *param_grads.values()])
    loss_buffer = read_back(results, loss_symbol, loss)
    grads = {param: read_back(results, symbol, param) for param, symbol in param_grads.items()}
    if not loss.is_placeholder:
        loss.materialize(loss_buffer)
    config.Configuration.on_run([loss])

    # zero gradient is the defined result for parameters the loss does not depend on
    return {param: grads[param] if param in grads else np.zeros(param.size, dtype=np.float32) for param in params}


### helpers ###
def make_queue(device: engines.Device | None) -> engines.CommandQueue:
    device = config.Configuration.device if device is None else device
    if (queue := device.make_command_queue()) is None:
        raise errors.BackendExecutionError(f"Could not create a command queue on {device}")
    return queue


def symbol_of(root: graph.Node, mapping: Mapping[graph.Node, llops.Symbol]) -> llops.Symbol:
    if (symbol := mapping.get(root)) is None:
        raise errors.MissingMappingError(f"No tensor for root {builder.describe(root)}")
    return symbol


def translate_feeds(
    feeds: Feeds | None,
    mapping: Mapping[graph.Node, llops.Symbol],
) -> dict[llops.Symbol, np.ndarray]:
    translated: dict[llops.Symbol, np.ndarray] = {}
    for node, value in (feeds or {}).items():
        if not node.is_placeholder:
            raise errors.OperationError(f"Only leaves without data can be fed, got {builder.describe(node)}")
        if node not in mapping:
            continue
        buffer = np.asarray(value, dtype=np.float32)
        if buffer.size != node.size:
            raise errors.DimensionMismatchError(f"Feed of {buffer.size} elements for {builder.describe(node)}")
        translated[mapping[node]] = buffer.reshape(node.shape)
    return translated


def read_back(
    results: Mapping[llops.Symbol, engines.TensorData],
    target: llops.Symbol,
    node: graph.Node,
) -> np.ndarray:
    if (result := results.get(target)) is None:
        raise errors.BackendExecutionError(f"Backend returned no data for {builder.describe(node)}")
    buffer = result.to_numpy().reshape(-1)
    if buffer.size != node.size:
        raise errors.BackendExecutionError(f"Backend returned {buffer.size} elements for {builder.describe(node)}")
    return buffer
