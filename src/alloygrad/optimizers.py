"""
Host-side optimizers

Parameters are leaf nodes whose data is the authoritative state.
Each step rebuilds the graph, so the current values are uploaded as constants.
"""

from __future__ import annotations

import abc
from typing import Any, Iterable, Iterator, Sequence

import numpy as np

from alloygrad import builder, errors, graph, runtime
from alloygrad.backend import engines


class Optimizer(abc.ABC):
    def __init__(self, parameters: Iterable[graph.Node], *args: Any, **kwargs: Any) -> None:
        super().__init__()

        def filter_params(params: Iterable[graph.Node]) -> Iterator[graph.Node]:
            seen_ids: set[int] = set()
            for param in params:
                if id(param) not in seen_ids:
                    seen_ids.add(id(param))
                    yield param

        self.params = tuple(filter_params(parameters))

    @abc.abstractmethod
    def calc_delta(self, grads: Sequence[np.ndarray]) -> Iterable[np.ndarray]: ...

    def step(
        self,
        loss: graph.Node,
        feeds: runtime.Feeds | None = None,
        device: engines.Device | None = None,
    ) -> None:
        currents = list(self.iter_data())
        grad_map = runtime.backward(loss, self.params, feeds, device)
        grads = [grad_map[param] for param in self.params]
        updates = []
        for param, current, delta in zip(self.params, currents, self.calc_delta(grads), strict=True):
            if current.size != delta.size:
                raise errors.DimensionMismatchError(
                    f"{builder.describe(param)} holds {current.size} elements, its update {delta.size}"
                )
            updates.append((current + delta).astype(np.float32))
        for param, updated in zip(self.params, updates):  # nothing is written before every update is known
            param.materialize(updated)

    def iter_data(self) -> Iterator[np.ndarray]:
        for param in self.params:
            if param.data is None:
                raise errors.OperationError(f"Parameter {builder.describe(param)} holds no data to update")
            yield param.data


class SGD(Optimizer):
    def __init__(self, parameters: Iterable[graph.Node], lr: float) -> None:
        super().__init__(parameters)
        self.lr = lr

    def calc_delta(self, grads: Sequence[np.ndarray]) -> Iterator[np.ndarray]:
        lr = np.float32(self.lr)
        return (-(lr * grad) for grad in grads)


def sgd_step(
    loss: graph.Node,
    parameters: Iterable[graph.Node],
    learning_rate: float,
    feeds: runtime.Feeds | None = None,
    device: engines.Device | None = None,
) -> None:
    """One naive gradient descent step: `param = param - learning_rate * grad` for every parameter"""
    SGD(parameters, lr=learning_rate).step(loss, feeds, device)
