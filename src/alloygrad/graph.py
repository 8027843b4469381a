"""
Nodes of the deferred computation DAG

A leaf either holds data (a constant) or not (a placeholder fed at run time).
An internal node holds its parents and the lowering that turns the parents'
backend symbols into its own. Nodes compare and hash by identity: the same
node reached through several paths is one vertex of the graph.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Iterable, Protocol, Self, Sequence

import numpy as np

from alloygrad import config, errors, ordering

if TYPE_CHECKING:
    from alloygrad.backend import llops, tensor_graph

ArrayLike = np.ndarray | Sequence | float | int


class Lowering(Protocol):
    def __call__(
        self,
        graph: tensor_graph.TensorGraph,
        parents: Sequence[llops.Symbol],
        label: str | None,
        /,
    ) -> llops.Symbol: ...


class Node:
    __slots__ = ("_shape", "_data", "_parents", "_lowering", "label", "__weakref__")

    def __init__(self, value: ArrayLike | None = None, *, shape: Sequence[int] | None = None, label: str | None = None):
        assert value is not None or shape is not None, "a leaf needs a value, a shape or both"
        data = None if value is None else np.array(value, dtype=np.float32)
        shape = tuple(data.shape) if shape is None else tuple(int(d) for d in shape)  # type: ignore[union-attr]
        if data is not None:
            assert data.size == math.prod(shape), f"{data.size=} does not match {shape=}"
        self._init(shape, data, (), None, label)

    @classmethod
    def from_op(
        cls,
        shape: Sequence[int],
        parents: Iterable[Node],
        lowering: Lowering,
        *,
        label: str | None = None,
    ) -> Self:
        node = cls.__new__(cls)
        node._init(tuple(int(d) for d in shape), None, tuple(parents), lowering, label)
        return node

    def _init(
        self,
        shape: tuple[int, ...],
        data: np.ndarray | None,
        parents: tuple[Node, ...],
        lowering: Lowering | None,
        label: str | None,
    ) -> None:
        assert all(d > 0 for d in shape), f"{shape=} must only hold positive dimensions"
        self._shape, self._parents, self._lowering, self.label = shape, parents, lowering, label
        self._data: np.ndarray | None = None
        if data is not None:
            self._write(data)
        config.Configuration.on_node_creation(self)

    def __repr__(self) -> str:
        label = "" if self.label is None else f", label={self.label!r}"
        state = "leaf" if self.is_leaf else f"{len(self._parents)} parents"
        realized = "realized" if self._data is not None else "unrealized"
        return f"<{self.__class__.__name__}(shape={self._shape}{label}, {state}, {realized})>"

    ### read-only views ###
    @property
    def shape(self) -> tuple[int, ...]:
        return self._shape

    @property
    def data(self) -> np.ndarray | None:
        """Flat, read-only float32 buffer; `None` until known"""
        return self._data

    @property
    def parents(self) -> tuple[Node, ...]:
        return self._parents

    @property
    def lowering(self) -> Lowering | None:
        return self._lowering

    @property
    def is_leaf(self) -> bool:
        return self._lowering is None

    @property
    def is_placeholder(self) -> bool:
        return self.is_leaf and self._data is None

    @property
    def size(self) -> int:
        return math.prod(self._shape)

    @property
    def ndims(self) -> int:
        return len(self._shape)

    ### data ###
    def materialize(self, buffer: ArrayLike) -> None:
        """Overwrite the data buffer; reserved for the runtime and the optimizers"""
        data = np.array(buffer, dtype=np.float32)
        if data.size != self.size:
            raise errors.DimensionMismatchError(f"{data.size} elements can not fill {self!r}")
        self._write(data)

    def numpy(self) -> np.ndarray:
        if self._data is None:
            raise errors.OperationError(f"{self!r} holds no data, run it first")
        return self._data.reshape(self._shape).copy()

    def to_list(self) -> float | list:
        return self.numpy().tolist()

    def _write(self, data: np.ndarray) -> None:
        data = data.reshape(-1)
        data.flags.writeable = False
        self._data = data


### ordering ###
def topological_sort(node: Node) -> list[Node]:
    return multi_root_topological_sort([node])


def multi_root_topological_sort(nodes: Iterable[Node]) -> list[Node]:
    return ordering.topological_sort(nodes, lambda n: n.parents)
