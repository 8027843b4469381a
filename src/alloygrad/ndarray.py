"""
NDArrays: nodes with a numpy-like interface
"""

from __future__ import annotations

from typing import Self

import numpy as np

from alloygrad import graph, ops, runtime
from alloygrad.backend import engines


class NDArray(graph.Node):
    # shaping
    reshape = ops.reshape
    broadcast = ops.broadcast
    permute = ops.permute
    transpose = ops.transpose
    flatten = ops.flatten
    slice = ops.select
    # arithmetic
    __neg__ = ops.neg
    __add__ = __radd__ = ops.add
    __sub__ = ops.sub
    __mul__ = __rmul__ = ops.mul
    __truediv__ = ops.div
    __pow__ = ops.pow
    __mod__ = ops.mod
    __matmul__ = ops.matmul
    __lt__ = ops.less
    __gt__ = ops.greater
    sum = ops.sum
    mean = ops.mean
    max = ops.amax
    argmax = ops.argmax
    exp = ops.exp
    log = ops.log
    sqrt = ops.sqrt
    # activations
    relu = ops.relu
    sigmoid = ops.sigmoid
    tanh = ops.tanh
    softmax = ops.softmax
    log_softmax = ops.log_softmax

    def __rsub__(self, other: ops.Operand) -> graph.Node:
        return ops.sub(other, self)

    def __rtruediv__(self, other: ops.Operand) -> graph.Node:
        return ops.div(other, self)

    def __rpow__(self, other: ops.Operand) -> graph.Node:
        return ops.pow(other, self)

    def __rmod__(self, other: ops.Operand) -> graph.Node:
        return ops.mod(other, self)

    def __rmatmul__(self, other: ops.Operand) -> graph.Node:
        return ops.matmul(other, self)

    def realize(self, feeds: runtime.Feeds | None = None, device: engines.Device | None = None) -> float | list:
        runtime.run(self, feeds=feeds, device=device)
        return self.to_list()

    # constructors
    @classmethod
    def zeros(cls, *shape: int, label: str | None = None) -> Self:
        return cls(np.zeros(shape, dtype=np.float32), label=label)

    @classmethod
    def ones(cls, *shape: int, label: str | None = None) -> Self:
        return cls(np.ones(shape, dtype=np.float32), label=label)

    @classmethod
    def full(cls, *shape: int, fill_value: float, label: str | None = None) -> Self:
        return cls(np.full(shape, fill_value, dtype=np.float32), label=label)

    @classmethod
    def placeholder(cls, *shape: int, label: str | None = None) -> Self:
        return cls(shape=shape, label=label)

    @classmethod
    def random_uniform(cls, *shape: int, lb: float = 0, ub: float = 1, label: str | None = None) -> Self:
        return cls(np.random.uniform(lb, ub, shape), label=label)

    @classmethod
    def random_normal(cls, *shape: int, mean: float = 0, std: float = 1, label: str | None = None) -> Self:
        return cls(np.random.normal(mean, std, shape), label=label)

    @classmethod
    def randn(cls, *shape: int, mean: float = 0, std: float = 1, seed: int = 0, label: str | None = None) -> Self:
        """Lazy draw: no data until run, and the same values on every run for a given seed"""
        return ops.randn(shape, mean, std, seed, label=label, node_type=cls)  # type: ignore[return-value]
