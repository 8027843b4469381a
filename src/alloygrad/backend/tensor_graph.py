"""
The backend-native symbolic graph

A `TensorGraph` is handed to every lowering. Its builder methods turn
higher level tensor ops into primitive `llops` symbols, broadcasting
operands implicitly, and its `run` orders the symbols a submission needs
and hands them to a device's command queue.
"""

from __future__ import annotations

import functools
import itertools
import math
from typing import Mapping, Sequence

import numpy as np

from alloygrad import ordering
from alloygrad.backend import autodiff, engines, llops, shapes

SymbolLike = llops.Symbol | float | int
ShapeLike = shapes.Shape | Sequence[int]
Axes = int | Sequence[int] | None
flatten = itertools.chain.from_iterable


class TensorGraph:
    def __init__(self) -> None:
        self.constants: list[llops.Symbol] = []
        self.placeholders: list[llops.Symbol] = []

    def __repr__(self) -> str:
        n_const, n_placeholder = len(self.constants), len(self.placeholders)
        return f"<{self.__class__.__name__}(constants={n_const}, placeholders={n_placeholder})>"

    ### sources ###
    def constant(self, data: np.ndarray | Sequence | float, shape: ShapeLike, name: str | None = None) -> llops.Symbol:
        dims = shapes.Shape.of(shape).dims
        symbol = llops.Ops.CONST(np.asarray(data, dtype=np.float32).reshape(dims), name=name)
        self.constants.append(symbol)
        return symbol

    def placeholder(self, shape: ShapeLike, name: str | None = None) -> llops.Symbol:
        symbol = llops.Ops.PLACEHOLDER(shape=shapes.Shape.of(shape), name=name)
        self.placeholders.append(symbol)
        return symbol

    def random_normal(
        self,
        shape: ShapeLike,
        mean: float = 0.0,
        std: float = 1.0,
        seed: int = 0,
        name: str | None = None,
    ) -> llops.Symbol:
        """Seeded draw, so lowering the same node twice yields the same values"""
        dims = shapes.Shape.of(shape).dims
        return self.constant(np.random.default_rng(seed).normal(mean, std, dims), dims, name=name)

    ### movement ###
    def reshape(self, x: llops.Symbol, shape: ShapeLike, name: str | None = None) -> llops.Symbol:
        shape = shapes.Shape.of(shape)
        return named(x if x.shape == shape else llops.Ops.RESHAPE(x, shape=shape), name)

    def broadcast(self, x: SymbolLike, shape: ShapeLike, name: str | None = None) -> llops.Symbol:
        x, shape = self.lift(x), shapes.Shape.of(shape)
        return named(x if x.shape == shape else llops.Ops.BROADCAST(x, shape=shape), name)

    def permute(self, x: llops.Symbol, order: Sequence[int], name: str | None = None) -> llops.Symbol:
        order = x.shape.normalize_dim_ref(*order)
        return named(x if order == tuple(range(x.shape.ndims)) else llops.Ops.PERMUTE(x, order=order), name)

    def transpose(self, x: llops.Symbol, dim0: int, dim1: int, name: str | None = None) -> llops.Symbol:
        order = list(range(x.shape.ndims))
        order[dim0], order[dim1] = order[dim1], order[dim0]
        return self.permute(x, order, name=name)

    def slice(self, x: llops.Symbol, loc: Sequence[shapes.Loc], name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.SELECT(x, loc=loc), name)

    def pad(
        self,
        x: llops.Symbol,
        pads: Sequence[tuple[int, int]],
        value: float = 0.0,
        name: str | None = None,
    ) -> llops.Symbol:
        if not any(flatten(pads)):
            return named(x, name)
        return named(llops.Ops.PAD(x, *map(tuple, pads), pad_val=value), name)

    def repeat(self, x: llops.Symbol, repeats: Sequence[int]) -> llops.Symbol:
        base = x.shape.lpad(len(repeats) - x.shape.ndims).dims
        x = self.reshape(x, tuple(flatten((1, b) for b in base)))
        x = self.broadcast(x, tuple(flatten(zip(repeats, base))))
        return self.reshape(x, tuple(r * b for r, b in zip(repeats, base)))

    def pool(self, x: llops.Symbol, kernel_shape: Sequence[int], stride: int | Sequence[int] = 1) -> llops.Symbol:
        """
        Sliding windows over the trailing `len(kernel_shape)` dims.
        (*leading, *spatial) -> (*leading, *n_windows, *kernel_shape)
        """
        n_k = len(kernel_shape)
        strides = (stride,) * n_k if isinstance(stride, int) else tuple(stride)
        leading, spatial = x.shape.dims[:-n_k], x.shape.dims[-n_k:]
        assert len(strides) == n_k and all(s > 0 for s in strides), f"{stride=} must be positive per dim"
        assert all(k <= o for k, o in zip(kernel_shape, spatial)), f"{kernel_shape=} exceeds {spatial=}"
        moves = tuple(1 + (o - k) // s for o, k, s in zip(spatial, kernel_shape, strides))
        spans = tuple(m * s for m, s in zip(moves, strides))

        windows = self.repeat(x, (1,) * len(leading) + tuple(k + 1 for k in kernel_shape))
        windows = self.slice(windows, (..., *((0, k * (o + 1)) for o, k in zip(spatial, kernel_shape))))
        windows = self.reshape(windows, leading + tuple(flatten((k, o + 1) for o, k in zip(spatial, kernel_shape))))
        windows = self.slice(
            windows,
            (..., *flatten(((0, k), (0, min(span, o + 1))) for o, k, span in zip(spatial, kernel_shape, spans))),
        )
        windows = self.pad(
            windows,
            [(0, 0)] * len(leading) + list(flatten(((0, 0), (0, max(0, span - o - 1))) for o, span in zip(spatial, spans))),
        )
        windows = self.reshape(windows, leading + tuple(flatten(zip(kernel_shape, moves, strides))))
        windows = self.slice(windows, (..., *flatten(((0, k), (0, m), (0, 1)) for k, m in zip(kernel_shape, moves))))
        windows = self.reshape(windows, leading + tuple(flatten(zip(kernel_shape, moves))))
        n_lead = len(leading)
        order = (*range(n_lead), *(n_lead + 2 * i + 1 for i in range(n_k)), *(n_lead + 2 * i for i in range(n_k)))
        return self.permute(windows, order)

    ### elementwise ###
    def add(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.ADD(*self.broadcast_together(a, b)), name)

    def subtract(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        a, b = self.broadcast_together(a, b)
        return named(llops.Ops.ADD(a, llops.Ops.NEG(b)), name)

    def multiply(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.MUL(*self.broadcast_together(a, b)), name)

    def divide(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        a, b = self.broadcast_together(a, b)
        return named(llops.Ops.MUL(a, llops.Ops.INV(b)), name)

    def power(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.POW(*self.broadcast_together(a, b)), name)

    def modulo(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.MOD(*self.broadcast_together(a, b)), name)

    def equal(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.EQ(*self.broadcast_together(a, b)), name)

    def less(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.LESS(*self.broadcast_together(a, b)), name)

    def greater(self, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return self.less(b, a, name=name)

    def where(self, cond: SymbolLike, a: SymbolLike, b: SymbolLike, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.WHERE(*self.broadcast_together(cond, a, b)), name)

    def negative(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.NEG(x), name)

    def reciprocal(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.INV(x), name)

    def exp(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.EXP(x), name)

    def log(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return named(llops.Ops.LOG(x), name)

    def sqrt(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return self.power(x, 0.5, name=name)

    ### activations ###
    def relu(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return self.where(self.less(x, 0), 0, x, name=name)

    def sigmoid(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return self.reciprocal(self.add(1, self.exp(self.negative(x))), name=name)

    def tanh(self, x: llops.Symbol, name: str | None = None) -> llops.Symbol:
        return self.subtract(self.multiply(2, self.sigmoid(self.multiply(2, x))), 1, name=name)

    def softmax(self, x: llops.Symbol, axis: int = -1, name: str | None = None) -> llops.Symbol:
        exps = self.exp(self.subtract(x, self.reduce_max(x, axis, keepdims=True)))
        return self.divide(exps, self.reduce_sum(exps, axis, keepdims=True), name=name)

    def log_softmax(self, x: llops.Symbol, axis: int = -1, name: str | None = None) -> llops.Symbol:
        shifted = self.subtract(x, self.reduce_max(x, axis, keepdims=True))
        log_sum_exp = self.log(self.reduce_sum(self.exp(shifted), axis, keepdims=True))
        return self.subtract(shifted, log_sum_exp, name=name)

    ### reductions ###
    def reduce_sum(self, x: llops.Symbol, axes: Axes = None, keepdims: bool = False, name=None) -> llops.Symbol:
        return self._reduce(llops.Ops.SUM, x, axes, keepdims, name)

    def reduce_max(self, x: llops.Symbol, axes: Axes = None, keepdims: bool = False, name=None) -> llops.Symbol:
        return self._reduce(llops.Ops.AMAX, x, axes, keepdims, name)

    def mean(self, x: llops.Symbol, axes: Axes = None, keepdims: bool = False, name=None) -> llops.Symbol:
        summed = self.reduce_sum(x, axes, keepdims)
        return self.multiply(summed, summed.shape.size / x.shape.size, name=name)

    def argmax(self, x: llops.Symbol, axis: int = -1, keepdims: bool = False, name=None) -> llops.Symbol:
        indices = llops.Ops.ARGMAX(x, axis)
        if keepdims:
            indices = self.reshape(indices, indices.shape.insertaxes(*x.shape.normalize_dim_ref(axis)))
        return named(indices, name)

    def _reduce(self, op: llops.Op, x: llops.Symbol, axes: Axes, keepdims: bool, name: str | None) -> llops.Symbol:
        axes = normalize_axes(x.shape, axes)
        reduced = op(x, axes)
        if keepdims:
            reduced = self.reshape(reduced, reduced.shape.insertaxes(*axes))
        return named(reduced, name)

    ### linear algebra ###
    def matmul(self, a: llops.Symbol, b: llops.Symbol, name: str | None = None) -> llops.Symbol:
        """Batched matmul over the last two dims; 1-d operands are promoted the numpy way"""
        a_vec, b_vec = a.shape.ndims == 1, b.shape.ndims == 1
        a = self.reshape(a, (1, *a.shape.dims)) if a_vec else a
        b = self.reshape(b, (*b.shape.dims, 1)) if b_vec else b
        # (..., n, k, 1) * (..., 1, k, m) -> (..., n, k, m) -> (..., n, m)
        products = self.multiply(self.reshape(a, a.shape.addaxes(-1, 1)), self.reshape(b, b.shape.addaxes(-3, 1)))
        out = self.reduce_sum(products, -2)
        drop = (-2,) * a_vec + (-1,) * b_vec
        return self.reshape(out, out.shape.dropaxes(*drop), name=name) if drop else named(out, name)

    def linear(
        self,
        x: llops.Symbol,
        weight: llops.Symbol,
        bias: llops.Symbol | None = None,
        name: str | None = None,
    ) -> llops.Symbol:
        """x: (n, in), weight: (out, in), bias: (out,)"""
        out = self.matmul(x, self.transpose(weight, 0, 1))
        return named(out, name) if bias is None else self.add(out, bias, name=name)

    def conv2d(
        self,
        x: llops.Symbol,
        weight: llops.Symbol,
        bias: llops.Symbol | None = None,
        stride: tuple[int, int] = (1, 1),
        padding: tuple[int, int, int, int] = (0, 0, 0, 0),
        name: str | None = None,
    ) -> llops.Symbol:
        """x: (n, c_in, h, w), weight: (c_out, c_in, kh, kw), bias: (c_out,), padding: (left, right, top, bottom)"""
        left, right, top, bottom = padding
        x = self.pad(x, ((0, 0), (0, 0), (top, bottom), (left, right)))
        batch, in_channels = x.shape.dims[:2]
        out_channels, _, *kernel_shape = weight.shape.dims
        windows = self.pool(x, kernel_shape, stride)  # (n, c_in, oh, ow, kh, kw)
        out_hw = windows.shape.dims[2:4]
        windows = self.reshape(windows, (batch, 1, in_channels, *out_hw, *kernel_shape))
        kernel = self.reshape(weight, (1, out_channels, in_channels, 1, 1, *kernel_shape))
        out = self.reduce_sum(self.multiply(windows, kernel), axes=(2, 5, 6))
        if bias is None:
            return named(out, name)
        return self.add(out, self.reshape(bias, (1, out_channels, 1, 1)), name=name)

    def max_pool2d(
        self,
        x: llops.Symbol,
        kernel_shape: tuple[int, int],
        stride: tuple[int, int],
        padding: tuple[int, int, int, int] = (0, 0, 0, 0),
        name: str | None = None,
    ) -> llops.Symbol:
        left, right, top, bottom = padding
        x = self.pad(x, ((0, 0), (0, 0), (top, bottom), (left, right)), value=-math.inf)
        return self.reduce_max(self.pool(x, kernel_shape, stride), axes=(-2, -1), name=name)

    ### losses & encodings ###
    def softmax_cross_entropy(self, logits: llops.Symbol, labels: llops.Symbol, name=None) -> llops.Symbol:
        """Mean over the batch of `-sum(labels * log_softmax(logits))` along the class axis"""
        per_sample = self.negative(self.reduce_sum(self.multiply(labels, self.log_softmax(logits)), -1))
        return self.mean(per_sample, name=name)

    def one_hot(self, indices: llops.Symbol, depth: int, name: str | None = None) -> llops.Symbol:
        classes = self.constant(np.arange(depth, dtype=np.float32), (depth,))
        return self.equal(self.reshape(indices, indices.shape.addaxes(-1, 1)), classes, name=name)

    ### differentiation & execution ###
    def gradients(self, of: llops.Symbol, wrt: Sequence[llops.Symbol]) -> dict[llops.Symbol, llops.Symbol]:
        return autodiff.gradients(of, wrt)

    def run(
        self,
        queue: engines.CommandQueue,
        feeds: Mapping[llops.Symbol, np.ndarray],
        targets: Sequence[llops.Symbol],
    ) -> dict[llops.Symbol, engines.TensorData]:
        order = ordering.topological_sort(targets, lambda s: s.parents)
        return queue.submit(order, feeds, targets)

    ### helpers ###
    def lift(self, x: SymbolLike) -> llops.Symbol:
        return x if isinstance(x, llops.Symbol) else self.constant(x, ())

    def broadcast_together(self, *xs: SymbolLike) -> tuple[llops.Symbol, ...]:
        symbols = tuple(map(self.lift, xs))
        shape = functools.reduce(shapes.Shape.broadcast, (s.shape for s in symbols))
        return tuple(self.broadcast(s, shape) for s in symbols)


def named(symbol: llops.Symbol, name: str | None) -> llops.Symbol:
    if name is not None and symbol.name is None:
        symbol.name = name
    return symbol


def normalize_axes(shape: shapes.Shape, axes: Axes) -> tuple[int, ...]:
    if axes is None:
        return tuple(range(shape.ndims))
    axes = (axes,) if isinstance(axes, int) else tuple(axes)
    return tuple(sorted(set(shape.normalize_dim_ref(*axes))))
