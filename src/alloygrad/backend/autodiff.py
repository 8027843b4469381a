"""
Reverse-mode differentiation over backend symbols

Every differentiable primitive registers a vector-Jacobian product that
maps the gradient of its output onto new symbols, one per symbol argument.
`gradients` walks the graph in reverse topological order, accumulating
contributions with `ADD`. Parents that can not reach any requested
symbol are skipped, so the result only holds entries for symbols that
actually influence the output.
"""

from __future__ import annotations

import itertools
from typing import Callable, Sequence

import numpy as np

from alloygrad import ordering
from alloygrad.backend import llops, shapes

VJP = Callable[[llops.Symbol, llops.Symbol], tuple[llops.Symbol | None, ...]]
VJP_RULES: dict[llops.Op, VJP] = {}


def vjp(op: llops.Op) -> Callable[[VJP], VJP]:
    def register(rule: VJP) -> VJP:
        VJP_RULES[op] = rule
        return rule

    return register


def gradients(of: llops.Symbol, wrt: Sequence[llops.Symbol]) -> dict[llops.Symbol, llops.Symbol]:
    order = ordering.topological_sort([of], lambda s: s.parents)
    targets, relevant = set(wrt), set[llops.Symbol]()
    for symbol in order:
        if symbol in targets or any(parent in relevant for parent in symbol.parents):
            relevant.add(symbol)

    grads = {of: full(1.0, of.shape)} if of in relevant else {}
    for symbol in reversed(order):
        if symbol not in grads or (rule := VJP_RULES.get(symbol.op)) is None:
            continue
        for parent, grad in zip(symbol.parents, rule(symbol, grads[symbol]), strict=True):
            if grad is None or parent not in relevant:
                continue
            assert grad.shape == parent.shape, f"{grad.shape=} != {parent.shape=} for {symbol!r}"
            grads[parent] = grad if parent not in grads else llops.Ops.ADD(grads[parent], grad)
    return {symbol: grads[symbol] for symbol in wrt if symbol in grads}


### helpers ###
def full(value: float, shape: shapes.Shape) -> llops.Symbol:
    scalar = llops.Ops.CONST(np.array(value, dtype=np.float32))
    return scalar if scalar.shape == shape else llops.Ops.BROADCAST(scalar, shape=shape)


def restore_axes(grad: llops.Symbol, axes: tuple[int, ...], shape: shapes.Shape) -> llops.Symbol:
    """Undo a reduction over `axes` by re-inserting them and broadcasting back to `shape`"""
    if len(grad.shape) < len(shape):
        grad = llops.Ops.RESHAPE(grad, shape=grad.shape.insertaxes(*axes))
    return grad if grad.shape == shape else llops.Ops.BROADCAST(grad, shape=shape)


### movement ###
@vjp(llops.Ops.RESHAPE)
def _reshape(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    return (llops.Ops.RESHAPE(grad, shape=src.shape),)


@vjp(llops.Ops.BROADCAST)
def _broadcast(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    padded = src.shape.lpad(symbol.shape.ndims - src.shape.ndims)
    if axes := tuple(i for i, (a, b) in enumerate(zip(padded, symbol.shape)) if a != b):
        grad = llops.Ops.SUM(grad, axes)
    return (grad if grad.shape == src.shape else llops.Ops.RESHAPE(grad, shape=src.shape),)


@vjp(llops.Ops.PERMUTE)
def _permute(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    order = symbol.args.arguments["order"]
    reversed_order = tuple(sorted(range(len(order)), key=order.__getitem__))
    return (llops.Ops.PERMUTE(grad, order=reversed_order),)


@vjp(llops.Ops.SELECT)
def _select(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    loc = symbol.args.arguments["loc"]
    if lost_dims := tuple(i for i, d in enumerate(loc) if isinstance(d, int)):
        grad = llops.Ops.RESHAPE(grad, shape=grad.shape.insertaxes(*lost_dims))
    lost_pads = [
        ((slice_, origin - slice_ - 1) if isinstance(slice_, int) else (slice_[0], origin - slice_[1]))
        for slice_, origin in zip(loc, src.shape.dims, strict=True)
    ]
    return (llops.Ops.PAD(grad, *lost_pads),)


@vjp(llops.Ops.PAD)
def _pad(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    pads = symbol.args.arguments["loc"]
    slices = [(lpad, lpad + original) for (lpad, _), original in zip(pads, src.shape.dims, strict=True)]
    return (llops.Ops.SELECT(grad, loc=slices, _skip_norm=True),)


### unary ###
@vjp(llops.Ops.NEG)
def _neg(_: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    return (llops.Ops.NEG(grad),)


@vjp(llops.Ops.EXP)
def _exp(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    return (llops.Ops.MUL(symbol, grad),)


@vjp(llops.Ops.LOG)
def _log(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    return (llops.Ops.MUL(grad, llops.Ops.INV(src)),)


@vjp(llops.Ops.INV)
def _inv(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    return (llops.Ops.MUL(grad, llops.Ops.NEG(llops.Ops.MUL(symbol, symbol))),)


### binary ###
@vjp(llops.Ops.ADD)
def _add(_: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol, llops.Symbol]:
    return grad, grad


@vjp(llops.Ops.MUL)
def _mul(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol, llops.Symbol]:
    lhs, rhs = symbol.parents
    return llops.Ops.MUL(grad, rhs), llops.Ops.MUL(grad, lhs)


@vjp(llops.Ops.POW)
def _pow(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol, llops.Symbol]:
    base, exponent = symbol.parents
    new_exponent = llops.Ops.ADD(exponent, full(-1.0, exponent.shape))
    base_grad = llops.Ops.MUL(grad, llops.Ops.MUL(exponent, llops.Ops.POW(base, new_exponent)))
    exponent_grad = llops.Ops.MUL(grad, llops.Ops.MUL(symbol, llops.Ops.LOG(base)))
    return base_grad, exponent_grad


### reduce ###
@vjp(llops.Ops.SUM)
def _sum(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    return (restore_axes(grad, symbol.args.arguments["axes"], src.shape),)


@vjp(llops.Ops.AMAX)
def _amax(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[llops.Symbol]:
    (src,) = symbol.parents
    axes = symbol.args.arguments["axes"]
    is_max = llops.Ops.EQ(src, restore_axes(symbol, axes, src.shape))
    return (llops.Ops.WHERE(is_max, restore_axes(grad, axes, src.shape), full(0.0, src.shape)),)


### ternary ###
@vjp(llops.Ops.WHERE)
def _where(symbol: llops.Symbol, grad: llops.Symbol) -> tuple[None, llops.Symbol, llops.Symbol]:
    cond, _, _ = symbol.parents
    zeros = full(0.0, grad.shape)
    return None, llops.Ops.WHERE(cond, grad, zeros), llops.Ops.WHERE(cond, zeros, grad)


NON_DIFFERENTIABLE = frozenset(itertools.filterfalse(VJP_RULES.__contains__, llops.ALL_OPS))
