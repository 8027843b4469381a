"""
Backend-native symbolic tensors

A `Symbol` is the handle a lowering returns: the op that produces it,
its static shape and the bound arguments (parent symbols and attributes).
Symbols are hashed by identity so they can key feed and result maps.
"""

from __future__ import annotations

import dataclasses
import enum
import inspect
from typing import Callable, Generic, Iterator, ParamSpec, Self, Sequence, TypeVar

import numpy as np

from alloygrad.backend import shapes

P, R = ParamSpec("P"), TypeVar("R")
OpSignature = tuple[shapes.Shape, inspect.BoundArguments]


@dataclasses.dataclass(slots=True, eq=False)
class Symbol(Generic[P]):
    """
    A vertex of the backend graph.
    op:     The operation that produces this symbol.
    shape:  The shape of the symbol.
    args:   The arguments that were passed to the operation.
    name:   Optional debug name (the label of the lowered node).
    """

    op: Op[P]
    shape: shapes.Shape
    args: inspect.BoundArguments
    name: str | None = None

    def __repr__(self) -> str:
        name = "" if self.name is None else f", name={self.name!r}"
        return f"<{self.__class__.__name__}({self.op!r}, shape={self.shape.dims!r}{name})>"

    @property
    def symbol_args(self) -> dict[str, Symbol]:
        return {k: arg for k, arg in self.args.arguments.items() if isinstance(arg, Symbol)}

    @property
    def parents(self) -> tuple[Symbol, ...]:
        return tuple(self.symbol_args.values())

    def iter_args(self) -> Iterator[object]:
        """Positional view of the bound arguments, in declaration order"""
        return iter(self.args.arguments.values())


@dataclasses.dataclass(slots=True, unsafe_hash=True)
class Op(Generic[P]):
    constructor: Callable[P, OpSignature]
    name: str = dataclasses.field(init=False)

    def __call__(self, *args: P.args, name: str | None = None, **kwds: P.kwargs) -> Symbol[P]:
        return Symbol(self, *self.constructor(*args, **kwds), name=name)

    def __set_name__(self, _: type[Ops], name: str) -> None:
        self.name = name

    def __get__(self, *_) -> Self:
        return self

    def __str__(self) -> str:
        return f"<{self.__class__.__name__}({self.name})>"

    def __repr__(self) -> str:
        return str(self)


def construct_const(data: np.ndarray, /) -> OpSignature:
    return shapes.Shape(tuple(data.shape)), bind(construct_const, data)


def construct_placeholder(*, shape: shapes.Shape) -> OpSignature:
    return shape, bind(construct_placeholder, shape=shape)


def construct_slice(s: Symbol, /, *, loc: Sequence[shapes.Loc], _skip_norm: bool = False) -> OpSignature:
    loc = loc if _skip_norm else s.shape.normalize_loc(loc)
    newshape = s.shape.slice(*loc, _skip_norm=True)
    return newshape, bind(construct_slice, s, loc=loc)


def construct_pad(s: Symbol, /, *loc: tuple[int, int], pad_val: float = 0) -> OpSignature:
    assert len(loc) == s.shape.ndims, f"{s.shape=} <> {loc=} must have same number of dimensions"
    assert all(len(l) == 2 for l in loc), f"{loc=} must be a sequence of (left, right) padding values"
    assert all(l[0] >= 0 and l[1] >= 0 for l in loc), f"{loc=} must all be non-negative"
    return s.shape.pad(*loc), bind(construct_pad, s, *loc, pad_val=pad_val)


def construct_reshape(s: Symbol, /, *, shape: shapes.Shape) -> OpSignature:
    assert s.shape.size == shape.size, f"{s.shape=} <> {shape=} size mismatch"
    return shape, bind(construct_reshape, s, shape=shape)


def construct_broadcast(s: Symbol, /, *, shape: shapes.Shape) -> OpSignature:
    assert s.shape.broadcast(shape) == shape, f"{s.shape=} can not broadcast to {shape=}"
    return shape, bind(construct_broadcast, s, shape=shape)


def construct_permute(s: Symbol, /, *, order: Sequence[int]) -> OpSignature:
    assert len(order) == s.shape.ndims, f"{s.shape=} <> {order=} must have same number of dimensions"
    order = s.shape.normalize_dim_ref(*order)
    return s.shape.permute(order), bind(construct_permute, s, order=order)


def construct_unary(s: Symbol, /) -> OpSignature:
    return s.shape, bind(construct_unary, s)


def construct_binary(s1: Symbol, s2: Symbol, /) -> OpSignature:
    assert_shape_match(s1, s2)
    return s1.shape, bind(construct_binary, s1, s2)


def construct_ternary(s1: Symbol, s2: Symbol, s3: Symbol, /) -> OpSignature:
    assert_shape_match(s1, s2, s3)
    return s1.shape, bind(construct_ternary, s1, s2, s3)


def construct_reduce(s: Symbol, /, axes: tuple[int, ...]) -> OpSignature:
    assert isinstance(s, Symbol), f"{s=} must be symbol"
    ndims, normed_axes = s.shape.ndims, tuple(sorted(set(s.shape.normalize_dim_ref(*axes))))
    assert all(0 <= ax < ndims for ax in normed_axes), f"{axes=} must be in range [0, {ndims=})"
    return s.shape.dropaxes(*normed_axes), bind(construct_reduce, s, normed_axes)


def construct_argmax(s: Symbol, /, axis: int) -> OpSignature:
    (axis,) = s.shape.normalize_dim_ref(axis)
    assert 0 <= axis < s.shape.ndims, f"{axis=} out of range for {s.shape=}"
    return s.shape.dropaxes(axis), bind(construct_argmax, s, axis)


### Helpers ###
def bind(f: Callable[P, R], *args: P.args, **kwargs: P.kwargs) -> inspect.BoundArguments:
    return inspect.signature(f).bind(*args, **kwargs)


def assert_shape_match(*symbols: Symbol) -> None:
    assert all(isinstance(symbol, Symbol) for symbol in symbols), f"{symbols=} must be symbols"
    assert all(symbols[0].shape == symbol.shape for symbol in symbols[1:]), f"{symbols=} do not match"


### Ops ##
@enum.global_enum
class Ops(enum.Enum):
    """Primitive ops that define & execute the backend graph"""

    CONST = Op(construct_const)
    PLACEHOLDER = Op(construct_placeholder)
    RESHAPE = Op(construct_reshape)
    BROADCAST = Op(construct_broadcast)
    PERMUTE = Op(construct_permute)
    SELECT = Op(construct_slice)
    PAD = Op(construct_pad)
    NEG = Op(construct_unary)
    EXP = Op(construct_unary)
    LOG = Op(construct_unary)
    INV = Op(construct_unary)
    ADD = Op(construct_binary)
    MUL = Op(construct_binary)
    POW = Op(construct_binary)
    MOD = Op(construct_binary)
    EQ = Op(construct_binary)
    LESS = Op(construct_binary)
    SUM = Op(construct_reduce)
    AMAX = Op(construct_reduce)
    ARGMAX = Op(construct_argmax)
    WHERE = Op(construct_ternary)


ALL_OPS: tuple[Op, ...] = tuple(op for op in vars(Ops).values() if isinstance(op, Op))
