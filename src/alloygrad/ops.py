"""
Operators over nodes

Every operator validates its operands' shapes right away and returns a new
internal node. What the node computes is recorded as a `Lowering`: the kind
of op plus its attributes, dispatched through `LOWERINGS` onto the
`TensorGraph` builder that produces the backend symbol at build time.
Plain numbers and array-likes are promoted to constant leaves.
"""

from __future__ import annotations

import dataclasses
import enum
import math
from typing import Any, Callable, Mapping, Sequence

from alloygrad import errors, graph
from alloygrad.backend import llops, shapes, tensor_graph

Operand = graph.Node | graph.ArrayLike
Axes = int | Sequence[int] | None
TensorGraph = tensor_graph.TensorGraph


class OpKind(enum.Enum):
    # elementwise
    ADD = enum.auto()
    SUB = enum.auto()
    MUL = enum.auto()
    DIV = enum.auto()
    POW = enum.auto()
    MOD = enum.auto()
    LESS = enum.auto()
    GREATER = enum.auto()
    EQUAL = enum.auto()
    NEG = enum.auto()
    EXP = enum.auto()
    LOG = enum.auto()
    SQRT = enum.auto()
    # activations
    RELU = enum.auto()
    SIGMOID = enum.auto()
    TANH = enum.auto()
    SOFTMAX = enum.auto()
    LOG_SOFTMAX = enum.auto()
    # shaping
    RESHAPE = enum.auto()
    BROADCAST = enum.auto()
    PERMUTE = enum.auto()
    SLICE = enum.auto()
    # reductions
    SUM = enum.auto()
    MEAN = enum.auto()
    AMAX = enum.auto()
    ARGMAX = enum.auto()
    # linear algebra & nn
    MATMUL = enum.auto()
    LINEAR = enum.auto()
    CONV2D = enum.auto()
    MAX_POOL2D = enum.auto()
    SOFTMAX_CROSS_ENTROPY = enum.auto()
    ONE_HOT = enum.auto()
    RANDN = enum.auto()


LOWERINGS: dict[OpKind, Callable[..., llops.Symbol]] = {
    OpKind.ADD: TensorGraph.add,
    OpKind.SUB: TensorGraph.subtract,
    OpKind.MUL: TensorGraph.multiply,
    OpKind.DIV: TensorGraph.divide,
    OpKind.POW: TensorGraph.power,
    OpKind.MOD: TensorGraph.modulo,
    OpKind.LESS: TensorGraph.less,
    OpKind.GREATER: TensorGraph.greater,
    OpKind.EQUAL: TensorGraph.equal,
    OpKind.NEG: TensorGraph.negative,
    OpKind.EXP: TensorGraph.exp,
    OpKind.LOG: TensorGraph.log,
    OpKind.SQRT: TensorGraph.sqrt,
    OpKind.RELU: TensorGraph.relu,
    OpKind.SIGMOID: TensorGraph.sigmoid,
    OpKind.TANH: TensorGraph.tanh,
    OpKind.SOFTMAX: TensorGraph.softmax,
    OpKind.LOG_SOFTMAX: TensorGraph.log_softmax,
    OpKind.RESHAPE: TensorGraph.reshape,
    OpKind.BROADCAST: TensorGraph.broadcast,
    OpKind.PERMUTE: TensorGraph.permute,
    OpKind.SLICE: TensorGraph.slice,
    OpKind.SUM: TensorGraph.reduce_sum,
    OpKind.MEAN: TensorGraph.mean,
    OpKind.AMAX: TensorGraph.reduce_max,
    OpKind.ARGMAX: TensorGraph.argmax,
    OpKind.MATMUL: TensorGraph.matmul,
    OpKind.LINEAR: TensorGraph.linear,
    OpKind.CONV2D: TensorGraph.conv2d,
    OpKind.MAX_POOL2D: TensorGraph.max_pool2d,
    OpKind.SOFTMAX_CROSS_ENTROPY: TensorGraph.softmax_cross_entropy,
    OpKind.ONE_HOT: TensorGraph.one_hot,
    OpKind.RANDN: TensorGraph.random_normal,
}

missing_lowerings = [kind for kind in OpKind if kind not in LOWERINGS]
assert not missing_lowerings, f"Missing lowerings: {missing_lowerings}"


@dataclasses.dataclass(frozen=True, slots=True)
class Lowering:
    kind: OpKind
    n_inputs: int
    attrs: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    def __call__(
        self,
        backend: tensor_graph.TensorGraph,
        parents: Sequence[llops.Symbol],
        label: str | None,
        /,
    ) -> llops.Symbol:
        if len(parents) != self.n_inputs:
            raise errors.OperationError(
                f"{self.kind.name} expects {self.n_inputs} inputs, got {len(parents)} for node {label or '<?>'}"
            )
        return LOWERINGS[self.kind](backend, *parents, **self.attrs, name=label)


### helpers ###
def apply(
    kind: OpKind,
    shape: Sequence[int],
    parents: Sequence[graph.Node],
    /,
    *,
    label: str | None = None,
    node_type: type[graph.Node] | None = None,
    **attrs: Any,
) -> graph.Node:
    cls = node_type or type_of(*parents)
    return cls.from_op(shape, parents, Lowering(kind, len(parents), attrs), label=label)


def type_of(*operands: Operand) -> type[graph.Node]:
    """Results take the type of the first node operand, so subclasses survive operators"""
    return next((type(x) for x in operands if isinstance(x, graph.Node)), graph.Node)


def ensure_nodes(*operands: Operand) -> tuple[graph.Node, ...]:
    cls = type_of(*operands)
    return tuple(x if isinstance(x, graph.Node) else cls(x) for x in operands)


def broadcast_shape(*nodes: graph.Node) -> tuple[int, ...]:
    result = shapes.Shape(())
    for node in nodes:
        if not result.is_broadcastable(other := shapes.Shape(node.shape)):
            raise errors.DimensionMismatchError(f"Can not broadcast {' with '.join(str(n.shape) for n in nodes)}")
        result = result.broadcast(other)
    return result.dims


def normalize_axes(node: graph.Node, axes: Axes) -> tuple[int, ...]:
    axes = tuple(range(node.ndims)) if axes is None else (axes,) if isinstance(axes, int) else tuple(axes)
    if not all(-node.ndims <= ax < node.ndims for ax in axes):
        raise errors.OperationError(f"{axes=} out of range for shape {node.shape}")
    return tuple(sorted({ax % node.ndims for ax in axes}))


def reduced_shape(shape: tuple[int, ...], axes: tuple[int, ...], keepdims: bool) -> tuple[int, ...]:
    if keepdims:
        return tuple(1 if i in axes else d for i, d in enumerate(shape))
    return tuple(d for i, d in enumerate(shape) if i not in axes)


def as_pair(value: int | Sequence[int], what: str) -> tuple[int, int]:
    pair = (value, value) if isinstance(value, int) else tuple(value)
    if len(pair) != 2 or not all(isinstance(v, int) and v > 0 for v in pair):
        raise errors.OperationError(f"{what} must be a positive int or a pair of them, got {value!r}")
    return pair  # type: ignore[return-value]


def as_padding(padding: int | Sequence[int]) -> tuple[int, int, int, int]:
    pads = (padding,) * 4 if isinstance(padding, int) else tuple(padding)
    if len(pads) != 4 or not all(isinstance(p, int) and p >= 0 for p in pads):
        raise errors.OperationError(f"padding must be (left, right, top, bottom) non-negative ints, got {padding!r}")
    return pads  # type: ignore[return-value]


def label_of(op: str, *nodes: graph.Node) -> str:
    return f"{op}({', '.join(n.label or '?' for n in nodes)})"


### elementwise ###
def _binary(kind: OpKind, a: Operand, b: Operand, label: str | None) -> graph.Node:
    a, b = ensure_nodes(a, b)
    return apply(kind, broadcast_shape(a, b), (a, b), label=label)


def _unary(kind: OpKind, x: Operand, label: str | None, **attrs: Any) -> graph.Node:
    (x,) = ensure_nodes(x)
    return apply(kind, x.shape, (x,), label=label, **attrs)


def add(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.ADD, a, b, label)


def sub(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.SUB, a, b, label)


def mul(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.MUL, a, b, label)


def div(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.DIV, a, b, label)


def pow(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.POW, a, b, label)


def mod(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.MOD, a, b, label)


def less(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    """1.0 where `a < b`, else 0.0"""
    return _binary(OpKind.LESS, a, b, label)


def greater(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.GREATER, a, b, label)


def equal(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    return _binary(OpKind.EQUAL, a, b, label)


def neg(x: Operand, *, label: str | None = None) -> graph.Node:
    return _unary(OpKind.NEG, x, label)


def exp(x: Operand, *, label: str | None = None) -> graph.Node:
    return _unary(OpKind.EXP, x, label)


def log(x: Operand, *, label: str | None = None) -> graph.Node:
    return _unary(OpKind.LOG, x, label)


def sqrt(x: Operand, *, label: str | None = None) -> graph.Node:
    return _unary(OpKind.SQRT, x, label)


### activations ###
def relu(x: Operand, *, label: str | None = None) -> graph.Node:
    (x,) = ensure_nodes(x)
    return _unary(OpKind.RELU, x, label or label_of("relu", x))


def sigmoid(x: Operand, *, label: str | None = None) -> graph.Node:
    return _unary(OpKind.SIGMOID, x, label)


def tanh(x: Operand, *, label: str | None = None) -> graph.Node:
    return _unary(OpKind.TANH, x, label)


def softmax(x: Operand, axis: int = -1, *, label: str | None = None) -> graph.Node:
    (x,) = ensure_nodes(x)
    (axis,) = normalize_axes(x, axis)
    return _unary(OpKind.SOFTMAX, x, label, axis=axis)


def log_softmax(x: Operand, axis: int = -1, *, label: str | None = None) -> graph.Node:
    (x,) = ensure_nodes(x)
    (axis,) = normalize_axes(x, axis)
    return _unary(OpKind.LOG_SOFTMAX, x, label, axis=axis)


### shaping ###
def reshape(x: Operand, shape: Sequence[int], *, label: str | None = None) -> graph.Node:
    """One dimension may be -1, it is inferred from the others"""
    (x,) = ensure_nodes(x)
    shape = tuple(shape)
    if shape.count(-1) == 1:
        known = math.prod(d for d in shape if d != -1)
        if known <= 0 or x.size % known:
            raise errors.DimensionMismatchError(f"Can not reshape {x.shape} into {shape}")
        shape = tuple(x.size // known if d == -1 else d for d in shape)
    if not all(d > 0 for d in shape) or math.prod(shape) != x.size:
        raise errors.DimensionMismatchError(f"Can not reshape {x.shape} into {shape}")
    return apply(OpKind.RESHAPE, shape, (x,), label=label, shape=shape)


def broadcast(x: Operand, shape: Sequence[int], *, label: str | None = None) -> graph.Node:
    (x,) = ensure_nodes(x)
    target = shapes.Shape(tuple(shape))
    if target.ndims < x.ndims or not (source := shapes.Shape(x.shape)).is_broadcastable(target):
        raise errors.DimensionMismatchError(f"Can not broadcast {x.shape} to {target.dims}")
    if source.broadcast(target) != target:
        raise errors.DimensionMismatchError(f"Can not broadcast {x.shape} to {target.dims}")
    return apply(OpKind.BROADCAST, target.dims, (x,), label=label, shape=target.dims)


def permute(x: Operand, order: Sequence[int], *, label: str | None = None) -> graph.Node:
    (x,) = ensure_nodes(x)
    if len(order) != x.ndims or sorted(normalize_axes(x, order)) != list(range(x.ndims)):
        raise errors.OperationError(f"{tuple(order)} is not a permutation of the axes of {x.shape}")
    order = tuple(ax % x.ndims for ax in order)
    return apply(OpKind.PERMUTE, tuple(x.shape[i] for i in order), (x,), label=label, order=order)


def transpose(x: Operand, dim0: int = -2, dim1: int = -1, *, label: str | None = None) -> graph.Node:
    (x,) = ensure_nodes(x)
    if not all(-x.ndims <= dim < x.ndims for dim in (dim0, dim1)):
        raise errors.OperationError(f"Can not swap dims {dim0} and {dim1} of {x.shape}")
    order = list(range(x.ndims))
    dim0, dim1 = dim0 % x.ndims, dim1 % x.ndims
    order[dim0], order[dim1] = order[dim1], order[dim0]
    return permute(x, order, label=label)


def flatten(x: Operand, start_dim: int = 1, *, label: str | None = None) -> graph.Node:
    """Collapse every dim from `start_dim` on, by default all but the batch dim"""
    (x,) = ensure_nodes(x)
    return reshape(x, (*x.shape[:start_dim], math.prod(x.shape[start_dim:])), label=label)


def select(
    x: Operand,
    start: int | Sequence[int],
    end: int | Sequence[int],
    *,
    label: str | None = None,
) -> graph.Node:
    """`x[start:end]` along every dim; plain ints apply the same bounds to all of them"""
    (x,) = ensure_nodes(x)
    starts = (start,) * x.ndims if isinstance(start, int) else tuple(start)
    ends = (end,) * x.ndims if isinstance(end, int) else tuple(end)
    if len(starts) != x.ndims or len(ends) != x.ndims:
        raise errors.OperationError(f"{starts=} and {ends=} must match the {x.ndims} dims of {x.shape}")
    for dim, (lo, hi, size) in enumerate(zip(starts, ends, x.shape)):
        if not 0 <= lo < hi <= size:
            raise errors.OperationError(f"Invalid slice [{lo}:{hi}] for dim {dim} of size {size}")
    loc = tuple(zip(starts, ends))
    return apply(OpKind.SLICE, tuple(hi - lo for lo, hi in loc), (x,), label=label, loc=loc)


### reductions ###
def _reduce(kind: OpKind, x: Operand, axes: Axes, keepdims: bool, label: str | None) -> graph.Node:
    (x,) = ensure_nodes(x)
    axes = normalize_axes(x, axes)
    shape = reduced_shape(x.shape, axes, keepdims)
    return apply(kind, shape, (x,), label=label, axes=axes, keepdims=keepdims)


def sum(x: Operand, axes: Axes = None, keepdims: bool = False, *, label: str | None = None) -> graph.Node:
    return _reduce(OpKind.SUM, x, axes, keepdims, label)


def mean(x: Operand, axes: Axes = None, keepdims: bool = False, *, label: str | None = None) -> graph.Node:
    return _reduce(OpKind.MEAN, x, axes, keepdims, label)


def amax(x: Operand, axes: Axes = None, keepdims: bool = False, *, label: str | None = None) -> graph.Node:
    return _reduce(OpKind.AMAX, x, axes, keepdims, label)


def argmax(x: Operand, axis: int = -1, keepdims: bool = False, *, label: str | None = None) -> graph.Node:
    """Index of the largest value along `axis`, as a float"""
    (x,) = ensure_nodes(x)
    (axis,) = normalize_axes(x, axis)
    shape = reduced_shape(x.shape, (axis,), keepdims)
    return apply(OpKind.ARGMAX, shape, (x,), label=label, axis=axis, keepdims=keepdims)


### linear algebra ###
def matmul(a: Operand, b: Operand, *, label: str | None = None) -> graph.Node:
    a, b = ensure_nodes(a, b)
    if a.ndims == 0 or b.ndims == 0:
        raise errors.OperationError(f"matmul needs at least 1-d operands, got {a.shape} @ {b.shape}")
    inner = b.shape[-2] if b.ndims > 1 else b.shape[0]
    if a.shape[-1] != inner:
        raise errors.DimensionMismatchError(f"matmul inner dims differ: {a.shape} @ {b.shape}")
    batch = shapes.Shape(a.shape[:-2])
    if not batch.is_broadcastable(b_batch := shapes.Shape(b.shape[:-2])):
        raise errors.DimensionMismatchError(f"matmul batch dims differ: {a.shape} @ {b.shape}")
    shape = batch.broadcast(b_batch).dims + a.shape[-2:-1] + b.shape[-1:] * (b.ndims > 1)
    return apply(OpKind.MATMUL, shape, (a, b), label=label)


def linear(x: Operand, weight: Operand, bias: Operand | None = None, *, label: str | None = None) -> graph.Node:
    """x: (n, in), weight: (out, in), bias: (out,) -> (n, out)"""
    x, weight, *maybe_bias = ensure_nodes(x, weight, *(() if bias is None else (bias,)))
    if x.ndims != 2 or weight.ndims != 2:
        raise errors.OperationError(f"linear expects a 2-d input and weight, got {x.shape} and {weight.shape}")
    (batch, in_features), (out_features, w_in_features) = x.shape, weight.shape
    if in_features != w_in_features:
        raise errors.DimensionMismatchError(f"Input size mismatch in linear. x: {x.shape}, w: {weight.shape}")
    if maybe_bias and maybe_bias[0].shape != (out_features,):
        raise errors.DimensionMismatchError(f"Bias must be ({out_features},), got {maybe_bias[0].shape}")
    parents = (x, weight, *maybe_bias)
    return apply(OpKind.LINEAR, (batch, out_features), parents, label=label or label_of("linear", x))


def conv2d(
    x: Operand,
    weight: Operand,
    bias: Operand | None = None,
    stride: int | tuple[int, int] = 1,
    padding: int | tuple[int, int, int, int] = 0,
    *,
    label: str | None = None,
) -> graph.Node:
    """
    2-d convolution (cross-correlation).
    x:       (n, c_in, h, w)
    weight:  (c_out, c_in, kh, kw)
    bias:    (c_out,)
    padding: (left, right, top, bottom)
    -> (n, c_out, h_out, w_out)
    """
    x, weight, *maybe_bias = ensure_nodes(x, weight, *(() if bias is None else (bias,)))
    if x.ndims != 4 or weight.ndims != 4:
        raise errors.OperationError(f"conv2d expects 4-d input and weights, got {x.shape} and {weight.shape}")
    (batch, in_channels, height, width), (out_channels, w_in_channels, kh, kw) = x.shape, weight.shape
    if in_channels != w_in_channels:
        raise errors.DimensionMismatchError(f"conv2d channel mismatch: {x.shape} with weights {weight.shape}")
    if maybe_bias and maybe_bias[0].shape != (out_channels,):
        raise errors.DimensionMismatchError(f"Bias must be ({out_channels},), got {maybe_bias[0].shape}")
    (stride_h, stride_w), pads = as_pair(stride, "stride"), as_padding(padding)
    out_h = (height + pads[2] + pads[3] - kh) // stride_h + 1
    out_w = (width + pads[0] + pads[1] - kw) // stride_w + 1
    if out_h <= 0 or out_w <= 0:
        raise errors.OperationError(f"Invalid {out_h=}, {out_w=}. Check kernel, stride and padding")
    return apply(
        OpKind.CONV2D,
        (batch, out_channels, out_h, out_w),
        (x, weight, *maybe_bias),
        label=label or f"conv2d({out_channels}x{in_channels} kernel={kh}x{kw})",
        stride=(stride_h, stride_w),
        padding=pads,
    )


def max_pool2d(
    x: Operand,
    kernel_size: int | tuple[int, int],
    stride: int | tuple[int, int] | None = None,
    padding: int | tuple[int, int, int, int] = 0,
    *,
    label: str | None = None,
) -> graph.Node:
    """Max over (kh, kw) windows of an (n, c, h, w) input; the stride defaults to the kernel size"""
    (x,) = ensure_nodes(x)
    if x.ndims != 4:
        raise errors.OperationError(f"max_pool2d expects a 4-d input, got {x.shape}")
    kh, kw = kernel = as_pair(kernel_size, "kernel_size")
    stride_h, stride_w = strides = kernel if stride is None else as_pair(stride, "stride")
    pads = as_padding(padding)
    batch, channels, height, width = x.shape
    out_h = (height + pads[2] + pads[3] - kh) // stride_h + 1
    out_w = (width + pads[0] + pads[1] - kw) // stride_w + 1
    if out_h <= 0 or out_w <= 0:
        raise errors.OperationError(f"Invalid {out_h=}, {out_w=}. Check kernel, stride and padding")
    return apply(
        OpKind.MAX_POOL2D,
        (batch, channels, out_h, out_w),
        (x,),
        label=label or f"maxPool2d({kh}x{kw})",
        kernel_shape=kernel,
        stride=strides,
        padding=pads,
    )


def softmax_cross_entropy(logits: Operand, labels: Operand, *, label: str | None = None) -> graph.Node:
    """Scalar mean over the batch of the cross entropy between `softmax(logits)` and `labels`"""
    logits, labels = ensure_nodes(logits, labels)
    if logits.ndims != 2:
        raise errors.OperationError(f"Logits must be 2-d, got {logits.shape}")
    if labels.shape != logits.shape:
        raise errors.DimensionMismatchError(f"Labels shape must match logits. Got {labels.shape} vs {logits.shape}")
    return apply(OpKind.SOFTMAX_CROSS_ENTROPY, (), (logits, labels), label=label or label_of("softmaxCE", logits))


def one_hot(indices: Operand, depth: int, *, label: str | None = None) -> graph.Node:
    """Indices outside `[0, depth)` encode as all zeros"""
    (indices,) = ensure_nodes(indices)
    if depth <= 0:
        raise errors.OperationError(f"{depth=} must be positive")
    return apply(OpKind.ONE_HOT, (*indices.shape, depth), (indices,), label=label, depth=depth)


def randn(
    shape: Sequence[int],
    mean: float = 0.0,
    std: float = 1.0,
    seed: int = 0,
    *,
    label: str | None = None,
    node_type: type[graph.Node] = graph.Node,
) -> graph.Node:
    """A lazy, parentless node drawn from N(mean, std) on every build; the seed keeps it reproducible"""
    shape = tuple(shape)
    assert all(d > 0 for d in shape), f"{shape=} must only hold positive dimensions"
    return apply(
        OpKind.RANDN, shape, (), label=label, node_type=node_type, shape=shape, mean=mean, std=std, seed=seed
    )
