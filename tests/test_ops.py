import operator

import numpy as np
import pytest

from alloygrad import errors, ops, runtime
from alloygrad.backend import engines
from alloygrad.ndarray import NDArray


def realize(node, device: engines.Device, feeds=None) -> np.ndarray:
    runtime.run(node, feeds=feeds, device=device)
    return node.numpy()


def reference_conv2d(x, w, stride=(1, 1), padding=(0, 0, 0, 0)):
    left, right, top, bottom = padding
    x = np.pad(x, ((0, 0), (0, 0), (top, bottom), (left, right)))
    (n, _, h, w_), (c_out, _, kh, kw) = x.shape, w.shape
    out_h, out_w = (h - kh) // stride[0] + 1, (w_ - kw) // stride[1] + 1
    out = np.zeros((n, c_out, out_h, out_w), dtype=np.float32)
    for i in range(out_h):
        for j in range(out_w):
            window = x[:, :, i * stride[0] : i * stride[0] + kh, j * stride[1] : j * stride[1] + kw]
            out[:, :, i, j] = np.einsum("nchw,ochw->no", window, w)
    return out


def reference_max_pool2d(x, kernel, stride, padding=(0, 0, 0, 0)):
    left, right, top, bottom = padding
    x = np.pad(x, ((0, 0), (0, 0), (top, bottom), (left, right)), constant_values=-np.inf)
    (n, c, h, w), (kh, kw) = x.shape, kernel
    out_h, out_w = (h - kh) // stride[0] + 1, (w - kw) // stride[1] + 1
    out = np.empty((n, c, out_h, out_w), dtype=np.float32)
    for i in range(out_h):
        for j in range(out_w):
            out[:, :, i, j] = x[:, :, i * stride[0] : i * stride[0] + kh, j * stride[1] : j * stride[1] + kw].max(
                axis=(2, 3)
            )
    return out


### reductions ###
@pytest.mark.parametrize("values, expected", [([1, 2, 3], 6), ([2, 2, 2, 2], 8)])
def test_sum_examples(device: engines.Device, values, expected) -> None:
    assert NDArray(values).sum().realize(device=device) == expected


@pytest.mark.parametrize(
    "op_name, np_op",
    [("sum", np.sum), ("mean", np.mean), ("max", np.max)],
)
@pytest.mark.parametrize("axes", [None, 0, 1, (0, 2), -1])
@pytest.mark.parametrize("keepdims", [False, True])
def test_reductions(device: engines.Device, op_name, np_op, axes, keepdims) -> None:
    data = np.random.normal(size=(2, 3, 4)).astype(np.float32)
    node = getattr(NDArray(data), op_name)(axes, keepdims)
    expected = np_op(data, axis=axes, keepdims=keepdims)
    assert node.shape == expected.shape
    assert np.allclose(realize(node, device), expected, atol=1e-5)


@pytest.mark.parametrize("axis", [0, 1, -1])
def test_argmax(device: engines.Device, axis) -> None:
    data = np.random.normal(size=(3, 5)).astype(np.float32)
    assert np.array_equal(realize(NDArray(data).argmax(axis), device), np.argmax(data, axis=axis))
    assert NDArray(data).argmax(axis, keepdims=True).shape == np.expand_dims(np.argmax(data, axis), axis).shape


def test_reduction_axis_out_of_range() -> None:
    with pytest.raises(errors.OperationError):
        NDArray.zeros(2, 3).sum(2)


### elementwise ###
@pytest.mark.parametrize(
    "op, np_op",
    [
        (operator.add, np.add),
        (operator.sub, np.subtract),
        (operator.mul, np.multiply),
        (operator.truediv, np.divide),
        (operator.lt, np.less),
        (operator.gt, np.greater),
        (ops.equal, np.equal),
        (ops.mod, np.mod),
    ],
)
@pytest.mark.parametrize("shape_a, shape_b", [((2, 3), (2, 3)), ((2, 3), (3,)), ((4, 1), (1, 5)), ((), (2,))])
def test_binary_ops_broadcast(device: engines.Device, op, np_op, shape_a, shape_b) -> None:
    a = np.random.uniform(0.5, 3, size=shape_a).astype(np.float32)
    b = np.random.uniform(0.5, 3, size=shape_b).astype(np.float32)
    result = realize(op(NDArray(a), NDArray(b)), device)
    assert np.allclose(result, np_op(a, b), atol=1e-5)


def test_scalars_are_promoted(device: engines.Device) -> None:
    x = NDArray([1.0, 2.0, 4.0])
    assert (2 - x).realize(device=device) == [1, 0, -2]
    assert np.allclose((8 / x).realize(device=device), [8, 4, 2])
    assert (2**x).realize(device=device) == [2, 4, 16]
    assert (x**2).realize(device=device) == [1, 4, 16]


def test_broadcast_mismatch() -> None:
    with pytest.raises(errors.DimensionMismatchError):
        NDArray.zeros(2, 3) + NDArray.zeros(2)


@pytest.mark.parametrize(
    "op_name, reference",
    [
        ("exp", np.exp),
        ("log", np.log),
        ("sqrt", np.sqrt),
        ("relu", lambda x: np.maximum(x, 0)),
        ("sigmoid", lambda x: 1 / (1 + np.exp(-x))),
        ("tanh", np.tanh),
    ],
)
def test_unary_ops(device: engines.Device, op_name, reference) -> None:
    data = np.random.normal(size=(3, 4)).astype(np.float32)
    if op_name in ("log", "sqrt"):
        data = np.abs(data) + 0.1
    assert np.allclose(realize(getattr(NDArray(data), op_name)(), device), reference(data), atol=1e-5)


def test_relu_default_label() -> None:
    assert NDArray([1.0], label="h").relu().label == "relu(h)"


def test_neg(device: engines.Device) -> None:
    assert (-NDArray([1.0, -2.0])).realize(device=device) == [-1, 2]


@pytest.mark.parametrize("axis", [0, 1, -1])
def test_softmax(device: engines.Device, axis) -> None:
    data = np.random.normal(size=(3, 4)).astype(np.float32) * 10
    shifted = np.exp(data - data.max(axis=axis, keepdims=True))
    expected = shifted / shifted.sum(axis=axis, keepdims=True)
    assert np.allclose(realize(NDArray(data).softmax(axis), device), expected, atol=1e-6)
    assert np.allclose(realize(NDArray(data).log_softmax(axis), device), np.log(expected), atol=1e-5)


### shaping ###
def test_reshape(device: engines.Device) -> None:
    data = np.arange(12, dtype=np.float32)
    assert np.array_equal(realize(NDArray(data).reshape((3, -1)), device), data.reshape(3, 4))
    with pytest.raises(errors.DimensionMismatchError):
        NDArray(data).reshape((5, -1))
    with pytest.raises(errors.DimensionMismatchError):
        NDArray(data).reshape((2, 2))


def test_broadcast(device: engines.Device) -> None:
    assert NDArray([1.0, 2.0]).broadcast((2, 2)).realize(device=device) == [[1, 2], [1, 2]]
    with pytest.raises(errors.DimensionMismatchError):
        NDArray([1.0, 2.0]).broadcast((3,))


def test_permute_and_transpose(device: engines.Device) -> None:
    data = np.random.normal(size=(2, 3, 4)).astype(np.float32)
    assert np.array_equal(realize(NDArray(data).permute((2, 0, 1)), device), data.transpose(2, 0, 1))
    assert np.array_equal(realize(NDArray(data).transpose(), device), data.swapaxes(-2, -1))
    assert np.array_equal(realize(NDArray(data).transpose(0, 2), device), data.swapaxes(0, 2))
    with pytest.raises(errors.OperationError):
        NDArray(data).permute((0, 0, 1))


def test_flatten(device: engines.Device) -> None:
    data = np.random.normal(size=(2, 3, 4)).astype(np.float32)
    assert NDArray(data).flatten().shape == (2, 12)
    assert np.array_equal(realize(NDArray(data).flatten(0), device), data.reshape(-1))


def test_select(device: engines.Device) -> None:
    data = np.arange(20, dtype=np.float32).reshape(4, 5)
    assert np.array_equal(realize(NDArray(data).slice((1, 0), (3, 2)), device), data[1:3, 0:2])
    assert np.array_equal(realize(NDArray(data).slice(1, 3), device), data[1:3, 1:3])
    with pytest.raises(errors.OperationError):
        NDArray(data).slice((0, 0), (5, 2))
    with pytest.raises(errors.OperationError):
        NDArray(data).slice((2, 0), (2, 1))


### linear algebra ###
@pytest.mark.parametrize(
    "shape_a, shape_b",
    [((2, 3), (3, 4)), ((3,), (3, 2)), ((2, 3), (3,)), ((3,), (3,)), ((5, 2, 3), (3, 4)), ((2, 2, 3), (2, 3, 1))],
)
def test_matmul(device: engines.Device, shape_a, shape_b) -> None:
    a = np.random.normal(size=shape_a).astype(np.float32)
    b = np.random.normal(size=shape_b).astype(np.float32)
    node = NDArray(a) @ NDArray(b)
    expected = a @ b
    assert node.shape == expected.shape
    assert np.allclose(realize(node, device), expected, atol=1e-5)


def test_matmul_inner_dim_mismatch() -> None:
    with pytest.raises(errors.DimensionMismatchError):
        NDArray.zeros(2, 3) @ NDArray.zeros(2, 3)


def test_rmatmul(device: engines.Device) -> None:
    assert ([1.0, 2.0] @ NDArray([[1.0], [1.0]])).realize(device=device) == [3]


def test_linear(device: engines.Device) -> None:
    x = np.random.normal(size=(4, 3)).astype(np.float32)
    w = np.random.normal(size=(2, 3)).astype(np.float32)
    b = np.random.normal(size=(2,)).astype(np.float32)
    node = ops.linear(NDArray(x), NDArray(w), NDArray(b))
    assert node.label == "linear(?)"
    assert np.allclose(realize(node, device), x @ w.T + b, atol=1e-5)
    with pytest.raises(errors.DimensionMismatchError):
        ops.linear(NDArray(x), NDArray(w.T))


def test_conv2d_example(device: engines.Device) -> None:
    x = NDArray(np.arange(1, 10), shape=(1, 1, 3, 3))
    kernel = NDArray([1, 2, 1, 2, 4, 2, 1, 2, 1], shape=(1, 1, 3, 3))
    out = ops.conv2d(x, kernel)
    assert out.shape == (1, 1, 1, 1)
    assert out.realize(device=device) == [[[[80]]]]


@pytest.mark.parametrize(
    "x_shape, w_shape, stride, padding",
    [
        ((1, 1, 5, 5), (1, 1, 3, 3), 1, 0),
        ((2, 3, 6, 7), (4, 3, 3, 2), (2, 1), (1, 0, 2, 1)),
        ((1, 2, 8, 8), (3, 2, 2, 2), 3, 1),
    ],
)
def test_conv2d(device: engines.Device, x_shape, w_shape, stride, padding) -> None:
    x = np.random.normal(size=x_shape).astype(np.float32)
    w = np.random.normal(size=w_shape).astype(np.float32)
    b = np.random.normal(size=w_shape[:1]).astype(np.float32)
    node = ops.conv2d(NDArray(x), NDArray(w), NDArray(b), stride=stride, padding=padding)
    expected = reference_conv2d(x, w, ops.as_pair(stride, "stride"), ops.as_padding(padding)) + b[:, None, None]
    assert node.shape == expected.shape
    assert np.allclose(realize(node, device), expected, atol=1e-4)


def test_conv2d_invalid_arguments() -> None:
    with pytest.raises(errors.DimensionMismatchError):
        ops.conv2d(NDArray.zeros(1, 2, 4, 4), NDArray.zeros(1, 3, 2, 2))
    with pytest.raises(errors.OperationError):
        ops.conv2d(NDArray.zeros(1, 1, 2, 2), NDArray.zeros(1, 1, 3, 3))
    with pytest.raises(errors.OperationError):
        ops.conv2d(NDArray.zeros(1, 1, 4, 4), NDArray.zeros(1, 1, 2, 2), stride=0)


@pytest.mark.parametrize(
    "x_shape, kernel, stride, padding",
    [
        ((1, 1, 4, 4), (2, 2), None, 0),
        ((2, 3, 7, 5), (3, 2), (2, 1), 0),
        ((1, 1, 5, 5), (2, 2), None, (0, 1, 0, 1)),
    ],
)
def test_max_pool2d(device: engines.Device, x_shape, kernel, stride, padding) -> None:
    x = np.random.normal(size=x_shape).astype(np.float32)
    node = ops.max_pool2d(NDArray(x), kernel, stride, padding)
    expected = reference_max_pool2d(x, kernel, stride or kernel, ops.as_padding(padding))
    assert node.shape == expected.shape
    assert np.allclose(realize(node, device), expected)


### losses & encodings ###
def test_softmax_cross_entropy(device: engines.Device) -> None:
    logits = np.random.normal(size=(4, 3)).astype(np.float32)
    labels = np.eye(3, dtype=np.float32)[[0, 2, 1, 2]]
    node = ops.softmax_cross_entropy(NDArray(logits), NDArray(labels))
    assert node.shape == ()
    log_probs = logits - np.log(np.exp(logits).sum(axis=1, keepdims=True))
    assert np.isclose(node.realize(device=device), -(labels * log_probs).sum(axis=1).mean(), atol=1e-5)
    with pytest.raises(errors.DimensionMismatchError):
        ops.softmax_cross_entropy(NDArray(logits), NDArray(labels[:, :2]))


def test_one_hot(device: engines.Device) -> None:
    node = ops.one_hot(NDArray([0.0, 2.0, 1.0, 5.0]), 3)
    assert node.shape == (4, 3)
    assert node.realize(device=device) == [[1, 0, 0], [0, 0, 1], [0, 1, 0], [0, 0, 0]]


def test_randn_reproducible(device: engines.Device) -> None:
    a, b = ops.randn((50,), mean=3, std=0.5, seed=1), ops.randn((50,), mean=3, std=0.5, seed=1)
    assert np.array_equal(realize(a, device), realize(b, device))
    assert not np.array_equal(realize(a, device), realize(ops.randn((50,), seed=2), device))
