import math
from typing import Callable, Iterable, Protocol, runtime_checkable

from alloygrad import graph, ops
from alloygrad.ndarray import NDArray

Activation = Callable[[graph.Node], graph.Node]


@runtime_checkable
class SupportsForward(Protocol):
    def __call__(self, x: graph.Node, /) -> graph.Node: ...


@runtime_checkable
class HasParameters(Protocol):
    def params(self) -> Iterable[NDArray]: ...


class Linear(SupportsForward, HasParameters):
    def __init__(
        self,
        in_features: int,
        out_features: int,
        bias: bool = True,
        activation: Activation | None = None,
    ) -> None:
        self.in_features = in_features
        self.out_features = out_features
        glorot_ub = math.sqrt(6 / (in_features + out_features))
        self.weight = NDArray.random_uniform(out_features, in_features, lb=-glorot_ub, ub=glorot_ub, label="weight")
        self.bias = NDArray.zeros(out_features, label="bias") if bias else None
        self.activation = activation

    def __call__(self, x: graph.Node) -> graph.Node:
        out = ops.linear(x, self.weight, self.bias)
        return out if self.activation is None else self.activation(out)

    def params(self) -> list[NDArray]:
        return [self.weight, self.bias] if self.bias is not None else [self.weight]


class Conv2d(SupportsForward, HasParameters):
    def __init__(
        self,
        in_channels: int,
        out_channels: int,
        kernel_shape: tuple[int, int],
        stride: int | tuple[int, int] = 1,
        padding: int | tuple[int, int, int, int] = 0,
        bias: bool = True,
        activation: Activation | None = None,
    ) -> None:
        glorot_ub = math.sqrt(6 / (math.prod(kernel_shape) * in_channels + out_channels))
        self.kernel = NDArray.random_uniform(
            out_channels,
            in_channels,
            *kernel_shape,
            lb=-glorot_ub,
            ub=glorot_ub,
            label="kernel",
        )
        self.bias = NDArray.zeros(out_channels, label="bias") if bias else None
        self.output_channels = out_channels
        self.input_channels = in_channels
        self.kernel_shape = kernel_shape
        self.stride = stride
        self.padding = padding
        self.activation = activation

    def __call__(self, x: graph.Node) -> graph.Node:
        out = ops.conv2d(x, self.kernel, self.bias, self.stride, self.padding)
        return out if self.activation is None else self.activation(out)

    def params(self) -> list[NDArray]:
        return [self.kernel, self.bias] if self.bias is not None else [self.kernel]


class MaxPool2d(SupportsForward):
    def __init__(
        self,
        kernel_shape: tuple[int, int],
        stride: int | tuple[int, int] | None = None,
        padding: int | tuple[int, int, int, int] = 0,
    ) -> None:
        self.kernel_shape = kernel_shape
        self.stride = stride
        self.padding = padding

    def __call__(self, x: graph.Node) -> graph.Node:
        return ops.max_pool2d(x, self.kernel_shape, self.stride, self.padding)


### helpers ###
def flatten_except_batch_dim(x: graph.Node) -> graph.Node:
    return ops.flatten(x, 1)
