import numpy as np

from alloygrad import layers, ops, optimizers, runtime
from alloygrad.backend import engines
from alloygrad.ndarray import NDArray


def test_linear_layer(device: engines.Device) -> None:
    layer = layers.Linear(3, 2)
    assert isinstance(layer, layers.SupportsForward) and isinstance(layer, layers.HasParameters)
    assert layer.weight.shape == (2, 3)
    assert layer.bias is not None and layer.bias.to_list() == [0, 0]

    x = np.random.normal(size=(5, 3)).astype(np.float32)
    out = layer(NDArray(x))
    runtime.run(out, device=device)
    assert np.allclose(out.numpy(), x @ layer.weight.numpy().T, atol=1e-5)


def test_linear_glorot_bounds() -> None:
    layer = layers.Linear(10, 20)
    bound = np.sqrt(6 / 30)
    assert np.all(np.abs(layer.weight.numpy()) <= bound + 1e-6)


def test_linear_without_bias() -> None:
    layer = layers.Linear(4, 3, bias=False)
    assert layer.bias is None
    assert layer.params() == [layer.weight]


def test_conv_pool_pipeline_shapes() -> None:
    conv = layers.Conv2d(1, 4, (3, 3), padding=1, activation=ops.relu)
    pool = layers.MaxPool2d((2, 2))
    x = NDArray.placeholder(2, 1, 8, 8, label="images")
    features = layers.flatten_except_batch_dim(pool(conv(x)))
    assert features.shape == (2, 4 * 4 * 4)
    assert conv.params() == [conv.kernel, conv.bias]
    assert not isinstance(pool, layers.HasParameters)


def test_small_convnet_trains(device: engines.Device) -> None:
    images = NDArray.placeholder(4, 1, 6, 6, label="images")
    labels = NDArray.placeholder(4, 2, label="labels")
    conv = layers.Conv2d(1, 2, (3, 3), activation=ops.relu)
    pool = layers.MaxPool2d((2, 2))
    head = layers.Linear(2 * 2 * 2, 2)
    loss = ops.softmax_cross_entropy(head(layers.flatten_except_batch_dim(pool(conv(images)))), labels)

    batch = np.random.normal(size=(4, 1, 6, 6)).astype(np.float32)
    feeds = {images: batch, labels: np.eye(2)[[0, 1, 0, 1]]}
    opt = optimizers.SGD([*conv.params(), *head.params()], lr=0.1)
    opt.step(loss, feeds, device)
    first = loss.to_list()
    for _ in range(30):
        opt.step(loss, feeds, device)
    assert loss.to_list() < first
