import logging

import pytest

from alloygrad import callbacks, config, logging_callback, runtime
from alloygrad.backend import engines
from alloygrad.ndarray import NDArray


class Recorder(callbacks.OnNodeCreationCallBack, callbacks.OnCtxEnterCallBack, callbacks.OnCtxExitCallBack):
    def __init__(self) -> None:
        self.created: list = []
        self.events: list[str] = []

    def on_node_creation(self, node) -> None:
        self.created.append(node)

    def on_ctx_enter(self) -> None:
        self.events.append("enter")

    def on_ctx_exit(self, exc_type, exc_value, traceback) -> None:
        self.events.append("exit")


def test_default_device() -> None:
    assert isinstance(config.Configuration.device, engines.NumPyDevice)


def test_temporary_device() -> None:
    default, temporary = config.Configuration.device, engines.NumPyDevice()
    with config.Configuration(device=temporary):
        assert config.Configuration.device is temporary
    assert config.Configuration.device is default


def test_nested_contexts() -> None:
    outer, inner = engines.NumPyDevice(), engines.NumPyDevice()
    with config.Configuration(device=outer):
        with config.Configuration(device=inner):
            assert config.Configuration.device is inner
        assert config.Configuration.device is outer


def test_unknown_setting() -> None:
    with pytest.raises(AttributeError):
        config.Configuration.no_such_setting


def test_none_values_are_rejected() -> None:
    with pytest.raises(AssertionError):
        config.Configuration(device=None)


def test_callbacks_are_scoped_to_the_context() -> None:
    recorder = Recorder()
    with config.Configuration(recorder):
        inside = NDArray([1.0]) + 1
    NDArray([2.0])
    assert recorder.events == ["enter", "exit"]
    assert inside in recorder.created
    assert len(recorder.created) == 3  # two leaves and the sum


def test_callback_stack_dispatch() -> None:
    recorder = Recorder()
    stack = callbacks.CallbackStack([recorder, object()])
    assert list(stack[callbacks.OnNodeCreationCallBack]) == [recorder]
    assert list(stack[callbacks.OnRunCallBack]) == []
    stack.drop_callbacks(recorder)
    assert list(stack[callbacks.OnCtxEnterCallBack]) == []


def test_latest_callback_runs_first() -> None:
    first, second = Recorder(), Recorder()
    stack = callbacks.CallbackStack([first])
    stack.insert_callbacks(second)
    assert list(stack[callbacks.OnNodeCreationCallBack]) == [second, first]


def test_eager_execution() -> None:
    with config.Configuration(callbacks.EagerExecution()):
        x = NDArray([1.0, 2.0]) * 2
        placeholder = NDArray.placeholder(2, label="x")
        waiting = placeholder + x
    assert x.to_list() == [2, 4]
    assert waiting.data is None
    lazy = NDArray([1.0]) * 2
    assert lazy.data is None


def test_logger_callback(caplog: pytest.LogCaptureFixture) -> None:
    logger = logging.getLogger("alloygrad.tests")
    with caplog.at_level(logging.DEBUG, logger="alloygrad.tests"):
        with config.Configuration(logging_callback.AlloyLogger(logger)):
            node = NDArray([1.0], label="one") + 1
            runtime.run(node)
    messages = [record.getMessage() for record in caplog.records if record.name == "alloygrad.tests"]
    assert any(message.startswith("one") for message in messages)
    assert any("materialized 1 root(s)" in message for message in messages)


def test_setup_logger_is_idempotent() -> None:
    logger = logging_callback.setup_logger("alloygrad.setup_test")
    assert logging_callback.setup_logger("alloygrad.setup_test") is logger
    assert len(logger.handlers) == 1
