"""
Callbacks for the alloygrad package.
"""

from __future__ import annotations

import abc
import collections
import logging
import types
from typing import TYPE_CHECKING, Any, Iterable, Sequence, TypeVar

CallbackType = TypeVar("CallbackType", bound="Callback")
logger = logging.getLogger(__name__)


if TYPE_CHECKING:
    from alloygrad import graph


class Callback(abc.ABC): ...


### Callbacks ###
class CallbackStack:
    def __init__(self, callbacks_maybe: Iterable[Callback | Any]) -> None:
        self._callbacks = {cb: collections.deque[Callback]() for cb in Callback.__subclasses__()}
        self.insert_callbacks(*callbacks_maybe)

    def __getitem__(self, callback_type: type[CallbackType]) -> list[CallbackType]:
        return self._callbacks[callback_type]  # type: ignore

    def insert_callbacks(self, *callback_maybe: Callback | Any) -> None:
        for cb in callback_maybe:
            for cb_type, cb_stack in self._callbacks.items():
                if isinstance(cb, cb_type):
                    cb_stack.appendleft(cb)

    def drop_callbacks(self, *callback_maybe: Any) -> None:
        for cb in callback_maybe:
            for cb_type, cb_stack in self._callbacks.items():
                if isinstance(cb, cb_type):
                    cb_stack.remove(cb)


class OnNodeCreationCallBack(Callback, abc.ABC):
    def on_node_creation(self, node: graph.Node) -> None: ...
class OnRunCallBack(Callback, abc.ABC):
    def on_run(self, roots: Sequence[graph.Node]) -> None: ...
class OnCtxEnterCallBack(Callback, abc.ABC):
    def on_ctx_enter(self) -> None: ...
class OnCtxExitCallBack(Callback, abc.ABC):
    def on_ctx_exit(self, exc_type: type[Exception], exc_value: Exception, traceback: types.TracebackType) -> None: ...


### Builtin callbacks ###
class EagerExecution(OnNodeCreationCallBack):
    """Runs every new internal node right away, unless it waits on a feed"""

    def on_node_creation(self, node: graph.Node) -> None:
        from alloygrad import graph, runtime  # circular

        if node.is_leaf or any(n.is_placeholder for n in graph.topological_sort(node)):
            return
        logger.debug("eagerly running %r", node)
        runtime.run(node)
