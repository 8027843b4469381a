"""
Devices execute the backend graph and hand back `TensorData`
that holds the materialized value of a `Symbol`
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import threading
from typing import Any, Generic, Mapping, Sequence, TypeVar

import numpy as np

from alloygrad import errors
from alloygrad.backend import llops

RefType = TypeVar("RefType")
logger = logging.getLogger(__name__)
_queue_creation_lock = threading.Lock()


@dataclasses.dataclass(slots=True)
class TensorData(Generic[RefType]):
    objref: RefType
    device: Device[RefType]

    def to_numpy(self) -> np.ndarray:
        return self.device.to_numpy(self.objref)


class Device(abc.ABC, Generic[RefType]):
    """The runtime that executes the backend graph"""

    @abc.abstractmethod
    def execute(self, op: llops.Op, *args: RefType | Any) -> RefType:
        """Execute a single primitive op on already materialized arguments"""

    @abc.abstractmethod
    def to_numpy(self, objref: RefType) -> np.ndarray:
        """Copy the device value back to host memory as float32"""

    def make_command_queue(self) -> CommandQueue[RefType] | None:
        """The queue shared by every submission to this device"""
        with _queue_creation_lock:
            if (queue := self.__dict__.get("_command_queue")) is None:
                queue = self._command_queue = CommandQueue(self)
        return queue

    def __repr__(self) -> str:
        return f"<{self.__module__}.{self.__class__.__name__}>"


class CommandQueue(Generic[RefType]):
    """Executes submissions sequentially in the order of the graph's topological sort"""

    def __init__(self, device: Device[RefType]) -> None:
        self.device = device
        self._execution_lock = threading.Lock()

    def submit(
        self,
        order: Sequence[llops.Symbol],
        feeds: Mapping[llops.Symbol, np.ndarray],
        targets: Sequence[llops.Symbol],
    ) -> dict[llops.Symbol, TensorData[RefType]]:
        with self._execution_lock:
            refs: dict[llops.Symbol, RefType] = {}
            for symbol in order:
                refs[symbol] = self._execute_symbol(symbol, refs, feeds)
            logger.debug("%s executed %d symbols for %d targets", self.device, len(order), len(targets))
            return {target: TensorData(refs[target], self.device) for target in targets if target in refs}

    def _execute_symbol(
        self,
        symbol: llops.Symbol,
        refs: Mapping[llops.Symbol, RefType],
        feeds: Mapping[llops.Symbol, np.ndarray],
    ) -> RefType:
        if symbol.op is llops.Ops.PLACEHOLDER:
            if symbol not in feeds:
                raise errors.BackendExecutionError(f"No feed supplied for placeholder {symbol.name or symbol!r}")
            return self.device.execute(llops.Ops.CONST, feeds[symbol])
        args = (refs[arg] if isinstance(arg, llops.Symbol) else arg for arg in symbol.iter_args())
        try:
            return self.device.execute(symbol.op, *args)
        except (ArithmeticError, ValueError) as exc:
            raise errors.BackendExecutionError(f"{symbol!r} failed on {self.device}: {exc}") from exc


### Numpy as default device implementation ###
def _as_f32(x: Any) -> np.ndarray:
    return np.asarray(x, dtype=np.float32)


def _select(arr: np.ndarray, loc: Sequence[int | tuple[int, int]]) -> np.ndarray:
    return arr[tuple(i if isinstance(i, int) else slice(*i) for i in loc)]


class NumPyDevice(Device[np.ndarray]):
    __OPS_MAP__ = {
        llops.Ops.CONST: lambda data: np.array(data, dtype=np.float32),
        llops.Ops.RESHAPE: lambda src, newshape: np.reshape(src, newshape.dims),
        llops.Ops.BROADCAST: lambda src, newshape: np.broadcast_to(src, newshape.dims),
        llops.Ops.PERMUTE: np.transpose,
        llops.Ops.SELECT: _select,
        llops.Ops.PAD: lambda src, pads, pad_val=0: np.pad(src, pad_width=pads, constant_values=(pad_val,)),
        llops.Ops.NEG: np.negative,
        llops.Ops.EXP: np.exp,
        llops.Ops.LOG: np.log,
        llops.Ops.INV: np.reciprocal,
        llops.Ops.ADD: np.add,
        llops.Ops.MUL: np.multiply,
        llops.Ops.POW: np.power,
        llops.Ops.MOD: np.mod,
        llops.Ops.EQ: np.equal,
        llops.Ops.LESS: np.less,
        llops.Ops.SUM: np.sum,
        llops.Ops.AMAX: np.amax,
        llops.Ops.ARGMAX: np.argmax,
        llops.Ops.WHERE: lambda cond, x, y: np.where(cond != 0, x, y),
    }

    def execute(self, op: llops.Op, *args: np.ndarray | Any) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
            return _as_f32(self.__OPS_MAP__[op](*args))

    def to_numpy(self, objref: np.ndarray) -> np.ndarray:
        return np.array(objref, dtype=np.float32)


missing_ops = [op for op in llops.ALL_OPS if op not in NumPyDevice.__OPS_MAP__ and op is not llops.Ops.PLACEHOLDER]
assert not missing_ops, f"Missing ops: {missing_ops}"
