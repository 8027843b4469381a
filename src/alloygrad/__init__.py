import os

from alloygrad import callbacks
from alloygrad.backend.engines import Device, NumPyDevice
from alloygrad.config import Configuration
from alloygrad.errors import (
    AlloyError,
    BackendExecutionError,
    DimensionMismatchError,
    EmptyGraphError,
    MissingMappingError,
    OperationError,
)
from alloygrad.graph import Node
from alloygrad.ndarray import NDArray
from alloygrad.optimizers import SGD, sgd_step
from alloygrad.runtime import backward, run

### Default configuration ###
Configuration(device=NumPyDevice())

if bool(os.getenv(EAGER_EXECUTION_ENV_VAR := "ALLOYGRAD_EAGEREXECUTION", False)):
    Configuration(callbacks.EagerExecution())

if os.getenv("ALLOYGRAD_LOGLEVEL"):
    from alloygrad import logging_callback

    Configuration(logger := logging_callback.AlloyLogger())
    logging_callback.default_logger.info("%s set as logger for alloygrad", str(logger))


__all__ = [
    "AlloyError",
    "BackendExecutionError",
    "Configuration",
    "Device",
    "DimensionMismatchError",
    "EmptyGraphError",
    "MissingMappingError",
    "NDArray",
    "Node",
    "NumPyDevice",
    "OperationError",
    "SGD",
    "backward",
    "run",
    "sgd_step",
]
