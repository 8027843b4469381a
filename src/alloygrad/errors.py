"""
Errors raised to callers of `run`, `backward` and the optimizers
"""

from __future__ import annotations


class AlloyError(Exception):
    """Base class for every recoverable alloygrad failure"""


class EmptyGraphError(AlloyError):
    """Nothing to build: no roots, or the requested root never made it into the graph"""


class OperationError(AlloyError):
    """An operation could not be constructed, lowered or applied"""


class MissingMappingError(OperationError):
    """A node expected in the node -> symbol mapping is absent"""


class BackendExecutionError(OperationError):
    """The device could not execute a submission or did not return a requested result"""


class DimensionMismatchError(AlloyError):
    """Shapes or element counts disagree"""
