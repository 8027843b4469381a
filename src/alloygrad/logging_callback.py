"""
Logging of node creation and graph runs
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Sequence

from alloygrad import callbacks

if TYPE_CHECKING:
    from alloygrad import graph

LOG_LEVEL_ENV_SETTER = "ALLOYGRAD_LOGLEVEL"


def setup_logger(name: str = "alloygrad") -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging._nameToLevel[os.environ.get(LOG_LEVEL_ENV_SETTER, "INFO").upper()])
    if not logger.handlers:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)-10s%(funcName)s: - %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        )
        logger.addHandler(console_handler)
    return logger


default_logger = setup_logger()


class AlloyLogger(callbacks.OnNodeCreationCallBack, callbacks.OnRunCallBack):
    def __init__(self, logger: logging.Logger = default_logger) -> None:
        super().__init__()
        self._logger = logger

    def on_node_creation(self, node: graph.Node) -> None:
        if self._logger.isEnabledFor(logging.DEBUG):
            self._logger.log(
                logging.DEBUG,
                "%(label)-20s(%(in shapes)-20s) → %(out shape)s",
                {
                    "in shapes": ", ".join(str(p.shape) for p in node.parents),
                    "label": node.label or ("leaf" if node.is_leaf else "<?>"),
                    "out shape": node.shape,
                },
            )

    def on_run(self, roots: Sequence[graph.Node]) -> None:
        self._logger.info("materialized %d root(s): %s", len(roots), ", ".join(repr(r) for r in roots))

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(verbosity={self._logger.level})"
