from __future__ import annotations

import random
from typing import TYPE_CHECKING

import numpy as np
import pytest

from alloygrad.backend import engines

if TYPE_CHECKING:
    from _pytest.python import Metafunc

DEVICES = [engines.NumPyDevice]


def pytest_generate_tests(metafunc: Metafunc) -> None:
    if device.__name__ in metafunc.fixturenames:
        metafunc.parametrize(device.__name__, DEVICES, indirect=True)


@pytest.fixture
def device(request: pytest.FixtureRequest) -> engines.Device:
    if request.param == engines.NumPyDevice:
        return engines.NumPyDevice()
    raise ValueError("invalid internal test config")


@pytest.fixture(autouse=True)
def set_random_seeds(seed: int = 42):
    np.random.seed(seed)
    random.seed(seed)
