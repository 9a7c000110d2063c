# tests/conftest.py
from __future__ import annotations

import logging
import os

# Kernel tests run on numba's CUDA simulator; read once when numba is first imported.
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

import pytest
from mpmath import mp

from perturbzoom.util.logging_setup import get_logger


@pytest.fixture(autouse=True)
def quiet_logger():
    logger = get_logger()
    saved = (list(logger.handlers), logger.level, logger.propagate)
    for h in saved[0]:
        logger.removeHandler(h)
    logger.addHandler(logging.NullHandler())
    logger.propagate = False
    yield logger
    for h in list(logger.handlers):
        logger.removeHandler(h)
    for h in saved[0]:
        logger.addHandler(h)
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


@pytest.fixture(autouse=True)
def restore_precision():
    dps = mp.dps
    yield
    mp.dps = dps


@pytest.fixture
def direct_escape():
    """Plain complex128 escape iteration: nn such that |z_nn|^2 > 4, 0 if bounded to cap."""

    def _escape(c: complex, cap: int, exponent: int = 2) -> int:
        z = c
        if z.real * z.real + z.imag * z.imag > 4.0:
            return 1
        for n in range(2, cap + 1):
            z = z * z + c if exponent == 2 else z ** exponent + c
            if z.real * z.real + z.imag * z.imag > 4.0:
                return n
        return 0

    return _escape
