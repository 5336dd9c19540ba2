import dataclasses
import importlib.util

import numpy as np
import pytest

from kernelgrad.config import configure

@pytest.fixture
def rng():
    return np.random.default_rng(0)

def _has_cupy():
    return importlib.util.find_spec("cupy") is not None

@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    if request.param == "cuda" and not _has_cupy():
        pytest.skip("cupy not installed")
    return request.param

@pytest.fixture(params=[np.float32, np.float64], ids=["f32", "f64"])
def dtype(request):
    return np.dtype(request.param)

@pytest.fixture
def kernel_config():
    """Apply ``configure`` overrides for one test and restore afterwards."""
    saved = []

    def apply(**overrides):
        saved.append(configure(**overrides))

    yield apply
    if saved:
        configure(**dataclasses.asdict(saved[0]))
