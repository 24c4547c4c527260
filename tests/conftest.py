import os

# Kernels run on the Numba CUDA simulator unless a GPU run is requested
os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

import numpy as np
import pytest

from fmrikernels import NonseparableTiling, SeparableTiling


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def small_separable_tilings():
    """(rows, columns, rods) tilings with few threads per block."""
    return (
        SeparableTiling(block=(2, 4, 4), repeats=(2, 1, 1)),
        SeparableTiling(block=(2, 4, 3), repeats=(1, 2, 1)),
        SeparableTiling(block=(2, 2, 4), repeats=(1, 2, 1)),
    )


@pytest.fixture
def small_nonseparable_tiling():
    """8 x 8 tile, enough for stencils up to 7 x 7."""
    return NonseparableTiling(block=(4, 4), repeats=(2, 2))
