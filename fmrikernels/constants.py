"""Global constants and configuration for the fmrikernels package.

This module defines core constants used throughout the package, including
data types, CUDA thread block configurations, tile geometries for the
shared-memory convolution kernels and numerical regularisation parameters.
"""

from typing import NamedTuple, Tuple

import numpy as np
from numba import cuda

# ---------------------------------------------------------------------------
# Data Types and Numerical Constants
# ---------------------------------------------------------------------------

_DTYPE = np.float32
"""Default data type for real-valued volumes (numpy.float32)."""

_CDTYPE = np.complex64
"""Data type for complex filter responses (packed float2)."""

_AR_REGULARIZATION = _DTYPE(0.001)
"""Added to Yule-Walker off-diagonals and to the 4x4 determinant in AR(4) fitting."""

NUMBER_OF_AR_COEFFICIENTS = 4
"""Order of the temporal autoregressive noise model."""

NUMBER_OF_MOTION_PARAMETERS = 12
"""Affine motion model: 3 translations followed by a 3x3 matrix, row by row."""

NUMBER_OF_A_MATRIX_ELEMENTS = 30
"""Distinct non-zero entries of the 12x12 registration normal matrix."""

# Row/column of each distinct A matrix entry. Entries 0-9 come from the
# x-direction phase gradients, 10-19 from y and 20-29 from z.
A_MATRIX_PARAMETER_INDICES = np.array([
    (0, 0), (3, 0), (4, 0), (5, 0), (3, 3), (4, 3), (5, 3), (4, 4), (5, 4), (5, 5),
    (1, 1), (6, 1), (7, 1), (8, 1), (6, 6), (7, 6), (8, 6), (7, 7), (8, 7), (8, 8),
    (2, 2), (9, 2), (10, 2), (11, 2), (9, 9), (10, 9), (11, 9), (10, 10), (11, 10), (11, 11),
], dtype=np.int32)

# ---------------------------------------------------------------------------
# CUDA Thread Block Configurations
# ---------------------------------------------------------------------------

# Per-voxel kernels: one thread per voxel, x fastest
_TPB_3D = (16, 8, 4)
"""CUDA threads-per-block for per-voxel 3D kernels, launch order (x, y, z) = 512 threads."""

_TPB_2D = (32, 8)
"""CUDA threads-per-block for 2D reduction kernels, launch order (y, z)."""

_TPB_1D = 256
"""CUDA threads-per-block for 1D kernels (memset, final reductions)."""

# ---------------------------------------------------------------------------
# Tile Geometries
# ---------------------------------------------------------------------------


class SeparableTiling(NamedTuple):
    """Tile geometry of a separable convolution pass.

    ``block`` is the thread block shape and ``repeats`` the number of output
    cells each thread owns along each axis, both in (z, y, x) order. The local
    tile covers ``block * repeats`` outputs plus the filter halo along the
    filtered axis.
    """

    block: Tuple[int, int, int]
    repeats: Tuple[int, int, int] = (1, 1, 1)


class NonseparableTiling(NamedTuple):
    """Tile geometry of the 2D slab pass of the non-separable convolution.

    ``block`` is the (y, x) thread block shape and ``repeats`` the number of
    tile rows/columns each thread loads and computes. The tile is
    ``block * repeats`` and the valid outputs per block are the tile minus
    twice the filter halo in each direction.
    """

    block: Tuple[int, int]
    repeats: Tuple[int, int] = (2, 3)


# Rows filter along y: 8 x 16 x 32 local buffer, each thread owns 4 z planes
ROWS_TILING = SeparableTiling(block=(2, 8, 32), repeats=(4, 1, 1))

# Columns filter along x: 24 valid outputs per 32-wide tile row
COLUMNS_TILING = SeparableTiling(block=(2, 8, 24), repeats=(4, 2, 1))

# Rods filter along z: 16 x 8 x 32 local buffer, each thread owns 4 y rows
RODS_TILING = SeparableTiling(block=(8, 2, 32), repeats=(1, 4, 1))

# 64 x 96 tile, 58 x 90 valid outputs for a 7 x 7 stencil
DEFAULT_NONSEPARABLE_TILING = NonseparableTiling(block=(32, 32), repeats=(2, 3))

# 64 x 128 tile for devices with larger local memory
WIDE_NONSEPARABLE_TILING = NonseparableTiling(block=(32, 32), repeats=(2, 4))

# ---------------------------------------------------------------------------
# CUDA JIT Decorators
# ---------------------------------------------------------------------------

# Statistics and AR kernels keep IEEE semantics (exact zeros, no reassociation)
_JIT_DECORATOR = cuda.jit(cache=True)
"""Numba CUDA JIT decorator for per-voxel kernels."""

_FASTMATH_DECORATOR = cuda.jit(cache=True, fastmath=True)
"""Numba CUDA JIT decorator with fastmath enabled for phase kernels."""

_DEVICE_DECORATOR = cuda.jit(device=True)
"""Numba CUDA JIT decorator for device helper functions."""
