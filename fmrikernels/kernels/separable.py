"""CUDA kernels for tiled separable 3D convolution.

This module builds the row (y), column (x) and rod (z) passes of a separable
3D convolution. Each thread block cooperatively copies a halo-padded tile of
the volume into shared memory, synchronises once, and then every thread
convolves the tile with the 1D filter for the output voxels it owns.
"""

import functools
import math

import numpy as np
from numba import cuda, float32

AXIS_Z = 0
AXIS_Y = 1
AXIS_X = 2


@functools.lru_cache(maxsize=None)
def _separable_convolution_kernel(axis, n_taps, block, repeats):
    """Build the tiled convolution kernel for one axis and tile geometry.

    Parameters
    ----------
    axis : int
        Filtered axis in (z, y, x) order: ``AXIS_Z`` (rods), ``AXIS_Y``
        (rows) or ``AXIS_X`` (columns).
    n_taps : int
        Odd number of filter taps; the halo is ``(n_taps - 1) // 2``.
    block : tuple of int
        Thread block shape in (z, y, x) order.
    repeats : tuple of int
        Output voxels owned by each thread along (z, y, x).

    Returns
    -------
    numba.cuda.dispatcher.CUDADispatcher
        Kernel with signature ``(d_src, d_dst, d_taps, D, H, W)`` to be
        launched with ``block`` reversed into (x, y, z) launch order.

    Notes
    -----
    The tile shape is a compile-time constant of the returned kernel, so each
    geometry is compiled once and cached.
    """
    halo = (n_taps - 1) // 2
    BZ, BY, BX = block
    RZ, RY, RX = repeats
    # Outputs covered by one block
    OZ, OY, OX = BZ * RZ, BY * RY, BX * RX
    # Halo along the filtered axis only
    HZ = halo if axis == AXIS_Z else 0
    HY = halo if axis == AXIS_Y else 0
    HX = halo if axis == AXIS_X else 0
    TZ, TY, TX = OZ + 2 * HZ, OY + 2 * HY, OX + 2 * HX
    # Tile step per tap
    SZ = 1 if axis == AXIS_Z else 0
    SY = 1 if axis == AXIS_Y else 0
    SX = 1 if axis == AXIS_X else 0
    TILE_SIZE = TZ * TY * TX
    TILE_PLANE = TY * TX
    N_THREADS = BZ * BY * BX
    LAST_TAP = n_taps - 1

    @cuda.jit(fastmath=True)
    def _kernel(d_src, d_dst, d_taps, D, H, W):
        tile = cuda.shared.array(shape=(TZ, TY, TX), dtype=float32)

        tx = cuda.threadIdx.x
        ty = cuda.threadIdx.y
        tz = cuda.threadIdx.z
        x0 = cuda.blockIdx.x * OX
        y0 = cuda.blockIdx.y * OY
        z0 = cuda.blockIdx.z * OZ

        # === COOPERATIVE TILE LOAD ===
        # Every tile cell is written: samples whose source coordinate falls
        # outside the volume (apron underflow/overflow) become zero
        tid = tx + ty * BX + tz * BX * BY
        for i in range(tid, TILE_SIZE, N_THREADS):
            lz = i // TILE_PLANE
            rem = i - lz * TILE_PLANE
            ly = rem // TX
            lx = rem - ly * TX
            sz = z0 + lz - HZ
            sy = y0 + ly - HY
            sx = x0 + lx - HX
            value = np.float32(0.0)
            if 0 <= sz < D and 0 <= sy < H and 0 <= sx < W:
                value = d_src[sz, sy, sx]
            tile[lz, ly, lx] = value

        cuda.syncthreads()

        # === CONVOLUTION OF OWNED OUTPUTS ===
        for rz in range(RZ):
            lz = tz + rz * BZ
            z = z0 + lz
            for ry in range(RY):
                ly = ty + ry * BY
                y = y0 + ly
                for rx in range(RX):
                    lx = tx + rx * BX
                    x = x0 + lx
                    if z < D and y < H and x < W:
                        acc = np.float32(0.0)
                        for k in range(n_taps):
                            acc += tile[lz + k * SZ, ly + k * SY, lx + k * SX] * d_taps[LAST_TAP - k]
                        d_dst[z, y, x] = acc

    return _kernel


def separable_launch_config(shape, block, repeats):
    """Grid and block dimensions for a separable pass over a (D, H, W) volume.

    Examples
    --------
    >>> separable_launch_config((30, 64, 64), (2, 8, 32), (4, 1, 1))
    ((2, 8, 4), (32, 8, 2))
    """
    D, H, W = shape
    BZ, BY, BX = block
    RZ, RY, RX = repeats
    grid = (
        math.ceil(W / (BX * RX)),
        math.ceil(H / (BY * RY)),
        math.ceil(D / (BZ * RZ)),
    )
    return grid, (BX, BY, BZ)
