"""CUDA kernels for non-separable 3D convolution with complex quadrature filters.

A 3D convolution with a K x K x K stencil is decomposed into K launches of a
2D convolution, one per z-offset of the stencil. Each launch loads a
halo-padded 2D tile of plane ``z + z_offset`` into shared memory and adds
the response of the matching filter slice into the output buffers.
"""

import functools
import math

import numpy as np
from numba import cuda, float32

from ..constants import _DTYPE, _FASTMATH_DECORATOR
from ..utils import _grid_1d


# ============================================================================
# Memset Kernel
# ============================================================================

@_FASTMATH_DECORATOR
def _memset_kernel(d_data, value, n):
    """Set the first `n` elements of a flat device array to `value`."""
    i = cuda.grid(1)
    if i >= n:
        return
    d_data[i] = value


# ============================================================================
# 2D Slab Convolution Kernel
# ============================================================================

@functools.lru_cache(maxsize=None)
def _nonseparable_convolution_kernel(n_filters, filter_size, block, repeats):
    """Build the slab convolution kernel for a filter count and tile geometry.

    Parameters
    ----------
    n_filters : int
        Number of complex filters evaluated per launch.
    filter_size : int
        Odd stencil size K; the halo is ``(K - 1) // 2``.
    block : tuple of int
        Thread block shape in (y, x) order.
    repeats : tuple of int
        Tile rows and columns handled by each thread.

    Returns
    -------
    numba.cuda.dispatcher.CUDADispatcher
        Kernel with signature ``(d_resp_real, d_resp_imag, d_volume,
        d_filters_real, d_filters_imag, z_offset, D, H, W)``.

    Notes
    -----
    Responses are accumulated with ``+=``; the caller zeroes them before the
    first z-offset.
    """
    halo = (filter_size - 1) // 2
    BY, BX = block
    RY, RX = repeats
    TY, TX = BY * RY, BX * RX
    # Valid filter responses per block
    VY, VX = TY - 2 * halo, TX - 2 * halo
    TILE_SIZE = TY * TX
    N_THREADS = BY * BX
    K = filter_size
    LAST = filter_size - 1
    N_FILTERS = n_filters

    @cuda.jit(fastmath=True)
    def _kernel(d_resp_real, d_resp_imag, d_volume, d_filters_real, d_filters_imag, z_offset, D, H, W):
        tile = cuda.shared.array(shape=(TY, TX), dtype=float32)

        tx = cuda.threadIdx.x
        ty = cuda.threadIdx.y
        x0 = cuda.blockIdx.x * VX
        y0 = cuda.blockIdx.y * VY
        z = cuda.blockIdx.z
        sz = z + z_offset
        plane_inside = 0 <= sz < D

        # === COOPERATIVE TILE LOAD ===
        tid = tx + ty * BX
        for i in range(tid, TILE_SIZE, N_THREADS):
            ly = i // TX
            lx = i - ly * TX
            sy = y0 + ly - halo
            sx = x0 + lx - halo
            value = np.float32(0.0)
            if plane_inside and 0 <= sy < H and 0 <= sx < W:
                value = d_volume[sz, sy, sx]
            tile[ly, lx] = value

        cuda.syncthreads()

        # A plane outside the volume contributes nothing
        if not plane_inside:
            return

        fz = halo - z_offset
        acc_real = cuda.local.array(N_FILTERS, dtype=float32)
        acc_imag = cuda.local.array(N_FILTERS, dtype=float32)

        for ry in range(RY):
            ly = ty + ry * BY
            y = y0 + ly
            for rx in range(RX):
                lx = tx + rx * BX
                x = x0 + lx
                if ly < VY and lx < VX and y < H and x < W:
                    for f in range(N_FILTERS):
                        acc_real[f] = 0.0
                        acc_imag[f] = 0.0
                    # Each tile pixel is read once and shared by all filters
                    for dy in range(K):
                        for dx in range(K):
                            pixel = tile[ly + dy, lx + dx]
                            for f in range(N_FILTERS):
                                acc_real[f] += pixel * d_filters_real[f, fz, LAST - dy, LAST - dx]
                                acc_imag[f] += pixel * d_filters_imag[f, fz, LAST - dy, LAST - dx]
                    for f in range(N_FILTERS):
                        d_resp_real[f, z, y, x] += acc_real[f]
                        d_resp_imag[f, z, y, x] += acc_imag[f]

    return _kernel


def nonseparable_launch_config(shape, filter_size, block, repeats):
    """Grid and block dimensions for one slab pass over a (D, H, W) volume.

    Examples
    --------
    >>> nonseparable_launch_config((30, 64, 64), 7, (32, 32), (2, 3))
    ((1, 2, 30), (32, 32, 1))
    """
    D, H, W = shape
    halo = (filter_size - 1) // 2
    BY, BX = block
    RY, RX = repeats
    valid_y = BY * RY - 2 * halo
    valid_x = BX * RX - 2 * halo
    if valid_y <= 0 or valid_x <= 0:
        raise ValueError(
            f"Tile {BY * RY}x{BX * RX} is too small for a {filter_size}x{filter_size} stencil"
        )
    grid = (math.ceil(W / valid_x), math.ceil(H / valid_y), D)
    return grid, (BX, BY, 1)


def _zero_fill(d_array, stream=0):
    """Zero a contiguous device array in place with the memset kernel."""
    n = d_array.size
    d_flat = d_array.reshape(n)
    blocks, tpb = _grid_1d(n)
    _memset_kernel[blocks, tpb, stream](d_flat, _DTYPE(0.0), n)
