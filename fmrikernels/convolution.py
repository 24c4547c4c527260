"""Host wrappers for tiled separable and non-separable 3D convolution.

The functions in this module accept NumPy arrays or PyTorch tensors laid out
as (D, H, W) or (T, D, H, W), launch the shared-memory convolution kernels
and return results of the caller's array type.
"""

import logging
import math

import numpy as np
import torch

from .constants import (
    _CDTYPE,
    _DTYPE,
    COLUMNS_TILING,
    DEFAULT_NONSEPARABLE_TILING,
    ROWS_TILING,
    RODS_TILING,
)
from .kernels import (
    AXIS_X,
    AXIS_Y,
    AXIS_Z,
    _nonseparable_convolution_kernel,
    _separable_convolution_kernel,
    _zero_fill,
    nonseparable_launch_config,
    separable_launch_config,
)
from .utils import ArrayBridge, _as_numpy, _validate_taps, _validate_volume

logger = logging.getLogger(__name__)

MAX_FILTERS_PER_LAUNCH = 6
"""Complex filters evaluated together by one slab launch."""

_AXIS_NAMES = {AXIS_Z: "rods", AXIS_Y: "rows", AXIS_X: "columns"}


# ============================================================================
# Separable Convolution
# ============================================================================

def _launch_separable_pass(d_src, d_dst, d_taps, n_taps, axis, tiling, stream=0):
    """Run one tiled pass over a 3D volume or each time point of a 4D series."""
    block, repeats = tuple(tiling.block), tuple(tiling.repeats)
    kernel = _separable_convolution_kernel(axis, n_taps, block, repeats)
    D, H, W = d_src.shape[-3:]
    grid, tpb = separable_launch_config((D, H, W), block, repeats)
    logger.debug(
        "Separable %s pass on %s: grid=%s block=%s repeats=%s taps=%d",
        _AXIS_NAMES[axis], tuple(d_src.shape), grid, tpb, repeats, n_taps,
    )
    if d_src.ndim == 4:
        for t in range(d_src.shape[0]):
            kernel[grid, tpb, stream](d_src[t], d_dst[t], d_taps, D, H, W)
    else:
        kernel[grid, tpb, stream](d_src, d_dst, d_taps, D, H, W)


def _separable_convolution_axis(volume, taps, axis, tiling):
    shape = _validate_volume(volume, (3, 4))
    taps = _validate_taps(taps)
    bridge = ArrayBridge(volume)
    d_src = bridge.to_device(volume)
    d_dst = bridge.empty(shape)
    d_taps = bridge.to_device(taps)
    _launch_separable_pass(d_src, d_dst, d_taps, taps.shape[0], axis, tiling, bridge.stream)
    return bridge.to_host(d_dst)


def separable_convolution_rows(volume, taps, tiling=ROWS_TILING):
    """Convolve along y with a 1D filter.

    Parameters
    ----------
    volume : numpy.ndarray or torch.Tensor
        Volume of shape (D, H, W) or time series of shape (T, D, H, W).
    taps : array_like
        Odd-length 1D filter.
    tiling : SeparableTiling, optional
        Thread block and per-thread repeats of the tiled kernel.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Filtered data of the same shape and array type as `volume`. Samples
        outside the volume are treated as zero.
    """
    return _separable_convolution_axis(volume, taps, AXIS_Y, tiling)


def separable_convolution_columns(volume, taps, tiling=COLUMNS_TILING):
    """Convolve along x with a 1D filter. See `separable_convolution_rows`."""
    return _separable_convolution_axis(volume, taps, AXIS_X, tiling)


def separable_convolution_rods(volume, taps, tiling=RODS_TILING):
    """Convolve along z with a 1D filter. See `separable_convolution_rows`."""
    return _separable_convolution_axis(volume, taps, AXIS_Z, tiling)


def separable_convolution_3d(volume, taps_x, taps_y=None, taps_z=None, tilings=None):
    """Separable 3D convolution as a rows, columns and rods pass.

    Parameters
    ----------
    volume : numpy.ndarray or torch.Tensor
        Volume of shape (D, H, W) or time series of shape (T, D, H, W); a
        series is filtered one time point at a time.
    taps_x : array_like
        Odd-length filter applied along x.
    taps_y, taps_z : array_like, optional
        Filters along y and z. Default to `taps_x`.
    tilings : tuple of SeparableTiling, optional
        Tile geometries for the (rows, columns, rods) passes.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Filtered data of the same shape and array type as `volume`.

    Examples
    --------
    >>> taps = gaussian_smoothing_filter(fwhm=6.0, voxel_size=3.0)
    >>> smoothed = separable_convolution_3d(volumes, taps)
    """
    shape = _validate_volume(volume, (3, 4))
    taps_x = _validate_taps(taps_x, "taps_x")
    taps_y = taps_x if taps_y is None else _validate_taps(taps_y, "taps_y")
    taps_z = taps_x if taps_z is None else _validate_taps(taps_z, "taps_z")
    rows_tiling, columns_tiling, rods_tiling = tilings or (ROWS_TILING, COLUMNS_TILING, RODS_TILING)

    bridge = ArrayBridge(volume)
    d_volume = bridge.to_device(volume)
    d_first = bridge.empty(shape)
    d_second = bridge.empty(shape)

    _launch_separable_pass(
        d_volume, d_first, bridge.to_device(taps_y), taps_y.shape[0], AXIS_Y, rows_tiling, bridge.stream
    )
    _launch_separable_pass(
        d_first, d_second, bridge.to_device(taps_x), taps_x.shape[0], AXIS_X, columns_tiling, bridge.stream
    )
    # The rows output buffer is free again and receives the final result
    _launch_separable_pass(
        d_second, d_first, bridge.to_device(taps_z), taps_z.shape[0], AXIS_Z, rods_tiling, bridge.stream
    )
    return bridge.to_host(d_first)


def gaussian_smoothing_filter(fwhm, voxel_size=1.0, length=9):
    """Normalised 1D Gaussian taps for separable smoothing.

    Parameters
    ----------
    fwhm : float
        Full width at half maximum of the kernel, in the unit of `voxel_size`.
    voxel_size : float, optional
        Voxel extent along the filtered axis (default 1.0).
    length : int, optional
        Odd number of taps (default 9).

    Returns
    -------
    numpy.ndarray
        float32 taps summing to one.
    """
    if length % 2 == 0 or length < 1:
        raise ValueError(f"Filter length must be a positive odd number, got {length}")
    if fwhm <= 0 or voxel_size <= 0:
        raise ValueError("fwhm and voxel_size must be positive")
    sigma = fwhm / (2.0 * math.sqrt(2.0 * math.log(2.0))) / voxel_size
    x = np.arange(length, dtype=np.float64) - (length - 1) / 2.0
    taps = np.exp(-x ** 2 / (2.0 * sigma ** 2))
    return (taps / taps.sum()).astype(_DTYPE)


# ============================================================================
# Non-separable Convolution
# ============================================================================

def _split_filters(filters, filter_size=None):
    """Real and imaginary float32 parts of (F, K, K, K) complex filters."""
    filters = _as_numpy(filters, _CDTYPE)
    if filters.ndim == 3:
        filters = filters[np.newaxis]
    if filters.ndim != 4 or len(set(filters.shape[1:])) != 1 or filters.shape[1] % 2 == 0:
        raise ValueError(f"Filters must have shape (F, K, K, K) with odd K, got {filters.shape}")
    if filter_size is not None and filters.shape[1] != filter_size:
        raise ValueError(f"Expected {filter_size}x{filter_size}x{filter_size} filters, got {filters.shape[1:]}")
    return (
        np.ascontiguousarray(filters.real, dtype=_DTYPE),
        np.ascontiguousarray(filters.imag, dtype=_DTYPE),
    )


class FilterResponseAccumulator:
    """Device buffers collecting the z-slab passes of a non-separable convolution.

    A K x K x K convolution is evaluated as K 2D passes, one per z-offset in
    ``[-halo, halo]``. Each pass adds its contribution to the responses
    held here. The accumulator records which offsets were applied so that a
    partial sum is never mistaken for the full 3D response.

    Parameters
    ----------
    shape : tuple of int
        Volume shape (D, H, W).
    n_filters : int
        Number of complex filters.
    filter_size : int, optional
        Odd stencil size K (default 7).
    tiling : NonseparableTiling, optional
        Thread block and repeats of the slab kernel.
    like : numpy.ndarray or torch.Tensor, optional
        Decides the array type of `result`; NumPy when omitted.

    Examples
    --------
    >>> acc = FilterResponseAccumulator(volume.shape, n_filters=3)
    >>> for z_offset in range(-3, 4):
    ...     acc.accumulate(volume, filters, z_offset)
    >>> responses = acc.result()
    """

    def __init__(self, shape, n_filters, filter_size=7, tiling=DEFAULT_NONSEPARABLE_TILING, like=None):
        if len(shape) != 3:
            raise ValueError(f"Expected a (D, H, W) shape, got {shape}")
        if n_filters < 1:
            raise ValueError(f"n_filters must be at least 1, got {n_filters}")
        if filter_size % 2 == 0 or filter_size < 1:
            raise ValueError(f"filter_size must be a positive odd number, got {filter_size}")
        self.shape = tuple(int(s) for s in shape)
        self.n_filters = int(n_filters)
        self.filter_size = int(filter_size)
        self.halo = (self.filter_size - 1) // 2
        self.tiling = tiling
        # Fails early when the tile cannot hold the stencil
        self._grid, self._tpb = nonseparable_launch_config(
            self.shape, self.filter_size, tuple(tiling.block), tuple(tiling.repeats)
        )
        self._bridge = ArrayBridge(like)
        buffer_shape = (self.n_filters,) + self.shape
        self._d_real = self._bridge.empty(buffer_shape)
        self._d_imag = self._bridge.empty(buffer_shape)
        self._applied = set()
        self.reset()

    @property
    def offsets(self):
        """All z-offsets of the stencil, ``-halo`` to ``halo``."""
        return range(-self.halo, self.halo + 1)

    @property
    def missing_offsets(self):
        return [z for z in self.offsets if z not in self._applied]

    @property
    def is_complete(self):
        return not self.missing_offsets

    def reset(self):
        """Zero the responses and forget the applied offsets."""
        _zero_fill(self._d_real, self._bridge.stream)
        _zero_fill(self._d_imag, self._bridge.stream)
        self._applied.clear()

    def accumulate(self, volume, filters, z_offset):
        """Add the contribution of filter slice ``halo - z_offset`` to the responses.

        Parameters
        ----------
        volume : numpy.ndarray or torch.Tensor
            Volume of shape (D, H, W).
        filters : array_like
            Complex filters of shape (n_filters, K, K, K), or (K, K, K) for a
            single filter.
        z_offset : int
            Plane offset in ``[-halo, halo]``; each offset is applied once.
        """
        shape = _validate_volume(volume)
        if shape != self.shape:
            raise ValueError(f"Volume shape {shape} does not match accumulator shape {self.shape}")
        filters_real, filters_imag = _split_filters(filters, self.filter_size)
        if filters_real.shape[0] != self.n_filters:
            raise ValueError(f"Expected {self.n_filters} filters, got {filters_real.shape[0]}")
        d_volume = self._bridge.to_device(volume)
        d_filters_real = self._bridge.to_device(filters_real)
        d_filters_imag = self._bridge.to_device(filters_imag)
        self._accumulate_device(d_volume, d_filters_real, d_filters_imag, z_offset)

    def _accumulate_device(self, d_volume, d_filters_real, d_filters_imag, z_offset):
        z_offset = int(z_offset)
        if not -self.halo <= z_offset <= self.halo:
            raise ValueError(f"z_offset must be in [{-self.halo}, {self.halo}], got {z_offset}")
        if z_offset in self._applied:
            raise ValueError(f"z_offset {z_offset} has already been accumulated")

        D, H, W = self.shape
        block, repeats = tuple(self.tiling.block), tuple(self.tiling.repeats)
        for start in range(0, self.n_filters, MAX_FILTERS_PER_LAUNCH):
            stop = min(start + MAX_FILTERS_PER_LAUNCH, self.n_filters)
            kernel = _nonseparable_convolution_kernel(stop - start, self.filter_size, block, repeats)
            logger.debug(
                "Non-separable slab pass z_offset=%d filters=%d:%d grid=%s block=%s repeats=%s",
                z_offset, start, stop, self._grid, self._tpb, repeats,
            )
            kernel[self._grid, self._tpb, self._bridge.stream](
                self._d_real[start:stop], self._d_imag[start:stop], d_volume,
                d_filters_real[start:stop], d_filters_imag[start:stop],
                z_offset, D, H, W,
            )
        self._applied.add(z_offset)

    def result(self, require_complete=True):
        """Complex filter responses of shape (n_filters, D, H, W).

        Raises
        ------
        RuntimeError
            If `require_complete` is set and some z-offsets are missing.
        """
        if require_complete and not self.is_complete:
            raise RuntimeError(
                f"Filter responses are incomplete; missing z-offsets {self.missing_offsets}"
            )
        real = self._bridge.to_host(self._d_real)
        imag = self._bridge.to_host(self._d_imag)
        if isinstance(real, torch.Tensor):
            return torch.complex(real, imag)
        return (real + 1j * imag).astype(_CDTYPE)


def nonseparable_convolution_3d(volume, filters, tiling=DEFAULT_NONSEPARABLE_TILING):
    """Full 3D convolution of a volume with complex quadrature filters.

    Parameters
    ----------
    volume : numpy.ndarray or torch.Tensor
        Real volume of shape (D, H, W).
    filters : array_like
        Complex filters of shape (F, K, K, K) or a single (K, K, K) filter.
    tiling : NonseparableTiling, optional
        Thread block and repeats of the slab kernel.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        complex64 responses of shape (F, D, H, W), or (D, H, W) for a single
        (K, K, K) filter. Samples outside the volume are treated as zero.
    """
    shape = _validate_volume(volume)
    single = np.ndim(filters) == 3
    filters_real, filters_imag = _split_filters(filters)
    n_filters, filter_size = filters_real.shape[0], filters_real.shape[1]

    accumulator = FilterResponseAccumulator(shape, n_filters, filter_size, tiling, like=volume)
    bridge = accumulator._bridge
    d_volume = bridge.to_device(volume)
    d_filters_real = bridge.to_device(filters_real)
    d_filters_imag = bridge.to_device(filters_imag)
    for z_offset in accumulator.offsets:
        accumulator._accumulate_device(d_volume, d_filters_real, d_filters_imag, z_offset)

    responses = accumulator.result()
    return responses[0] if single else responses
