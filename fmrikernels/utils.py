"""Utility classes and helper functions for the fmrikernels package.

This module provides utility classes and functions for device management,
PyTorch-CUDA bridging, stream caching, host/device array transfer, volume
layout validation, and CUDA grid computation.
"""

import math
import warnings

import numpy as np
import torch
from numba import cuda

from .constants import _DTYPE, _TPB_1D, _TPB_2D, _TPB_3D


_NP_TO_TORCH = {
    np.dtype(np.float32): torch.float32,
    np.dtype(np.float64): torch.float64,
    np.dtype(np.complex64): torch.complex64,
    np.dtype(np.int32): torch.int32,
}


# ============================================================================
# Device Management Utilities
# ============================================================================

class DeviceManager:
    """Utilities for managing PyTorch tensor devices."""

    @staticmethod
    def get_device(tensor):
        """Get the device of a PyTorch tensor.

        Parameters
        ----------
        tensor : torch.Tensor
            Tensor whose device to determine.

        Returns
        -------
        torch.device
            Device of the tensor or CPU if unavailable.

        Examples
        --------
        >>> DeviceManager.get_device(torch.tensor([1, 2, 3]))
        device(type='cpu')
        """
        return tensor.device if hasattr(tensor, "device") else torch.device("cpu")

    @staticmethod
    def ensure_device(tensor, device):
        """Ensure a tensor resides on a given device.

        Parameters
        ----------
        tensor : torch.Tensor
            Tensor to move.
        device : torch.device
            Desired device.

        Returns
        -------
        torch.Tensor
            Tensor on the specified device. Unchanged if already on it.
        """
        if hasattr(tensor, "to") and tensor.device != device:
            return tensor.to(device)
        return tensor


# ============================================================================
# PyTorch-CUDA Bridge
# ============================================================================

class TorchCUDABridge:
    """Bridge between PyTorch tensors and Numba CUDA arrays."""

    @staticmethod
    def tensor_to_cuda_array(tensor):
        """Convert a PyTorch CUDA tensor to a Numba CUDA DeviceNDArray.

        Provides a zero-copy view of a detached PyTorch tensor as a Numba CUDA
        array. The returned array shares memory with the original tensor.

        Parameters
        ----------
        tensor : torch.Tensor
            PyTorch tensor on a CUDA device.

        Returns
        -------
        numba.cuda.cudadrv.devicearray.DeviceNDArray
            Numba CUDA array view sharing memory with `tensor`.

        Raises
        ------
        ValueError
            If `tensor` is not on a CUDA device.
        """
        if not tensor.is_cuda:
            raise ValueError("Tensor must be on CUDA device")
        return cuda.as_cuda_array(tensor.detach())


# ============================================================================
# Stream Management (cached external Numba stream)
# ============================================================================

_cached_stream_ptr = None
_cached_numba_stream = None


def _get_numba_external_stream_for(pt_stream=None):
    """Return a cached numba.cuda.external_stream for the current PyTorch CUDA stream.

    Caches by the underlying CUDA stream pointer to avoid repeated construction.

    Parameters
    ----------
    pt_stream : torch.cuda.Stream, optional
        PyTorch CUDA stream. If None, uses current stream.

    Returns
    -------
    numba.cuda.cudadrv.driver.Stream
        Numba external stream wrapper around PyTorch CUDA stream.
    """
    global _cached_stream_ptr, _cached_numba_stream
    if pt_stream is None:
        pt_stream = torch.cuda.current_stream()
    ptr = int(pt_stream.cuda_stream)
    if _cached_stream_ptr == ptr and _cached_numba_stream is not None:
        return _cached_numba_stream
    numba_stream = cuda.external_stream(pt_stream.cuda_stream)
    _cached_stream_ptr = ptr
    _cached_numba_stream = numba_stream
    return numba_stream


# ============================================================================
# Host/Device Array Transfer
# ============================================================================

class ArrayBridge:
    """Move caller arrays to the device and hand results back in the caller's type.

    The bridge is created from the primary input of an operation. NumPy
    inputs produce NumPy outputs, CPU tensors produce CPU tensors and CUDA
    tensors are used in place: kernels run on the tensor's current stream
    and the outputs are CUDA tensors sharing memory with the kernel buffers.

    Parameters
    ----------
    like : numpy.ndarray or torch.Tensor
        Array whose type and device decide where outputs live.

    Examples
    --------
    >>> bridge = ArrayBridge(volume)
    >>> d_volume = bridge.to_device(volume)
    >>> d_out = bridge.zeros(volume.shape)
    >>> kernel[grid, tpb, bridge.stream](d_volume, d_out)
    >>> out = bridge.to_host(d_out)
    """

    def __init__(self, like):
        self.is_torch = isinstance(like, torch.Tensor)
        self.on_cuda = self.is_torch and like.is_cuda
        self.device = like.device if self.is_torch else None
        self.stream = _get_numba_external_stream_for() if self.on_cuda else 0
        self._tensors = {}

    def to_device(self, array, dtype=_DTYPE):
        """Return a device array holding `array` converted to `dtype`."""
        dtype = np.dtype(dtype)
        if isinstance(array, torch.Tensor):
            if array.is_cuda:
                tensor = array.detach().to(dtype=_NP_TO_TORCH[dtype]).contiguous()
                d_array = TorchCUDABridge.tensor_to_cuda_array(tensor)
                # Keep the converted tensor alive for as long as the view is used
                self._tensors[id(d_array)] = tensor
                return d_array
            array = array.detach().cpu().numpy()
        return cuda.to_device(np.ascontiguousarray(array, dtype=dtype), stream=self.stream)

    def zeros(self, shape, dtype=_DTYPE):
        """Allocate a zero-filled device array on the bridge's device."""
        dtype = np.dtype(dtype)
        if self.on_cuda:
            tensor = torch.zeros(shape, dtype=_NP_TO_TORCH[dtype], device=self.device)
            d_array = TorchCUDABridge.tensor_to_cuda_array(tensor)
            self._tensors[id(d_array)] = tensor
            return d_array
        return cuda.to_device(np.zeros(shape, dtype=dtype), stream=self.stream)

    def empty(self, shape, dtype=_DTYPE):
        """Allocate an uninitialised device array on the bridge's device."""
        dtype = np.dtype(dtype)
        if self.on_cuda:
            tensor = torch.empty(shape, dtype=_NP_TO_TORCH[dtype], device=self.device)
            d_array = TorchCUDABridge.tensor_to_cuda_array(tensor)
            self._tensors[id(d_array)] = tensor
            return d_array
        return cuda.device_array(shape, dtype=dtype, stream=self.stream)

    def to_host(self, d_array):
        """Return the result held in `d_array` in the caller's array type."""
        tensor = self._tensors.get(id(d_array))
        if tensor is not None:
            return tensor
        host = d_array.copy_to_host(stream=self.stream)
        return torch.from_numpy(host) if self.is_torch else host


def _as_numpy(array, dtype=_DTYPE):
    """Host copy of a small constant array (filter taps, design matrices)."""
    if isinstance(array, torch.Tensor):
        array = array.detach().cpu().numpy()
    return np.ascontiguousarray(array, dtype=dtype)


# ============================================================================
# Volume Layout Validation
# ============================================================================

def _validate_volume(array, ndims=(3,), name="volume"):
    """Validate the dimensionality of a volume or time series.

    Parameters
    ----------
    array : numpy.ndarray or torch.Tensor
        Array laid out as (D, H, W) or (T, D, H, W), W fastest-varying.
    ndims : tuple of int, optional
        Accepted numbers of dimensions. Default is ``(3,)``.
    name : str, optional
        Argument name used in error messages.

    Returns
    -------
    tuple of int
        Shape of `array`.

    Raises
    ------
    ValueError
        If `array` has an unexpected number of dimensions or is empty.
    """
    shape = tuple(int(s) for s in array.shape)
    if len(shape) not in ndims:
        expected = " or ".join(f"{n}D" for n in ndims)
        raise ValueError(f"Expected {name} to be {expected}, got {len(shape)}D with shape {shape}")
    if any(s == 0 for s in shape):
        raise ValueError(f"{name} must not be empty, got shape {shape}")
    return shape


def _validate_mask(mask, volume_shape):
    """Check a mask against the spatial shape of a volume.

    Voxels are processed wherever the mask is non-zero. Masks holding values
    other than 0 and 1 are accepted with a warning.
    """
    shape = _validate_volume(mask, (3,), "mask")
    if shape != tuple(volume_shape):
        raise ValueError(f"Mask shape {shape} does not match volume shape {tuple(volume_shape)}")
    if isinstance(mask, torch.Tensor):
        non_binary = bool(torch.any((mask != 0) & (mask != 1)))
    else:
        mask = np.asarray(mask)
        non_binary = bool(np.any((mask != 0) & (mask != 1)))
    if non_binary:
        warnings.warn(
            "Mask contains values other than 0 and 1; every non-zero voxel is treated as inside the mask",
            stacklevel=3,
        )


def _validate_taps(taps, name="taps"):
    """Return 1D odd-length filter taps as a float32 host array."""
    taps = _as_numpy(taps)
    if taps.ndim != 1 or taps.shape[0] % 2 == 0:
        raise ValueError(f"{name} must be a 1D array of odd length, got shape {taps.shape}")
    return taps


# ============================================================================
# CUDA Grid Computation
# ============================================================================

def _grid_1d(n, tpb=_TPB_1D):
    """Compute 1D CUDA grid and block dimensions.

    Examples
    --------
    >>> _grid_1d(1000)
    (4, 256)
    """
    return math.ceil(n / tpb), tpb


def _grid_2d(n1, n2, tpb=_TPB_2D):
    """Compute 2D CUDA grid and block dimensions.

    Parameters
    ----------
    n1 : int
        Number of elements along the first (fastest) launch dimension.
    n2 : int
        Number of elements along the second launch dimension.
    tpb : tuple of int, optional
        Threads per block (default is `_TPB_2D`).

    Returns
    -------
    grid : tuple of int
        Blocks count per axis.
    tpb : tuple of int
        Threads per block per axis.
    """
    return (math.ceil(n1 / tpb[0]), math.ceil(n2 / tpb[1])), tpb


def _grid_3d(n1, n2, n3, tpb=_TPB_3D):
    """Compute 3D CUDA grid and block dimensions for a per-voxel kernel.

    Parameters
    ----------
    n1 : int
        Number of voxels along x (W), the fastest launch dimension.
    n2 : int
        Number of voxels along y (H).
    n3 : int
        Number of voxels along z (D).
    tpb : tuple of int, optional
        Threads per block (default is `_TPB_3D`).

    Returns
    -------
    grid : tuple of int
        Blocks count per axis.
    tpb : tuple of int
        Threads per block per axis.

    Examples
    --------
    >>> grid, tpb = _grid_3d(64, 64, 30)
    >>> grid
    (4, 8, 8)
    """
    return (
        math.ceil(n1 / tpb[0]),
        math.ceil(n2 / tpb[1]),
        math.ceil(n3 / tpb[2]),
    ), tpb
