"""Host wrappers for voxel-wise AR(4) whitening.

fMRI noise is temporally autocorrelated. These functions fit a fourth order
autoregressive model to every voxel time series, whiten the series with it,
and re-colour permuted whitened series for nonparametric testing.
"""

import logging

import numpy as np

from .constants import NUMBER_OF_AR_COEFFICIENTS
from .kernels import (
    _apply_whitening_ar4_kernel,
    _estimate_ar4_kernel,
    _generate_permuted_volumes_ar4_kernel,
)
from .utils import ArrayBridge, _as_numpy, _grid_3d, _validate_mask, _validate_volume

logger = logging.getLogger(__name__)


def _prepare_mask(bridge, mask, spatial_shape):
    """Device copy of `mask`, or of an all-ones mask when it is None."""
    if mask is None:
        return bridge.to_device(np.ones(spatial_shape, dtype=np.float32))
    _validate_mask(mask, spatial_shape)
    return bridge.to_device(mask)


def _check_coefficients(ar_coefficients, spatial_shape):
    shape = _validate_volume(ar_coefficients, (4,), "ar_coefficients")
    if shape != (NUMBER_OF_AR_COEFFICIENTS,) + tuple(spatial_shape):
        raise ValueError(
            f"AR coefficients must have shape {(NUMBER_OF_AR_COEFFICIENTS,) + tuple(spatial_shape)}, got {shape}"
        )


def estimate_ar4_models(volumes, mask=None):
    """Fit AR(4) coefficients to each voxel time series.

    Parameters
    ----------
    volumes : numpy.ndarray or torch.Tensor
        Time series of shape (T, D, H, W) with T >= 6.
    mask : array_like, optional
        (D, H, W) mask; voxels where it is zero get zero coefficients.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Coefficients of shape (4, D, H, W); ``[k]`` multiplies lag ``k + 1``.

    Notes
    -----
    Solves the Yule-Walker equations with 0.001 added to the off-diagonal
    autocorrelations and to the determinant of the 4x4 system, so constant
    or near-constant series yield finite coefficients.
    """
    T, D, H, W = _validate_volume(volumes, (4,), "volumes")
    if T <= NUMBER_OF_AR_COEFFICIENTS + 1:
        raise ValueError(f"AR(4) estimation needs at least 6 time points, got {T}")

    bridge = ArrayBridge(volumes)
    d_volumes = bridge.to_device(volumes)
    d_mask = _prepare_mask(bridge, mask, (D, H, W))
    d_ar_coefficients = bridge.empty((NUMBER_OF_AR_COEFFICIENTS, D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("AR(4) estimation on %s: grid=%s block=%s", (T, D, H, W), grid, tpb)
    _estimate_ar4_kernel[grid, tpb, bridge.stream](d_volumes, d_mask, d_ar_coefficients, D, H, W, T)
    return bridge.to_host(d_ar_coefficients)


def apply_whitening_ar4(volumes, ar_coefficients, mask=None):
    """Remove the fitted AR(4) autocorrelation from each voxel time series.

    ``w_t = v_t - sum_k a_k v_{t-k}``, with the first four time points
    using only the lags inside the series. Voxels outside the mask are zero.
    """
    T, D, H, W = _validate_volume(volumes, (4,), "volumes")
    _check_coefficients(ar_coefficients, (D, H, W))

    bridge = ArrayBridge(volumes)
    d_volumes = bridge.to_device(volumes)
    d_ar_coefficients = bridge.to_device(ar_coefficients)
    d_mask = _prepare_mask(bridge, mask, (D, H, W))
    d_whitened = bridge.empty((T, D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("AR(4) whitening on %s: grid=%s block=%s", (T, D, H, W), grid, tpb)
    _apply_whitening_ar4_kernel[grid, tpb, bridge.stream](
        d_volumes, d_ar_coefficients, d_mask, d_whitened, D, H, W, T
    )
    return bridge.to_host(d_whitened)


def _check_permutation(permutation, n_timepoints):
    permutation = _as_numpy(permutation, np.int32).reshape(-1)
    if permutation.shape[0] != n_timepoints or not np.array_equal(np.sort(permutation), np.arange(n_timepoints)):
        raise ValueError(f"permutation must be a permutation of range({n_timepoints})")
    return permutation


def generate_permuted_volumes_ar4(whitened, ar_coefficients, permutation, mask=None):
    """Re-colour whitened residuals read in permuted time order.

    Parameters
    ----------
    whitened : numpy.ndarray or torch.Tensor
        Whitened time series of shape (T, D, H, W).
    ar_coefficients : numpy.ndarray or torch.Tensor
        (4, D, H, W) coefficients from `estimate_ar4_models`.
    permutation : array_like
        Permutation of ``range(T)``; time point ``t`` of the output is driven
        by whitened sample ``permutation[t]``.
    mask : array_like, optional
        (D, H, W) mask; voxels where it is zero are zero in the output.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Surrogate series of shape (T, D, H, W) with the voxel's AR(4)
        autocorrelation. The identity permutation inverts
        `apply_whitening_ar4`.
    """
    T, D, H, W = _validate_volume(whitened, (4,), "whitened")
    _check_coefficients(ar_coefficients, (D, H, W))
    permutation = _check_permutation(permutation, T)

    bridge = ArrayBridge(whitened)
    d_whitened = bridge.to_device(whitened)
    d_ar_coefficients = bridge.to_device(ar_coefficients)
    d_mask = _prepare_mask(bridge, mask, (D, H, W))
    d_permutation = bridge.to_device(permutation, np.int32)
    d_permuted = bridge.empty((T, D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("AR(4) permuted re-colouring on %s: grid=%s block=%s", (T, D, H, W), grid, tpb)
    _generate_permuted_volumes_ar4_kernel[grid, tpb, bridge.stream](
        d_whitened, d_ar_coefficients, d_mask, d_permutation, d_permuted, D, H, W, T
    )
    return bridge.to_host(d_permuted)
