"""Host wrappers for voxel-wise general linear model statistics.

The design matrix ``X`` has shape (T, R): one row per time point and one
column per regressor. Quantities that depend only on the design are computed
once on the host with `glm_design` and shared by all voxels.
"""

import logging
from collections import namedtuple

import numpy as np

from .constants import _DTYPE
from .kernels import (
    _calculate_beta_values_glm_kernel,
    _calculate_statistical_maps_glm_kernel,
    _calculate_statistical_maps_glm_permutation_kernel,
    _remove_linear_fit_kernel,
)
from .utils import ArrayBridge, _as_numpy, _grid_3d, _validate_mask, _validate_volume

logger = logging.getLogger(__name__)

GLMDesign = namedtuple("GLMDesign", ["X", "xtxxt", "contrasts", "ctxtxc"])
GLMDesign.__doc__ = """Host-side design quantities.

X : (T, R) design matrix.
xtxxt : (R, T) pseudo-inverse ``(X'X)^-1 X'``.
contrasts : (C, R) contrast vectors.
ctxtxc : (C,) ``c (X'X)^-1 c'`` per contrast.
"""

GLMResult = namedtuple("GLMResult", ["statistical_maps", "beta_contrasts", "residuals", "residual_variances"])
GLMResult.__doc__ = """Outputs of `calculate_statistical_maps_glm`.

statistical_maps : (C, D, H, W) t-values.
beta_contrasts : (C, D, H, W) contrasts of the betas.
residuals : (T, D, H, W) model residuals.
residual_variances : (D, H, W) residual variances.
"""


def glm_design(X, contrasts):
    """Precompute the pseudo-inverse and contrast variance factors of a design.

    Parameters
    ----------
    X : array_like
        Design matrix of shape (T, R).
    contrasts : array_like
        Contrast vectors of shape (C, R), or a single (R,) contrast.

    Returns
    -------
    GLMDesign
        float32 design quantities ready for the GLM kernels.

    Examples
    --------
    >>> X = np.column_stack([np.ones(100), boxcar])
    >>> design = glm_design(X, [[0, 1]])
    >>> betas = calculate_beta_values_glm(volumes, mask, design.xtxxt)
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2:
        raise ValueError(f"Design matrix must be 2D (T, R), got shape {X.shape}")
    T, R = X.shape
    if T <= R:
        raise ValueError(f"Design matrix needs more time points than regressors, got {T}x{R}")
    contrasts = np.atleast_2d(np.asarray(contrasts, dtype=np.float64))
    if contrasts.ndim != 2 or contrasts.shape[1] != R:
        raise ValueError(f"Contrasts must have shape (C, {R}), got {contrasts.shape}")

    xtx_inv = np.linalg.inv(X.T @ X)
    xtxxt = xtx_inv @ X.T
    ctxtxc = np.einsum("cr,rs,cs->c", contrasts, xtx_inv, contrasts)
    return GLMDesign(
        X=X.astype(_DTYPE),
        xtxxt=np.ascontiguousarray(xtxxt, dtype=_DTYPE),
        contrasts=np.ascontiguousarray(contrasts, dtype=_DTYPE),
        ctxtxc=ctxtxc.astype(_DTYPE),
    )


# ============================================================================
# Argument Checks
# ============================================================================

def _prepare(volumes, mask):
    shape = _validate_volume(volumes, (4,), "volumes")
    bridge = ArrayBridge(volumes)
    if mask is None:
        d_mask = bridge.to_device(np.ones(shape[1:], dtype=_DTYPE))
    else:
        _validate_mask(mask, shape[1:])
        d_mask = bridge.to_device(mask)
    return shape, bridge, d_mask


def _design_matrix_transposed(X, T):
    """(R, T) contiguous copy of a (T, R) design matrix."""
    X = _as_numpy(X)
    if X.ndim != 2 or X.shape[0] != T:
        raise ValueError(f"Design matrix must have shape ({T}, R), got {X.shape}")
    return np.ascontiguousarray(X.T)


def _check_betas(betas, R, spatial_shape):
    shape = _validate_volume(betas, (4,), "betas")
    if shape != (R,) + tuple(spatial_shape):
        raise ValueError(f"Betas must have shape {(R,) + tuple(spatial_shape)}, got {shape}")


def _contrast_arrays(contrasts, ctxtxc, R):
    contrasts = np.atleast_2d(_as_numpy(contrasts))
    ctxtxc = _as_numpy(ctxtxc).reshape(-1)
    if contrasts.shape[1] != R or ctxtxc.shape[0] != contrasts.shape[0]:
        raise ValueError(
            f"Expected contrasts of shape (C, {R}) and ctxtxc of shape (C,), got {contrasts.shape} and {ctxtxc.shape}"
        )
    return contrasts, ctxtxc


# ============================================================================
# GLM Operations
# ============================================================================

def calculate_beta_values_glm(volumes, mask, xtxxt):
    """Least-squares regression coefficients for every voxel.

    Parameters
    ----------
    volumes : numpy.ndarray or torch.Tensor
        Time series of shape (T, D, H, W).
    mask : array_like or None
        (D, H, W) mask; voxels where it is zero get zero betas.
    xtxxt : array_like
        Pseudo-inverse of the design matrix, shape (R, T).

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Betas of shape (R, D, H, W).
    """
    (T, D, H, W), bridge, d_mask = _prepare(volumes, mask)
    xtxxt = _as_numpy(xtxxt)
    if xtxxt.ndim != 2 or xtxxt.shape[1] != T:
        raise ValueError(f"Pseudo-inverse must have shape (R, {T}), got {xtxxt.shape}")
    R = xtxxt.shape[0]

    d_volumes = bridge.to_device(volumes)
    d_xtxxt = bridge.to_device(xtxxt)
    d_betas = bridge.empty((R, D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("GLM betas for %d regressors on %s: grid=%s block=%s", R, (T, D, H, W), grid, tpb)
    _calculate_beta_values_glm_kernel[grid, tpb, bridge.stream](d_volumes, d_mask, d_xtxxt, d_betas, D, H, W, T, R)
    return bridge.to_host(d_betas)


def calculate_statistical_maps_glm(volumes, betas, mask, X, contrasts, ctxtxc):
    """Residuals, residual variances and t-maps of a fitted GLM.

    Parameters
    ----------
    volumes : numpy.ndarray or torch.Tensor
        Time series of shape (T, D, H, W).
    betas : numpy.ndarray or torch.Tensor
        (R, D, H, W) output of `calculate_beta_values_glm`.
    mask : array_like or None
        (D, H, W) mask; voxels where it is zero are zero in every output.
    X : array_like
        Design matrix of shape (T, R).
    contrasts : array_like
        (C, R) contrast vectors.
    ctxtxc : array_like
        (C,) contrast variance factors from `glm_design`.

    Returns
    -------
    GLMResult
        t-maps, beta contrasts, residuals and residual variances. The
        residual variance is the sample variance of the residuals (``T - 1``
        denominator).
    """
    (T, D, H, W), bridge, d_mask = _prepare(volumes, mask)
    x_transposed = _design_matrix_transposed(X, T)
    R = x_transposed.shape[0]
    _check_betas(betas, R, (D, H, W))
    contrasts, ctxtxc = _contrast_arrays(contrasts, ctxtxc, R)
    C = contrasts.shape[0]

    d_volumes = bridge.to_device(volumes)
    d_betas = bridge.to_device(betas)
    d_x = bridge.to_device(x_transposed)
    d_contrasts = bridge.to_device(contrasts)
    d_ctxtxc = bridge.to_device(ctxtxc)
    d_statistical_maps = bridge.empty((C, D, H, W))
    d_beta_contrasts = bridge.empty((C, D, H, W))
    d_residuals = bridge.empty((T, D, H, W))
    d_residual_variances = bridge.empty((D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("GLM statistical maps for %d contrasts: grid=%s block=%s", C, grid, tpb)
    _calculate_statistical_maps_glm_kernel[grid, tpb, bridge.stream](
        d_volumes, d_betas, d_mask, d_x, d_contrasts, d_ctxtxc,
        d_statistical_maps, d_beta_contrasts, d_residuals, d_residual_variances,
        D, H, W, T, R, C,
    )
    return GLMResult(
        statistical_maps=bridge.to_host(d_statistical_maps),
        beta_contrasts=bridge.to_host(d_beta_contrasts),
        residuals=bridge.to_host(d_residuals),
        residual_variances=bridge.to_host(d_residual_variances),
    )


def remove_linear_fit(volumes, betas, mask, X):
    """Subtract fitted regressors (e.g. drift terms) from every voxel time series.

    Returns the (T, D, H, W) residuals; voxels outside the mask are zero.
    """
    (T, D, H, W), bridge, d_mask = _prepare(volumes, mask)
    x_transposed = _design_matrix_transposed(X, T)
    R = x_transposed.shape[0]
    _check_betas(betas, R, (D, H, W))

    d_volumes = bridge.to_device(volumes)
    d_betas = bridge.to_device(betas)
    d_x = bridge.to_device(x_transposed)
    d_residuals = bridge.empty((T, D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("Removing linear fit of %d regressors: grid=%s block=%s", R, grid, tpb)
    _remove_linear_fit_kernel[grid, tpb, bridge.stream](d_volumes, d_betas, d_mask, d_x, d_residuals, D, H, W, T, R)
    return bridge.to_host(d_residuals)


def calculate_statistical_maps_glm_permutation(volumes, betas, mask, X, contrasts, ctxtxc):
    """t-maps only, for surrogate data in a permutation test.

    Same arguments as `calculate_statistical_maps_glm`. The residual
    variance uses ``T - R`` degrees of freedom and no residuals are stored.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        (C, D, H, W) t-values; zero outside the mask.
    """
    (T, D, H, W), bridge, d_mask = _prepare(volumes, mask)
    x_transposed = _design_matrix_transposed(X, T)
    R = x_transposed.shape[0]
    _check_betas(betas, R, (D, H, W))
    contrasts, ctxtxc = _contrast_arrays(contrasts, ctxtxc, R)
    C = contrasts.shape[0]

    d_volumes = bridge.to_device(volumes)
    d_betas = bridge.to_device(betas)
    d_x = bridge.to_device(x_transposed)
    d_contrasts = bridge.to_device(contrasts)
    d_ctxtxc = bridge.to_device(ctxtxc)
    d_statistical_maps = bridge.empty((C, D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    _calculate_statistical_maps_glm_permutation_kernel[grid, tpb, bridge.stream](
        d_volumes, d_betas, d_mask, d_x, d_contrasts, d_ctxtxc, d_statistical_maps,
        D, H, W, T, R, C,
    )
    return bridge.to_host(d_statistical_maps)
