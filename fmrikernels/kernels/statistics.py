"""CUDA kernels for voxel-wise general linear model fitting.

One thread per voxel walks the voxel's time series. Design quantities that
are shared by all voxels (pseudo-inverse, contrasts, contrast variance
factors) are computed on the host and passed in as small device arrays.
"""

import math

from numba import cuda

from ..constants import _JIT_DECORATOR


# ============================================================================
# Beta Estimation
# ============================================================================

@_JIT_DECORATOR
def _calculate_beta_values_glm_kernel(d_volumes, d_mask, d_xtxxt, d_betas, D, H, W, T, R):
    """``beta[r] = sum_t Y[t] * pinv(X)[r, t]`` for every voxel in the mask."""
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for r in range(R):
            d_betas[r, z, y, x] = 0.0
        return

    for r in range(R):
        beta = 0.0
        for t in range(T):
            beta += d_volumes[t, z, y, x] * d_xtxxt[r, t]
        d_betas[r, z, y, x] = beta


# ============================================================================
# Statistical Maps
# ============================================================================

@_JIT_DECORATOR
def _calculate_statistical_maps_glm_kernel(
    d_volumes, d_betas, d_mask, d_x, d_contrasts, d_ctxtxc,
    d_statistical_maps, d_beta_contrasts, d_residuals, d_residual_variances,
    D, H, W, T, R, C
):
    """Residuals, residual variance, contrasts of betas and t-values.

    Parameters
    ----------
    d_x : DeviceNDArray
        Design matrix transposed, shape (R, T).
    d_contrasts : DeviceNDArray
        Contrast vectors, shape (C, R).
    d_ctxtxc : DeviceNDArray
        ``c (X'X)^-1 c'`` for each contrast, shape (C,).

    Notes
    -----
    The residual variance is the sample variance of the residuals with a
    ``T - 1`` denominator. Voxels outside the mask are zero in every output.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for t in range(T):
            d_residuals[t, z, y, x] = 0.0
        for c in range(C):
            d_statistical_maps[c, z, y, x] = 0.0
            d_beta_contrasts[c, z, y, x] = 0.0
        d_residual_variances[z, y, x] = 0.0
        return

    mean = 0.0
    for t in range(T):
        eps = d_volumes[t, z, y, x]
        for r in range(R):
            eps -= d_x[r, t] * d_betas[r, z, y, x]
        d_residuals[t, z, y, x] = eps
        mean += eps
    mean /= T

    variance = 0.0
    for t in range(T):
        diff = d_residuals[t, z, y, x] - mean
        variance += diff * diff
    variance /= T - 1.0
    d_residual_variances[z, y, x] = variance

    for c in range(C):
        contrast_value = 0.0
        for r in range(R):
            contrast_value += d_contrasts[c, r] * d_betas[r, z, y, x]
        d_beta_contrasts[c, z, y, x] = contrast_value
        d_statistical_maps[c, z, y, x] = contrast_value / math.sqrt(variance * d_ctxtxc[c])


@_JIT_DECORATOR
def _calculate_statistical_maps_glm_permutation_kernel(
    d_volumes, d_betas, d_mask, d_x, d_contrasts, d_ctxtxc, d_statistical_maps,
    D, H, W, T, R, C
):
    """t-values only, for permuted data refitted with the beta kernel.

    Residuals are recomputed in both passes instead of stored. The residual
    variance is normalised by ``T - R``, the residual degrees of freedom.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for c in range(C):
            d_statistical_maps[c, z, y, x] = 0.0
        return

    mean = 0.0
    for t in range(T):
        eps = d_volumes[t, z, y, x]
        for r in range(R):
            eps -= d_x[r, t] * d_betas[r, z, y, x]
        mean += eps
    mean /= T

    variance = 0.0
    for t in range(T):
        eps = d_volumes[t, z, y, x]
        for r in range(R):
            eps -= d_x[r, t] * d_betas[r, z, y, x]
        diff = eps - mean
        variance += diff * diff
    variance /= T - R

    for c in range(C):
        contrast_value = 0.0
        for r in range(R):
            contrast_value += d_contrasts[c, r] * d_betas[r, z, y, x]
        d_statistical_maps[c, z, y, x] = contrast_value / math.sqrt(variance * d_ctxtxc[c])


# ============================================================================
# Detrending
# ============================================================================

@_JIT_DECORATOR
def _remove_linear_fit_kernel(d_volumes, d_betas, d_mask, d_x, d_residuals, D, H, W, T, R):
    """Subtract the fitted regressors from each voxel time series."""
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for t in range(T):
            d_residuals[t, z, y, x] = 0.0
        return

    for t in range(T):
        eps = d_volumes[t, z, y, x]
        for r in range(R):
            eps -= d_x[r, t] * d_betas[r, z, y, x]
        d_residuals[t, z, y, x] = eps
