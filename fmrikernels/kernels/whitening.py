"""CUDA kernels for voxel-wise AR(4) noise modelling.

Each thread owns one voxel and walks its whole time series: the estimation
kernel fits four autoregressive coefficients from the sample autocovariances
(Yule-Walker), the whitening kernel removes the fitted autocorrelation and
the permutation kernel re-introduces it into a shuffled residual series.
"""

from numba import cuda, float32

from ..constants import _AR_REGULARIZATION, _DEVICE_DECORATOR, _JIT_DECORATOR


# ============================================================================
# 4x4 Matrix Inverse
# ============================================================================

@_DEVICE_DECORATOR
def _minor_3x3(m, row, col):
    """Determinant of `m` with `row` and `col` removed."""
    r0 = 1 if row == 0 else 0
    r1 = 2 if row <= 1 else 1
    r2 = 3 if row <= 2 else 2
    c0 = 1 if col == 0 else 0
    c1 = 2 if col <= 1 else 1
    c2 = 3 if col <= 2 else 2
    return (
        m[r0, c0] * (m[r1, c1] * m[r2, c2] - m[r1, c2] * m[r2, c1])
        - m[r0, c1] * (m[r1, c0] * m[r2, c2] - m[r1, c2] * m[r2, c0])
        + m[r0, c2] * (m[r1, c0] * m[r2, c1] - m[r1, c1] * m[r2, c0])
    )


@_DEVICE_DECORATOR
def _invert_4x4(m, inv):
    """Regularised cofactor inverse, ``adj(m) / (det(m) + 0.001)``."""
    det = 0.0
    for j in range(4):
        sign = 1.0 if j % 2 == 0 else -1.0
        det += sign * m[0, j] * _minor_3x3(m, 0, j)
    det += _AR_REGULARIZATION

    for i in range(4):
        for j in range(4):
            sign = 1.0 if (i + j) % 2 == 0 else -1.0
            inv[i, j] = sign * _minor_3x3(m, j, i) / det


# ============================================================================
# AR(4) Estimation
# ============================================================================

@_JIT_DECORATOR
def _estimate_ar4_kernel(d_volumes, d_mask, d_ar_coefficients, D, H, W, T):
    """Fit AR(4) coefficients to the time series of every voxel in the mask.

    Parameters
    ----------
    d_volumes : DeviceNDArray
        Time series of shape (T, D, H, W).
    d_mask : DeviceNDArray
        Brain mask of shape (D, H, W); voxels with value 0 are skipped.
    d_ar_coefficients : DeviceNDArray
        Output of shape (4, D, H, W).

    Notes
    -----
    Lag-k autocovariances are normalised by ``T - 1 - k``. The Yule-Walker
    system uses the autocorrelations ``r_k = c_k / c_0`` with 0.001 added to
    every off-diagonal element. A voxel with zero variance, or outside the
    mask, gets all-zero coefficients.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for k in range(4):
            d_ar_coefficients[k, z, y, x] = 0.0
        return

    c0 = 0.0
    c1 = 0.0
    c2 = 0.0
    c3 = 0.0
    c4 = 0.0
    # Sliding window of the previous four samples, zero before the series starts
    old1 = 0.0
    old2 = 0.0
    old3 = 0.0
    old4 = 0.0
    for t in range(T):
        value = d_volumes[t, z, y, x]
        c0 += value * value
        c1 += value * old1
        c2 += value * old2
        c3 += value * old3
        c4 += value * old4
        old4 = old3
        old3 = old2
        old2 = old1
        old1 = value

    c0 /= T - 1.0
    c1 /= T - 2.0
    c2 /= T - 3.0
    c3 /= T - 4.0
    c4 /= T - 5.0

    if c0 == 0.0:
        for k in range(4):
            d_ar_coefficients[k, z, y, x] = 0.0
        return

    r = cuda.local.array(4, dtype=float32)
    r[0] = c1 / c0
    r[1] = c2 / c0
    r[2] = c3 / c0
    r[3] = c4 / c0

    # Toeplitz matrix [[1, r1, r2, r3], [r1, 1, r1, r2], ...]
    matrix = cuda.local.array((4, 4), dtype=float32)
    for i in range(4):
        for j in range(4):
            lag = abs(i - j)
            if lag == 0:
                matrix[i, j] = 1.0
            else:
                matrix[i, j] = r[lag - 1] + _AR_REGULARIZATION

    inverse = cuda.local.array((4, 4), dtype=float32)
    _invert_4x4(matrix, inverse)

    for i in range(4):
        alpha = 0.0
        for j in range(4):
            alpha += inverse[i, j] * r[j]
        d_ar_coefficients[i, z, y, x] = alpha


# ============================================================================
# Whitening
# ============================================================================

@_JIT_DECORATOR
def _apply_whitening_ar4_kernel(d_volumes, d_ar_coefficients, d_mask, d_whitened, D, H, W, T):
    """Whiten each voxel time series with its AR(4) filter.

    ``w_t = v_t - a1 v_{t-1} - a2 v_{t-2} - a3 v_{t-3} - a4 v_{t-4}`` where
    samples before the start of the series are taken as zero, so the first
    four time points use only the taps that exist.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for t in range(T):
            d_whitened[t, z, y, x] = 0.0
        return

    a1 = d_ar_coefficients[0, z, y, x]
    a2 = d_ar_coefficients[1, z, y, x]
    a3 = d_ar_coefficients[2, z, y, x]
    a4 = d_ar_coefficients[3, z, y, x]

    old1 = 0.0
    old2 = 0.0
    old3 = 0.0
    old4 = 0.0
    for t in range(T):
        value = d_volumes[t, z, y, x]
        d_whitened[t, z, y, x] = value - a1 * old1 - a2 * old2 - a3 * old3 - a4 * old4
        old4 = old3
        old3 = old2
        old2 = old1
        old1 = value


# ============================================================================
# Permuted Un-whitening
# ============================================================================

@_JIT_DECORATOR
def _generate_permuted_volumes_ar4_kernel(d_whitened, d_ar_coefficients, d_mask, d_permutation, d_permuted, D, H, W, T):
    """Re-colour a permuted whitened series with the voxel's AR(4) model.

    ``o_t = a1 o_{t-1} + a2 o_{t-2} + a3 o_{t-3} + a4 o_{t-4} + w[perm[t]]``,
    the exact inverse of the whitening filter applied to the permuted
    residuals. With the identity permutation this recovers the original
    series.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    if d_mask[z, y, x] == 0:
        for t in range(T):
            d_permuted[t, z, y, x] = 0.0
        return

    a1 = d_ar_coefficients[0, z, y, x]
    a2 = d_ar_coefficients[1, z, y, x]
    a3 = d_ar_coefficients[2, z, y, x]
    a4 = d_ar_coefficients[3, z, y, x]

    old1 = 0.0
    old2 = 0.0
    old3 = 0.0
    old4 = 0.0
    for t in range(T):
        value = a1 * old1 + a2 * old2 + a3 * old3 + a4 * old4 + d_whitened[d_permutation[t], z, y, x]
        d_permuted[t, z, y, x] = value
        old4 = old3
        old3 = old2
        old2 = old1
        old1 = value
