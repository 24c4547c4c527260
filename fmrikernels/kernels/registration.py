"""CUDA kernels for phase-based affine registration.

The kernels turn two sets of quadrature filter responses (reference and
deformed volume) into the normal equations ``A p = h`` of a 12 parameter
affine motion model: per-voxel phase differences, certainties and phase
gradients, a three stage tree reduction of the weighted products, and the
trilinear resampling used to apply an estimated motion.
"""

import math

from numba import cuda

from ..constants import _DEVICE_DECORATOR, _FASTMATH_DECORATOR, _JIT_DECORATOR


# ============================================================================
# Phase Differences and Certainties
# ============================================================================

@_FASTMATH_DECORATOR
def _phase_differences_and_certainties_kernel(d_q1, d_q2, d_phase_differences, d_certainties, D, H, W):
    """Per-voxel phase difference and certainty of two complex filter responses.

    The phase difference is ``arg(q1 * conj(q2))`` and the certainty
    ``|q1 * q2| * cos(phase_difference / 2) ** 2``.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    q1 = d_q1[z, y, x]
    q2 = d_q2[z, y, x]
    a, b = q1.real, q1.imag
    c, d = q2.real, q2.imag

    phase_difference = math.atan2(b * c - a * d, a * c + b * d)
    product_real = a * c - b * d
    product_imag = b * c + a * d
    half_cos = math.cos(phase_difference * 0.5)

    d_phase_differences[z, y, x] = phase_difference
    d_certainties[z, y, x] = math.sqrt(product_real * product_real + product_imag * product_imag) * half_cos * half_cos


# ============================================================================
# Phase Gradients
# ============================================================================

@_FASTMATH_DECORATOR
def _phase_gradients_kernel(d_q1, d_q2, d_phase_gradients, step_x, step_y, step_z, border, D, H, W):
    """Phase gradient along the axis given by (step_x, step_y, step_z).

    The gradient is the phase of the summed neighbour products
    ``q(i+1) conj(q(i)) + q(i) conj(q(i-1))`` over both responses. Voxels
    closer than `border` to any edge are left untouched.
    """
    x, y, z = cuda.grid(3)
    if x < border or x >= W - border or y < border or y >= H - border or z < border or z >= D - border:
        return

    xp, yp, zp = x + step_x, y + step_y, z + step_z
    xm, ym, zm = x - step_x, y - step_y, z - step_z

    q = d_q1[z, y, x]
    total = d_q1[zp, yp, xp] * q.conjugate() + q * d_q1[zm, ym, xm].conjugate()
    q = d_q2[z, y, x]
    total += d_q2[zp, yp, xp] * q.conjugate() + q * d_q2[zm, ym, xm].conjugate()

    d_phase_gradients[z, y, x] = math.atan2(total.imag, total.real)


# ============================================================================
# A Matrix and h Vector Reduction
# ============================================================================

@_FASTMATH_DECORATOR
def _a_matrix_h_vector_2d_kernel(
    d_phase_differences, d_phase_gradients, d_certainties,
    d_a_matrix_2d, d_h_vector_2d,
    a_offset, h_translation, h_offset, border, D, H, W
):
    """Sum certainty-weighted phase products along x for one (y, z) line.

    Parameters
    ----------
    d_a_matrix_2d : DeviceNDArray
        Output of shape (30, D, H); this launch fills rows
        ``a_offset .. a_offset + 9``.
    d_h_vector_2d : DeviceNDArray
        Output of shape (12, D, H); this launch fills row `h_translation` and
        rows ``h_offset .. h_offset + 2``.
    a_offset, h_translation, h_offset : int
        Placement of the x-, y- or z-direction terms in the parameter vector.
    border : int
        Width of the excluded border in every direction.

    Notes
    -----
    Coordinates are centred at ``(N - 1) / 2``. The ten A terms are
    ``c, x c, y c, z c, x x c, x y c, x z c, y y c, y z c, z z c`` with
    ``c = certainty * gradient ** 2``; the four h terms are
    ``e, x e, y e, z e`` with ``e = certainty * gradient * difference``.
    """
    y, z = cuda.grid(2)
    if y < border or y >= H - border or z < border or z >= D - border:
        return

    yf = y - (H - 1.0) * 0.5
    zf = z - (D - 1.0) * 0.5

    a0 = 0.0
    a1 = 0.0
    a2 = 0.0
    a3 = 0.0
    a4 = 0.0
    a5 = 0.0
    a6 = 0.0
    a7 = 0.0
    a8 = 0.0
    a9 = 0.0
    h0 = 0.0
    h1 = 0.0
    h2 = 0.0
    h3 = 0.0

    for x in range(border, W - border):
        xf = x - (W - 1.0) * 0.5
        phase_gradient = d_phase_gradients[z, y, x]
        certainty = d_certainties[z, y, x]
        c_pg_pg = certainty * phase_gradient * phase_gradient
        c_pg_pd = certainty * phase_gradient * d_phase_differences[z, y, x]

        a0 += c_pg_pg
        a1 += xf * c_pg_pg
        a2 += yf * c_pg_pg
        a3 += zf * c_pg_pg
        a4 += xf * xf * c_pg_pg
        a5 += xf * yf * c_pg_pg
        a6 += xf * zf * c_pg_pg
        a7 += yf * yf * c_pg_pg
        a8 += yf * zf * c_pg_pg
        a9 += zf * zf * c_pg_pg

        h0 += c_pg_pd
        h1 += xf * c_pg_pd
        h2 += yf * c_pg_pd
        h3 += zf * c_pg_pd

    d_a_matrix_2d[a_offset + 0, z, y] = a0
    d_a_matrix_2d[a_offset + 1, z, y] = a1
    d_a_matrix_2d[a_offset + 2, z, y] = a2
    d_a_matrix_2d[a_offset + 3, z, y] = a3
    d_a_matrix_2d[a_offset + 4, z, y] = a4
    d_a_matrix_2d[a_offset + 5, z, y] = a5
    d_a_matrix_2d[a_offset + 6, z, y] = a6
    d_a_matrix_2d[a_offset + 7, z, y] = a7
    d_a_matrix_2d[a_offset + 8, z, y] = a8
    d_a_matrix_2d[a_offset + 9, z, y] = a9

    d_h_vector_2d[h_translation, z, y] = h0
    d_h_vector_2d[h_offset + 0, z, y] = h1
    d_h_vector_2d[h_offset + 1, z, y] = h2
    d_h_vector_2d[h_offset + 2, z, y] = h3


@_JIT_DECORATOR
def _reduce_2d_to_1d_kernel(d_values_2d, d_values_1d, border, n_elements, D, H):
    """Sum (n_elements, D, H) partial values over interior y into (n_elements, D)."""
    z, element = cuda.grid(2)
    if element >= n_elements or z < border or z >= D - border:
        return

    total = 0.0
    for y in range(border, H - border):
        total += d_values_2d[element, z, y]
    d_values_1d[element, z] = total


@_JIT_DECORATOR
def _a_matrix_kernel(d_a_matrix_1d, d_a_matrix, d_parameter_indices, border, n_elements, D):
    """Sum the 1D partial values over interior z and scatter into the 12x12 matrix."""
    element = cuda.grid(1)
    if element >= n_elements:
        return

    total = 0.0
    for z in range(border, D - border):
        total += d_a_matrix_1d[element, z]

    i = d_parameter_indices[element, 0]
    j = d_parameter_indices[element, 1]
    d_a_matrix[i, j] = total
    d_a_matrix[j, i] = total


@_JIT_DECORATOR
def _h_vector_kernel(d_h_vector_1d, d_h_vector, border, n_elements, D):
    """Sum the 1D partial values over interior z into the 12-element vector."""
    element = cuda.grid(1)
    if element >= n_elements:
        return

    total = 0.0
    for z in range(border, D - border):
        total += d_h_vector_1d[element, z]
    d_h_vector[element] = total


# ============================================================================
# Trilinear Resampling
# ============================================================================

@_DEVICE_DECORATOR
def _clamp(i, n):
    return min(max(i, 0), n - 1)


@_FASTMATH_DECORATOR
def _interpolate_volume_trilinear_kernel(d_volume, d_interpolated, d_parameters, D, H, W):
    """Resample a volume with the affine motion model and trilinear interpolation.

    The sample position of voxel (x, y, z) is ``(x, y, z) + t + M c`` where
    ``t = p[0:3]``, ``M`` holds ``p[3:12]`` row by row and ``c`` is the voxel
    coordinate relative to the volume centre. Samples outside the volume are
    clamped to the nearest edge voxel.
    """
    x, y, z = cuda.grid(3)
    if x >= W or y >= H or z >= D:
        return

    xf = x - (W - 1.0) * 0.5
    yf = y - (H - 1.0) * 0.5
    zf = z - (D - 1.0) * 0.5

    sx = x + d_parameters[0] + d_parameters[3] * xf + d_parameters[4] * yf + d_parameters[5] * zf
    sy = y + d_parameters[1] + d_parameters[6] * xf + d_parameters[7] * yf + d_parameters[8] * zf
    sz = z + d_parameters[2] + d_parameters[9] * xf + d_parameters[10] * yf + d_parameters[11] * zf

    fx = math.floor(sx)
    fy = math.floor(sy)
    fz = math.floor(sz)
    wx = sx - fx
    wy = sy - fy
    wz = sz - fz
    ix0 = int(fx)
    iy0 = int(fy)
    iz0 = int(fz)

    x0 = _clamp(ix0, W)
    x1 = _clamp(ix0 + 1, W)
    y0 = _clamp(iy0, H)
    y1 = _clamp(iy0 + 1, H)
    z0 = _clamp(iz0, D)
    z1 = _clamp(iz0 + 1, D)

    c00 = d_volume[z0, y0, x0] * (1.0 - wx) + d_volume[z0, y0, x1] * wx
    c01 = d_volume[z0, y1, x0] * (1.0 - wx) + d_volume[z0, y1, x1] * wx
    c10 = d_volume[z1, y0, x0] * (1.0 - wx) + d_volume[z1, y0, x1] * wx
    c11 = d_volume[z1, y1, x0] * (1.0 - wx) + d_volume[z1, y1, x1] * wx
    c0 = c00 * (1.0 - wy) + c01 * wy
    c1 = c10 * (1.0 - wy) + c11 * wy

    d_interpolated[z, y, x] = c0 * (1.0 - wz) + c1 * wz
