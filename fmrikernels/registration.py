"""Host wrappers for phase-based affine registration.

Registration compares the quadrature filter responses of a reference volume
and a deformed volume. Phase differences, certainties and phase gradients are
reduced into the normal equations ``A p = h`` of a 12 parameter affine motion
model, which is solved on the host and applied with trilinear resampling.

Parameter vector layout: ``p[0:3]`` are x, y, z translations in voxels and
``p[3:12]`` the rows of the 3x3 matrix acting on centred voxel coordinates.
"""

import logging

import numpy as np

from .constants import (
    _CDTYPE,
    _DTYPE,
    A_MATRIX_PARAMETER_INDICES,
    NUMBER_OF_A_MATRIX_ELEMENTS,
    NUMBER_OF_MOTION_PARAMETERS,
)
from .kernels import (
    AXIS_X,
    AXIS_Y,
    AXIS_Z,
    _a_matrix_h_vector_2d_kernel,
    _a_matrix_kernel,
    _h_vector_kernel,
    _interpolate_volume_trilinear_kernel,
    _phase_differences_and_certainties_kernel,
    _phase_gradients_kernel,
    _reduce_2d_to_1d_kernel,
)
from .utils import ArrayBridge, _as_numpy, _grid_1d, _grid_2d, _grid_3d, _validate_volume

logger = logging.getLogger(__name__)

# Voxel step of each gradient direction in (x, y, z)
_AXIS_STEPS = {
    AXIS_X: (1, 0, 0),
    AXIS_Y: (0, 1, 0),
    AXIS_Z: (0, 0, 1),
}

# (first A row, translation slot, first h slot for x/y/z coordinate terms)
_AXIS_PLACEMENT = {
    AXIS_X: (0, 0, 3),
    AXIS_Y: (10, 1, 6),
    AXIS_Z: (20, 2, 9),
}

_AXIS_ALIASES = {"x": AXIS_X, "y": AXIS_Y, "z": AXIS_Z}


def _resolve_axis(axis):
    axis = _AXIS_ALIASES.get(axis, axis)
    if axis not in _AXIS_STEPS:
        raise ValueError(f"axis must be 'x', 'y', 'z' or one of AXIS_X/AXIS_Y/AXIS_Z, got {axis!r}")
    return axis


def _border(filter_size):
    """Excluded border width: the filter halo, and at least one voxel for gradients."""
    if filter_size % 2 == 0 or filter_size < 1:
        raise ValueError(f"filter_size must be a positive odd number, got {filter_size}")
    return max(1, (filter_size - 1) // 2)


def _check_pair(q_reference, q_deformed):
    shape = _validate_volume(q_reference, (3,), "q_reference")
    other = _validate_volume(q_deformed, (3,), "q_deformed")
    if shape != other:
        raise ValueError(f"Filter responses differ in shape: {shape} and {other}")
    return shape


# ============================================================================
# Phase Differences, Certainties and Gradients
# ============================================================================

def phase_differences_and_certainties(q_reference, q_deformed):
    """Voxel-wise phase difference and certainty of two filter responses.

    Parameters
    ----------
    q_reference, q_deformed : numpy.ndarray or torch.Tensor
        complex64 quadrature filter responses of shape (D, H, W).

    Returns
    -------
    phase_differences : numpy.ndarray or torch.Tensor
        ``arg(q_reference * conj(q_deformed))`` in ``[-pi, pi]``.
    certainties : numpy.ndarray or torch.Tensor
        ``|q_reference * q_deformed| * cos(phase_difference / 2) ** 2``.
    """
    D, H, W = _check_pair(q_reference, q_deformed)
    bridge = ArrayBridge(q_reference)
    d_q1 = bridge.to_device(q_reference, _CDTYPE)
    d_q2 = bridge.to_device(q_deformed, _CDTYPE)
    d_phase_differences = bridge.empty((D, H, W))
    d_certainties = bridge.empty((D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("Phase differences on (%d, %d, %d): grid=%s block=%s", D, H, W, grid, tpb)
    _phase_differences_and_certainties_kernel[grid, tpb, bridge.stream](
        d_q1, d_q2, d_phase_differences, d_certainties, D, H, W
    )
    return bridge.to_host(d_phase_differences), bridge.to_host(d_certainties)


def phase_gradients(q_reference, q_deformed, axis, filter_size=7):
    """Phase gradient along one axis, averaged over both filter responses.

    Parameters
    ----------
    q_reference, q_deformed : numpy.ndarray or torch.Tensor
        complex64 quadrature filter responses of shape (D, H, W).
    axis : {'x', 'y', 'z'} or int
        Gradient direction; the integer form uses `AXIS_X`, `AXIS_Y`, `AXIS_Z`.
    filter_size : int, optional
        Size of the quadrature filters (default 7). Voxels closer than the
        filter halo (at least one voxel) to any border are set to zero.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Phase gradients in radians per voxel, shape (D, H, W).
    """
    D, H, W = _check_pair(q_reference, q_deformed)
    axis = _resolve_axis(axis)
    border = _border(filter_size)
    step_x, step_y, step_z = _AXIS_STEPS[axis]

    bridge = ArrayBridge(q_reference)
    d_q1 = bridge.to_device(q_reference, _CDTYPE)
    d_q2 = bridge.to_device(q_deformed, _CDTYPE)
    d_phase_gradients = bridge.zeros((D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("Phase gradients axis=%d border=%d: grid=%s block=%s", axis, border, grid, tpb)
    _phase_gradients_kernel[grid, tpb, bridge.stream](
        d_q1, d_q2, d_phase_gradients, step_x, step_y, step_z, border, D, H, W
    )
    return bridge.to_host(d_phase_gradients)


# ============================================================================
# Normal Equations
# ============================================================================

def affine_registration_system(phase_differences, phase_gradients, certainties, filter_size=7):
    """Assemble the 12x12 normal equations of the affine motion model.

    Parameters
    ----------
    phase_differences : sequence of 3 arrays
        Phase differences (D, H, W) from the x-, y- and z-direction filters.
    phase_gradients : sequence of 3 arrays
        Phase gradients (D, H, W) along x, y and z.
    certainties : sequence of 3 arrays
        Certainties (D, H, W) from the x-, y- and z-direction filters.
    filter_size : int, optional
        Filter size deciding the excluded border (default 7).

    Returns
    -------
    A : numpy.ndarray
        Symmetric (12, 12) float32 matrix with 30 distinct non-zero entries.
    h : numpy.ndarray
        (12,) float32 vector.

    Notes
    -----
    The sums run over voxels at least the filter halo away from every border
    and are reduced in three stages: along x per (y, z) line, then along y,
    then along z.
    """
    if not (len(phase_differences) == len(phase_gradients) == len(certainties) == 3):
        raise ValueError("Expected one phase difference, gradient and certainty volume per axis")
    D, H, W = _validate_volume(phase_differences[0], (3,), "phase_differences")
    for volumes in (phase_differences, phase_gradients, certainties):
        for volume in volumes:
            if _validate_volume(volume, (3,)) != (D, H, W):
                raise ValueError(f"All registration volumes must have shape {(D, H, W)}")
    border = _border(filter_size)

    bridge = ArrayBridge(phase_differences[0])
    d_a_matrix_2d = bridge.zeros((NUMBER_OF_A_MATRIX_ELEMENTS, D, H))
    d_h_vector_2d = bridge.zeros((NUMBER_OF_MOTION_PARAMETERS, D, H))

    grid, tpb = _grid_2d(H, D)
    for index, axis in enumerate((AXIS_X, AXIS_Y, AXIS_Z)):
        a_offset, h_translation, h_offset = _AXIS_PLACEMENT[axis]
        logger.debug("A/h line sums axis=%d: grid=%s block=%s", axis, grid, tpb)
        _a_matrix_h_vector_2d_kernel[grid, tpb, bridge.stream](
            bridge.to_device(phase_differences[index]),
            bridge.to_device(phase_gradients[index]),
            bridge.to_device(certainties[index]),
            d_a_matrix_2d, d_h_vector_2d,
            a_offset, h_translation, h_offset, border, D, H, W,
        )

    d_a_matrix_1d = bridge.zeros((NUMBER_OF_A_MATRIX_ELEMENTS, D))
    d_h_vector_1d = bridge.zeros((NUMBER_OF_MOTION_PARAMETERS, D))
    grid, tpb = _grid_2d(D, NUMBER_OF_A_MATRIX_ELEMENTS)
    _reduce_2d_to_1d_kernel[grid, tpb, bridge.stream](
        d_a_matrix_2d, d_a_matrix_1d, border, NUMBER_OF_A_MATRIX_ELEMENTS, D, H
    )
    grid, tpb = _grid_2d(D, NUMBER_OF_MOTION_PARAMETERS)
    _reduce_2d_to_1d_kernel[grid, tpb, bridge.stream](
        d_h_vector_2d, d_h_vector_1d, border, NUMBER_OF_MOTION_PARAMETERS, D, H
    )

    d_a_matrix = bridge.zeros((NUMBER_OF_MOTION_PARAMETERS, NUMBER_OF_MOTION_PARAMETERS))
    d_h_vector = bridge.zeros((NUMBER_OF_MOTION_PARAMETERS,))
    d_parameter_indices = bridge.to_device(A_MATRIX_PARAMETER_INDICES, np.int32)
    blocks, threads = _grid_1d(NUMBER_OF_A_MATRIX_ELEMENTS)
    _a_matrix_kernel[blocks, threads, bridge.stream](
        d_a_matrix_1d, d_a_matrix, d_parameter_indices, border, NUMBER_OF_A_MATRIX_ELEMENTS, D
    )
    blocks, threads = _grid_1d(NUMBER_OF_MOTION_PARAMETERS)
    _h_vector_kernel[blocks, threads, bridge.stream](
        d_h_vector_1d, d_h_vector, border, NUMBER_OF_MOTION_PARAMETERS, D
    )
    return _as_numpy(bridge.to_host(d_a_matrix)), _as_numpy(bridge.to_host(d_h_vector))


def solve_affine_parameters(A, h):
    """Least-squares solution of ``A p = h`` as a (12,) float32 parameter vector."""
    A = np.asarray(A, dtype=np.float64)
    h = np.asarray(h, dtype=np.float64)
    if A.shape != (NUMBER_OF_MOTION_PARAMETERS, NUMBER_OF_MOTION_PARAMETERS) or h.shape != (NUMBER_OF_MOTION_PARAMETERS,):
        raise ValueError(f"Expected A of shape (12, 12) and h of shape (12,), got {A.shape} and {h.shape}")
    parameters, _, rank, _ = np.linalg.lstsq(A, h, rcond=None)
    if rank < NUMBER_OF_MOTION_PARAMETERS:
        logger.warning("Registration system is rank deficient (rank %d of 12)", rank)
    return parameters.astype(_DTYPE)


# ============================================================================
# Resampling
# ============================================================================

def interpolate_volume_trilinear(volume, parameters):
    """Resample a volume with a 12 parameter affine motion.

    Parameters
    ----------
    volume : numpy.ndarray or torch.Tensor
        Volume of shape (D, H, W).
    parameters : array_like
        Motion parameters of shape (12,); zeros give the identity.

    Returns
    -------
    numpy.ndarray or torch.Tensor
        Resampled volume. Samples outside the volume take the value of the
        nearest edge voxel.
    """
    D, H, W = _validate_volume(volume)
    parameters = _as_numpy(parameters).reshape(-1)
    if parameters.shape[0] != NUMBER_OF_MOTION_PARAMETERS:
        raise ValueError(f"Expected {NUMBER_OF_MOTION_PARAMETERS} motion parameters, got {parameters.shape[0]}")

    bridge = ArrayBridge(volume)
    d_volume = bridge.to_device(volume)
    d_parameters = bridge.to_device(parameters)
    d_interpolated = bridge.empty((D, H, W))

    grid, tpb = _grid_3d(W, H, D)
    logger.debug("Trilinear resampling on (%d, %d, %d): grid=%s block=%s", D, H, W, grid, tpb)
    _interpolate_volume_trilinear_kernel[grid, tpb, bridge.stream](d_volume, d_interpolated, d_parameters, D, H, W)
    return bridge.to_host(d_interpolated)
