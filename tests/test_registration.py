import numpy as np
import pytest

from fmrikernels import (
    affine_registration_system,
    interpolate_volume_trilinear,
    phase_differences_and_certainties,
    phase_gradients,
    solve_affine_parameters,
)
from fmrikernels.constants import A_MATRIX_PARAMETER_INDICES
from reference import centred_coordinates, interior


def _complex_volume(rng, shape):
    return (rng.standard_normal(shape) + 1j * rng.standard_normal(shape)).astype(np.complex64)


def _plane_wave(shape, frequency, axis, shift=0.0):
    """exp(i w (u - shift)) along one array axis of a (D, H, W) volume."""
    coordinate = np.indices(shape)[axis].astype(np.float64)
    return np.exp(1j * frequency * (coordinate - shift)).astype(np.complex64)


def test_phase_differences_and_certainties(rng):
    q1 = _complex_volume(rng, (3, 4, 5))
    q2 = _complex_volume(rng, (3, 4, 5))

    differences, certainties = phase_differences_and_certainties(q1, q2)

    expected = np.angle(q1.astype(np.complex128) * np.conj(q2))
    np.testing.assert_allclose(differences, expected, atol=1e-5)
    np.testing.assert_allclose(
        certainties, np.abs(q1 * q2) * np.cos(expected / 2.0) ** 2, rtol=1e-4, atol=1e-5
    )


def test_phase_gradient_of_plane_wave():
    shape = (8, 9, 10)
    q1 = _plane_wave(shape, 0.4, axis=2)
    q2 = _plane_wave(shape, 0.4, axis=2, shift=0.7)

    along_x = phase_gradients(q1, q2, "x", filter_size=7)
    along_y = phase_gradients(q1, q2, "y", filter_size=7)

    inside = interior(shape, 3)
    np.testing.assert_allclose(along_x[inside], 0.4, atol=1e-5)
    np.testing.assert_allclose(along_y[inside], 0.0, atol=1e-5)
    assert not np.any(along_x[~inside])


def test_phase_gradient_border_is_at_least_one_voxel(rng):
    shape = (4, 5, 6)
    q1 = _complex_volume(rng, shape)
    q2 = _complex_volume(rng, shape)

    gradients = phase_gradients(q1, q2, "z", filter_size=1)

    assert not np.any(gradients[~interior(shape, 1)])
    assert np.all(np.abs(gradients[interior(shape, 1)]) <= np.pi)


def test_phase_gradient_rejects_unknown_axis(rng):
    q = _complex_volume(rng, (3, 3, 3))
    with pytest.raises(ValueError, match="axis"):
        phase_gradients(q, q, "t")


def _reference_system(differences, gradients, certainties, border):
    shape = differences[0].shape
    z, y, x = centred_coordinates(shape)
    inside = interior(shape, border)
    terms = [np.ones(shape), x, y, z, x * x, x * y, x * z, y * y, y * z, z * z]
    A = np.zeros((12, 12))
    h = np.zeros(12)
    for axis in range(3):
        d, g, c = (np.asarray(v, dtype=np.float64) for v in (differences[axis], gradients[axis], certainties[axis]))
        c_pg_pg = (c * g * g)[inside]
        c_pg_pd = (c * g * d)[inside]
        for k, term in enumerate(terms):
            i, j = A_MATRIX_PARAMETER_INDICES[10 * axis + k]
            A[i, j] = A[j, i] = np.sum(term[inside] * c_pg_pg)
        h[axis] = np.sum(c_pg_pd)
        for k, coordinate in enumerate((x, y, z)):
            h[3 + 3 * axis + k] = np.sum(coordinate[inside] * c_pg_pd)
    return A, h


def test_affine_registration_system_matches_direct_sums(rng):
    shape = (6, 7, 8)
    differences = [rng.uniform(-1, 1, shape).astype(np.float32) for _ in range(3)]
    gradients = [rng.uniform(-1, 1, shape).astype(np.float32) for _ in range(3)]
    certainties = [rng.uniform(0, 1, shape).astype(np.float32) for _ in range(3)]

    A, h = affine_registration_system(differences, gradients, certainties, filter_size=3)

    expected_A, expected_h = _reference_system(differences, gradients, certainties, border=1)
    assert A.shape == (12, 12)
    np.testing.assert_allclose(A, A.T)
    np.testing.assert_allclose(A, expected_A, rtol=1e-4, atol=1e-3)
    np.testing.assert_allclose(h, expected_h, rtol=1e-4, atol=1e-3)
    assert np.count_nonzero(np.triu(A)) == 30


def test_translation_is_recovered_from_plane_waves():
    shape = (8, 9, 10)
    translation = {2: 0.3, 1: -0.2, 0: 0.4}
    differences, gradients, certainties = [], [], []
    # Filter directions x, y, z map to array axes 2, 1, 0
    for axis in (2, 1, 0):
        q_reference = _plane_wave(shape, 0.5, axis)
        q_deformed = _plane_wave(shape, 0.5, axis, shift=translation[axis])
        name = {2: "x", 1: "y", 0: "z"}[axis]
        d, c = phase_differences_and_certainties(q_reference, q_deformed)
        differences.append(d)
        certainties.append(c)
        gradients.append(phase_gradients(q_reference, q_deformed, name, filter_size=3))

    A, h = affine_registration_system(differences, gradients, certainties, filter_size=3)
    parameters = solve_affine_parameters(A, h)

    np.testing.assert_allclose(parameters[:3], [0.3, -0.2, 0.4], atol=1e-3)
    np.testing.assert_allclose(parameters[3:], 0.0, atol=1e-3)


def test_solve_affine_parameters(rng):
    M = rng.standard_normal((12, 12))
    A = M @ M.T + 12 * np.eye(12)
    p = rng.standard_normal(12)

    np.testing.assert_allclose(solve_affine_parameters(A, A @ p), p, rtol=1e-5, atol=1e-5)
    with pytest.raises(ValueError):
        solve_affine_parameters(np.eye(3), np.zeros(3))


def test_interpolation_identity(rng):
    volume = rng.standard_normal((4, 5, 6)).astype(np.float32)
    np.testing.assert_allclose(interpolate_volume_trilinear(volume, np.zeros(12)), volume, atol=1e-6)


def test_interpolation_integer_shift_clamps_to_edge(rng):
    volume = rng.standard_normal((4, 5, 6)).astype(np.float32)
    parameters = np.zeros(12, dtype=np.float32)
    parameters[0] = 1.0

    out = interpolate_volume_trilinear(volume, parameters)

    np.testing.assert_allclose(out[:, :, :-1], volume[:, :, 1:], atol=1e-6)
    np.testing.assert_allclose(out[:, :, -1], volume[:, :, -1], atol=1e-6)


def test_interpolation_half_voxel_shift_averages_neighbours(rng):
    volume = rng.standard_normal((5, 4, 3)).astype(np.float32)
    parameters = np.zeros(12, dtype=np.float32)
    parameters[2] = 0.5

    out = interpolate_volume_trilinear(volume, parameters)

    np.testing.assert_allclose(out[:-1], 0.5 * (volume[:-1] + volume[1:]), atol=1e-6)


def test_interpolation_linear_model_scales_about_centre():
    shape = (3, 3, 9)
    volume = np.broadcast_to(np.arange(9, dtype=np.float32), shape).copy()
    parameters = np.zeros(12, dtype=np.float32)
    # x' = x + 0.5 * (x - 4): a linear ramp stays linear, stretched about the centre
    parameters[3] = 0.5

    out = interpolate_volume_trilinear(volume, parameters)

    expected = np.clip(np.arange(9) + 0.5 * (np.arange(9) - 4.0), 0, 8)
    np.testing.assert_allclose(out[1, 1], expected, atol=1e-5)


def test_interpolation_rejects_wrong_parameter_count():
    with pytest.raises(ValueError, match="12 motion parameters"):
        interpolate_volume_trilinear(np.zeros((2, 2, 2), dtype=np.float32), np.zeros(6))
