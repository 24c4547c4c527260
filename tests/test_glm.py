import numpy as np
import pytest
import torch

from fmrikernels import (
    GLMResult,
    calculate_beta_values_glm,
    calculate_statistical_maps_glm,
    calculate_statistical_maps_glm_permutation,
    glm_design,
    remove_linear_fit,
)


SPATIAL = (2, 3, 4)


def _design(n_timepoints=24):
    t = np.arange(n_timepoints, dtype=np.float64)
    boxcar = ((t // 4) % 2).astype(np.float64)
    return np.column_stack([np.ones(n_timepoints), t / n_timepoints, boxcar])


def _synthetic(rng, X, noise=0.0):
    betas = rng.uniform(-2.0, 2.0, (X.shape[1],) + SPATIAL)
    volumes = np.einsum("tr,rzyx->tzyx", X, betas)
    volumes += noise * rng.standard_normal(volumes.shape)
    return volumes.astype(np.float32), betas.astype(np.float32)


def _reference_t(volumes, X, contrasts, dof_correction):
    T, R = X.shape
    Y = volumes.reshape(T, -1).astype(np.float64)
    betas = np.linalg.pinv(X) @ Y
    residuals = Y - X @ betas
    variance = np.sum((residuals - residuals.mean(axis=0)) ** 2, axis=0) / (T - dof_correction)
    xtx_inv = np.linalg.inv(X.T @ X)
    t = []
    for c in np.atleast_2d(contrasts):
        t.append((c @ betas) / np.sqrt(variance * (c @ xtx_inv @ c)))
    return np.array(t).reshape((-1,) + volumes.shape[1:])


def test_glm_design():
    X = _design()
    design = glm_design(X, [0, 0, 1])

    np.testing.assert_allclose(design.xtxxt, np.linalg.pinv(X), atol=1e-5)
    assert design.contrasts.shape == (1, 3)
    expected = np.linalg.inv(X.T @ X)[2, 2]
    np.testing.assert_allclose(design.ctxtxc, [expected], rtol=1e-5)

    with pytest.raises(ValueError, match="Contrasts"):
        glm_design(X, [1, 0])
    with pytest.raises(ValueError, match="more time points"):
        glm_design(X[:3], [1, 0, 0])


def test_betas_are_recovered_without_noise(rng):
    X = _design()
    volumes, true_betas = _synthetic(rng, X)
    design = glm_design(X, np.eye(3))

    betas = calculate_beta_values_glm(volumes, None, design.xtxxt)
    residuals = remove_linear_fit(volumes, betas, None, X)

    np.testing.assert_allclose(betas, true_betas, atol=1e-4)
    np.testing.assert_allclose(residuals, 0.0, atol=1e-4)


def test_statistical_maps_match_reference(rng):
    X = _design()
    volumes, _ = _synthetic(rng, X, noise=0.5)
    contrasts = np.array([[0, 0, 1], [0, 1, -1]], dtype=np.float32)
    design = glm_design(X, contrasts)

    betas = calculate_beta_values_glm(volumes, None, design.xtxxt)
    result = calculate_statistical_maps_glm(volumes, betas, None, X, design.contrasts, design.ctxtxc)

    assert isinstance(result, GLMResult)
    assert result.statistical_maps.shape == (2,) + SPATIAL
    assert result.residuals.shape == volumes.shape
    np.testing.assert_allclose(result.statistical_maps, _reference_t(volumes, X, contrasts, 1), rtol=1e-3, atol=1e-3)
    np.testing.assert_allclose(result.beta_contrasts, np.einsum("cr,rzyx->czyx", contrasts, betas), rtol=1e-5, atol=1e-5)
    np.testing.assert_allclose(result.residuals, remove_linear_fit(volumes, betas, None, X), atol=1e-5)
    np.testing.assert_allclose(result.residual_variances, result.residuals.var(axis=0, ddof=1), rtol=1e-4, atol=1e-6)


def test_permutation_maps_use_residual_degrees_of_freedom(rng):
    X = _design()
    volumes, _ = _synthetic(rng, X, noise=0.5)
    design = glm_design(X, [0, 0, 1])

    betas = calculate_beta_values_glm(volumes, None, design.xtxxt)
    t_maps = calculate_statistical_maps_glm_permutation(volumes, betas, None, X, design.contrasts, design.ctxtxc)

    np.testing.assert_allclose(t_maps, _reference_t(volumes, X, design.contrasts, X.shape[1]), rtol=1e-3, atol=1e-3)


def test_masked_voxels_are_zero_in_every_output(rng):
    X = _design()
    volumes, _ = _synthetic(rng, X, noise=0.5)
    mask = np.ones(SPATIAL, dtype=np.float32)
    mask[0, 0, :2] = 0.0
    mask[1, 2, 3] = 0.0
    outside = mask == 0
    design = glm_design(X, [0, 0, 1])

    betas = calculate_beta_values_glm(volumes, mask, design.xtxxt)
    result = calculate_statistical_maps_glm(volumes, betas, mask, X, design.contrasts, design.ctxtxc)
    residuals = remove_linear_fit(volumes, betas, mask, X)
    t_maps = calculate_statistical_maps_glm_permutation(volumes, betas, mask, X, design.contrasts, design.ctxtxc)

    assert np.all(betas[:, outside] == 0.0)
    assert np.all(residuals[:, outside] == 0.0)
    assert np.all(t_maps[:, outside] == 0.0)
    for output in (result.statistical_maps, result.beta_contrasts, result.residuals):
        assert np.all(output[:, outside] == 0.0)
    assert np.all(result.residual_variances[outside] == 0.0)
    assert np.all(result.residual_variances[~outside] > 0.0)


def test_cpu_tensor_inputs_give_tensor_outputs(rng):
    X = _design()
    volumes, true_betas = _synthetic(rng, X)
    design = glm_design(X, [0, 1, 0])

    betas = calculate_beta_values_glm(torch.from_numpy(volumes), None, torch.from_numpy(design.xtxxt))

    assert isinstance(betas, torch.Tensor)
    np.testing.assert_allclose(betas.numpy(), true_betas, atol=1e-4)


def test_shape_checks(rng):
    X = _design()
    volumes, _ = _synthetic(rng, X)
    design = glm_design(X, [0, 0, 1])
    betas = np.zeros((3,) + SPATIAL, dtype=np.float32)

    with pytest.raises(ValueError, match="Pseudo-inverse"):
        calculate_beta_values_glm(volumes, None, design.xtxxt[:, :-1])
    with pytest.raises(ValueError, match="Design matrix"):
        remove_linear_fit(volumes, betas, None, X[:-1])
    with pytest.raises(ValueError, match="Betas"):
        remove_linear_fit(volumes, betas[:2], None, X)
    with pytest.raises(ValueError, match="Mask shape"):
        calculate_beta_values_glm(volumes, np.ones((2, 3, 3)), design.xtxxt)
