import numpy as np
import pytest

from fmrikernels import (
    apply_whitening_ar4,
    calculate_beta_values_glm,
    calculate_statistical_maps_glm_permutation,
    estimate_ar4_models,
    generate_permutation_vectors,
    glm_design,
    permutation_null_distribution,
    permutation_threshold,
)


def test_permutation_vectors():
    permutations = generate_permutation_vectors(10, 5, seed=7)

    assert permutations.shape == (5, 10)
    assert permutations.dtype == np.int32
    np.testing.assert_array_equal(permutations[0], np.arange(10))
    for row in permutations:
        np.testing.assert_array_equal(np.sort(row), np.arange(10))
    np.testing.assert_array_equal(permutations, generate_permutation_vectors(10, 5, seed=7))

    with pytest.raises(ValueError):
        generate_permutation_vectors(0, 3)


def test_null_distribution_starts_with_unpermuted_statistic(rng):
    n_timepoints = 14
    t = np.arange(n_timepoints)
    X = np.column_stack([np.ones(n_timepoints), (t // 3) % 2])
    volumes = (rng.standard_normal((n_timepoints, 1, 2, 3)) + 2.0 * X[:, 1, None, None, None]).astype(np.float32)
    mask = np.ones((1, 2, 3), dtype=np.float32)
    mask[0, 1, 2] = 0.0

    coefficients = estimate_ar4_models(volumes, mask)
    whitened = apply_whitening_ar4(volumes, coefficients, mask)
    permutations = generate_permutation_vectors(n_timepoints, 3, seed=0)

    null = permutation_null_distribution(whitened, coefficients, mask, X, [[0, 1]], permutations)

    assert null.shape == (3, 1)
    # The identity permutation re-colours the whitened data back to the original series
    design = glm_design(X, [[0, 1]])
    betas = calculate_beta_values_glm(volumes, mask, design.xtxxt)
    t_maps = calculate_statistical_maps_glm_permutation(volumes, betas, mask, design.X, design.contrasts, design.ctxtxc)
    assert null[0, 0] == pytest.approx(t_maps[0][mask != 0].max(), rel=1e-3)


def test_permutation_threshold():
    null = np.stack([np.arange(100, dtype=np.float32), 2.0 * np.arange(100, dtype=np.float32)], axis=1)

    thresholds = permutation_threshold(null, alpha=0.05)

    np.testing.assert_allclose(thresholds, np.quantile(null, 0.95, axis=0), rtol=1e-6)
    assert permutation_threshold(np.arange(100), alpha=0.1).shape == (1,)
    with pytest.raises(ValueError):
        permutation_threshold(null, alpha=1.5)


def test_null_distribution_ignores_voxels_outside_mask(rng):
    n_timepoints = 14
    t = np.arange(n_timepoints)
    X = np.column_stack([np.ones(n_timepoints), (t // 3) % 2])
    # Strong negative effect: every t-value inside the mask is well below zero
    volumes = (rng.standard_normal((n_timepoints, 1, 2, 3)) - 5.0 * X[:, 1, None, None, None]).astype(np.float32)
    mask = np.ones((1, 2, 3), dtype=np.float32)
    mask[0, 0, 0] = 0.0

    coefficients = estimate_ar4_models(volumes, mask)
    whitened = apply_whitening_ar4(volumes, coefficients, mask)
    identity = np.arange(n_timepoints, dtype=np.int32)[np.newaxis]

    null = permutation_null_distribution(whitened, coefficients, mask, X, [[0, 1]], identity)

    design = glm_design(X, [[0, 1]])
    betas = calculate_beta_values_glm(volumes, mask, design.xtxxt)
    t_maps = calculate_statistical_maps_glm_permutation(volumes, betas, mask, design.X, design.contrasts, design.ctxtxc)
    assert null[0, 0] < 0.0
    assert null[0, 0] == pytest.approx(t_maps[0][mask != 0].max(), rel=1e-3)

    with pytest.raises(ValueError, match="no voxels inside"):
        permutation_null_distribution(whitened, coefficients, np.zeros_like(mask), X, [[0, 1]], identity)
