import numpy as np

from fmrikernels import (
    apply_whitening_ar4,
    calculate_beta_values_glm,
    calculate_statistical_maps_glm,
    estimate_ar4_models,
    gaussian_smoothing_filter,
    generate_permutation_vectors,
    glm_design,
    permutation_null_distribution,
    permutation_threshold,
    remove_linear_fit,
    separable_convolution_3d,
)


def simulate_fmri(n_timepoints, shape, rng):
    """Block-design activation in a cube plus AR(1) noise and a linear drift."""
    t = np.arange(n_timepoints)
    boxcar = ((t // 10) % 2).astype(np.float32)
    activation = np.zeros(shape, dtype=np.float32)
    activation[4:8, 6:12, 6:12] = 1.5

    noise = np.zeros((n_timepoints,) + shape, dtype=np.float32)
    noise[0] = rng.standard_normal(shape)
    for i in range(1, n_timepoints):
        noise[i] = 0.4 * noise[i - 1] + rng.standard_normal(shape)

    drift = 0.02 * t[:, None, None, None]
    volumes = 100.0 + boxcar[:, None, None, None] * activation + drift + noise
    return volumes.astype(np.float32), boxcar


def main():
    rng = np.random.default_rng(42)
    n_timepoints, shape = 80, (12, 18, 18)
    volumes, boxcar = simulate_fmri(n_timepoints, shape, rng)
    mask = np.ones(shape, dtype=np.float32)

    taps = gaussian_smoothing_filter(fwhm=5.0, voxel_size=3.0)
    smoothed = separable_convolution_3d(volumes, taps)

    # Remove mean and drift before estimating the noise model
    t = np.arange(n_timepoints) / n_timepoints
    drift_design = glm_design(np.column_stack([np.ones(n_timepoints), t]), [[1, 0]])
    drift_betas = calculate_beta_values_glm(smoothed, mask, drift_design.xtxxt)
    detrended = remove_linear_fit(smoothed, drift_betas, mask, drift_design.X)

    ar_coefficients = estimate_ar4_models(detrended, mask)
    whitened = apply_whitening_ar4(detrended, ar_coefficients, mask)

    X = np.column_stack([np.ones(n_timepoints), boxcar])
    design = glm_design(X, [[0, 1]])
    betas = calculate_beta_values_glm(detrended, mask, design.xtxxt)
    result = calculate_statistical_maps_glm(detrended, betas, mask, design.X, design.contrasts, design.ctxtxc)

    permutations = generate_permutation_vectors(n_timepoints, 200, seed=1)
    null = permutation_null_distribution(whitened, ar_coefficients, mask, X, design.contrasts, permutations)
    threshold = permutation_threshold(null, alpha=0.05)[0]

    t_map = result.statistical_maps[0]
    print("Max t:", t_map.max())
    print("FWE-corrected threshold:", threshold)
    print("Significant voxels:", int((t_map > threshold).sum()))


if __name__ == "__main__":
    main()
