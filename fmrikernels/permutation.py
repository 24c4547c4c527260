"""Nonparametric single-subject inference by permuting whitened residuals.

A permutation test shuffles the whitened time series of every voxel, re-colours
it with the voxel's AR(4) model, refits the GLM and records the largest
t-value in the volume. The resulting maximum-statistic null distribution gives
a family-wise error corrected threshold.
"""

import logging

import numpy as np

from .glm import calculate_beta_values_glm, calculate_statistical_maps_glm_permutation, glm_design
from .utils import _as_numpy
from .whitening import generate_permuted_volumes_ar4

logger = logging.getLogger(__name__)


def generate_permutation_vectors(n_timepoints, n_permutations, seed=None):
    """Random permutations of the time axis.

    Parameters
    ----------
    n_timepoints : int
        Length T of each permutation.
    n_permutations : int
        Number of permutations P, including the identity.
    seed : int or numpy.random.Generator, optional
        Seed for `numpy.random.default_rng`.

    Returns
    -------
    numpy.ndarray
        int32 array of shape (P, T); row 0 is the identity, which yields the
        unpermuted statistic.
    """
    if n_timepoints < 1 or n_permutations < 1:
        raise ValueError("n_timepoints and n_permutations must be positive")
    rng = np.random.default_rng(seed)
    permutations = np.empty((n_permutations, n_timepoints), dtype=np.int32)
    permutations[0] = np.arange(n_timepoints)
    for p in range(1, n_permutations):
        permutations[p] = rng.permutation(n_timepoints)
    return permutations


def permutation_null_distribution(whitened, ar_coefficients, mask, X, contrasts, permutations):
    """Maximum t-value per contrast for each permutation.

    Parameters
    ----------
    whitened : numpy.ndarray or torch.Tensor
        Whitened time series of shape (T, D, H, W).
    ar_coefficients : numpy.ndarray or torch.Tensor
        (4, D, H, W) AR(4) coefficients used for re-colouring.
    mask : array_like or None
        (D, H, W) mask restricting the test. The maximum is taken over voxels
        inside the mask only.
    X : array_like
        Design matrix of shape (T, R).
    contrasts : array_like
        (C, R) contrast vectors.
    permutations : array_like
        (P, T) permutations, e.g. from `generate_permutation_vectors`.

    Returns
    -------
    numpy.ndarray
        float32 array of shape (P, C).
    """
    design = glm_design(X, contrasts)
    permutations = np.atleast_2d(_as_numpy(permutations, np.int32))
    inside = None
    if mask is not None:
        inside = _as_numpy(mask) != 0
        if not inside.any():
            raise ValueError("mask has no voxels inside")
    n_permutations = permutations.shape[0]
    n_contrasts = design.contrasts.shape[0]

    null_distribution = np.empty((n_permutations, n_contrasts), dtype=np.float32)
    for p in range(n_permutations):
        surrogate = generate_permuted_volumes_ar4(whitened, ar_coefficients, permutations[p], mask)
        betas = calculate_beta_values_glm(surrogate, mask, design.xtxxt)
        statistical_maps = calculate_statistical_maps_glm_permutation(
            surrogate, betas, mask, design.X, design.contrasts, design.ctxtxc
        )
        statistical_maps = _as_numpy(statistical_maps)
        # Voxels outside the mask hold exact zeros and must not enter the maximum
        if inside is not None:
            statistical_maps = statistical_maps[:, inside]
        null_distribution[p] = statistical_maps.reshape(n_contrasts, -1).max(axis=1)
        logger.debug("Permutation %d/%d: max t = %s", p + 1, n_permutations, null_distribution[p])
    return null_distribution


def permutation_threshold(null_distribution, alpha=0.05):
    """Per-contrast ``1 - alpha`` quantile of a maximum-statistic null distribution.

    Returns
    -------
    numpy.ndarray
        (C,) thresholds; t-values above them are significant at level
        `alpha`, corrected for the family-wise error rate.
    """
    if not 0.0 < alpha < 1.0:
        raise ValueError(f"alpha must be in (0, 1), got {alpha}")
    null_distribution = np.asarray(null_distribution, dtype=np.float64)
    if null_distribution.ndim == 1:
        null_distribution = null_distribution[:, np.newaxis]
    return np.quantile(null_distribution, 1.0 - alpha, axis=0).astype(np.float32)
