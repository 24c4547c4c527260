# fmrikernels/__init__.py
"""fmrikernels - GPU kernels for fMRI volume processing.

Tiled separable and non-separable 3D convolution, phase-based affine
registration, AR(4) whitening and GLM statistics for functional MRI data,
built with Numba CUDA and interoperable with NumPy and PyTorch.
"""

from .constants import (
    SeparableTiling,
    NonseparableTiling,
    ROWS_TILING,
    COLUMNS_TILING,
    RODS_TILING,
    DEFAULT_NONSEPARABLE_TILING,
    WIDE_NONSEPARABLE_TILING,
)

from .convolution import (
    separable_convolution_rows,
    separable_convolution_columns,
    separable_convolution_rods,
    separable_convolution_3d,
    gaussian_smoothing_filter,
    FilterResponseAccumulator,
    nonseparable_convolution_3d,
)

from .registration import (
    phase_differences_and_certainties,
    phase_gradients,
    affine_registration_system,
    solve_affine_parameters,
    interpolate_volume_trilinear,
)

from .whitening import (
    estimate_ar4_models,
    apply_whitening_ar4,
    generate_permuted_volumes_ar4,
)

from .glm import (
    GLMDesign,
    GLMResult,
    glm_design,
    calculate_beta_values_glm,
    calculate_statistical_maps_glm,
    remove_linear_fit,
    calculate_statistical_maps_glm_permutation,
)

from .permutation import (
    generate_permutation_vectors,
    permutation_null_distribution,
    permutation_threshold,
)

from .autograd import SeparableConvolutionFunction

__version__ = '0.1.0'

__all__ = [
    'SeparableTiling',
    'NonseparableTiling',
    'ROWS_TILING',
    'COLUMNS_TILING',
    'RODS_TILING',
    'DEFAULT_NONSEPARABLE_TILING',
    'WIDE_NONSEPARABLE_TILING',
    'separable_convolution_rows',
    'separable_convolution_columns',
    'separable_convolution_rods',
    'separable_convolution_3d',
    'gaussian_smoothing_filter',
    'FilterResponseAccumulator',
    'nonseparable_convolution_3d',
    'phase_differences_and_certainties',
    'phase_gradients',
    'affine_registration_system',
    'solve_affine_parameters',
    'interpolate_volume_trilinear',
    'estimate_ar4_models',
    'apply_whitening_ar4',
    'generate_permuted_volumes_ar4',
    'GLMDesign',
    'GLMResult',
    'glm_design',
    'calculate_beta_values_glm',
    'calculate_statistical_maps_glm',
    'remove_linear_fit',
    'calculate_statistical_maps_glm_permutation',
    'generate_permutation_vectors',
    'permutation_null_distribution',
    'permutation_threshold',
    'SeparableConvolutionFunction',
]
