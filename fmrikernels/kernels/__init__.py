"""CUDA kernels for fMRI volume processing.

This subpackage contains the device code: tiled separable and non-separable
convolution, phase-based registration reductions, AR(4) whitening and GLM
statistics.
"""

from .separable import (
    AXIS_X,
    AXIS_Y,
    AXIS_Z,
    _separable_convolution_kernel,
    separable_launch_config,
)

from .nonseparable import (
    _memset_kernel,
    _nonseparable_convolution_kernel,
    _zero_fill,
    nonseparable_launch_config,
)

from .registration import (
    _phase_differences_and_certainties_kernel,
    _phase_gradients_kernel,
    _a_matrix_h_vector_2d_kernel,
    _reduce_2d_to_1d_kernel,
    _a_matrix_kernel,
    _h_vector_kernel,
    _interpolate_volume_trilinear_kernel,
)

from .whitening import (
    _estimate_ar4_kernel,
    _apply_whitening_ar4_kernel,
    _generate_permuted_volumes_ar4_kernel,
)

from .statistics import (
    _calculate_beta_values_glm_kernel,
    _calculate_statistical_maps_glm_kernel,
    _calculate_statistical_maps_glm_permutation_kernel,
    _remove_linear_fit_kernel,
)

__all__ = [
    'AXIS_X',
    'AXIS_Y',
    'AXIS_Z',
    '_separable_convolution_kernel',
    'separable_launch_config',
    '_memset_kernel',
    '_nonseparable_convolution_kernel',
    '_zero_fill',
    'nonseparable_launch_config',
    '_phase_differences_and_certainties_kernel',
    '_phase_gradients_kernel',
    '_a_matrix_h_vector_2d_kernel',
    '_reduce_2d_to_1d_kernel',
    '_a_matrix_kernel',
    '_h_vector_kernel',
    '_interpolate_volume_trilinear_kernel',
    '_estimate_ar4_kernel',
    '_apply_whitening_ar4_kernel',
    '_generate_permuted_volumes_ar4_kernel',
    '_calculate_beta_values_glm_kernel',
    '_calculate_statistical_maps_glm_kernel',
    '_calculate_statistical_maps_glm_permutation_kernel',
    '_remove_linear_fit_kernel',
]
