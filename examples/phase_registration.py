import numpy as np
import matplotlib.pyplot as plt

from fmrikernels import (
    affine_registration_system,
    gaussian_smoothing_filter,
    interpolate_volume_trilinear,
    nonseparable_convolution_3d,
    phase_differences_and_certainties,
    phase_gradients,
    separable_convolution_3d,
    solve_affine_parameters,
)


def quadrature_filters(size=7, frequency=np.pi / 4, sigma=1.5):
    """Complex Gabor-like filters tuned to the x, y and z directions."""
    r = np.arange(size) - (size - 1) / 2
    z, y, x = np.meshgrid(r, r, r, indexing="ij")
    envelope = np.exp(-(x ** 2 + y ** 2 + z ** 2) / (2 * sigma ** 2))
    filters = []
    for u in (x, y, z):
        f = envelope * np.exp(1j * frequency * u)
        # Remove the DC response so constant regions give no phase
        f -= envelope * f.sum() / envelope.sum()
        filters.append(f)
    return np.stack(filters).astype(np.complex64)


def main():
    D, H, W = 24, 48, 48
    rng = np.random.default_rng(0)
    taps = gaussian_smoothing_filter(fwhm=4.0)
    reference = separable_convolution_3d(rng.standard_normal((D, H, W)).astype(np.float32), taps)

    true_parameters = np.zeros(12, dtype=np.float32)
    true_parameters[:3] = (1.3, -0.8, 0.5)
    deformed = interpolate_volume_trilinear(reference, true_parameters)

    filters = quadrature_filters()
    q_reference = nonseparable_convolution_3d(reference, filters)

    parameters = np.zeros(12, dtype=np.float32)
    aligned = deformed
    for iteration in range(5):
        q_aligned = nonseparable_convolution_3d(aligned, filters)
        differences, gradients, certainties = [], [], []
        for axis, name in enumerate("xyz"):
            d, c = phase_differences_and_certainties(q_reference[axis], q_aligned[axis])
            differences.append(d)
            certainties.append(c)
            gradients.append(phase_gradients(q_reference[axis], q_aligned[axis], name))
        A, h = affine_registration_system(differences, gradients, certainties)
        # Small motions compose approximately by addition
        parameters += solve_affine_parameters(A, h)
        aligned = interpolate_volume_trilinear(deformed, parameters)
        print(f"Iteration {iteration}: translation = {parameters[:3]}")

    print("Applied translation:", true_parameters[:3])
    print("Recovered translation (inverse motion):", parameters[:3])

    plt.figure(figsize=(12, 4))
    for i, (image, title) in enumerate([(reference, "Reference"), (deformed, "Deformed"), (aligned, "Aligned")]):
        plt.subplot(1, 3, i + 1)
        plt.imshow(image[D // 2], cmap="gray")
        plt.title(title)
        plt.axis("off")
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
