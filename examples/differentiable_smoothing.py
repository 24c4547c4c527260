import torch

from fmrikernels import SeparableConvolutionFunction, gaussian_smoothing_filter


def main():
    device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')
    D, H, W = 30, 64, 64

    target = torch.zeros((D, H, W), device=device)
    target[10:20, 20:44, 20:44] = 1.0
    taps = gaussian_smoothing_filter(fwhm=6.0, voxel_size=3.0)
    blurred = SeparableConvolutionFunction.apply(target, taps)

    # Deconvolve by gradient descent through the smoothing operator
    estimate = torch.zeros((D, H, W), device=device, requires_grad=True)
    optimizer = torch.optim.Adam([estimate], lr=0.05)
    for step in range(200):
        optimizer.zero_grad()
        loss = torch.mean((SeparableConvolutionFunction.apply(estimate, taps) - blurred) ** 2)
        loss.backward()
        optimizer.step()
        if step % 50 == 0:
            print(f"Step {step}: loss = {loss.item():.6f}")

    error = torch.mean((estimate.detach() - target) ** 2).item()
    print("Mean squared error to the sharp volume:", error)


if __name__ == "__main__":
    main()
