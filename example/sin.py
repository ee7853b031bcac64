"""Example filtering sinusoidal data with a constant-derivative model"""

import argparse
import logging
import math
from typing import Tuple

import matplotlib.pyplot as plt
import torch

from simple_kf.motion import constant_kalman_filter


def generate_data(n: int, w0: float, noise: float, amplitude: float) -> Tuple[torch.Tensor, torch.Tensor]:
    """Generate sinusoidal data:

    x(t) = A sin(w0t)
    z(t) = x(t) + noise * N(0, 1)

    Args:
        n (int): Size of the sequence to generate
        w0 (float): Angular frequency
        noise (float): Gaussian noise standard deviation
        amplitude (float): Amplitude A of the sinus

    Returns:
        torch.Tensor: x(t) state of the system
            Shape: (T,)
        torch.Tensor: z(t) measure for each state
            Shape: (T,)
    """
    x = amplitude * torch.sin(w0 * torch.arange(n, dtype=torch.float64))
    return x, x + noise * torch.randn_like(x)


def main(order: int, n: int, measurement_std: float, amplitude: float, nans: bool):
    # Two full periods
    w0 = 4 * math.pi / n

    # Taylor bound on the error of an order-k prediction, relaxed empirically
    process_std = max(amplitude * w0 ** (order + 0.5 * (order == 0)) / math.factorial(order) / 5, 1e-7)

    print("Parameters")
    print(f"Kalman order: {order}")
    print(f"Measurement noise: {measurement_std}")
    print(f"Process noise: {process_std}")
    print("Data: z(t) = measurement_noise * N(0, 1) + sin(w0 t)")
    print(f"Using w0={w0} for {n} points")

    kf = constant_kalman_filter(measurement_std, process_std, order=order)

    # Unknown initial state: 0 with a 3 std of the maximum values of each derivative
    for k in range(order + 1):
        kf.set_prediction_covariance(k, k, (amplitude * w0**k * 3) ** 2)

    print(kf)

    x, z = generate_data(n, w0, measurement_std, amplitude)
    if nans:
        z[n // 2 : n // 2 + n // 20] = torch.nan  # Missing measures in the middle

    states = kf.filter(z[:, None], update_first=True)

    print(f"Filtering MSE: {(states.mean[:, 0, 0] - x).pow(2).mean()}")

    plt.rcParams["font.size"] = 20

    plt.figure(figsize=(24, 16))
    plt.plot(x, color="k", label="True trajectory - x = A sin(w0 t)")
    plt.plot(states.mean[:, 0, 0], color="y", label="Filtered trajectory")
    plt.plot(z, "o", color="r", markersize=2.0, label="Observed trajectory - z = x + noise * N(0, 1)")

    mini = states.mean[:, 0, 0] - 3 * states.covariance[:, 0, 0].sqrt()
    maxi = states.mean[:, 0, 0] + 3 * states.covariance[:, 0, 0].sqrt()
    plt.fill_between(torch.arange(n), mini, maxi, color="y", alpha=0.5)

    plt.ylim(-amplitude * 1.4, amplitude * 1.4)
    plt.xlabel("t")
    plt.ylabel("x")
    plt.legend(loc="upper right")

    if order > 0:
        plt.figure(figsize=(24, 16))
        plt.plot(
            amplitude * w0 * torch.cos(w0 * torch.arange(n)), color="k", label="True velocity - v = A w0 cos(w0 t)"
        )
        plt.plot(states.mean[:, 1, 0], color="y", label="Estimated velocity")

        mini = states.mean[:, 1, 0] - 3 * states.covariance[:, 1, 1].sqrt()
        maxi = states.mean[:, 1, 0] + 3 * states.covariance[:, 1, 1].sqrt()
        plt.fill_between(torch.arange(n), mini, maxi, color="y", alpha=0.5)

        plt.ylim(-amplitude * w0 * 1.4, amplitude * w0 * 1.4)
        plt.xlabel("t")
        plt.ylabel("v")
        plt.legend(loc="upper right")

    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Kalman filter example, filtering a noisy sinus data")
    parser.add_argument(
        "--order",
        default=2,
        type=int,
        help="Order of the kalman filter (estimate derivative up to order to predict next pos)",
    )
    parser.add_argument("--noise", default=2.0, type=float, help="Observation noise")
    parser.add_argument("--amplitude", default=20, type=int, help="Amplitude of the signal")
    parser.add_argument("--n", default=500, type=int, help="Number of points")
    parser.add_argument("--nans", action="store_true", help="Some state will not be measured")
    parser.add_argument("--verbose", action="store_true", help="Show the filter debug logs")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    main(args.order, args.n, args.noise, args.amplitude, args.nans)
