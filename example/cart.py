"""Sensor fusion example: a cart driven by a known acceleration command.

The state is [position, velocity]. The command (acceleration) enters through the
input model G, and two sensors are fused: a noisy position sensor and a more
precise but sporadic velocity sensor.
"""

import argparse
import logging

import matplotlib.pyplot as plt
import torch

from simple_kf import KalmanFilter


def simulate(n: int, dt: float, position_std: float, velocity_std: float):
    """Simulate the cart and its sensors.

    Returns:
        torch.Tensor: Acceleration commands. Shape: (T,)
        torch.Tensor: True states. Shape: (T, 2)
        torch.Tensor: Measures (position, velocity), NaN when the velocity sensor is off. Shape: (T, 2)
    """
    commands = torch.sin(torch.arange(n, dtype=torch.float64) * dt / 2)
    states = torch.zeros(n, 2, dtype=torch.float64)
    for t in range(1, n):
        states[t, 0] = states[t - 1, 0] + dt * states[t - 1, 1] + 0.5 * dt**2 * commands[t]
        states[t, 1] = states[t - 1, 1] + dt * commands[t]

    measures = states + torch.randn_like(states) * torch.tensor([position_std, velocity_std], dtype=torch.float64)
    measures[torch.arange(n) % 10 != 0, 1] = torch.nan
    return commands, states, measures


def main(n: int, dt: float, position_std: float, velocity_std: float):
    commands, states, measures = simulate(n, dt, position_std, velocity_std)

    kf = KalmanFilter(2, 2, 1)
    kf.set_transition_factor(0, 1, dt)
    kf.set_input_factor(0, 0, 0.5 * dt**2)
    kf.set_input_factor(1, 0, dt)
    kf.set_measure_weight(0, 0, position_std)
    kf.set_measure_weight(1, 1, velocity_std)
    kf.set_process_noise(0, 0, 1e-4)
    kf.set_process_noise(1, 1, 1e-4)
    kf.set_prediction_covariance(0, 0, 1.0)
    kf.set_prediction_covariance(1, 1, 1.0)
    print(kf)

    estimates = torch.zeros(n, 2, dtype=torch.float64)
    for t in range(n):
        kf.predict([commands[t].item()])
        if torch.isnan(measures[t, 1]):
            # The velocity sensor is off: declare a huge variance so it is ignored
            kf.set_measure_weight(1, 1, 1e6)
            kf.update([measures[t, 0].item(), 0.0], estimates[t])
            kf.set_measure_weight(1, 1, velocity_std)
        else:
            kf.update(measures[t], estimates[t])

    print(f"Raw position MSE: {(measures[:, 0] - states[:, 0]).pow(2).mean()}")
    print(f"Filtered position MSE: {(estimates[:, 0] - states[:, 0]).pow(2).mean()}")

    _, axes = plt.subplots(2, 1, figsize=(24, 16), sharex=True)
    for k, name in enumerate(("position", "velocity")):
        axes[k].plot(states[:, k], color="k", label=f"True {name}")
        axes[k].plot(measures[:, k], "o", color="r", markersize=2.0, label=f"Measured {name}")
        axes[k].plot(estimates[:, k], color="y", label=f"Filtered {name}")
        axes[k].legend(loc="upper right")
    axes[1].set_xlabel("t")

    plt.show()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Fuse position and velocity sensors of a commanded cart")
    parser.add_argument("--n", default=300, type=int, help="Number of time steps")
    parser.add_argument("--dt", default=0.1, type=float, help="Time step")
    parser.add_argument("--position-std", default=0.5, type=float, help="Position sensor noise")
    parser.add_argument("--velocity-std", default=0.05, type=float, help="Velocity sensor noise")
    parser.add_argument("--verbose", action="store_true", help="Show the filter debug logs")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    main(args.n, args.dt, args.position_std, args.velocity_std)
