"""Constant-derivative motion models.

Builds filters whose state holds, for each spatial dimension, a value and its
derivatives up to a given order:

- order = 0: constant position,
- order = 1: constant velocity,
- order = 2: constant acceleration, ...

States are grouped by dimension (``x, x', y, y'`` for a 2D constant velocity
model) and only the values (not the derivatives) are measured. The filter is
configured exclusively through the :class:`KalmanFilter` setters.
"""

from __future__ import annotations

import logging
import math

import torch

from .kalman_filter import KalmanFilter

logger = logging.getLogger(__name__)


def create_transition_coefficients(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    """Taylor coefficients ``dt^k / k!`` for k in [0, order].

    Args:
        order (int): Highest derivative order.
        dt (float): Time step.
            Default: 1.0
        approximate (bool): Keep only the first order terms (1 and dt).
            Default: False

    Returns:
        torch.Tensor: Coefficients
            Shape: ``(order + 1,)``
    """
    coefficients = torch.tensor([dt**k / math.factorial(k) for k in range(order + 1)], dtype=torch.float64)
    if approximate:
        coefficients[2:] = 0.0
    return coefficients


def create_process_matrix(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    r"""Transition matrix ``F`` of a single dimension.

    Assuming derivatives above ``order`` are zero:

        x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    For instance with order=2 and dt=0.5::

        [
            [1, 0.5, 0.125],
            [0, 1.0, 0.5],
            [0, 0.0, 1.0],
        ]

    Returns:
        torch.Tensor: Process matrix
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = create_transition_coefficients(order, dt, approximate)
    process_matrix = torch.zeros(order + 1, order + 1, dtype=torch.float64)
    for k, coefficient in enumerate(coefficients):
        process_matrix += torch.diag(coefficient.repeat(order + 1 - k), k)
    return process_matrix


def create_process_noise(
    process_std: float, order: int, dt=1.0, expected_model=False, approximate=False
) -> torch.Tensor:
    r"""Process noise covariance ``Q`` of a single dimension.

    Two models are available:

    - Constant order-th derivative (default): x^{(order)} is constant over a step,
      up to an additive noise w ~ N(0, process_std²).
    - Expected model: the (order+1)-th derivative is a zero-mean white noise
      w ~ N(0, process_std²) over the step.

    The noise is propagated to the lower derivatives through the Taylor expansion,
    which gives Q = process_std² c cᵀ.

    Args:
        process_std (float): Standard deviation of the noise.
        order (int): Highest derivative order in the state.
        dt (float): Time step.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative model.
            Default: False
        approximate (bool): Only the highest derivative receives noise.
            Default: False

    Returns:
        torch.Tensor: Process noise covariance (symmetric, positive semi-definite)
            Shape: ``(order + 1, order + 1)``
    """
    shift = int(expected_model)
    coefficients = torch.tensor(
        [dt**k / math.factorial(k) for k in range(order + 1 + shift)], dtype=torch.float64
    )
    if approximate:
        coefficients[1 + shift :] = 0.0

    # Lowest derivative first: the value receives the highest power of dt
    coefficients = coefficients[shift:].flip(0)
    return process_std**2 * coefficients[:, None] @ coefficients[None]


def constant_kalman_filter(
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=1,
    order=1,
    dt=1.0,
    expected_model=False,
    approximate=False,
    dtype=torch.float64,
    device: torch.device | None = None,
) -> KalmanFilter:
    """Create a constant-derivative Kalman filter.

    The state dimension is ``(order + 1) * dim`` and the measure dimension is ``dim``.
    The filter starts with a zero state and a zero covariance: set an initial uncertainty
    with :meth:`KalmanFilter.set_prediction_covariance` if the first measures should be trusted.

    Args:
        measurement_std (float | torch.Tensor): Standard deviation of the measures.
            Shape: broadcastable to ``(dim,)``
        process_std (float | torch.Tensor): Standard deviation of the process noise
            (see `create_process_noise`). Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent spatial dimensions.
            Default: 1
        order (int): Highest derivative order in the state.
            Default: 1 (constant velocity)
        dt (float): Time step.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative noise model.
            Default: False
        approximate (bool): First order approximation of the model.
            Default: False
        dtype (torch.dtype): Dtype of the filter.
            Default: torch.float64
        device (torch.device | None): Device of the filter.

    Returns:
        KalmanFilter: The configured filter
    """
    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std, dtype=torch.float64), (dim,))
    process_std = torch.broadcast_to(torch.as_tensor(process_std, dtype=torch.float64), (dim,))

    block = order + 1
    kf = KalmanFilter(block * dim, dim, dtype=dtype, device=device)

    process_matrix = create_process_matrix(order, dt, approximate)
    for d in range(dim):
        offset = d * block
        process_noise = create_process_noise(process_std[d].item(), order, dt, expected_model, approximate)

        for i in range(block):
            for j in range(block):
                kf.set_transition_factor(offset + i, offset + j, process_matrix[i, j].item())
                kf.set_process_noise(offset + i, offset + j, process_noise[i, j].item())

        kf.set_measure_weight(d, offset, measurement_std[d].item())

    logger.debug("Built a constant model of order %d in %d dimension(s) (dt=%s)", order, dim, dt)
    return kf
