from __future__ import annotations

import contextlib
import copy
import dataclasses
import itertools
import logging
from typing import MutableSequence, Sequence, overload

import torch

from .matrix import Matrix, MatrixInit

logger = logging.getLogger(__name__)

_REPR_SPLIT_LENGTH = 110


@dataclasses.dataclass
class GaussianState:
    """Gaussian distribution N(mean, covariance).

    Used as a read-only snapshot of the filter estimate (x, P), of its projection
    in measurement space, or of a whole filtered sequence (with a leading time dimension).

    Attributes:
        mean: Mean of the distribution (column vector).
            Shape: ``([T, ]dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``([T, ]dim, dim)``
        precision: Optional inverse of the covariance, computed lazily when needed.
            Shape: ``([T, ]dim, dim)``
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def clone(self) -> GaussianState:
        precision = self.precision.clone() if self.precision is not None else None
        return GaussianState(self.mean.clone(), self.covariance.clone(), precision)

    def __getitem__(self, idx) -> GaussianState:
        """Index along the leading time dimension of a filtered sequence."""
        precision = self.precision[idx] if self.precision is not None else None
        return GaussianState(self.mean[idx], self.covariance[idx], precision)

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert the state to a specific device or dtype."""
        precision = self.precision.to(fmt) if self.precision is not None else None
        return GaussianState(self.mean.to(fmt), self.covariance.to(fmt), precision)

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Squared Mahalanobis distance (x - μ)ᵀ Σ⁻¹ (x - μ) of a point to the distribution.

        Args:
            measure (torch.Tensor): Point to evaluate (column vector).
                Shape: ``(dim, 1)``

        Returns:
            torch.Tensor: Scalar tensor
        """
        diff = measure.to(self.mean.dtype) - self.mean
        if self.precision is None:
            self.precision = self.covariance.inverse()
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Log density of a point: -1/2 (dim log(2π) + log|Σ| + MAHA²)."""
        maha_2 = self.mahalanobis_squared(measure)
        log_det = torch.logdet(self.covariance)
        dim = self.covariance.shape[-1]
        return -0.5 * (dim * torch.log(torch.tensor(2 * torch.pi, dtype=log_det.dtype)) + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        return self.log_likelihood(measure).exp()


class KalmanFilter:
    """Discrete-time linear Kalman filter with fixed dimensions.

    The filter estimates the hidden state of the linear system:

        x_k = F x_{k-1} + G u_k + w_k,   w_k ~ N(0, Q)
        y_k = H x_k             + v_k,   v_k ~ N(0, R)

    where ``x`` is the state (``n`` values), ``y`` the measure (``m`` values) and ``u`` a known
    control input (``p`` values).

    Unlike a stateless formulation, the filter owns every vector and matrix it works with and
    mutates them in place: the caller declares the model through the setters, then alternates
    `predict` and `update`. Model matrices (F, G, H, Q, R) are only modified by the setters, while
    the estimate (x, P) and the scratch buffers (e, S, K) are only modified by the recursion and
    `reset`.

    Tolerance policy:
    - Out-of-range indices given to any setter are ignored.
    - Every call on a disposed filter is a no-op returning None.
    - When the innovation covariance S cannot be inverted, `update` skips the correction and keeps
      the predicted estimate.
    None of these cases raises. They are only reported through DEBUG logs.

    Initial values:
        x, y, u, e, P, S, K: zeros
        F: identity (the state persists)
        G: zeros (inputs have no effect)
        H: zeros (no state is measured)
        Q, R: identity

    Args:
        states_number (int): Dimension ``n`` of the state. Must be >= 1.
        measurements_number (int): Dimension ``m`` of the measure. Must be >= 1.
        inputs_number (int): Dimension ``p`` of the control input. Values < 1 are coerced to 1.
            Default: 0
        dtype (torch.dtype): Dtype of all the internal matrices.
            Default: torch.float64
        device (torch.device | None): Device of all the internal matrices.
    """

    _MATRICES = (
        "_state",
        "_measure",
        "_input",
        "_error",
        "_transition",
        "_input_model",
        "_observer",
        "_prediction_covariance",
        "_process_noise",
        "_innovation_covariance",
        "_measurement_noise",
        "_gain",
    )

    def __init__(
        self,
        states_number: int,
        measurements_number: int,
        inputs_number=0,
        *,
        dtype=torch.float64,
        device: torch.device | None = None,
    ) -> None:
        if states_number < 1 or measurements_number < 1:
            raise ValueError(
                f"A filter requires at least one state and one measure (got {states_number}, {measurements_number})"
            )
        inputs_number = max(inputs_number, 1)

        n, m, p = states_number, measurements_number, inputs_number
        fmt = {"dtype": dtype, "device": device}

        self._disposed = False
        self._dims = (n, m, p)

        self._state = Matrix.create(n, 1, **fmt)  # x
        self._measure = Matrix.create(m, 1, **fmt)  # y
        self._input = Matrix.create(p, 1, **fmt)  # u
        self._error = Matrix.create(n, 1, **fmt)  # e

        self._transition = Matrix.create(n, n, MatrixInit.IDENTITY, **fmt)  # F
        self._input_model = Matrix.create(n, p, **fmt)  # G
        self._observer = Matrix.create(m, n, **fmt)  # H

        self._prediction_covariance = Matrix.create(n, n, **fmt)  # P
        self._process_noise = Matrix.create(n, n, MatrixInit.IDENTITY, **fmt)  # Q
        self._innovation_covariance = Matrix.create(m, m, **fmt)  # S
        self._measurement_noise = Matrix.create(m, m, MatrixInit.IDENTITY, **fmt)  # R
        self._gain = Matrix.create(n, m, **fmt)  # K

        self.reset()

    def _is_disposed(self, operation: str) -> bool:
        if self._disposed:
            logger.debug("Ignoring %s on a disposed filter", operation)
        return self._disposed

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._dims[0]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._dims[1]

    @property
    def input_dim(self) -> int:
        """Dimension of the control input."""
        return self._dims[2]

    @property
    def device(self) -> torch.device:
        return self._state.device

    @property
    def dtype(self) -> torch.dtype:
        return self._state.dtype

    # Read accessors: always copies, internal matrices are never exposed

    @property
    def state(self) -> GaussianState | None:
        """Current estimate as N(x, P)."""
        if self._is_disposed("state"):
            return None
        return GaussianState(self._state.tensor, self._prediction_covariance.tensor)

    @property
    def state_vector(self) -> torch.Tensor | None:
        """State vector x. Shape: ``(n,)``"""
        if self._is_disposed("state_vector"):
            return None
        return self._state.export()

    @property
    def measure_vector(self) -> torch.Tensor | None:
        """Last measures y. Shape: ``(m,)``"""
        if self._is_disposed("measure_vector"):
            return None
        return self._measure.export()

    @property
    def input_vector(self) -> torch.Tensor | None:
        """Last control input u. Shape: ``(p,)``"""
        if self._is_disposed("input_vector"):
            return None
        return self._input.export()

    @property
    def error_vector(self) -> torch.Tensor | None:
        """Scratch residual e: the innovation, then the applied correction after a successful update."""
        if self._is_disposed("error_vector"):
            return None
        return self._error.export()

    @property
    def transition_matrix(self) -> torch.Tensor | None:
        """F. Shape: ``(n, n)``"""
        return None if self._is_disposed("transition_matrix") else self._transition.tensor

    @property
    def input_matrix(self) -> torch.Tensor | None:
        """G. Shape: ``(n, p)``"""
        return None if self._is_disposed("input_matrix") else self._input_model.tensor

    @property
    def observer_matrix(self) -> torch.Tensor | None:
        """H. Shape: ``(m, n)``"""
        return None if self._is_disposed("observer_matrix") else self._observer.tensor

    @property
    def prediction_covariance(self) -> torch.Tensor | None:
        """P. Shape: ``(n, n)``"""
        return None if self._is_disposed("prediction_covariance") else self._prediction_covariance.tensor

    @property
    def process_noise(self) -> torch.Tensor | None:
        """Q. Shape: ``(n, n)``"""
        return None if self._is_disposed("process_noise") else self._process_noise.tensor

    @property
    def innovation_covariance(self) -> torch.Tensor | None:
        """S, holding S⁻¹ after a successful update. Shape: ``(m, m)``"""
        return None if self._is_disposed("innovation_covariance") else self._innovation_covariance.tensor

    @property
    def measurement_noise(self) -> torch.Tensor | None:
        """R. Shape: ``(m, m)``"""
        return None if self._is_disposed("measurement_noise") else self._measurement_noise.tensor

    @property
    def gain(self) -> torch.Tensor | None:
        """Last Kalman gain K. Shape: ``(n, m)``"""
        return None if self._is_disposed("gain") else self._gain.tensor

    # Model configuration

    def set_transition_factor(self, new_state_index: int, old_state_index: int, ratio: float) -> None:
        """Set how much an old state value contributes to a new one: F[new, old] = ratio."""
        if self._is_disposed("set_transition_factor"):
            return
        self._transition.set(new_state_index, old_state_index, ratio)

    def set_input_factor(self, state_index: int, input_index: int, ratio: float) -> None:
        """Set how strongly an input drives a state variable: G[state, input] = ratio."""
        if self._is_disposed("set_input_factor"):
            return
        self._input_model.set(state_index, input_index, ratio)

    def set_measure_weight(self, measure_index: int, state_index: int, max_error: float) -> None:
        """Declare that a measure directly observes a state variable.

        Sets H[measure, state] = 1 and R[measure, measure] = max_error². Calling it again for the
        same measure with another state index adds another 1 in the same row of H.

        Args:
            measure_index (int): Index in the measure vector y.
            state_index (int): Index in the state vector x.
            max_error (float): Standard deviation of the measure.
        """
        if self._is_disposed("set_measure_weight"):
            return
        if not self._observer.in_range(measure_index, state_index):
            logger.debug("Ignoring measure weight for measure %d / state %d", measure_index, state_index)
            return

        self._observer.set(measure_index, state_index, 1.0)
        self._measurement_noise.set(measure_index, measure_index, max_error * max_error)

    def set_process_noise(self, row: int, col: int, variance: float) -> None:
        """Set a single element of the process noise covariance: Q[row, col] = variance."""
        if self._is_disposed("set_process_noise"):
            return
        self._process_noise.set(row, col, variance)

    def set_prediction_covariance(self, row: int, col: int, value: float) -> None:
        """Set a single element of the estimate covariance P (e.g. an initial uncertainty).

        P is part of the estimate: `reset` sets it back to zero.
        """
        if self._is_disposed("set_prediction_covariance"):
            return
        self._prediction_covariance.set(row, col, value)

    def set_measure(self, measure_index: int, value: float) -> None:
        """Overwrite one value of the measure vector y."""
        if self._is_disposed("set_measure"):
            return
        self._measure.set(measure_index, 0, value)

    def set_input(self, input_index: int, value: float) -> None:
        """Overwrite one value of the control input u."""
        if self._is_disposed("set_input"):
            return
        self._input.set(input_index, 0, value)

    # Recursion

    def _check_out(self, out: MutableSequence[float] | torch.Tensor | None) -> None:
        # Rejected before any change to the estimate
        if out is None:
            return

        size = out.numel() if isinstance(out, torch.Tensor) else len(out)
        if size != self.state_dim:
            raise ValueError(f"Expected a buffer of {self.state_dim} elements, got {size}")

    def _output_state(
        self, out: MutableSequence[float] | torch.Tensor | None
    ) -> MutableSequence[float] | torch.Tensor:
        return self._state.export(out)

    def predict(
        self,
        inputs: Sequence[float] | torch.Tensor | None = None,
        out: MutableSequence[float] | torch.Tensor | None = None,
    ) -> MutableSequence[float] | torch.Tensor | None:
        """Project the estimate forward in time.

            x = F x + G u
            P = F P Fᵀ + Q

        Args:
            inputs (Sequence[float] | torch.Tensor | None): Optional new control input, replacing u entirely.
                Shape: ``(p,)``
            out (MutableSequence[float] | torch.Tensor | None): Optional buffer of n elements receiving x.

        Returns:
            MutableSequence[float] | torch.Tensor | None: Copy of the predicted x (``out`` if given).
                None if the filter is disposed.
        """
        if self._is_disposed("predict"):
            return None

        self._check_out(out)
        if inputs is not None:
            self._input.load(inputs)

        # x = F*x + G*u
        Matrix.add(
            Matrix.multiply(self._transition, self._state),
            1.0,
            Matrix.multiply(self._input_model, self._input),
            1.0,
            out=self._state,
        )

        # P = F*P*F' + Q
        Matrix.multiply(self._transition, self._prediction_covariance, out=self._prediction_covariance)
        Matrix.multiply(
            self._prediction_covariance, self._transition, transpose_b=True, out=self._prediction_covariance
        )
        Matrix.add(self._prediction_covariance, 1.0, self._process_noise, 1.0, out=self._prediction_covariance)

        return self._output_state(out)

    def update(
        self,
        measures: Sequence[float] | torch.Tensor | None = None,
        out: MutableSequence[float] | torch.Tensor | None = None,
    ) -> MutableSequence[float] | torch.Tensor | None:
        """Correct the estimate with the measure vector y.

            e = y - H x
            S = H P Hᵀ + R
            K = P Hᵀ S⁻¹
            x = x + K e
            P = P - K H P

        If S is singular, the correction is skipped: x and P keep their predicted values.

        Args:
            measures (Sequence[float] | torch.Tensor | None): Optional new measures, replacing y entirely.
                Shape: ``(m,)``
            out (MutableSequence[float] | torch.Tensor | None): Optional buffer of n elements receiving x.

        Returns:
            MutableSequence[float] | torch.Tensor | None: Copy of the (possibly uncorrected) x (``out`` if given).
                None if the filter is disposed.
        """
        if self._is_disposed("update"):
            return None

        self._check_out(out)
        if measures is not None:
            self._measure.load(measures)

        # e = y - H*x
        Matrix.multiply(self._observer, self._state, out=self._error)  # e: m x 1
        Matrix.add(self._measure, 1.0, self._error, -1.0, out=self._error)

        # S = H*P*H' + R
        Matrix.multiply(self._observer, self._prediction_covariance, out=self._innovation_covariance)  # S: m x n
        Matrix.multiply(
            self._innovation_covariance, self._observer, transpose_b=True, out=self._innovation_covariance
        )  # S: m x m
        Matrix.add(self._innovation_covariance, 1.0, self._measurement_noise, 1.0, out=self._innovation_covariance)

        # K = P*H' * S^-1
        Matrix.multiply(self._prediction_covariance, self._observer, transpose_b=True, out=self._gain)
        if Matrix.invert(self._innovation_covariance, out=self._innovation_covariance) is None:
            logger.debug("Singular innovation covariance: skipping the correction step")
            return self._output_state(out)

        Matrix.multiply(self._gain, self._innovation_covariance, out=self._gain)

        # x = x + K*e
        Matrix.multiply(self._gain, self._error, out=self._error)  # e: n x 1
        Matrix.add(self._state, 1.0, self._error, 1.0, out=self._state)

        # P = P - K*H*P (K keeps the gain)
        correction = Matrix.multiply(Matrix.multiply(self._gain, self._observer), self._prediction_covariance)
        Matrix.add(self._prediction_covariance, 1.0, correction, -1.0, out=self._prediction_covariance)

        return self._output_state(out)

    def project(self) -> GaussianState | None:
        """Expected measure distribution N(H x, H P Hᵀ + R) for the current estimate.

        It does not modify the filter. The precision is precomputed when S is invertible,
        which allows to gate measures (Mahalanobis distance) before calling `update`.

        Returns:
            GaussianState | None: Projection in measurement space.
                Shape (mean): ``(m, 1)``
                Shape (covariance): ``(m, m)``
        """
        if self._is_disposed("project"):
            return None

        mean = Matrix.multiply(self._observer, self._state)
        covariance = Matrix.multiply(
            Matrix.multiply(self._observer, self._prediction_covariance), self._observer, transpose_b=True
        )
        Matrix.add(covariance, 1.0, self._measurement_noise, 1.0, out=covariance)
        precision = Matrix.invert(covariance)

        return GaussianState(mean.data, covariance.data, precision.data if precision is not None else None)

    def filter(
        self,
        measures: torch.Tensor | Sequence[Sequence[float]],
        inputs: torch.Tensor | Sequence[Sequence[float]] | None = None,
        update_first=False,
    ) -> GaussianState | None:
        """Run the predict/update loop over a sequence of measures.

        Measures containing NaN values are not used: the update is skipped at this timestep
        and the predicted estimate is kept.

        Args:
            measures (torch.Tensor | Sequence[Sequence[float]]): Measures over time.
                Shape: ``(T, m)`` (or ``(T, m, 1)``)
            inputs (torch.Tensor | Sequence[Sequence[float]] | None): Optional control inputs over time,
                given to `predict`. Shape: ``(T, p)``
            update_first (bool): If True, skip the prediction on the first timestep, such that
                the current estimate is the prior of the first measure.
                Default: False

        Returns:
            GaussianState | None: Posterior estimate at every timestep.
                Shape (mean): ``(T, n, 1)``
                Shape (covariance): ``(T, n, n)``
        """
        if self._is_disposed("filter"):
            return None

        measures = _as_sequence(measures, self.measure_dim, "measures", self.dtype, self.device)
        if inputs is not None:
            inputs = _as_sequence(inputs, self.input_dim, "inputs", self.dtype, self.device)
            if inputs.shape[0] != measures.shape[0]:
                raise ValueError(f"Expected {measures.shape[0]} inputs (one per measure), got {inputs.shape[0]}")

        means = torch.empty(measures.shape[0], self.state_dim, 1, dtype=self.dtype, device=self.device)
        covariances = torch.empty(
            measures.shape[0], self.state_dim, self.state_dim, dtype=self.dtype, device=self.device
        )

        for t, measure in enumerate(measures):
            if t or not update_first:
                self.predict(inputs[t] if inputs is not None else None)

            if torch.isnan(measure).any():
                logger.debug("NaN measure at t=%d: keeping the prediction", t)
            else:
                self.update(measure)

            means[t] = self._state.data
            covariances[t] = self._prediction_covariance.data

        return GaussianState(means, covariances)

    def reset(self) -> None:
        """Clear the estimate and the scratch buffers (u, x, e, K, P, S).

        The model (F, G, H, Q, R) is kept, so that estimation can restart without declaring it again.
        """
        if self._is_disposed("reset"):
            return

        self._input.clear()
        self._state.clear()
        self._error.clear()
        self._gain.clear()
        self._prediction_covariance.clear()
        self._innovation_covariance.clear()

    def dispose(self) -> None:
        """Release all the matrices. Any later call on this filter is a no-op."""
        if self._is_disposed("dispose"):
            return

        for name in self._MATRICES:
            setattr(self, name, None)
        self._disposed = True

    @overload
    def to(self, dtype: torch.dtype) -> KalmanFilter | None: ...

    @overload
    def to(self, device: torch.device) -> KalmanFilter | None: ...

    def to(self, fmt):
        """Convert a Kalman filter to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            KalmanFilter | None: A converted copy, with the same model and estimate.
                None if the filter is disposed.
        """
        if self._is_disposed("to"):
            return None

        converted = KalmanFilter(
            self.state_dim, self.measure_dim, self.input_dim, dtype=self.dtype, device=self.device
        )
        for name in self._MATRICES:
            setattr(converted, name, getattr(self, name).to(fmt))
        return converted

    def __repr__(self) -> str:
        """Convert the Kalman filter model into a readable string."""
        if self._disposed:
            return "Kalman Filter (disposed)"

        header = (
            f"Kalman Filter (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim}, "
            f"Input dimension: {self.input_dim})"
        )
        blocks = [
            header,
            _format_block("Process", "F", self._transition, "Q", self._process_noise),
            _format_block("Input", "G", self._input_model),
            _format_block("Measurement", "H", self._observer, "R", self._measurement_noise),
        ]

        n_char = max(len(line) for line in "\n".join(blocks).split("\n"))
        return ("\n" + "-" * n_char + "\n").join(blocks)


def _as_sequence(
    values: torch.Tensor | Sequence[Sequence[float]], width: int, name: str, dtype: torch.dtype, device
) -> torch.Tensor:
    """Convert a sequence of vectors into a ``(T, width)`` tensor."""
    values = torch.as_tensor(values, dtype=dtype, device=device)
    if values.dim() == 0 or values.numel() != values.shape[0] * width:
        raise ValueError(f"Expected {name} of shape (T, {width}), got {tuple(values.shape)}")
    return values.reshape(values.shape[0], width)


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily."""
        old_printoptions = copy.copy(torch._tensor_str.PRINT_OPTS)  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


def _tensor_lines(matrix: Matrix) -> list[str]:
    # Displayed in the default dtype so that torch does not append the dtype to the repr
    with printoptions(profile="short", sci_mode=False, linewidth=80):
        return str(matrix.data.detach().cpu().to(torch.get_default_dtype())).split("\n")


def _format_block(
    title: str, name: str, matrix: Matrix, other_name: str | None = None, other: Matrix | None = None
) -> str:
    head = f"{title}: {name} = "
    indent = " " * len(head)
    lines = _tensor_lines(matrix)

    if other is None:
        return "\n".join(head + line if i == 0 else indent + line for i, line in enumerate(lines))

    other_lines = _tensor_lines(other)
    width = max(len(line) for line in lines)
    other_width = max(len(line) for line in other_lines)

    if width + other_width <= _REPR_SPLIT_LENGTH:  # Single line
        sep = f"  &  {other_name} = "
        rows = itertools.zip_longest(lines, other_lines, fillvalue="")
        return "\n".join(
            (head if i == 0 else indent) + left.ljust(width) + (sep if i == 0 else " " * len(sep)) + right
            for i, (left, right) in enumerate(rows)
        )

    # Two lines
    other_head = f"{other_name} = ".rjust(len(head))
    first = [head + line if i == 0 else indent + line for i, line in enumerate(lines)]
    second = [other_head + line if i == 0 else indent + line for i, line in enumerate(other_lines)]
    return "\n".join([*first, "", *second])
