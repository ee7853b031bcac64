import math

import pytest
import torch

from simple_kf import GaussianState, KalmanFilter


def _model(kf: KalmanFilter) -> dict[str, torch.Tensor]:
    return {
        "F": kf.transition_matrix,
        "G": kf.input_matrix,
        "H": kf.observer_matrix,
        "Q": kf.process_noise,
        "R": kf.measurement_noise,
    }


def _all_matrices(kf: KalmanFilter) -> dict[str, torch.Tensor]:
    return {
        **_model(kf),
        "x": kf.state_vector,
        "y": kf.measure_vector,
        "u": kf.input_vector,
        "e": kf.error_vector,
        "P": kf.prediction_covariance,
        "S": kf.innovation_covariance,
        "K": kf.gain,
    }


def constant_velocity_filter() -> KalmanFilter:
    # x = [position, velocity], u = [acceleration], y = [position]
    kf = KalmanFilter(2, 1, 1)
    kf.set_transition_factor(0, 1, 1.0)
    kf.set_input_factor(0, 0, 0.5)
    kf.set_input_factor(1, 0, 1.0)
    kf.set_measure_weight(0, 0, 0.5)
    kf.set_process_noise(0, 0, 0.01)
    kf.set_process_noise(1, 1, 0.01)
    kf.set_prediction_covariance(0, 0, 10.0)
    kf.set_prediction_covariance(1, 1, 10.0)
    return kf


def test_creation_defaults():
    kf = KalmanFilter(3, 2, 4)

    assert (kf.state_dim, kf.measure_dim, kf.input_dim) == (3, 2, 4)
    assert kf.dtype == torch.float64
    assert torch.equal(kf.transition_matrix, torch.eye(3, dtype=torch.float64))
    assert torch.equal(kf.process_noise, torch.eye(3, dtype=torch.float64))
    assert torch.equal(kf.measurement_noise, torch.eye(2, dtype=torch.float64))
    assert kf.input_matrix.shape == (3, 4)
    assert kf.observer_matrix.shape == (2, 3)
    assert kf.gain.shape == (3, 2)
    assert kf.innovation_covariance.shape == (2, 2)

    for name in ("G", "H", "x", "y", "u", "e", "P", "S", "K"):
        assert not _all_matrices(kf)[name].any(), name


def test_creation_without_inputs_allocates_one_input():
    kf = KalmanFilter(2, 1)
    kf_negative = KalmanFilter(2, 1, -3)

    assert kf.input_dim == 1
    assert kf_negative.input_dim == 1
    assert kf.input_matrix.shape == (2, 1)


def test_creation_requires_states_and_measures():
    with pytest.raises(ValueError):
        KalmanFilter(0, 1)
    with pytest.raises(ValueError):
        KalmanFilter(2, 0)


def test_setters():
    kf = KalmanFilter(3, 2, 2)

    kf.set_transition_factor(0, 2, 0.5)
    kf.set_input_factor(1, 1, -2.0)
    kf.set_measure_weight(1, 2, 0.3)
    kf.set_measure_weight(1, 0, 0.2)  # Second observed state for the same measure
    kf.set_measure(0, 4.0)
    kf.set_input(1, 7.0)

    assert kf.transition_matrix[0, 2] == 0.5
    assert kf.input_matrix[1, 1] == -2.0
    assert torch.equal(kf.observer_matrix, torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 1.0]], dtype=torch.float64))
    assert kf.measurement_noise[1, 1].item() == pytest.approx(0.04)
    assert kf.measurement_noise[0, 0] == 1.0
    assert torch.equal(kf.measure_vector, torch.tensor([4.0, 0.0], dtype=torch.float64))
    assert torch.equal(kf.input_vector, torch.tensor([0.0, 7.0], dtype=torch.float64))


def test_out_of_range_setters_leave_every_matrix_unchanged():
    kf = constant_velocity_filter()
    kf.predict([1.0])
    kf.update([0.3])
    before = _all_matrices(kf)

    kf.set_transition_factor(2, 0, 5.0)
    kf.set_transition_factor(0, 2, 5.0)
    kf.set_transition_factor(-1, 0, 5.0)
    kf.set_input_factor(2, 0, 5.0)
    kf.set_input_factor(0, 1, 5.0)
    kf.set_measure_weight(1, 0, 5.0)
    kf.set_measure_weight(0, 2, 5.0)  # Valid measure, invalid state: R is not modified either
    kf.set_measure_weight(0, -1, 5.0)
    kf.set_measure(1, 5.0)
    kf.set_input(1, 5.0)
    kf.set_process_noise(2, 2, 5.0)
    kf.set_prediction_covariance(0, 2, 5.0)

    after = _all_matrices(kf)
    for name, matrix in before.items():
        assert torch.equal(matrix, after[name]), name


def test_accessors_return_copies():
    kf = constant_velocity_filter()

    kf.transition_matrix.zero_()
    kf.state_vector.add_(1.0)
    kf.state.covariance.zero_()

    assert kf.transition_matrix[0, 1] == 1.0
    assert not kf.state_vector.any()
    assert kf.prediction_covariance[0, 0] == 10.0


def test_predict():
    kf = constant_velocity_filter()
    kf.set_measure_weight(0, 0, 1.0)
    kf.predict([2.0])
    kf.update([3.0])  # Move away from 0
    x = kf.state_vector.clone()
    p = kf.prediction_covariance
    f = kf.transition_matrix
    g = kf.input_matrix

    predicted = kf.predict([-1.0])

    assert torch.allclose(predicted, f @ x + g[:, 0] * -1.0)
    assert torch.allclose(kf.prediction_covariance, f @ p @ f.T + kf.process_noise)
    assert torch.equal(kf.input_vector, torch.tensor([-1.0], dtype=torch.float64))


def test_predict_keeps_previous_input():
    kf = constant_velocity_filter()
    kf.set_input(0, 1.0)

    kf.predict()
    kf.predict()

    # Constant acceleration of 1 during 2 steps
    assert torch.allclose(kf.state_vector, torch.tensor([2.0, 2.0], dtype=torch.float64))


def test_update():
    kf = constant_velocity_filter()
    kf.predict([1.0])
    x = kf.state_vector.reshape(-1, 1)
    p = kf.prediction_covariance
    h = kf.observer_matrix
    r = kf.measurement_noise
    measure = torch.tensor([[2.5]], dtype=torch.float64)

    kf.update([2.5])

    s = h @ p @ h.T + r
    gain = p @ h.T @ s.inverse()
    assert torch.allclose(kf.gain, gain)
    assert torch.allclose(kf.innovation_covariance, s.inverse())
    assert torch.allclose(kf.state_vector, (x + gain @ (measure - h @ x))[:, 0])
    assert torch.allclose(kf.prediction_covariance, p - gain @ h @ p)
    assert torch.allclose(kf.error_vector, (gain @ (measure - h @ x))[:, 0])
    assert torch.equal(kf.measure_vector, torch.tensor([2.5], dtype=torch.float64))


def test_update_uses_set_measures():
    kf = constant_velocity_filter()
    twin = constant_velocity_filter()

    kf.set_measure(0, 1.5)
    kf.predict()
    twin.predict()

    assert torch.equal(kf.update(), twin.update([1.5]))


def test_wrong_buffer_size():
    kf = constant_velocity_filter()

    with pytest.raises(ValueError):
        kf.predict([1.0, 2.0])
    with pytest.raises(ValueError):
        kf.update([1.0, 2.0])


def test_wrong_result_buffer_keeps_estimate():
    kf = constant_velocity_filter()
    before = _all_matrices(kf)

    with pytest.raises(ValueError):
        kf.predict([1.0], out=[0.0])
    with pytest.raises(ValueError):
        kf.update([1.0], out=torch.zeros(3))

    for name, matrix in _all_matrices(kf).items():
        assert torch.equal(matrix, before[name]), name

    # Retrying with a valid buffer predicts once
    result = [0.0, 0.0]
    kf.predict([1.0], out=result)
    assert result == [0.5, 1.0]


def test_result_buffers():
    kf = constant_velocity_filter()

    result = [0.0, 0.0]
    assert kf.predict([1.0], result) is result
    assert result == [0.5, 1.0]

    result_tensor = torch.zeros(2)
    assert kf.update([1.0], result_tensor) is result_tensor
    assert torch.allclose(result_tensor, kf.state_vector.to(torch.float32))

    # Copies: modifying the result does not touch the filter
    result_tensor.zero_()
    assert kf.state_vector.any()


def test_singular_innovation_covariance_skips_correction():
    kf = KalmanFilter(2, 2, 1)
    kf.set_measure_weight(0, 0, 0.0)
    kf.set_measure_weight(1, 1, 0.0)
    kf.set_process_noise(0, 0, 0.0)
    kf.set_process_noise(1, 1, 0.0)
    kf.set_input_factor(0, 0, 1.0)
    kf.predict([3.0])
    x = kf.state_vector
    p = kf.prediction_covariance

    result = kf.update([1.0, 2.0])

    assert torch.equal(result, x)
    assert torch.equal(kf.state_vector, x)
    assert torch.equal(kf.prediction_covariance, p)
    assert not kf.prediction_covariance.any()
    # Innovation is still computed, the gain is only its numerator P Hᵀ
    assert torch.equal(kf.error_vector, torch.tensor([-2.0, 2.0], dtype=torch.float64))
    assert not kf.gain.any()

    # The next cycle is not affected
    kf.set_process_noise(0, 0, 1.0)
    kf.set_process_noise(1, 1, 1.0)
    kf.predict([0.0])
    kf.update([1.0, 2.0])
    assert kf.state_vector[0].item() == pytest.approx(1.0)


def test_reset():
    kf = constant_velocity_filter()
    for measure in (0.1, 0.5, 1.2):
        kf.predict([1.0])
        kf.update([measure])
    model = _model(kf)

    kf.reset()
    once = _all_matrices(kf)
    kf.reset()
    twice = _all_matrices(kf)

    for name in ("x", "P", "S", "K", "u", "e"):
        assert not once[name].any(), name
    for name, matrix in model.items():
        assert torch.equal(once[name], matrix), name
    for name, matrix in once.items():
        assert torch.equal(twice[name], matrix), name


def test_dispose():
    kf = constant_velocity_filter()

    kf.dispose()

    assert kf.disposed
    assert kf.predict([1.0]) is None
    assert kf.update([1.0]) is None
    assert kf.state is None
    assert kf.state_vector is None
    assert kf.gain is None
    assert kf.project() is None
    assert kf.filter(torch.zeros(3, 1)) is None
    assert kf.to(torch.float32) is None
    assert kf.state_dim == 2
    assert repr(kf) == "Kalman Filter (disposed)"

    # No-ops
    kf.set_transition_factor(0, 0, 1.0)
    kf.set_input_factor(0, 0, 1.0)
    kf.set_measure_weight(0, 0, 1.0)
    kf.set_measure(0, 1.0)
    kf.set_input(0, 1.0)
    kf.reset()
    kf.dispose()


def test_state_snapshot():
    kf = constant_velocity_filter()
    kf.predict([1.0])

    state = kf.state

    assert isinstance(state, GaussianState)
    assert state.mean.shape == (2, 1)
    assert torch.equal(state.mean[:, 0], kf.state_vector)
    assert torch.equal(state.covariance, kf.prediction_covariance)


def test_project():
    kf = constant_velocity_filter()
    kf.predict([1.0])
    h = kf.observer_matrix
    p = kf.prediction_covariance

    projection = kf.project()

    assert torch.allclose(projection.mean, h @ kf.state_vector.reshape(-1, 1))
    assert torch.allclose(projection.covariance, h @ p @ h.T + kf.measurement_noise)
    assert torch.allclose(projection.precision, projection.covariance.inverse())
    # Projection does not modify the filter
    assert not kf.innovation_covariance.any()


def test_project_singular():
    kf = KalmanFilter(1, 1)
    kf.set_measure_weight(0, 0, 0.0)

    assert kf.project().precision is None


def test_filter_matches_manual_loop():
    kf = constant_velocity_filter()
    twin = constant_velocity_filter()
    measures = torch.randn(10, 1, dtype=torch.float64)
    inputs = torch.randn(10, 1, dtype=torch.float64)

    states = kf.filter(measures, inputs)

    assert states.mean.shape == (10, 2, 1)
    assert states.covariance.shape == (10, 2, 2)
    for t in range(10):
        twin.predict(inputs[t])
        twin.update(measures[t])
        assert torch.allclose(states[t].mean[:, 0], twin.state_vector)
        assert torch.allclose(states[t].covariance, twin.prediction_covariance)

    assert torch.equal(kf.state_vector, twin.state_vector)


def test_filter_update_first():
    kf = constant_velocity_filter()
    twin = constant_velocity_filter()
    measures = torch.randn(2, 1, dtype=torch.float64)

    states = kf.filter(measures, update_first=True)

    twin.update(measures[0])
    assert torch.allclose(states[0].mean[:, 0], twin.state_vector)


def test_filter_nan_skips_update():
    kf = constant_velocity_filter()
    twin = constant_velocity_filter()
    measures = torch.tensor([[1.0], [float("nan")], [3.0]], dtype=torch.float64)

    states = kf.filter(measures)

    twin.predict()
    twin.update([1.0])
    twin.predict()
    assert torch.allclose(states[1].mean[:, 0], twin.state_vector)
    assert torch.allclose(states[1].covariance, twin.prediction_covariance)
    assert not torch.isnan(states.mean).any()


def test_filter_empty_sequence():
    kf = constant_velocity_filter()
    before = _all_matrices(kf)

    states = kf.filter(torch.zeros(0, 1, dtype=torch.float64))

    assert states.mean.shape == (0, 2, 1)
    assert states.covariance.shape == (0, 2, 2)
    for name, matrix in _all_matrices(kf).items():
        assert torch.equal(matrix, before[name]), name


def test_filter_wrong_shapes():
    kf = constant_velocity_filter()
    before = _all_matrices(kf)

    with pytest.raises(ValueError):
        kf.filter(torch.zeros(5, 2))  # Two measures per step instead of one
    with pytest.raises(ValueError):
        kf.filter(torch.zeros(5, 1), torch.zeros(4, 1))  # Missing inputs
    with pytest.raises(ValueError):
        kf.filter(torch.zeros(5, 1), torch.zeros(5, 3))

    for name, matrix in _all_matrices(kf).items():
        assert torch.equal(matrix, before[name]), name


def test_to_convert_dtype():
    kf = constant_velocity_filter()
    kf.predict([1.0])

    kf32 = kf.to(torch.float32)

    assert kf32.dtype == torch.float32
    assert kf32.transition_matrix.dtype == torch.float32
    assert kf32.gain.dtype == torch.float32
    assert kf.dtype == torch.float64
    assert torch.allclose(kf32.state_vector, kf.state_vector.to(torch.float32))

    # Independent copies
    kf32.set_transition_factor(0, 1, 3.0)
    assert kf.transition_matrix[0, 1] == 1.0


@pytest.mark.cuda
def test_cpu_cuda_close():
    kf = constant_velocity_filter()
    kf_cuda = kf.to(torch.device("cuda"))
    measures = torch.randn(5, 1, dtype=torch.float64)

    cpu = kf.filter(measures)
    cuda = kf_cuda.filter(measures)

    assert torch.allclose(cpu.mean, cuda.mean.cpu())


def test_repr_short():
    kf = KalmanFilter(2, 1)
    kf.set_transition_factor(0, 1, 1.0)
    kf.set_process_noise(0, 0, 0.01)
    kf.set_process_noise(1, 1, 0.01)
    kf.set_measure_weight(0, 0, math.sqrt(0.1))

    kf_repr = str(kf)
    lines = kf_repr.split("\n")

    assert len(lines) == 1 + 1 + 2 + 1 + 2 + 1 + 1
    assert lines[0] == "Kalman Filter (State dimension: 2, Measure dimension: 1, Input dimension: 1)"
    assert "Process: F = tensor([[1., 1.],   &  Q = tensor([[0.01, 0.00]," in kf_repr
    assert "Input: G = tensor([[0.]," in kf_repr
    assert "Measurement: H = tensor([[1., 0.]])  &  R = tensor([[0.10]])" in kf_repr


def test_repr_restores_print_options():
    kf = KalmanFilter(2, 1)
    before = str(torch.tensor([1.0 / 3]))

    str(kf)

    assert str(torch.tensor([1.0 / 3])) == before


def test_repr_long():
    dim_x, dim_z = 8, 2
    kf = KalmanFilter(dim_x, dim_z)
    transition = 10 * torch.randn(dim_x, dim_x)
    noise = 10 * torch.randn(dim_x, dim_x)
    for i in range(dim_x):
        for j in range(dim_x):
            kf.set_transition_factor(i, j, transition[i, j].item())
            kf.set_process_noise(i, j, noise[i, j].item())

    kf_repr = str(kf)

    assert kf_repr.split("\n")[0].startswith(f"Kalman Filter (State dimension: {dim_x}")
    assert "Process: F = tensor(" in kf_repr
    assert "         Q = tensor(" in kf_repr
    assert "Measurement: H = tensor(" in kf_repr
