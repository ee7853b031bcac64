"""Simple-KF: a small, self-contained linear Kalman filter engine in PyTorch.

simple-kf maintains the running estimate of an unobserved state vector from a
linear state-space model and noisy measurements. It is meant for control and
sensor fusion loops: a filter owns all of its vectors and matrices, is
configured element by element, then alternates ``predict`` and ``update``.

Getting started
---------------
- :class:`~simple_kf.KalmanFilter` holds the model (F, G, H, Q, R) and the
  estimate (x, P). Configure it with ``set_transition_factor``,
  ``set_input_factor`` and ``set_measure_weight``, then call
  :meth:`~simple_kf.KalmanFilter.predict` and
  :meth:`~simple_kf.KalmanFilter.update`.
- :class:`~simple_kf.GaussianState` is a read-only snapshot of an estimate.
- :mod:`simple_kf.motion` builds ready-to-use constant position / velocity /
  acceleration models.
- :class:`~simple_kf.Matrix` is the dense matrix primitive the engine relies on.

Tolerance policy
----------------
The filter never raises during estimation: out-of-range indices are ignored,
calls on a disposed filter do nothing and a singular innovation covariance
skips the correction step. These events are reported as DEBUG log records on
the ``simple_kf`` loggers.

Numerical notes
---------------
Filters run in ``float64`` by default. The covariance update is the standard
``P - K H P`` form: it does not enforce symmetry, so degenerate models
(F, H, Q, R) silently degrade the estimate.
"""

from .kalman_filter import GaussianState, KalmanFilter
from .matrix import Matrix, MatrixInit

__all__ = ["GaussianState", "KalmanFilter", "Matrix", "MatrixInit"]
__version__ = "0.1.0"
