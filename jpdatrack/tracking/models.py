"""
Dynamic and observation models consumed by the state estimators.

Models are stateless: every method is a pure function of the elapsed time and
the state. Estimators only rely on the abstract interfaces below, so any
closed-form model can be plugged in.

Classes:
    DynamicModel: Abstract state-transition model
    ObservationModel: Abstract observation model
    ConstantVelocityModel: Linear-Gaussian constant velocity model (1-3 D)
    PositionalObservationModel: Linear observation of the position block
    RangeBearingObservationModel: Nonlinear 2-D range/bearing observation

Functions:
    wrap_angle: Wrap angles to (−π, π]
    numerical_jacobian: Forward finite-difference Jacobian

References:
    - Bar-Shalom, Y., et al. "Estimation with Applications to Tracking and Navigation"
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Optional

# Finite-difference step for default Jacobians
JACOBIAN_EPSILON = 1e-6


def numerical_jacobian(func, state: np.ndarray, epsilon: float = JACOBIAN_EPSILON) -> np.ndarray:
    """
    Forward finite-difference Jacobian of func at state.

    Args:
        func: Function mapping a state vector to a vector
        state: Linearization point
        epsilon: Perturbation size

    Returns:
        Jacobian matrix (len(func(state)) x len(state))
    """
    state = np.asarray(state, dtype=float)
    nominal = np.asarray(func(state), dtype=float)
    jacobian = np.zeros((nominal.size, state.size))

    for i in range(state.size):
        perturbed = state.copy()
        perturbed[i] += epsilon
        jacobian[:, i] = (np.asarray(func(perturbed), dtype=float) - nominal) / epsilon

    return jacobian


def wrap_angle(angle):
    """Wrap angles (radians) to (−π, π]."""
    wrapped = np.mod(np.asarray(angle, dtype=float) + np.pi, 2.0 * np.pi) - np.pi
    return np.where(wrapped == -np.pi, np.pi, wrapped)


class DynamicModel(ABC):
    """
    Abstract state-transition model.

    Subclasses must implement transition() and transition_noise_cov().
    transition_jacobian() defaults to a numerical Jacobian.
    """

    @property
    @abstractmethod
    def ndim(self) -> int:
        """State dimension nx."""

    @abstractmethod
    def transition(self, dt: float, state: np.ndarray) -> np.ndarray:
        """
        Propagate a state vector over dt without process noise.

        Args:
            dt: Time interval (seconds)
            state: State vector (nx,)

        Returns:
            Propagated state (nx,)
        """

    @abstractmethod
    def transition_noise_cov(self, dt: float) -> np.ndarray:
        """Process noise covariance Q(dt) (nx x nx)."""

    def transition_jacobian(self, dt: float, state: np.ndarray) -> np.ndarray:
        """Jacobian of transition() at state (nx x nx)."""
        return numerical_jacobian(lambda x: self.transition(dt, x), state)


class ObservationModel(ABC):
    """
    Abstract observation model.

    Subclasses must implement observe() and observation_noise_cov().
    observation_jacobian() defaults to a numerical Jacobian.
    """

    @property
    @abstractmethod
    def ndim_obs(self) -> int:
        """Measurement dimension ny."""

    @abstractmethod
    def observe(self, state: np.ndarray) -> np.ndarray:
        """
        Map a state vector to the noiseless measurement it would produce.

        Args:
            state: State vector (nx,)

        Returns:
            Measurement vector (ny,)
        """

    @abstractmethod
    def observation_noise_cov(self) -> np.ndarray:
        """Observation noise covariance R (ny x ny)."""

    def residual(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        """
        Difference a − b between measurements (broadcasts over leading axes).

        Models with angular components override this to wrap the angles.
        """
        return np.asarray(a, dtype=float) - np.asarray(b, dtype=float)

    def measurement_mean(self, points: np.ndarray, weights: np.ndarray) -> np.ndarray:
        """Weighted mean of measurement points (n_points x ny)."""
        return np.asarray(weights, dtype=float) @ np.asarray(points, dtype=float)

    def observation_jacobian(self, state: np.ndarray) -> np.ndarray:
        """Jacobian of observe() at state (ny x nx)."""
        return numerical_jacobian(self.observe, state)


class ConstantVelocityModel(DynamicModel):
    """
    Linear-Gaussian constant velocity model.

    State is ordered positions first, then velocities, e.g. [x, y, vx, vy]
    for dim=2. Velocities follow a white-noise acceleration with diffusion
    coefficient q.

    Example:
        >>> cv = ConstantVelocityModel(dim=2, q=0.01)
        >>> cv.transition(1.0, np.array([0.0, 0.0, 1.0, 2.0]))
        array([1., 2., 1., 2.])
    """

    def __init__(self, dim: int = 2, q: float = 0.01):
        """
        Initialize constant velocity model.

        Args:
            dim: Spatial dimensionality (1, 2 or 3)
            q: Process noise diffusion coefficient
        """
        if dim not in (1, 2, 3):
            raise ValueError(f"ConstantVelocityModel supports dim 1-3, got {dim}")
        if q < 0:
            raise ValueError(f"Process noise coefficient must be non-negative, got {q}")
        self.dim = dim
        self.q = q

    @property
    def ndim(self) -> int:
        return 2 * self.dim

    def transition_matrix(self, dt: float) -> np.ndarray:
        """F(dt) = [[I, dt·I], [0, I]]."""
        eye = np.eye(self.dim)
        return np.block([
            [eye, dt * eye],
            [np.zeros((self.dim, self.dim)), eye],
        ])

    def transition(self, dt: float, state: np.ndarray) -> np.ndarray:
        return self.transition_matrix(dt) @ np.asarray(state, dtype=float)

    def transition_jacobian(self, dt: float, state: np.ndarray) -> np.ndarray:
        return self.transition_matrix(dt)

    def transition_noise_cov(self, dt: float) -> np.ndarray:
        eye = np.eye(self.dim)
        return self.q * np.block([
            [dt**3 / 3.0 * eye, dt**2 / 2.0 * eye],
            [dt**2 / 2.0 * eye, dt * eye],
        ])


class PositionalObservationModel(ObservationModel):
    """
    Linear observation of the position block of a constant velocity state.

    Measurement: [x, y] for dim=2, with R = r²·I.
    """

    def __init__(self, dim: int = 2, r: float = 1.0, state_dim: Optional[int] = None):
        """
        Initialize positional observation model.

        Args:
            dim: Number of observed position components
            r: Observation noise standard deviation
            state_dim: State dimension (defaults to 2 * dim)
        """
        if r <= 0:
            raise ValueError(f"Observation noise std must be positive, got {r}")
        self.dim = dim
        self.r = r
        self.state_dim = state_dim if state_dim is not None else 2 * dim
        self._h = np.hstack([np.eye(dim), np.zeros((dim, self.state_dim - dim))])

    @property
    def ndim_obs(self) -> int:
        return self.dim

    def observe(self, state: np.ndarray) -> np.ndarray:
        return self._h @ np.asarray(state, dtype=float)

    def observation_jacobian(self, state: np.ndarray) -> np.ndarray:
        return self._h.copy()

    def observation_noise_cov(self) -> np.ndarray:
        return np.eye(self.dim) * self.r**2


class RangeBearingObservationModel(ObservationModel):
    """
    Nonlinear range/bearing observation of a 2-D position.

    Measurement: [range, bearing] relative to a sensor at `origin`, with the
    bearing measured anticlockwise from the x axis (radians).
    """

    def __init__(self, r_range: float = 1.0, r_bearing: float = 0.01,
                 origin=(0.0, 0.0)):
        """
        Initialize range/bearing model.

        Args:
            r_range: Range noise standard deviation
            r_bearing: Bearing noise standard deviation (radians)
            origin: Sensor position [x, y]
        """
        self.r_range = r_range
        self.r_bearing = r_bearing
        self.origin = np.asarray(origin, dtype=float)

    @property
    def ndim_obs(self) -> int:
        return 2

    def observe(self, state: np.ndarray) -> np.ndarray:
        dx, dy = np.asarray(state, dtype=float)[:2] - self.origin
        return np.array([np.hypot(dx, dy), np.arctan2(dy, dx)])

    def observation_jacobian(self, state: np.ndarray) -> np.ndarray:
        state = np.asarray(state, dtype=float)
        dx, dy = state[:2] - self.origin
        rng_sq = dx**2 + dy**2
        rng = np.sqrt(rng_sq)
        jacobian = np.zeros((2, state.size))
        jacobian[0, :2] = [dx / rng, dy / rng]
        jacobian[1, :2] = [-dy / rng_sq, dx / rng_sq]
        return jacobian

    def observation_noise_cov(self) -> np.ndarray:
        return np.diag([self.r_range**2, self.r_bearing**2])

    def residual(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        diff = np.asarray(a, dtype=float) - np.asarray(b, dtype=float)
        diff[..., 1] = wrap_angle(diff[..., 1])
        return diff

    def measurement_mean(self, points: np.ndarray, weights: np.ndarray) -> np.ndarray:
        # Bearing averaged on the unit circle
        points = np.asarray(points, dtype=float)
        weights = np.asarray(weights, dtype=float)
        mean = weights @ points
        mean[1] = np.arctan2(weights @ np.sin(points[:, 1]), weights @ np.cos(points[:, 1]))
        return mean
