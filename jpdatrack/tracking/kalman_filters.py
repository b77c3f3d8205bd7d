"""
Kalman filter implementations for multi-target state estimation.

This module provides linear, Extended and Unscented Kalman filters sharing a
common predict/update/smooth contract. Filters hold no per-track state: every
operation takes a GaussianEstimate and returns a new one, so one filter
instance can serve any number of tracks.

Classes:
    GaussianEstimate: Per-track belief (mean, covariance and prediction products)
    SmoothedEstimate: Output of the backward smoothing pass
    StateEstimator: Abstract base class for all filters
    KalmanFilter: Linear Kalman filter
    ExtendedKalmanFilter: EKF with Jacobian linearization
    UnscentedKalmanFilter: Scaled UKF with augmented sigma points

References:
    - Bar-Shalom, Y., et al. "Estimation with Applications to Tracking and Navigation"
    - Julier, S. "The Scaled Unscented Transformation"
    - Särkkä, S. "Unscented Rauch-Tung-Striebel Smoother"
"""

import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import List, Optional, Sequence, Tuple

from scipy.linalg import block_diag

from jpdatrack.tracking.models import DynamicModel, ObservationModel
from jpdatrack.utils.linalg import ensure_psd, safe_cholesky
from jpdatrack.utils.logging_config import get_logger

logger = get_logger("tracking.kalman")


# Default UKF scaling parameters
DEFAULT_ALPHA = 0.5
DEFAULT_KAPPA = 0.0
DEFAULT_BETA = 2.0


@dataclass
class GaussianEstimate:
    """
    Gaussian belief of a single track.

    Attributes:
        mean: Filtered state mean x_{k|k} (nx,)
        covariance: Filtered state covariance P_{k|k} (nx x nx)
        timestamp: Time of the estimate (optional)
        dt: Interval used by the last predict step
        predicted_mean: Predicted state x_{k|k-1}
        predicted_covariance: Predicted covariance P_{k|k-1}
        predicted_measurement: Predicted measurement mean
        innovation_covariance: Innovation covariance S (ny x ny)
        cross_covariance: State/measurement cross-covariance Pxy (nx x ny)
        gain: Kalman gain of the last update (nx x ny)
    """
    mean: np.ndarray
    covariance: np.ndarray
    timestamp: Optional[float] = None
    dt: Optional[float] = None
    predicted_mean: Optional[np.ndarray] = None
    predicted_covariance: Optional[np.ndarray] = None
    predicted_measurement: Optional[np.ndarray] = None
    innovation_covariance: Optional[np.ndarray] = None
    cross_covariance: Optional[np.ndarray] = None
    gain: Optional[np.ndarray] = None

    def __post_init__(self):
        self.mean = np.asarray(self.mean, dtype=float).reshape(-1)
        self.covariance = np.asarray(self.covariance, dtype=float)
        if self.covariance.shape != (self.mean.size, self.mean.size):
            raise ValueError(
                f"Covariance shape {self.covariance.shape} does not match "
                f"state dimension {self.mean.size}"
            )

    @property
    def ndim(self) -> int:
        """State dimension nx."""
        return self.mean.size

    @property
    def is_predicted(self) -> bool:
        """Whether the prediction products are available."""
        return (
            self.predicted_mean is not None
            and self.predicted_covariance is not None
            and self.predicted_measurement is not None
            and self.innovation_covariance is not None
            and self.cross_covariance is not None
        )


@dataclass
class SmoothedEstimate:
    """
    Smoothed state at one historical timestep.

    Attributes:
        mean: Smoothed mean x_{k|N}
        covariance: Smoothed covariance P_{k|N}
        gain: Smoothing gain C_k (None for the final timestep)
    """
    mean: np.ndarray
    covariance: np.ndarray
    gain: Optional[np.ndarray] = None


class StateEstimator(ABC):
    """
    Abstract base class for recursive Bayesian state estimators.

    Subclasses implement predict() and the smoothing gain; the update steps
    are shared because every variant exposes the same prediction products
    (predicted measurement, innovation covariance, cross-covariance).

    Attributes:
        dynamic_model: State-transition model
        observation_model: Observation model
    """

    name = "base"

    def __init__(self, dynamic_model: DynamicModel, observation_model: ObservationModel):
        """
        Initialize state estimator.

        Args:
            dynamic_model: Dynamic model provider
            observation_model: Observation model provider
        """
        self.dynamic_model = dynamic_model
        self.observation_model = observation_model
        self.defaulted_parameters: List[str] = []

        logger.debug(f"Initialized {self.__class__.__name__}")

    @abstractmethod
    def predict(self, estimate: GaussianEstimate, dt: float) -> GaussianEstimate:
        """
        Predict an estimate forward by dt.

        Args:
            estimate: Current estimate
            dt: Time step in seconds

        Returns:
            Copy of the estimate carrying predicted state and measurement moments
        """

    @abstractmethod
    def _smoothing_gain(self, current: GaussianEstimate,
                        following: GaussianEstimate) -> np.ndarray:
        """Smoothing gain C_k between filtered step k and the prediction of step k+1."""

    def kalman_gain(self, estimate: GaussianEstimate) -> np.ndarray:
        """K = Pxy S⁻¹."""
        self._require_prediction(estimate)
        return np.linalg.solve(
            estimate.innovation_covariance, estimate.cross_covariance.T
        ).T

    def update(self, estimate: GaussianEstimate,
               measurement: Optional[np.ndarray]) -> GaussianEstimate:
        """
        Update a predicted estimate with a single measurement.

        When no measurement is supplied the predicted state becomes the
        posterior.

        Args:
            estimate: Predicted estimate
            measurement: Measurement vector (ny,) or None

        Returns:
            Posterior estimate
        """
        self._require_prediction(estimate)

        if measurement is None or np.size(measurement) == 0:
            return self._keep_prediction(estimate)

        z = np.asarray(measurement, dtype=float).reshape(-1)
        S = estimate.innovation_covariance
        K = self.kalman_gain(estimate)

        innovation = self.observation_model.residual(z, estimate.predicted_measurement)
        mean = estimate.predicted_mean + K @ innovation
        covariance = estimate.predicted_covariance - K @ S @ K.T

        logger.debug(f"{self.name} update: innovation={np.linalg.norm(innovation):.3f}")

        return replace(estimate, mean=mean, covariance=ensure_psd(covariance), gain=K)

    def update_multi(self, estimate: GaussianEstimate,
                     measurements: Optional[np.ndarray],
                     weights: Optional[np.ndarray] = None) -> GaussianEstimate:
        """
        Update a predicted estimate with a set of weighted measurements (JPDA).

        The posterior covariance is
            w0·P̂ + (1 − w0)·Pc + K·[Σ wᵢ νᵢνᵢᵀ − ν̄ν̄ᵀ]·Kᵀ
        where Pc = P̂ − K S Kᵀ and ν̄ = Σ wᵢ νᵢ. The last term is the spread of
        innovations.

        Args:
            estimate: Predicted estimate
            measurements: Measurements (M x ny); None or empty keeps the prediction
            weights: Association weights (M+1,); weights[0] is the "no detection"
                weight. Defaults to [0, 1/M, ..., 1/M].

        Returns:
            Posterior estimate
        """
        self._require_prediction(estimate)

        if measurements is None or np.size(measurements) == 0:
            return self._keep_prediction(estimate)

        ny = estimate.predicted_measurement.size
        Z = np.asarray(measurements, dtype=float).reshape(-1, ny)
        n_meas = Z.shape[0]

        if weights is None:
            logger.warning(
                f"No association weights supplied for {n_meas} measurements, "
                f"using [0, 1/{n_meas}, ...]"
            )
            weights = np.concatenate([[0.0], np.full(n_meas, 1.0 / n_meas)])
        weights = self._check_weights(weights, n_meas)

        S = estimate.innovation_covariance
        K = self.kalman_gain(estimate)
        P_pred = estimate.predicted_covariance

        innovations = self.observation_model.residual(Z, estimate.predicted_measurement)
        Pc = P_pred - K @ S @ K.T
        total_innovation = weights[1:] @ innovations
        spread = (innovations * weights[1:, np.newaxis]).T @ innovations \
            - np.outer(total_innovation, total_innovation)
        P_spread = K @ spread @ K.T

        mean = estimate.predicted_mean + K @ total_innovation
        covariance = weights[0] * P_pred + (1.0 - weights[0]) * Pc + P_spread

        logger.debug(
            f"{self.name} multi-update: {n_meas} measurements, "
            f"w0={weights[0]:.3f}, combined innovation={np.linalg.norm(total_innovation):.3f}"
        )

        return replace(estimate, mean=mean, covariance=ensure_psd(covariance), gain=K)

    def iterate(self, estimate: GaussianEstimate, dt: float,
                measurement: Optional[np.ndarray]) -> GaussianEstimate:
        """Predict and update in one call."""
        return self.update(self.predict(estimate, dt), measurement)

    def smooth(self, filtered_estimates: Sequence[GaussianEstimate]) -> List[SmoothedEstimate]:
        """
        Rauch-Tung-Striebel backward pass over a completed filtered trajectory.

        Every estimate after the first must carry the prediction products
        (predicted mean/covariance and dt) of the step that produced it.

        Args:
            filtered_estimates: Filtered estimates in time order

        Returns:
            Smoothed estimates in time order; the last equals the last filtered estimate
        """
        n_steps = len(filtered_estimates)
        if n_steps == 0:
            return []

        smoothed: List[Optional[SmoothedEstimate]] = [None] * n_steps
        last = filtered_estimates[-1]
        smoothed[-1] = SmoothedEstimate(mean=last.mean.copy(), covariance=last.covariance.copy())

        for k in range(n_steps - 2, -1, -1):
            current = filtered_estimates[k]
            following = filtered_estimates[k + 1]
            if following.predicted_mean is None or following.predicted_covariance is None \
                    or following.dt is None:
                raise ValueError(f"Filtered estimate {k + 1} has no prediction to smooth against")

            C = self._smoothing_gain(current, following)
            mean = current.mean + C @ (smoothed[k + 1].mean - following.predicted_mean)
            covariance = current.covariance + \
                C @ (smoothed[k + 1].covariance - following.predicted_covariance) @ C.T

            smoothed[k] = SmoothedEstimate(mean=mean, covariance=ensure_psd(covariance), gain=C)

        logger.debug(f"{self.name} smoothed {n_steps} estimates")
        return smoothed

    def _keep_prediction(self, estimate: GaussianEstimate) -> GaussianEstimate:
        logger.info(f"{self.name}: no measurement supplied, keeping predicted state")
        return replace(
            estimate,
            mean=estimate.predicted_mean.copy(),
            covariance=estimate.predicted_covariance.copy(),
            gain=None,
        )

    @staticmethod
    def _check_weights(weights: np.ndarray, n_meas: int) -> np.ndarray:
        weights = np.asarray(weights, dtype=float).reshape(-1)
        if weights.size != n_meas + 1:
            raise ValueError(
                f"Expected {n_meas + 1} association weights, got {weights.size}"
            )
        if np.any(weights < 0):
            raise ValueError(f"Association weights must be non-negative: {weights}")
        total = weights.sum()
        if not np.isclose(total, 1.0, atol=1e-9):
            logger.warning(f"Association weights sum to {total:.6f}, renormalizing")
            weights = weights / total
        return weights

    @staticmethod
    def _require_prediction(estimate: GaussianEstimate):
        if not estimate.is_predicted:
            raise ValueError("Estimate has not been predicted; call predict() before update")


class KalmanFilter(StateEstimator):
    """
    Linear Kalman filter.

    The models' Jacobians are used as the transition matrix F and the
    observation matrix H.

    Example:
        >>> kf = KalmanFilter(ConstantVelocityModel(dim=2), PositionalObservationModel(dim=2))
        >>> estimate = GaussianEstimate(mean=np.zeros(4), covariance=np.eye(4))
        >>> estimate = kf.update(kf.predict(estimate, 1.0), np.array([0.5, 0.2]))
    """

    name = "KF"

    def predict(self, estimate: GaussianEstimate, dt: float) -> GaussianEstimate:
        F = self.dynamic_model.transition_jacobian(dt, estimate.mean)
        Q = self.dynamic_model.transition_noise_cov(dt)

        x_pred = self._propagate_mean(dt, estimate.mean, F)
        P_pred = ensure_psd(F @ estimate.covariance @ F.T + Q)

        H = self.observation_model.observation_jacobian(x_pred)
        R = self.observation_model.observation_noise_cov()

        y_pred = self._predict_measurement(x_pred, H)
        S = ensure_psd(H @ P_pred @ H.T + R)
        Pxy = P_pred @ H.T

        logger.debug(f"{self.name} predict: dt={dt:.3f}, trace(P)={np.trace(P_pred):.3f}")

        return replace(
            estimate,
            dt=dt,
            predicted_mean=x_pred,
            predicted_covariance=P_pred,
            predicted_measurement=y_pred,
            innovation_covariance=S,
            cross_covariance=Pxy,
        )

    def _propagate_mean(self, dt: float, mean: np.ndarray, F: np.ndarray) -> np.ndarray:
        return F @ mean

    def _predict_measurement(self, x_pred: np.ndarray, H: np.ndarray) -> np.ndarray:
        return H @ x_pred

    def _smoothing_gain(self, current: GaussianEstimate,
                        following: GaussianEstimate) -> np.ndarray:
        # C = P Fᵀ P̂⁻¹ with F linearized at the filtered mean
        F = self.dynamic_model.transition_jacobian(following.dt, current.mean)
        return np.linalg.solve(
            following.predicted_covariance, F @ current.covariance
        ).T


class ExtendedKalmanFilter(KalmanFilter):
    """
    Extended Kalman Filter.

    Propagates the mean through the nonlinear transition and observation
    functions and the covariances through their Jacobians (F at the prior
    mean, H at the predicted mean).

    Example:
        >>> ekf = ExtendedKalmanFilter(ConstantVelocityModel(dim=2), RangeBearingObservationModel())
        >>> predicted = ekf.predict(estimate, 1.0)
        >>> posterior = ekf.update(predicted, np.array([10.0, 0.5]))
    """

    name = "EKF"

    def _propagate_mean(self, dt: float, mean: np.ndarray, F: np.ndarray) -> np.ndarray:
        return np.asarray(self.dynamic_model.transition(dt, mean), dtype=float)

    def _predict_measurement(self, x_pred: np.ndarray, H: np.ndarray) -> np.ndarray:
        return np.asarray(self.observation_model.observe(x_pred), dtype=float)


class UnscentedKalmanFilter(StateEstimator):
    """
    Scaled Unscented Kalman Filter with an augmented state.

    The state is augmented with the process and observation noise vectors
    (na = nx + nw + nv) and propagated through 2·na + 1 sigma points drawn
    from a lower Cholesky factor of (na + λ)·Pa, with λ = α²(na + κ) − na.

    Example:
        >>> ukf = UnscentedKalmanFilter(ConstantVelocityModel(dim=2), RangeBearingObservationModel())
        >>> predicted = ukf.predict(estimate, 1.0)
        >>> posterior = ukf.update(predicted, np.array([10.0, 0.5]))
    """

    name = "UKF"

    def __init__(
        self,
        dynamic_model: DynamicModel,
        observation_model: ObservationModel,
        alpha: Optional[float] = None,
        kappa: Optional[float] = None,
        beta: Optional[float] = None,
    ):
        """
        Initialize Unscented Kalman Filter.

        Args:
            dynamic_model: Dynamic model provider
            observation_model: Observation model provider
            alpha: Spread of sigma points (default 0.5)
            kappa: Secondary scaling parameter (default 0)
            beta: Prior knowledge parameter (default 2 for Gaussian)
        """
        super().__init__(dynamic_model, observation_model)

        if alpha is None:
            logger.info(f"[UKF] No alpha provided, setting alpha={DEFAULT_ALPHA}")
            self.defaulted_parameters.append(f"alpha={DEFAULT_ALPHA}")
            alpha = DEFAULT_ALPHA
        if kappa is None:
            logger.info(f"[UKF] No kappa provided, setting kappa={DEFAULT_KAPPA}")
            self.defaulted_parameters.append(f"kappa={DEFAULT_KAPPA}")
            kappa = DEFAULT_KAPPA
        if beta is None:
            logger.info(f"[UKF] No beta provided, setting beta={DEFAULT_BETA}")
            self.defaulted_parameters.append(f"beta={DEFAULT_BETA}")
            beta = DEFAULT_BETA

        if alpha <= 0:
            raise ValueError(f"UKF alpha must be positive, got {alpha}")

        self.alpha = alpha
        self.kappa = kappa
        self.beta = beta

        logger.debug(f"UKF initialized (alpha: {alpha}, kappa: {kappa}, beta: {beta})")

    def scaling(self, na: int) -> float:
        """UKF scaling parameter λ for an augmented dimension na."""
        lambda_ = self.alpha**2 * (na + self.kappa) - na
        if na + lambda_ <= 0:
            raise ValueError(
                f"UKF parameters give non-positive sigma spread (na + lambda = {na + lambda_})"
            )
        return lambda_

    def weights(self, na: int, lambda_: float) -> Tuple[np.ndarray, np.ndarray]:
        """
        Sigma point weights.

        Returns:
            Tuple of (Wm, Wc), each of length 2·na + 1
        """
        Wm = np.full(2 * na + 1, 1.0 / (2 * (na + lambda_)))
        Wm[0] = lambda_ / (na + lambda_)

        Wc = Wm.copy()
        Wc[0] += (1 - self.alpha**2 + self.beta)
        return Wm, Wc

    def sigma_points(self, mean: np.ndarray, cov: np.ndarray, lambda_: float) -> np.ndarray:
        """
        Generate sigma points for the unscented transform.

        Args:
            mean: (Augmented) mean
            cov: (Augmented) covariance
            lambda_: Scaling parameter

        Returns:
            Array of sigma points (2n+1 x n)
        """
        n = len(mean)
        sigma_points = np.zeros((2 * n + 1, n))

        # Central point
        sigma_points[0] = mean

        # Matrix square root, recovering positive definiteness if needed
        L = safe_cholesky((n + lambda_) * cov)

        for i in range(n):
            sigma_points[i + 1] = mean + L[:, i]
            sigma_points[n + i + 1] = mean - L[:, i]

        return sigma_points

    @staticmethod
    def unscented_moments(points: np.ndarray, Wm: np.ndarray, Wc: np.ndarray,
                          mean_fn=None, residual_fn=None
                          ) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Weighted mean and covariance of transformed sigma points.

        Args:
            points: Transformed sigma points (n_points x n)
            Wm: Mean weights
            Wc: Covariance weights
            mean_fn: Weighted mean (points, weights) -> mean (default: linear)
            residual_fn: Difference (a, b) -> a - b (default: subtraction)

        Returns:
            Tuple of (mean, covariance, deviations from the mean)
        """
        if mean_fn is None:
            mean = np.sum(Wm[:, np.newaxis] * points, axis=0)
        else:
            mean = mean_fn(points, Wm)
        diff = points - mean if residual_fn is None else residual_fn(points, mean)
        cov = np.sum(
            Wc[:, np.newaxis, np.newaxis] *
            (diff[:, :, np.newaxis] @ diff[:, np.newaxis, :]),
            axis=0
        )
        return mean, cov, diff

    def predict(self, estimate: GaussianEstimate, dt: float) -> GaussianEstimate:
        nx = estimate.ndim
        nw = nx
        nv = self.observation_model.ndim_obs
        na = nx + nw + nv
        lambda_ = self.scaling(na)

        # Augment state and covariance
        xa = np.concatenate([estimate.mean, np.zeros(nw), np.zeros(nv)])
        Pa = block_diag(
            estimate.covariance,
            self.dynamic_model.transition_noise_cov(dt),
            self.observation_model.observation_noise_cov(),
        )

        sigma_points = self.sigma_points(xa, Pa, lambda_)
        Wm, Wc = self.weights(na, lambda_)

        X = sigma_points[:, :nx]
        W = sigma_points[:, nx:nx + nw]
        V = sigma_points[:, nx + nw:]

        # Propagate through the dynamics, then the observation function
        X_pred = np.array([self.dynamic_model.transition(dt, sp) for sp in X]) + W
        x_pred, P_pred, dX = self.unscented_moments(X_pred, Wm, Wc)

        Y_pred = np.array([self.observation_model.observe(sp) for sp in X_pred]) + V
        y_pred, S, dY = self.unscented_moments(
            Y_pred, Wm, Wc,
            mean_fn=self.observation_model.measurement_mean,
            residual_fn=self.observation_model.residual,
        )

        Pxy = (dX * Wc[:, np.newaxis]).T @ dY

        logger.debug(f"UKF predict: dt={dt:.3f}, trace(P)={np.trace(P_pred):.3f}")

        return replace(
            estimate,
            dt=dt,
            predicted_mean=x_pred,
            predicted_covariance=ensure_psd(P_pred),
            predicted_measurement=y_pred,
            innovation_covariance=ensure_psd(S),
            cross_covariance=Pxy,
        )

    def _smoothing_gain(self, current: GaussianEstimate,
                        following: GaussianEstimate) -> np.ndarray:
        nx = current.ndim
        nw = nx
        na = nx + nw
        lambda_ = self.scaling(na)

        xa = np.concatenate([current.mean, np.zeros(nw)])
        Pa = block_diag(current.covariance, self.dynamic_model.transition_noise_cov(following.dt))

        sigma_points = self.sigma_points(xa, Pa, lambda_)
        Wm, Wc = self.weights(na, lambda_)

        X = sigma_points[:, :nx]
        X_pred = np.array([
            self.dynamic_model.transition(following.dt, sp) for sp in X
        ]) + sigma_points[:, nx:]
        _, P_pred, dX_pred = self.unscented_moments(X_pred, Wm, Wc)

        # C = D P̂⁻¹ with D the cross-covariance of filtered and predicted points
        D = ((X - current.mean) * Wc[:, np.newaxis]).T @ dX_pred
        return np.linalg.solve(P_pred, D.T).T


ESTIMATORS = {
    "kf": KalmanFilter,
    "ekf": ExtendedKalmanFilter,
    "ukf": UnscentedKalmanFilter,
}


def create_estimator(
    filter_type: str,
    dynamic_model: DynamicModel,
    observation_model: ObservationModel,
    alpha: Optional[float] = None,
    kappa: Optional[float] = None,
    beta: Optional[float] = None,
) -> StateEstimator:
    """
    Build a state estimator by name.

    Args:
        filter_type: 'kf', 'ekf' or 'ukf'
        dynamic_model: Dynamic model provider
        observation_model: Observation model provider
        alpha, kappa, beta: UKF scaling parameters (ignored by kf/ekf)

    Returns:
        StateEstimator instance
    """
    if filter_type not in ESTIMATORS:
        raise ValueError(f"Unknown filter type: {filter_type}")
    if filter_type == "ukf":
        return UnscentedKalmanFilter(dynamic_model, observation_model,
                                     alpha=alpha, kappa=kappa, beta=beta)
    return ESTIMATORS[filter_type](dynamic_model, observation_model)
