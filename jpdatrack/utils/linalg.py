"""
Numerical helpers shared by the estimators and the association engine.

Functions:
    nearest_spd: Project a matrix onto the nearest symmetric positive definite matrix
    safe_cholesky: Lower Cholesky factor with nearest-SPD recovery
    ensure_psd: Symmetrize a covariance and repair negative eigenvalues
    mahalanobis_squared: Squared Mahalanobis distance of an innovation
    gaussian_likelihood: Gaussian density of a set of measurements
    unit_ball_volume: Volume of the unit hypersphere
    gate_volume: Volume of a validation gate
    chi2_gate: Gate level from a gating probability

References:
    - Higham, N. "Computing a nearest symmetric positive semidefinite matrix"
    - D'Errico, J. "nearestSPD" (MATLAB Central)
"""

import numpy as np
from scipy.special import gamma
from scipy.stats import chi2, multivariate_normal

from jpdatrack.utils.logging_config import get_logger

logger = get_logger("utils.linalg")


def symmetrize(matrix: np.ndarray) -> np.ndarray:
    """Return (A + Aᵀ) / 2."""
    matrix = np.asarray(matrix, dtype=float)
    return (matrix + matrix.T) / 2.0


def nearest_spd(matrix: np.ndarray) -> np.ndarray:
    """
    Find the nearest symmetric positive definite matrix.

    Symmetrizes the input, averages it with the symmetric polar factor
    (Higham's nearest PSD matrix) and then nudges the diagonal upwards by a
    growing multiple of the most negative eigenvalue until a Cholesky
    factorization succeeds.

    Args:
        matrix: Square matrix (typically a covariance that lost definiteness)

    Returns:
        Symmetric positive definite matrix of the same shape

    Raises:
        ValueError: If the matrix is not square or contains non-finite values
    """
    a = np.asarray(matrix, dtype=float)
    if a.ndim != 2 or a.shape[0] != a.shape[1]:
        raise ValueError(f"nearest_spd expects a square matrix, got shape {a.shape}")
    if not np.all(np.isfinite(a)):
        raise ValueError("nearest_spd received a matrix with non-finite entries")

    n = a.shape[0]
    b = symmetrize(a)

    # Symmetric polar factor H of B
    _, s, vt = np.linalg.svd(b)
    h = vt.T @ np.diag(s) @ vt

    a_hat = symmetrize((b + h) / 2.0)

    # Smallest shift that changes an entry of a_hat; keeps exactly singular inputs moving
    floor = np.spacing(max(np.max(np.abs(a_hat)), 1.0))
    identity = np.eye(n)

    k = 0
    while True:
        try:
            np.linalg.cholesky(a_hat)
            return a_hat
        except np.linalg.LinAlgError:
            min_eig = float(np.min(np.linalg.eigvalsh(a_hat)))
            shift = -min_eig * k**2 + np.spacing(abs(min_eig))
            a_hat = a_hat + max(shift, floor * (k + 1)) * identity
            k += 1


def safe_cholesky(matrix: np.ndarray) -> np.ndarray:
    """
    Lower-triangular Cholesky factor with positive-definiteness recovery.

    If the factorization fails the matrix is projected with nearest_spd()
    and factorized again. This is the normal path for sigma-point filters
    whose covariances drift from strict definiteness through round-off.

    Args:
        matrix: Symmetric matrix to factorize

    Returns:
        Lower-triangular L with L @ L.T ≈ matrix
    """
    try:
        return np.linalg.cholesky(matrix)
    except np.linalg.LinAlgError:
        logger.debug("Matrix not positive definite, projecting to nearest SPD")
        return np.linalg.cholesky(nearest_spd(matrix))


def ensure_psd(covariance: np.ndarray, tolerance: float = 1e-9) -> np.ndarray:
    """
    Symmetrize a covariance matrix and repair it if it has negative eigenvalues.

    Args:
        covariance: Covariance matrix
        tolerance: Relative tolerance below zero accepted for the smallest eigenvalue

    Returns:
        Symmetric positive semi-definite covariance
    """
    sym = symmetrize(covariance)
    eigvals = np.linalg.eigvalsh(sym)
    scale = max(1.0, float(np.max(np.abs(eigvals)))) if eigvals.size else 1.0
    if eigvals.size and eigvals[0] < -tolerance * scale:
        logger.debug(f"Covariance has negative eigenvalue {eigvals[0]:.3e}, repairing")
        return nearest_spd(sym)
    return sym


def mahalanobis_squared(innovation: np.ndarray, covariance: np.ndarray) -> float:
    """
    Squared Mahalanobis distance d² = νᵀ S⁻¹ ν.

    Args:
        innovation: Innovation vector ν
        covariance: Innovation covariance S

    Returns:
        Squared distance
    """
    innovation = np.asarray(innovation, dtype=float)
    return float(innovation @ np.linalg.solve(covariance, innovation))


def gaussian_likelihood(points: np.ndarray, mean: np.ndarray,
                        covariance: np.ndarray) -> np.ndarray:
    """
    Evaluate N(z; mean, covariance) for each row of points.

    Args:
        points: Measurements (M x ny)
        mean: Predicted measurement (ny,)
        covariance: Innovation covariance (ny x ny)

    Returns:
        Densities (M,)
    """
    points = np.atleast_2d(np.asarray(points, dtype=float))
    if points.shape[0] == 0:
        return np.zeros(0)
    density = multivariate_normal(mean=mean, cov=covariance).pdf(points)
    return np.atleast_1d(density).astype(float)


def unit_ball_volume(ndim: int) -> float:
    """Volume of the unit hypersphere in ndim dimensions."""
    return float(np.pi ** (ndim / 2.0) / gamma(ndim / 2.0 + 1.0))


def gate_volume(covariance: np.ndarray, gate_level: float) -> float:
    """
    Volume of the validation gate {ν : νᵀ S⁻¹ ν < gate_level}.

    Args:
        covariance: Innovation covariance S (ny x ny)
        gate_level: Squared Mahalanobis gate threshold

    Returns:
        Hyper-ellipsoid volume
    """
    ndim = covariance.shape[0]
    det = max(float(np.linalg.det(covariance)), 0.0)
    return unit_ball_volume(ndim) * gate_level ** (ndim / 2.0) * np.sqrt(det)


def chi2_gate(probability: float, ndim: int) -> float:
    """
    Chi-square gate level for a given gating probability.

    Args:
        probability: Probability that a true measurement falls inside the gate
        ndim: Measurement dimension

    Returns:
        Squared Mahalanobis threshold

    Example:
        >>> round(chi2_gate(0.99, 2), 2)
        9.21
    """
    if not 0.0 < probability < 1.0:
        raise ValueError(f"Gating probability must be in (0, 1), got {probability}")
    return float(chi2.ppf(probability, df=ndim))
