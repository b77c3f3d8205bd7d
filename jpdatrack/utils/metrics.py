"""
Performance metrics and estimation-quality utilities.
"""

import time
from contextlib import contextmanager
from typing import Dict, Optional, Sequence

import numpy as np


class PerformanceMetrics:
    """Record named measurements (e.g. cycle latency) and summarize them."""

    def __init__(self):
        self.metrics: Dict[str, list] = {}

    def record(self, metric_name: str, value: float):
        """
        Record a metric value.

        Args:
            metric_name: Name of the metric
            value: Metric value
        """
        self.metrics.setdefault(metric_name, []).append(value)

    def get_stats(self, metric_name: str) -> Dict[str, float]:
        """
        Get statistics for a metric.

        Args:
            metric_name: Name of the metric

        Returns:
            Dictionary with mean, std, min, max, median and count
            (empty if the metric was never recorded)
        """
        if metric_name not in self.metrics:
            return {}

        values = np.array(self.metrics[metric_name])
        return {
            "mean": float(np.mean(values)),
            "std": float(np.std(values)),
            "min": float(np.min(values)),
            "max": float(np.max(values)),
            "median": float(np.median(values)),
            "count": len(values)
        }

    def summary(self) -> Dict[str, Dict[str, float]]:
        return {name: self.get_stats(name) for name in self.metrics}

    def reset(self):
        self.metrics.clear()


@contextmanager
def timer(metric_name: str, metrics: Optional[PerformanceMetrics] = None):
    """
    Time a block and record the elapsed seconds.

    Args:
        metric_name: Name for the timing metric
        metrics: Optional PerformanceMetrics instance to record to

    Example:
        >>> metrics = PerformanceMetrics()
        >>> with timer("cycle_time", metrics):
        ...     report = tracker.update(measurements, timestamp)
        >>> metrics.get_stats("cycle_time")["count"]
        1
    """
    start = time.perf_counter()
    try:
        yield
    finally:
        if metrics is not None:
            metrics.record(metric_name, time.perf_counter() - start)


def rmse(estimates: np.ndarray, truth: np.ndarray) -> float:
    """
    Root Mean Squared Error over all components.

    Args:
        estimates: Estimated values
        truth: Ground truth values of the same shape

    Returns:
        RMSE value
    """
    estimates = np.asarray(estimates, dtype=float)
    truth = np.asarray(truth, dtype=float)
    return float(np.sqrt(np.mean((estimates - truth) ** 2)))


def position_error(estimated_pos: np.ndarray, true_pos: np.ndarray) -> float:
    """
    Euclidean position error.

    Args:
        estimated_pos: Estimated position (any dimension)
        true_pos: True position

    Returns:
        Error magnitude in the units of the input
    """
    return float(np.linalg.norm(np.asarray(estimated_pos) - np.asarray(true_pos)))


def nees(mean: np.ndarray, covariance: np.ndarray, truth: np.ndarray) -> float:
    """
    Normalized Estimation Error Squared.

    ε = (x − x̂)ᵀ P⁻¹ (x − x̂); for a consistent filter E[ε] equals the state
    dimension.

    Args:
        mean: Estimated state
        covariance: Estimated covariance
        truth: True state

    Returns:
        NEES value
    """
    error = np.asarray(truth, dtype=float) - np.asarray(mean, dtype=float)
    return float(error @ np.linalg.solve(covariance, error))


def average_nees(means: Sequence[np.ndarray], covariances: Sequence[np.ndarray],
                 truths: Sequence[np.ndarray]) -> float:
    """Mean NEES over a trajectory."""
    if not len(means):
        return 0.0
    return float(np.mean([nees(m, P, x) for m, P, x in zip(means, covariances, truths)]))
