"""
Tracking Engine - Multi-Target Tracking with Joint Probabilistic Data Association

This module provides state estimation and tracking capabilities for moving
objects observed through noisy, ambiguous measurements.

Components:
- models: Dynamic and observation model contracts and stock models
- kalman_filters: KF, EKF and UKF implementations with RTS smoothing
- data_association: Gating, clustering and JPDA weighting
- track_manager: Existence probability and track lifecycle
- multi_object_tracker: Main tracking orchestration

Example:
    >>> from jpdatrack.tracking import MultiObjectTracker
    >>> tracker = MultiObjectTracker(config)
    >>> report = tracker.update(measurements, timestamp)
"""

from .errors import AssociationInconsistencyError, InvalidConfigurationError
from .models import (
    DynamicModel,
    ObservationModel,
    ConstantVelocityModel,
    PositionalObservationModel,
    RangeBearingObservationModel,
)
from .kalman_filters import (
    GaussianEstimate,
    SmoothedEstimate,
    StateEstimator,
    KalmanFilter,
    ExtendedKalmanFilter,
    UnscentedKalmanFilter,
    create_estimator,
)
from .data_association import (
    Cluster,
    ValidationResult,
    AssociationResult,
    HypothesisEnumerator,
    ExhaustiveHypothesisEnumerator,
    HypothesisNetEnumerator,
    JPDAAssociator,
    build_validation_matrix,
    form_clusters,
)
from .track_manager import Track, TrackManager, TrackStatus
from .multi_object_tracker import CycleReport, MultiObjectTracker, TrackSnapshot

__all__ = [
    "AssociationInconsistencyError",
    "InvalidConfigurationError",
    "DynamicModel",
    "ObservationModel",
    "ConstantVelocityModel",
    "PositionalObservationModel",
    "RangeBearingObservationModel",
    "GaussianEstimate",
    "SmoothedEstimate",
    "StateEstimator",
    "KalmanFilter",
    "ExtendedKalmanFilter",
    "UnscentedKalmanFilter",
    "create_estimator",
    "Cluster",
    "ValidationResult",
    "AssociationResult",
    "HypothesisEnumerator",
    "ExhaustiveHypothesisEnumerator",
    "HypothesisNetEnumerator",
    "JPDAAssociator",
    "build_validation_matrix",
    "form_clusters",
    "Track",
    "TrackManager",
    "TrackStatus",
    "CycleReport",
    "MultiObjectTracker",
    "TrackSnapshot",
]
