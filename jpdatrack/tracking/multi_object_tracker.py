"""
Multi-Object Tracker.

This module provides the main tracking pipeline that orchestrates all components:
- State estimators (KF/EKF/UKF)
- JPDA data association
- Track management (existence, search hypothesis, retirement)

Each call to update() runs one synchronous cycle:
prune → predict → gate → cluster → weight → update → existence → lifecycle.

Classes:
    TrackSnapshot: Read-only view of a track after a cycle
    CycleReport: Per-cycle query surface
    MultiObjectTracker: Main tracking orchestrator

References:
    - Bar-Shalom, Y. "Multitarget-Multisensor Tracking"
    - Musicki, D., Evans, R. "Joint Integrated Probabilistic Data Association: JIPDA"
"""

import numpy as np
from typing import TYPE_CHECKING, Dict, List, Optional
from dataclasses import dataclass, field

from jpdatrack.tracking.data_association import Cluster, JPDAAssociator
from jpdatrack.tracking.errors import InvalidConfigurationError
from jpdatrack.tracking.kalman_filters import SmoothedEstimate, create_estimator
from jpdatrack.tracking.models import (
    ConstantVelocityModel, DynamicModel, ObservationModel, PositionalObservationModel
)
from jpdatrack.tracking.track_manager import Track, TrackManager
from jpdatrack.utils.logging_config import get_logger
from jpdatrack.utils.metrics import PerformanceMetrics, timer

if TYPE_CHECKING:
    from jpdatrack.utils.config_loader import TrackerConfig

logger = get_logger("tracking.mot")


@dataclass
class TrackSnapshot:
    """
    State of one track at the end of a cycle.

    Attributes:
        track_id: Track identifier
        mean: State mean
        covariance: State covariance
        existence_probability: Existence probability
        status: Track status value
        hit_count: Cycles with gated measurements
        miss_count: Consecutive cycles without gated measurements
    """
    track_id: int
    mean: np.ndarray
    covariance: np.ndarray
    existence_probability: float
    status: str
    hit_count: int
    miss_count: int

    @classmethod
    def from_track(cls, track: Track) -> "TrackSnapshot":
        return cls(
            track_id=track.track_id,
            mean=track.mean.copy(),
            covariance=track.covariance.copy(),
            existence_probability=track.existence_probability,
            status=track.status.value,
            hit_count=track.hit_count,
            miss_count=track.miss_count,
        )

    def to_dict(self) -> dict:
        return {
            'track_id': self.track_id,
            'mean': self.mean.tolist(),
            'covariance': self.covariance.tolist(),
            'existence_probability': self.existence_probability,
            'status': self.status,
            'hit_count': self.hit_count,
            'miss_count': self.miss_count,
        }


@dataclass
class CycleReport:
    """
    Result of one tracking cycle.

    Rows of validation_matrix and association_weights follow the order of
    track_ids (the tracks that took part in association this cycle).

    Attributes:
        timestamp: Cycle time
        tracks: Snapshots of the confirmed tracks after the cycle
        track_ids: Track IDs in association order
        validation_matrix: Gate matrix (n_tracks x n_measurements)
        association_weights: Weights (n_tracks x (n_measurements + 1)), column 0 is "no detection"
        clusters: Cluster partition (indices into track_ids and measurements)
        clutter_density: Estimated clutter density of the cycle
        search_candidates: Measurements gated by no track
        promoted_track_ids: Tracks confirmed from the search hypothesis
        retired_track_ids: Tracks marked for deletion this cycle
        diagnostics: Informational messages
    """
    timestamp: float
    tracks: List[TrackSnapshot]
    track_ids: List[int]
    validation_matrix: np.ndarray
    association_weights: np.ndarray
    clusters: List[Cluster]
    clutter_density: float
    search_candidates: List[int] = field(default_factory=list)
    promoted_track_ids: List[int] = field(default_factory=list)
    retired_track_ids: List[int] = field(default_factory=list)
    diagnostics: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp,
            'tracks': [t.to_dict() for t in self.tracks],
            'track_ids': self.track_ids,
            'validation_matrix': self.validation_matrix.astype(int).tolist(),
            'association_weights': self.association_weights.tolist(),
            'clusters': [
                {'tracks': [self.track_ids[i] for i in c.track_indices],
                 'measurements': c.measurement_indices}
                for c in self.clusters
            ],
            'clutter_density': self.clutter_density,
            'search_candidates': self.search_candidates,
            'promoted_track_ids': self.promoted_track_ids,
            'retired_track_ids': self.retired_track_ids,
            'diagnostics': self.diagnostics,
        }


class MultiObjectTracker:
    """
    Multi-object tracker with JPDA association.

    Orchestrates the complete tracking pipeline:
    1. Remove tracks retired in the previous cycle
    2. Predict all tracks forward in time
    3. Gate measurements and form clusters
    4. Compute JPDA association weights per cluster
    5. Update every track with its weighted measurements
    6. Update existence probabilities, run the search hypothesis and retire tracks
    """

    def __init__(
        self,
        config: "TrackerConfig",
        dynamic_model: Optional[DynamicModel] = None,
        observation_model: Optional[ObservationModel] = None,
    ):
        """
        Initialize multi-object tracker.

        Args:
            config: Tracker configuration
            dynamic_model: Dynamic model (default: constant velocity from config.model)
            observation_model: Observation model (default: positional from config.model)

        Raises:
            InvalidConfigurationError: If no configuration is given
        """
        if config is None:
            raise InvalidConfigurationError.missing(["association", "lifecycle"])

        self.config = config

        if dynamic_model is None:
            dynamic_model = ConstantVelocityModel(dim=config.model.dim, q=config.model.process_noise)
        if observation_model is None:
            observation_model = PositionalObservationModel(
                dim=config.model.dim,
                r=config.model.measurement_noise_std,
                state_dim=dynamic_model.ndim,
            )
        self.dynamic_model = dynamic_model
        self.observation_model = observation_model

        # Initialize components
        self.estimator = create_estimator(
            config.filter.filter_type,
            dynamic_model,
            observation_model,
            alpha=config.filter.alpha,
            kappa=config.filter.kappa,
            beta=config.filter.beta,
        )
        self.associator = JPDAAssociator(
            prob_detection=config.association.prob_detection,
            prob_gating=config.association.prob_gating,
            gate_level=config.association.gate_level,
            joint_association=config.association.joint_association,
            residual=observation_model.residual,
        )
        self.track_manager = TrackManager(config, self.estimator, self.associator)

        # Statistics
        self.metrics = PerformanceMetrics()
        self.current_time = 0.0
        self.last_update_time: Optional[float] = None
        self.update_count = 0
        self.total_measurements = 0

        logger.info(
            f"MultiObjectTracker initialized: "
            f"filter={config.filter.filter_type}, "
            f"joint_association={config.association.joint_association}"
        )

    def add_track(
        self,
        mean: np.ndarray,
        covariance: np.ndarray,
        existence: Optional[float] = None,
    ) -> Track:
        """
        Seed a confirmed track.

        Args:
            mean: Initial state mean
            covariance: Initial state covariance
            existence: Initial existence probability (default from config)

        Returns:
            The new track
        """
        timestamp = self.last_update_time if self.last_update_time is not None else 0.0
        return self.track_manager.create_track(mean, covariance, timestamp=timestamp, existence=existence)

    def update(self, measurements: Optional[np.ndarray], timestamp: float) -> CycleReport:
        """
        Run one tracking cycle.

        Args:
            measurements: Measurements of this cycle (M x ny); may be empty or None
            timestamp: Current time

        Returns:
            CycleReport for the cycle
        """
        ny = self.observation_model.ndim_obs
        Z = np.zeros((0, ny)) if measurements is None else \
            np.asarray(measurements, dtype=float).reshape(-1, ny)

        dt = timestamp - self.last_update_time if self.last_update_time is not None else 0.0
        if dt < 0:
            raise ValueError(f"Timestamp {timestamp} is earlier than the last update {self.last_update_time}")

        diagnostics: List[str] = []
        if self.update_count == 0 and self.estimator.defaulted_parameters:
            diagnostics.append(
                f"Defaulted scaling parameters: {', '.join(self.estimator.defaulted_parameters)}"
            )

        with timer("cycle_time", self.metrics):
            # Step 1: Remove tracks retired last cycle
            self.track_manager.prune_tracks()

            # Step 2: Predict all tracks to current time
            tracks = self.track_manager.get_confirmed_tracks()
            for track in tracks:
                track.predict(self.estimator, dt, self.config.lifecycle.prob_survival)

            if not tracks:
                diagnostics.append("No tracks")
                logger.info("No tracks were found")
            if Z.shape[0] == 0:
                diagnostics.append("No measurements")
                logger.info("No measurements were received")

            # Steps 3-4: Gating, clustering and association weights
            result = self.associator.associate(
                [t.estimate for t in tracks], Z,
                clutter_density=self.config.association.clutter_density,
            )
            validation = result.validation

            for cluster in result.failed_clusters:
                diagnostics.append(
                    f"Skipped inconsistent cluster with tracks "
                    f"{[tracks[i].track_id for i in cluster.track_indices]}"
                )

            # Step 5: Weighted update of every track
            failed = set(result.failed_track_indices)
            density = self.config.association.clutter_density or validation.clutter_density

            for i, track in enumerate(tracks):
                if i in failed:
                    track.apply(self.estimator.update(track.estimate, None), timestamp, detected=False)
                    continue

                gated = np.flatnonzero(validation.validation_matrix[i])
                posterior = self.estimator.update_multi(track.estimate, Z[gated], result.track_weights(i))
                track.apply(posterior, timestamp, detected=gated.size > 0)

                # Step 6: Existence
                track.update_existence(
                    validation.likelihoods[i].sum(), density,
                    self.config.association.prob_detection,
                    self.config.association.prob_gating,
                )

            # Step 6: Lifecycle
            candidates = [int(j) for j in np.flatnonzero(~validation.validation_matrix.any(axis=0))]
            promoted = self.track_manager.step_search(Z, candidates, dt, timestamp)
            retired = self.track_manager.mark_dead_tracks()

            for track in tracks:
                track.record()
            if promoted is not None:
                promoted.record()

        self.current_time = timestamp
        self.last_update_time = timestamp
        self.update_count += 1
        self.total_measurements += Z.shape[0]

        logger.debug(
            f"Update {self.update_count}: {Z.shape[0]} measurements, {len(tracks)} tracks, "
            f"{len(candidates)} search candidates"
        )

        return CycleReport(
            timestamp=timestamp,
            tracks=[TrackSnapshot.from_track(t) for t in self.track_manager.get_confirmed_tracks()],
            track_ids=[t.track_id for t in tracks],
            validation_matrix=validation.validation_matrix,
            association_weights=result.weights,
            clusters=result.clusters,
            clutter_density=validation.clutter_density,
            search_candidates=candidates,
            promoted_track_ids=[promoted.track_id] if promoted is not None else [],
            retired_track_ids=retired,
            diagnostics=diagnostics,
        )

    def smooth_track(self, track_id: int) -> List[SmoothedEstimate]:
        """
        Smoothed trajectory of a track.

        Args:
            track_id: Track identifier

        Returns:
            Smoothed estimates, one per recorded cycle

        Raises:
            KeyError: If the track does not exist
        """
        track = self.track_manager.get_track(track_id)
        if track is None:
            raise KeyError(f"Track {track_id} not found")

        return self.estimator.smooth(track.history)

    def get_confirmed_tracks(self) -> List[Track]:
        """Get all confirmed tracks."""
        return self.track_manager.get_confirmed_tracks()

    def get_track(self, track_id: int) -> Optional[Track]:
        """Get a specific track by ID."""
        return self.track_manager.get_track(track_id)

    def get_statistics(self) -> dict:
        """
        Get tracker statistics.

        Returns:
            Dictionary of performance metrics
        """
        track_stats = self.track_manager.get_statistics()

        stats = {
            'update_count': self.update_count,
            'current_time': self.current_time,
            'total_measurements': self.total_measurements,
            **track_stats
        }

        if self.update_count > 0:
            stats['avg_measurements_per_update'] = self.total_measurements / self.update_count
            stats['mean_cycle_time'] = self.metrics.get_stats("cycle_time").get("mean", 0.0)

        return stats

    def reset(self):
        """Reset tracker to initial state."""
        self.track_manager.reset()
        self.metrics.reset()

        self.current_time = 0.0
        self.last_update_time = None
        self.update_count = 0
        self.total_measurements = 0

        logger.info("Tracker reset")

    def __repr__(self) -> str:
        return (
            f"MultiObjectTracker("
            f"tracks={len(self.track_manager.tracks)}, "
            f"updates={self.update_count}, "
            f"filter={self.config.filter.filter_type})"
        )
