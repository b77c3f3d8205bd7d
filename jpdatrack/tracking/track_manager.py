"""
Track Management for Multi-Object Tracking.

This module handles the lifecycle of tracks: existence probability,
initiation through a search hypothesis, confirmation and retirement.

Classes:
    TrackStatus: Enum for track states
    Track: Represents a single tracked object
    TrackManager: Manages the track set and the search hypothesis

References:
    - Musicki, D., Evans, R. "Joint Integrated Probabilistic Data Association: JIPDA"
    - Bar-Shalom, Y. "Tracking and Data Association"
"""

import numpy as np
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional
from dataclasses import dataclass, field, replace

from jpdatrack.tracking.data_association import JPDAAssociator
from jpdatrack.tracking.errors import InvalidConfigurationError
from jpdatrack.tracking.kalman_filters import GaussianEstimate, StateEstimator
from jpdatrack.utils.logging_config import get_logger

if TYPE_CHECKING:
    from jpdatrack.utils.config_loader import TrackerConfig

logger = get_logger("tracking.manager")


class TrackStatus(Enum):
    """Track lifecycle states."""
    CONFIRMED = "confirmed"      # Active track
    DELETED = "deleted"          # Existence decayed, removed next cycle
    SEARCH = "search"            # Search hypothesis over unassociated measurements


def update_existence(
    prior: float,
    likelihood_sum: float,
    clutter_density: float,
    prob_detection: float,
    prob_gating: float,
) -> float:
    """
    Integrated PDA existence update.

    δ = PD·(PG − ΣLⱼ/λ),  r = (1 − δ)·r⁻ / (1 − δ·r⁻)

    This is the Musicki IPDA form, where each gated likelihood is weighed
    against the clutter density without the PG factor.

    Args:
        prior: Predicted existence probability r⁻
        likelihood_sum: Sum of Gaussian likelihoods of the gated measurements
        clutter_density: Clutter density λ
        prob_detection: Probability of detection
        prob_gating: Probability of gating

    Returns:
        Posterior existence probability in [0, 1]
    """
    if clutter_density <= 0:
        raise ValueError(f"Clutter density must be positive, got {clutter_density}")

    delta = prob_detection * (prob_gating - likelihood_sum / clutter_density)
    denominator = 1.0 - delta * prior
    if denominator <= 0:
        # Certain detection with nothing gated; no evidence either way
        return float(np.clip(prior, 0.0, 1.0))

    return float(np.clip((1.0 - delta) * prior / denominator, 0.0, 1.0))


@dataclass
class Track:
    """
    Represents a single tracked object.

    Attributes:
        track_id: Unique track identifier
        estimate: Current Gaussian estimate (with prediction products)
        existence_probability: Probability that the object exists
        status: Current track status
        creation_time: Timestamp when track was created
        last_update_time: Timestamp of last measurement update
        hit_count: Number of cycles with gated measurements
        miss_count: Number of consecutive cycles without gated measurements
        history: Filtered estimates, one per cycle, for smoothing
    """
    track_id: int
    estimate: GaussianEstimate
    existence_probability: float
    status: TrackStatus
    creation_time: float
    last_update_time: float
    hit_count: int = 0
    miss_count: int = 0
    history: List[GaussianEstimate] = field(default_factory=list)

    @property
    def mean(self) -> np.ndarray:
        return self.estimate.mean

    @property
    def covariance(self) -> np.ndarray:
        return self.estimate.covariance

    def predict(self, estimator: StateEstimator, dt: float, prob_survival: float = 1.0):
        """
        Predict track state and existence forward in time.

        Args:
            estimator: State estimator
            dt: Time step (seconds)
            prob_survival: Probability the object survives the step
        """
        self.estimate = estimator.predict(self.estimate, dt)
        self.existence_probability *= prob_survival

    def apply(self, estimate: GaussianEstimate, timestamp: float, detected: bool):
        """
        Replace the estimate with a posterior.

        Args:
            estimate: Posterior estimate
            timestamp: Cycle timestamp
            detected: Whether any measurement was gated this cycle
        """
        self.estimate = replace(estimate, timestamp=timestamp)
        if detected:
            self.hit_count += 1
            self.miss_count = 0
            self.last_update_time = timestamp
        else:
            self.miss_count += 1

    def update_existence(self, likelihood_sum: float, clutter_density: float,
                         prob_detection: float, prob_gating: float):
        """Update existence probability from this cycle's gated likelihoods."""
        self.existence_probability = update_existence(
            self.existence_probability, likelihood_sum, clutter_density,
            prob_detection, prob_gating,
        )

    def record(self):
        """Append the current estimate to the history."""
        self.history.append(self.estimate)

    def age(self, current_time: float) -> float:
        """
        Get track age in seconds.

        Args:
            current_time: Current timestamp

        Returns:
            Age in seconds
        """
        return current_time - self.creation_time

    def time_since_update(self, current_time: float) -> float:
        return current_time - self.last_update_time


class TrackManager:
    """
    Manages the confirmed track set and the search hypothesis.

    The search hypothesis is one extra track seeded from a uniform prior over
    the search region. Every cycle it is updated with the measurements no
    confirmed track gates. When its existence exceeds the birth threshold it
    becomes a confirmed track and a fresh search hypothesis is seeded; when
    it falls below the death threshold it is reseeded.
    """

    def __init__(
        self,
        config: "TrackerConfig",
        estimator: StateEstimator,
        associator: JPDAAssociator,
    ):
        """
        Initialize track manager.

        Args:
            config: Tracker configuration
            estimator: State estimator shared by all tracks
            associator: Associator used to weight the search hypothesis
        """
        if config is None:
            raise InvalidConfigurationError.missing(["lifecycle"])

        self.config = config
        self.lifecycle = config.lifecycle
        self.estimator = estimator
        self.associator = associator

        self.tracks: Dict[int, Track] = {}
        self.next_track_id = 1
        self.search_track: Optional[Track] = None

        if self.lifecycle.search_region is not None:
            self.reset_search(timestamp=0.0)

        logger.info(f"TrackManager initialized: birth={self.lifecycle.birth_threshold}, "
                    f"death={self.lifecycle.death_threshold}, "
                    f"search={'enabled' if self.search_track else 'disabled'}")

    def create_track(
        self,
        mean: np.ndarray,
        covariance: np.ndarray,
        timestamp: float = 0.0,
        existence: Optional[float] = None,
    ) -> Track:
        """
        Create a new confirmed track.

        Args:
            mean: Initial state mean
            covariance: Initial state covariance
            timestamp: Creation time
            existence: Initial existence probability (default from config)

        Returns:
            New Track object
        """
        if existence is None:
            existence = self.lifecycle.initial_existence
        if not 0.0 <= existence <= 1.0:
            raise ValueError(f"Existence probability must be in [0, 1], got {existence}")

        track_id = self.next_track_id
        self.next_track_id += 1

        estimate = GaussianEstimate(mean=mean, covariance=covariance, timestamp=timestamp)
        track = Track(
            track_id=track_id,
            estimate=estimate,
            existence_probability=existence,
            status=TrackStatus.CONFIRMED,
            creation_time=timestamp,
            last_update_time=timestamp,
            history=[estimate],
        )

        self.tracks[track_id] = track
        logger.debug(f"Created track {track_id} at {estimate.mean}")

        return track

    def search_prior(self, timestamp: float = 0.0) -> GaussianEstimate:
        """
        Gaussian moments of the uniform prior over the search region.

        Position components take the centre of their bound and variance
        width²/12; the remaining state components are uniform in
        [-search_max_speed, search_max_speed].
        """
        region = np.asarray(self.lifecycle.search_region, dtype=float)
        nx = self.estimator.dynamic_model.ndim
        n_pos = region.shape[0]
        if n_pos > nx:
            raise InvalidConfigurationError(
                f"Search region has {n_pos} components but the state has {nx}",
                fields=["lifecycle.search_region"],
            )

        mean = np.zeros(nx)
        mean[:n_pos] = region.mean(axis=1)

        variances = np.full(nx, (2.0 * self.lifecycle.search_max_speed) ** 2 / 12.0)
        variances[:n_pos] = (region[:, 1] - region[:, 0]) ** 2 / 12.0

        return GaussianEstimate(mean=mean, covariance=np.diag(variances), timestamp=timestamp)

    def reset_search(self, timestamp: float = 0.0):
        """Reseed the search hypothesis from the uniform prior."""
        self.search_track = Track(
            track_id=0,
            estimate=self.search_prior(timestamp),
            existence_probability=self.lifecycle.search_initial_existence,
            status=TrackStatus.SEARCH,
            creation_time=timestamp,
            last_update_time=timestamp,
        )
        logger.debug("Search hypothesis reseeded")

    def promote(self, timestamp: float) -> Track:
        """
        Turn the search hypothesis into a confirmed track and reseed it.

        Args:
            timestamp: Cycle timestamp

        Returns:
            Newly confirmed track
        """
        search = self.search_track
        if search is None:
            raise RuntimeError("No search hypothesis to promote")

        track = self.create_track(
            search.estimate.mean,
            search.estimate.covariance,
            timestamp=timestamp,
            existence=search.existence_probability,
        )
        track.estimate = replace(search.estimate, timestamp=timestamp)
        track.history = []
        track.hit_count = search.hit_count

        logger.info(f"Track {track.track_id} CONFIRMED from search "
                    f"(existence: {track.existence_probability:.3f})")

        self.reset_search(timestamp)
        return track

    def step_search(
        self,
        measurements: np.ndarray,
        candidate_indices: List[int],
        dt: float,
        timestamp: float,
    ) -> Optional[Track]:
        """
        Run one predict/update cycle of the search hypothesis.

        Args:
            measurements: All measurements of the cycle (M x ny)
            candidate_indices: Measurements gated by no confirmed track
            dt: Time step
            timestamp: Cycle timestamp

        Returns:
            The promoted track, if the search hypothesis was confirmed
        """
        search = self.search_track
        if search is None:
            return None

        association = self.config.association
        search.predict(self.estimator, dt, self.lifecycle.prob_survival)

        candidates = measurements[np.asarray(candidate_indices, dtype=int)]
        result = self.associator.associate(
            [search.estimate], candidates, clutter_density=association.clutter_density
        )
        gated = np.flatnonzero(result.validation.validation_matrix[0])

        posterior = self.estimator.update_multi(
            search.estimate, candidates[gated], result.track_weights(0)
        )
        search.apply(posterior, timestamp, detected=gated.size > 0)

        density = association.clutter_density or result.validation.clutter_density
        search.update_existence(
            result.validation.likelihoods[0].sum(), density,
            association.prob_detection, association.prob_gating,
        )

        logger.debug(f"Search hypothesis: {gated.size} gated candidates, "
                     f"existence {search.existence_probability:.3f}")

        if search.existence_probability > self.lifecycle.birth_threshold:
            return self.promote(timestamp)

        if search.existence_probability < self.lifecycle.death_threshold:
            self.reset_search(timestamp)

        return None

    def mark_dead_tracks(self) -> List[int]:
        """
        Mark confirmed tracks whose existence fell below the death threshold.

        Returns:
            IDs of the newly marked tracks
        """
        marked = []
        for track_id, track in self.tracks.items():
            if track.status == TrackStatus.CONFIRMED and \
                    track.existence_probability < self.lifecycle.death_threshold:
                track.status = TrackStatus.DELETED
                marked.append(track_id)
                logger.info(f"Track {track_id} marked for DELETION "
                            f"(existence: {track.existence_probability:.3f})")
        return marked

    def prune_tracks(self) -> List[int]:
        """
        Remove tracks marked for deletion.

        Returns:
            IDs of the removed tracks
        """
        to_delete = [tid for tid, track in self.tracks.items() if track.status == TrackStatus.DELETED]

        for track_id in to_delete:
            del self.tracks[track_id]

        if to_delete:
            logger.debug(f"Pruned {len(to_delete)} tracks")

        return to_delete

    def get_confirmed_tracks(self) -> List[Track]:
        """Get all confirmed tracks, ordered by track ID."""
        return [self.tracks[tid] for tid in sorted(self.tracks)
                if self.tracks[tid].status == TrackStatus.CONFIRMED]

    def get_track(self, track_id: int) -> Optional[Track]:
        """Get track by ID."""
        return self.tracks.get(track_id)

    def get_track_count(self) -> Dict[str, int]:
        """Get count of tracks by status."""
        counts = {status.value: 0 for status in TrackStatus}
        for track in self.tracks.values():
            counts[track.status.value] += 1
        counts[TrackStatus.SEARCH.value] = 1 if self.search_track is not None else 0
        return counts

    def reset(self):
        """Remove all tracks and reseed the search hypothesis."""
        self.tracks.clear()
        self.next_track_id = 1
        if self.lifecycle.search_region is not None:
            self.reset_search(timestamp=0.0)

    def get_statistics(self) -> Dict[str, float]:
        """
        Get tracking statistics.

        Returns:
            Dictionary of statistics
        """
        confirmed = self.get_confirmed_tracks()

        if not confirmed:
            return {
                'total_tracks': len(self.tracks),
                'confirmed_tracks': 0,
                'mean_existence': 0.0,
                'mean_covariance_trace': 0.0,
                'mean_hit_count': 0.0,
            }

        return {
            'total_tracks': len(self.tracks),
            'confirmed_tracks': len(confirmed),
            'mean_existence': float(np.mean([t.existence_probability for t in confirmed])),
            'mean_covariance_trace': float(np.mean([np.trace(t.covariance) for t in confirmed])),
            'mean_hit_count': float(np.mean([t.hit_count for t in confirmed])),
        }
