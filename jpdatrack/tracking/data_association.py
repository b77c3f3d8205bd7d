"""
Joint Probabilistic Data Association (JPDA) for multi-object tracking.

This module gates measurements against track predictions, partitions tracks
and measurements into independent clusters, and computes per-track
association probabilities by marginalizing over the feasible joint
association hypotheses of each cluster.

Classes:
    ValidationResult: Gating products of one cycle
    Cluster: Tracks and measurements linked through shared gates
    AssociationResult: Association weights of one cycle
    HypothesisEnumerator: Abstract hypothesis marginalization contract
    ExhaustiveHypothesisEnumerator: Exact depth-first enumeration
    HypothesisNetEnumerator: Exact marginals over a merged hypothesis net
    JPDAAssociator: Gating, clustering and weighting engine

References:
    - Fortmann, T., Bar-Shalom, Y., Scheffe, M. "Sonar Tracking of Multiple
      Targets Using Joint Probabilistic Data Association"
    - Bar-Shalom, Y. "Multitarget-Multisensor Tracking"
"""

import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components

from jpdatrack.tracking.errors import AssociationInconsistencyError
from jpdatrack.tracking.kalman_filters import GaussianEstimate
from jpdatrack.utils.linalg import gate_volume, gaussian_likelihood, mahalanobis_squared
from jpdatrack.utils.logging_config import get_logger

logger = get_logger("tracking.association")


@dataclass
class ValidationResult:
    """
    Gating products of one cycle.

    Attributes:
        validation_matrix: Boolean gate matrix (n_tracks x n_measurements)
        likelihoods: Gaussian measurement likelihoods, zero outside the gate
        distances: Squared Mahalanobis distances
        gate_volumes: Gate volume of every track (n_tracks,)
        total_gate_volume: Sum of gate volumes
        validated_points: Number of validated (track, measurement) pairs
        clutter_density: Estimated new-track/false-alarm density
    """
    validation_matrix: np.ndarray
    likelihoods: np.ndarray
    distances: np.ndarray
    gate_volumes: np.ndarray
    total_gate_volume: float
    validated_points: int
    clutter_density: float

    @property
    def n_tracks(self) -> int:
        return self.validation_matrix.shape[0]

    @property
    def n_measurements(self) -> int:
        return self.validation_matrix.shape[1]


@dataclass
class Cluster:
    """
    Tracks and measurements forming one independent association problem.

    Attributes:
        track_indices: Indices of tracks in the cluster
        measurement_indices: Indices of measurements gated by those tracks
    """
    track_indices: List[int]
    measurement_indices: List[int] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """True for a "no detection" cluster."""
        return len(self.measurement_indices) == 0


@dataclass
class AssociationResult:
    """
    Association weights of one cycle.

    Attributes:
        validation: Gating products
        clusters: Cluster partition used for weighting
        weights: Association probabilities (n_tracks x (n_measurements + 1)),
            column 0 is "no detection"
        failed_clusters: Clusters skipped because they were inconsistent
    """
    validation: ValidationResult
    clusters: List[Cluster]
    weights: np.ndarray
    failed_clusters: List[Cluster] = field(default_factory=list)

    def track_weights(self, track_index: int) -> np.ndarray:
        """
        Weights of one track restricted to its gated measurements.

        Returns:
            Vector [w0, w_j1, w_j2, ...] for the gated measurements j1 < j2 < ...
        """
        gated = np.flatnonzero(self.validation.validation_matrix[track_index])
        return np.concatenate([[self.weights[track_index, 0]], self.weights[track_index, gated + 1]])

    @property
    def failed_track_indices(self) -> List[int]:
        return sorted(t for cluster in self.failed_clusters for t in cluster.track_indices)


def build_validation_matrix(
    predictions: Sequence[GaussianEstimate],
    measurements: np.ndarray,
    gate_level: float,
    residual: Optional[Callable[[np.ndarray, np.ndarray], np.ndarray]] = None,
) -> ValidationResult:
    """
    Gate every measurement against every predicted track.

    A measurement is valid for a track when its squared Mahalanobis distance
    from the predicted measurement is below gate_level. The clutter density is
    estimated as validated points over total gate volume (1 if that is zero).

    Args:
        predictions: Predicted estimates (one per track)
        measurements: Measurements (n_measurements x ny)
        gate_level: Squared Mahalanobis gate threshold
        residual: Measurement difference (a, b) -> a - b, e.g. with wrapped
            angles (default: subtraction)

    Returns:
        ValidationResult
    """
    if residual is None:
        residual = np.subtract
    n_tracks = len(predictions)
    measurements = np.asarray(measurements, dtype=float)
    if measurements.size == 0:
        ny = predictions[0].predicted_measurement.size if n_tracks else 0
        measurements = measurements.reshape(0, ny)
    n_meas = measurements.shape[0]

    validation_matrix = np.zeros((n_tracks, n_meas), dtype=bool)
    likelihoods = np.zeros((n_tracks, n_meas))
    distances = np.full((n_tracks, n_meas), np.inf)
    gate_volumes = np.zeros(n_tracks)

    for i, prediction in enumerate(predictions):
        if not prediction.is_predicted:
            raise ValueError(f"Track {i} has not been predicted")

        S = prediction.innovation_covariance
        gate_volumes[i] = gate_volume(S, gate_level)

        if n_meas == 0:
            continue

        innovations = residual(measurements, prediction.predicted_measurement)
        for j in range(n_meas):
            distances[i, j] = mahalanobis_squared(innovations[j], S)
        validation_matrix[i] = distances[i] < gate_level

        gated = np.flatnonzero(validation_matrix[i])
        if gated.size:
            likelihoods[i, gated] = gaussian_likelihood(
                innovations[gated], np.zeros(S.shape[0]), S
            )

    validated_points = int(validation_matrix.sum())
    total_gate_volume = float(gate_volumes.sum())

    clutter_density = validated_points / total_gate_volume if total_gate_volume > 0 else 0.0
    if clutter_density == 0:
        clutter_density = 1.0

    logger.debug(f"Built validation matrix: {n_tracks} tracks x {n_meas} measurements")
    logger.debug(f"  Validated points: {validated_points}, clutter density: {clutter_density:.3e}")

    return ValidationResult(
        validation_matrix=validation_matrix,
        likelihoods=likelihoods,
        distances=distances,
        gate_volumes=gate_volumes,
        total_gate_volume=total_gate_volume,
        validated_points=validated_points,
        clutter_density=clutter_density,
    )


def form_clusters(validation_matrix: np.ndarray, joint: bool = True) -> List[Cluster]:
    """
    Partition tracks into independent association clusters.

    In joint mode two tracks belong to the same cluster when they are
    connected through shared gated measurements (connected components of the
    bipartite track/measurement graph). Tracks that gate nothing become
    singleton clusters with no measurements. In non-joint (PDAF) mode every
    track is its own cluster with all of its gated measurements.

    Args:
        validation_matrix: Boolean gate matrix (n_tracks x n_measurements)
        joint: Whether to resolve shared measurements jointly

    Returns:
        Clusters sorted by their smallest track index
    """
    validation_matrix = np.asarray(validation_matrix, dtype=bool)
    n_tracks, n_meas = validation_matrix.shape

    if not joint:
        return [
            Cluster([t], [int(j) for j in np.flatnonzero(validation_matrix[t])])
            for t in range(n_tracks)
        ]

    clusters = []
    gated_tracks = np.flatnonzero(validation_matrix.any(axis=1))

    if gated_tracks.size:
        # Bipartite adjacency: tracks first, then measurements
        adjacency = np.zeros((n_tracks + n_meas, n_tracks + n_meas))
        adjacency[:n_tracks, n_tracks:] = validation_matrix
        adjacency[n_tracks:, :n_tracks] = validation_matrix.T

        _, labels = connected_components(csr_matrix(adjacency), directed=False)
        track_labels = labels[:n_tracks]
        meas_labels = labels[n_tracks:]

        for label in np.unique(track_labels[gated_tracks]):
            clusters.append(Cluster(
                track_indices=[int(t) for t in np.flatnonzero(track_labels == label)],
                measurement_indices=[int(j) for j in np.flatnonzero(meas_labels == label)],
            ))

    for t in range(n_tracks):
        if t not in gated_tracks:
            clusters.append(Cluster([t], []))

    clusters.sort(key=lambda c: c.track_indices[0])

    logger.debug(f"Formed {len(clusters)} clusters from {n_tracks} tracks")
    return clusters


def per_track_fallback(validation: np.ndarray, likelihoods: np.ndarray) -> np.ndarray:
    """Normalize every row on its own; empty rows take "no detection"."""
    masked = np.where(validation, likelihoods, 0.0)
    result = np.zeros_like(masked)
    row_sums = masked.sum(axis=1)
    for t, row_sum in enumerate(row_sums):
        if row_sum > 0:
            result[t] = masked[t] / row_sum
        else:
            result[t, 0] = 1.0
    return result


class HypothesisEnumerator(ABC):
    """
    Marginalizes joint association hypotheses of one cluster.

    Inputs are the local validation matrix and the local likelihood matrix,
    both with a leading "no detection" column. The output holds per-track
    marginal association probabilities with every row summing to 1 and zeros
    where the validation matrix is zero.
    """

    @abstractmethod
    def marginals(self, validation: np.ndarray, likelihoods: np.ndarray) -> np.ndarray:
        """
        Args:
            validation: Local validation matrix (n_tracks x (n_meas + 1))
            likelihoods: Local likelihood matrix (n_tracks x (n_meas + 1))

        Returns:
            Marginal association probabilities (n_tracks x (n_meas + 1))
        """


class ExhaustiveHypothesisEnumerator(HypothesisEnumerator):
    """
    Exact enumeration of all feasible joint association events.

    Each track takes "no detection" or one of its gated measurements, and
    each measurement is used by at most one track. The weight of a joint
    event is the product of the chosen likelihoods. Factorial in cluster
    size; HypothesisNetEnumerator gives the same marginals for large clusters.
    """

    def marginals(self, validation: np.ndarray, likelihoods: np.ndarray) -> np.ndarray:
        validation = np.asarray(validation, dtype=bool)
        likelihoods = np.asarray(likelihoods, dtype=float)
        n_tracks, n_cols = validation.shape

        marginals = np.zeros((n_tracks, n_cols))
        if n_tracks == 0:
            return marginals

        assignment = [0] * n_tracks
        used = set()
        total = 0.0

        def visit(track: int, weight: float):
            nonlocal total
            if track == n_tracks:
                total += weight
                for t, col in enumerate(assignment):
                    marginals[t, col] += weight
                return

            for col in range(n_cols):
                if not validation[track, col] or col in used:
                    continue
                assignment[track] = col
                if col > 0:
                    used.add(col)
                visit(track + 1, weight * likelihoods[track, col])
                if col > 0:
                    used.discard(col)

        visit(0, 1.0)

        if total <= 0:
            logger.warning("All joint hypotheses have zero weight, normalizing per track")
            return per_track_fallback(validation, likelihoods)

        return marginals / total


class HypothesisNetEnumerator(HypothesisEnumerator):
    """
    Exact marginals from a hypothesis net (efficient hypothesis management).

    Tracks are visited in order. A net node at layer t is the set of
    measurements already taken that some track t, t+1, ... can still gate;
    joint events reaching the same node share every continuation, so they are
    merged. Forward and backward sums over the net give the same marginals as
    full enumeration at a cost bounded by the number of distinct nodes.
    """

    def marginals(self, validation: np.ndarray, likelihoods: np.ndarray) -> np.ndarray:
        validation = np.asarray(validation, dtype=bool)
        likelihoods = np.asarray(likelihoods, dtype=float)
        n_tracks, n_cols = validation.shape

        marginals = np.zeros((n_tracks, n_cols))
        if n_tracks == 0:
            return marginals

        # Measurements that tracks t.. can still use
        remaining = [frozenset()] * (n_tracks + 1)
        for t in range(n_tracks - 1, -1, -1):
            gated = {int(c) for c in np.flatnonzero(validation[t]) if c > 0}
            remaining[t] = remaining[t + 1] | gated

        forward = [dict() for _ in range(n_tracks + 1)]
        forward[0][frozenset()] = 1.0
        edges = [[] for _ in range(n_tracks)]

        for t in range(n_tracks):
            for node, weight in forward[t].items():
                for col in np.flatnonzero(validation[t]):
                    col = int(col)
                    if col in node:
                        continue
                    child = (node | {col}) & remaining[t + 1] if col > 0 else node & remaining[t + 1]
                    edges[t].append((node, col, child))
                    forward[t + 1][child] = forward[t + 1].get(child, 0.0) + weight * likelihoods[t, col]

        backward = [dict() for _ in range(n_tracks + 1)]
        backward[n_tracks] = {node: 1.0 for node in forward[n_tracks]}
        for t in range(n_tracks - 1, -1, -1):
            for node, col, child in edges[t]:
                backward[t][node] = backward[t].get(node, 0.0) + \
                    likelihoods[t, col] * backward[t + 1][child]

        total = backward[0].get(frozenset(), 0.0)
        if total <= 0:
            logger.warning("All joint hypotheses have zero weight, normalizing per track")
            return per_track_fallback(validation, likelihoods)

        for t in range(n_tracks):
            for node, col, child in edges[t]:
                marginals[t, col] += forward[t][node] * likelihoods[t, col] * backward[t + 1][child]

        logger.debug(f"Hypothesis net: {sum(len(layer) for layer in forward)} nodes "
                     f"for {n_tracks} tracks")
        return marginals / total


class JPDAAssociator:
    """
    Joint Probabilistic Data Association engine.

    Computes, for every track, a probability distribution over
    {no detection, measurement 1, ..., measurement M}.

    Example:
        >>> associator = JPDAAssociator(prob_detection=0.9, prob_gating=0.99, gate_level=9.21)
        >>> result = associator.associate(predicted_estimates, measurements)
        >>> result.weights.sum(axis=1)
        array([1., 1.])
    """

    def __init__(
        self,
        prob_detection: float,
        prob_gating: float,
        gate_level: float,
        joint_association: bool = True,
        enumerator: Optional[HypothesisEnumerator] = None,
        residual: Optional[Callable[[np.ndarray, np.ndarray], np.ndarray]] = None,
    ):
        """
        Initialize JPDA associator.

        Args:
            prob_detection: Probability of detection PD
            prob_gating: Probability that a true measurement falls in the gate PG
            gate_level: Squared Mahalanobis gate threshold
            joint_association: Resolve shared measurements jointly (False gives PDAF)
            enumerator: Hypothesis enumerator (default: hypothesis net)
            residual: Measurement difference used for gating (default: subtraction)
        """
        if not 0.0 < prob_detection <= 1.0:
            raise ValueError(f"prob_detection must be in (0, 1], got {prob_detection}")
        if not 0.0 < prob_gating <= 1.0:
            raise ValueError(f"prob_gating must be in (0, 1], got {prob_gating}")
        if gate_level <= 0:
            raise ValueError(f"gate_level must be positive, got {gate_level}")

        self.prob_detection = prob_detection
        self.prob_gating = prob_gating
        self.gate_level = gate_level
        self.joint_association = joint_association
        self.enumerator = enumerator or HypothesisNetEnumerator()
        self.residual = residual

        logger.info(f"JPDAAssociator initialized (PD: {prob_detection}, PG: {prob_gating}, "
                    f"gate: {gate_level:.2f}, joint: {joint_association})")

    def validate(self, predictions: Sequence[GaussianEstimate],
                 measurements: np.ndarray) -> ValidationResult:
        """Gate measurements against predicted tracks."""
        return build_validation_matrix(predictions, measurements, self.gate_level,
                                       residual=self.residual)

    def cluster_weights(
        self,
        cluster: Cluster,
        validation: ValidationResult,
        clutter_density: Optional[float] = None,
    ) -> np.ndarray:
        """
        Marginal association probabilities of one cluster.

        Args:
            cluster: Cluster to weight
            validation: Gating products of the cycle
            clutter_density: Density overriding the cycle estimate

        Returns:
            Local weights (len(track_indices) x (len(measurement_indices) + 1))

        Raises:
            AssociationInconsistencyError: If the cluster references an unknown measurement
        """
        n_meas = validation.n_measurements
        for j in cluster.measurement_indices:
            if not 0 <= j < n_meas:
                raise AssociationInconsistencyError(cluster.track_indices, j, n_meas)

        density = validation.clutter_density if clutter_density is None else clutter_density
        pd_pg = self.prob_detection * self.prob_gating

        rows = np.asarray(cluster.track_indices, dtype=int)
        cols = np.asarray(cluster.measurement_indices, dtype=int)
        n_local = rows.size

        local_validation = np.hstack([
            np.ones((n_local, 1), dtype=bool),
            validation.validation_matrix[np.ix_(rows, cols)],
        ])
        local_likelihoods = np.hstack([
            np.full((n_local, 1), density * (1.0 - pd_pg)),
            validation.likelihoods[np.ix_(rows, cols)] * pd_pg,
        ])

        return self.enumerator.marginals(local_validation, local_likelihoods)

    def associate(
        self,
        predictions: Sequence[GaussianEstimate],
        measurements: np.ndarray,
        clusters: Optional[List[Cluster]] = None,
        clutter_density: Optional[float] = None,
    ) -> AssociationResult:
        """
        Compute association weights for all tracks.

        Clusters that reference measurements outside the current set are
        logged and skipped; their tracks get all mass on "no detection".

        Args:
            predictions: Predicted estimates (one per track)
            measurements: Measurements (n_measurements x ny)
            clusters: Precomputed clusters (default: formed from the gates)
            clutter_density: Density overriding the cycle estimate

        Returns:
            AssociationResult
        """
        validation = self.validate(predictions, measurements)
        n_tracks, n_meas = validation.validation_matrix.shape

        if n_tracks == 0:
            logger.info("No tracks, skipping association")
        elif n_meas == 0:
            logger.info("No measurements, all tracks take the no-detection hypothesis")

        if clusters is None:
            clusters = form_clusters(validation.validation_matrix, joint=self.joint_association)

        weights = np.zeros((n_tracks, n_meas + 1))
        failed_clusters = []

        for cluster in clusters:
            try:
                local = self.cluster_weights(cluster, validation, clutter_density)
            except AssociationInconsistencyError as e:
                logger.error(f"Skipping inconsistent cluster: {e}")
                failed_clusters.append(cluster)
                weights[cluster.track_indices, 0] = 1.0
                continue

            columns = [0] + [j + 1 for j in cluster.measurement_indices]
            weights[np.ix_(cluster.track_indices, columns)] = local

        logger.info(f"JPDA association: {n_tracks} tracks, {n_meas} measurements, "
                    f"{len(clusters)} clusters, {len(failed_clusters)} skipped")

        return AssociationResult(
            validation=validation,
            clusters=clusters,
            weights=weights,
            failed_clusters=failed_clusters,
        )
