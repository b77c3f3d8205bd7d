"""
End-to-End Integration Tests for the JPDA Tracking Pipeline.

Tests the full cycle: predict → gate → cluster → weight → update →
existence → search hypothesis → retirement.

Test categories:
  - Well-separated tracks
  - Tracks competing for a shared measurement
  - Track initiation through the search hypothesis
  - Track retirement
  - Smoothing of a recorded trajectory
"""

import numpy as np
import pytest
from scipy.stats import multivariate_normal

from jpdatrack.tracking import MultiObjectTracker
from jpdatrack.tracking.data_association import Cluster
from jpdatrack.tracking.errors import InvalidConfigurationError
from jpdatrack.tracking.kalman_filters import GaussianEstimate
from jpdatrack.tracking.models import ConstantVelocityModel, RangeBearingObservationModel
from jpdatrack.tracking.track_manager import TrackStatus
from jpdatrack.utils.config_loader import TrackerConfig


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------

def _make_config(prob_detection=0.9, prob_gating=0.99, joint=True, **lifecycle):
    """Tracker configuration with a KF and CV/positional models."""
    lifecycle_cfg = {"birth_threshold": 0.9, "death_threshold": 0.1}
    lifecycle_cfg.update(lifecycle)
    return TrackerConfig.from_dict({
        "filter": {"filter_type": "kf"},
        "association": {
            "prob_detection": prob_detection,
            "prob_gating": prob_gating,
            "gate_level": 9.21,
            "joint_association": joint,
        },
        "lifecycle": lifecycle_cfg,
        "model": {"dim": 2, "process_noise": 0.01, "measurement_noise_std": 1.0},
    })


def _seed(tracker, x, y, existence=None):
    return tracker.add_track(np.array([x, y, 0.0, 0.0]), np.eye(4), existence=existence)


# -----------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------

@pytest.fixture
def certain_tracker():
    """Tracker with certain detection and gating."""
    return MultiObjectTracker(_make_config(prob_detection=1.0, prob_gating=1.0))


@pytest.fixture
def search_config():
    """Configuration with a fixed clutter density and a search region."""
    config = _make_config(search_region=[[0.0, 100.0], [0.0, 100.0]], search_max_speed=1.0)
    config.association.clutter_density = 1e-4
    return config


class TestSeparatedTracks:
    """Two well-separated tracks and one unassociated measurement."""

    @pytest.fixture
    def report(self, certain_tracker):
        _seed(certain_tracker, 0.0, 0.0)
        _seed(certain_tracker, 50.0, 50.0)
        Z = np.array([[0.5, -0.3], [50.2, 49.9], [100.0, 0.0]])
        return certain_tracker.update(Z, timestamp=0.0)

    def test_validation_matrix(self, report):
        """Test each track gates exactly its own measurement."""
        assert report.validation_matrix.sum() == 2
        assert report.validation_matrix.tolist() == [[True, False, False], [False, True, False]]

    def test_singleton_clusters(self, report):
        """Test independent tracks form singleton clusters."""
        assert report.clusters == [Cluster([0], [0]), Cluster([1], [1])]

    def test_weights(self, report):
        """Test certain detection puts all weight on the gated measurement."""
        assert np.allclose(report.association_weights[0], [0.0, 1.0, 0.0, 0.0])
        assert np.allclose(report.association_weights[1], [0.0, 0.0, 1.0, 0.0])

    def test_search_candidate(self, report):
        """Test the unassociated measurement is proposed to the search hypothesis."""
        assert report.search_candidates == [2]

    def test_tracks_move_to_measurements(self, report):
        """Test both tracks are updated toward their measurements."""
        first, second = report.tracks

        assert first.track_id == 1
        assert 0.0 < first.mean[0] < 0.5
        assert 49.9 < second.mean[1] < 50.0
        assert first.hit_count == 1
        assert report.diagnostics == []


class TestSharedMeasurement:
    """Two tracks competing for a single measurement."""

    @pytest.fixture
    def tracker(self):
        tracker = MultiObjectTracker(_make_config())
        _seed(tracker, 0.0, 0.0)
        _seed(tracker, 3.0, 0.0)
        return tracker

    def test_joint_cluster(self, tracker):
        """Test both tracks share one cluster."""
        report = tracker.update(np.array([[1.0, 0.0]]), timestamp=0.0)

        assert report.clusters == [Cluster([0, 1], [0])]
        assert report.validation_matrix.tolist() == [[True], [True]]

    def test_weights_follow_likelihoods(self, tracker):
        """Test weights are the marginals of the joint hypotheses."""
        report = tracker.update(np.array([[1.0, 0.0]]), timestamp=0.0)

        pd_pg = 0.9 * 0.99
        density = report.clutter_density
        S = 2.0 * np.eye(2)
        l0 = multivariate_normal(mean=[0.0, 0.0], cov=S).pdf([1.0, 0.0]) * pd_pg
        l1 = multivariate_normal(mean=[3.0, 0.0], cov=S).pdf([1.0, 0.0]) * pd_pg
        d = density * (1.0 - pd_pg)
        total = d * d + l0 * d + d * l1

        weights = report.association_weights
        assert np.allclose(weights.sum(axis=1), 1.0)
        assert weights[0, 1] == pytest.approx(l0 * d / total)
        assert weights[1, 1] == pytest.approx(d * l1 / total)
        assert weights[0, 1] > weights[1, 1]

    def test_covariance_inflation(self, tracker):
        """Test association uncertainty inflates the posterior covariance."""
        z = np.array([1.0, 0.0])
        report = tracker.update(z.reshape(1, 2), timestamp=0.0)

        estimator = tracker.estimator
        seed = GaussianEstimate(mean=np.zeros(4), covariance=np.eye(4))
        certain = estimator.update(estimator.predict(seed, 0.0), z)

        first = report.tracks[0]
        assert np.trace(first.covariance) > np.trace(certain.covariance)
        assert np.all(np.linalg.eigvalsh(first.covariance) > 0)

    def test_pdaf_mode(self):
        """Test non-joint association weights every track independently."""
        tracker = MultiObjectTracker(_make_config(joint=False))
        _seed(tracker, 0.0, 0.0)
        _seed(tracker, 3.0, 0.0)

        report = tracker.update(np.array([[1.0, 0.0]]), timestamp=0.0)

        assert report.clusters == [Cluster([0], [0]), Cluster([1], [0])]
        assert np.allclose(report.association_weights.sum(axis=1), 1.0)
        # Both tracks may claim the measurement at once
        assert report.association_weights[:, 1].sum() > 1.0


class TestSearchInitiation:
    """Track initiation through the search hypothesis."""

    def test_promotion(self, search_config):
        """Test a persistent unassociated measurement becomes a track."""
        tracker = MultiObjectTracker(search_config)
        promoted = []

        for k in range(5):
            report = tracker.update(np.array([[20.0, 30.0]]), timestamp=float(k))
            promoted.extend(report.promoted_track_ids)

        assert len(promoted) == 1
        track = tracker.get_track(promoted[0])
        assert track.status == TrackStatus.CONFIRMED
        assert track.existence_probability > 0.9
        assert np.linalg.norm(track.mean[:2] - [20.0, 30.0]) < 1.0

    def test_no_promotion_without_measurements(self, search_config):
        """Test the search hypothesis stays idle without measurements."""
        tracker = MultiObjectTracker(search_config)

        for k in range(5):
            report = tracker.update(None, timestamp=float(k))

        assert report.promoted_track_ids == []
        assert tracker.get_confirmed_tracks() == []
        assert "No tracks" in report.diagnostics
        assert "No measurements" in report.diagnostics


class TestRetirement:
    """Retirement of tracks that stop receiving measurements."""

    def test_marked_then_pruned(self):
        """Test a track is marked for deletion, then removed next cycle."""
        tracker = MultiObjectTracker(_make_config())
        track = _seed(tracker, 0.0, 0.0, existence=0.5)

        first = tracker.update(None, timestamp=0.0)

        assert first.retired_track_ids == [track.track_id]
        assert tracker.get_track(track.track_id).status == TrackStatus.DELETED
        assert first.tracks == []

        second = tracker.update(None, timestamp=1.0)

        assert tracker.get_track(track.track_id) is None
        assert second.track_ids == []


class TestSmoothing:
    """Smoothing of a recorded track trajectory."""

    def test_smooth_track(self):
        """Test the smoothed trajectory follows the true constant velocity path."""
        config = _make_config(prob_detection=1.0, prob_gating=1.0)
        config.model.process_noise = 0.0
        config.association.clutter_density = 1e-6
        tracker = MultiObjectTracker(config)
        track = tracker.add_track(np.zeros(4), np.eye(4) * 100.0)

        truth = [np.array([k * 1.0, k * 0.5]) for k in range(10)]
        for k, position in enumerate(truth):
            tracker.update(position.reshape(1, 2), timestamp=float(k))

        smoothed = tracker.smooth_track(track.track_id)

        assert len(smoothed) == len(track.history) == 11
        assert np.allclose(smoothed[-1].mean, track.mean)
        for k, position in enumerate(truth):
            assert np.allclose(smoothed[k + 1].mean[:2], position, atol=0.05)
            assert np.allclose(smoothed[k + 1].mean[2:], [1.0, 0.5], atol=0.05)

    def test_unknown_track(self):
        """Test smoothing an unknown track raises."""
        tracker = MultiObjectTracker(_make_config())

        with pytest.raises(KeyError):
            tracker.smooth_track(42)


class TestTrackerSetup:
    """Tracker construction and bookkeeping."""

    def test_missing_config(self):
        """Test the tracker refuses to run without configuration."""
        with pytest.raises(InvalidConfigurationError):
            MultiObjectTracker(None)

    def test_defaulted_parameters_reported(self):
        """Test defaulted UKF parameters are reported on the first cycle."""
        config = _make_config()
        config.filter.filter_type = "ukf"
        tracker = MultiObjectTracker(config)

        first = tracker.update(None, timestamp=0.0)
        second = tracker.update(None, timestamp=1.0)

        assert any(msg.startswith("Defaulted scaling parameters") for msg in first.diagnostics)
        assert not any(msg.startswith("Defaulted scaling parameters") for msg in second.diagnostics)

    def test_time_must_not_go_backwards(self):
        """Test an earlier timestamp is rejected."""
        tracker = MultiObjectTracker(_make_config())
        tracker.update(None, timestamp=5.0)

        with pytest.raises(ValueError):
            tracker.update(None, timestamp=4.0)

    def test_statistics_and_reset(self, certain_tracker):
        """Test statistics accumulate and reset clears them."""
        _seed(certain_tracker, 0.0, 0.0)
        certain_tracker.update(np.array([[0.1, 0.1]]), timestamp=0.0)
        certain_tracker.update(np.array([[0.2, 0.1]]), timestamp=1.0)

        stats = certain_tracker.get_statistics()
        assert stats['update_count'] == 2
        assert stats['total_measurements'] == 2
        assert stats['confirmed_tracks'] == 1
        assert stats['mean_cycle_time'] >= 0.0

        certain_tracker.reset()
        assert certain_tracker.get_statistics()['update_count'] == 0
        assert certain_tracker.get_confirmed_tracks() == []

    def test_range_bearing_track_across_bearing_cut(self):
        """Test a range/bearing track keeps its measurement across ±π."""
        config = _make_config(prob_detection=1.0, prob_gating=1.0)
        config.filter.filter_type = "ekf"
        obs = RangeBearingObservationModel(r_range=0.1, r_bearing=0.01)
        tracker = MultiObjectTracker(config, ConstantVelocityModel(dim=2, q=0.001), obs)
        _seed(tracker, -10.0, 0.3)
        truth = np.array([-10.0, -0.3, 0.0, 0.0])

        report = tracker.update(obs.observe(truth)[np.newaxis, :], timestamp=0.0)

        assert report.validation_matrix.tolist() == [[True]]
        track = report.tracks[0]
        assert track.hit_count == 1
        assert np.linalg.norm(track.mean[:2] - truth[:2]) < 0.3
