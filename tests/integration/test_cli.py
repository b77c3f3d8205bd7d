"""
Integration tests for the command-line tracking runner.
"""

import json

import pandas as pd
import pytest
import yaml
from click.testing import CliRunner

from jpdatrack.cli import main
from jpdatrack.utils.config_loader import TrackerConfig, save_tracker_config
from jpdatrack.utils.logging_config import LogConfig


@pytest.fixture(autouse=True)
def restore_logging():
    # The command rebinds the console sink to the runner's captured stderr
    yield
    LogConfig.setup(log_level="INFO")


@pytest.fixture
def config_path(tmp_path):
    config = TrackerConfig.from_dict({
        "filter": {"filter_type": "kf"},
        "association": {
            "prob_detection": 0.9,
            "prob_gating": 0.99,
            "gate_level": 9.21,
            "clutter_density": 1e-4,
        },
        "lifecycle": {
            "birth_threshold": 0.9,
            "death_threshold": 0.1,
            "search_region": [[0.0, 100.0], [0.0, 100.0]],
        },
    })
    path = tmp_path / "tracker.yaml"
    save_tracker_config(config, path)
    return path


@pytest.fixture
def measurements_path(tmp_path):
    # One static target, reported out of time order
    df = pd.DataFrame({
        "timestamp": [2.0, 0.0, 1.0, 3.0, 4.0],
        "z0": [20.0] * 5,
        "z1": [30.0] * 5,
    })
    path = tmp_path / "measurements.csv"
    df.to_csv(path, index=False)
    return path


class TestRunTracker:
    """Test the jpdatrack-run command."""

    def test_run(self, config_path, measurements_path, tmp_path):
        """Test a full run writes one report entry per timestamp."""
        output = tmp_path / "out" / "run.json"
        runner = CliRunner()

        result = runner.invoke(main, [
            "-c", str(config_path),
            "-i", str(measurements_path),
            "-o", str(output),
            "--smooth",
        ])

        assert result.exit_code == 0, result.output
        report = json.loads(output.read_text())

        assert [cycle["timestamp"] for cycle in report["cycles"]] == [0.0, 1.0, 2.0, 3.0, 4.0]
        assert report["statistics"]["update_count"] == 5
        assert report["statistics"]["confirmed_tracks"] == 1
        assert report["config"]["association"]["gate_level"] == 9.21

        promoted = [tid for cycle in report["cycles"] for tid in cycle["promoted_track_ids"]]
        assert len(promoted) == 1
        assert str(promoted[0]) in report["smoothed"]

    def test_filter_override(self, config_path, measurements_path, tmp_path):
        """Test the filter type can be overridden."""
        output = tmp_path / "run.json"

        result = CliRunner().invoke(main, [
            "-c", str(config_path),
            "-i", str(measurements_path),
            "-o", str(output),
            "--filter", "ekf",
        ])

        assert result.exit_code == 0, result.output
        report = json.loads(output.read_text())
        assert report["config"]["filter"]["filter_type"] == "ekf"
        assert "smoothed" not in report

    def test_missing_parameter(self, tmp_path, measurements_path):
        """Test a configuration without a required parameter is rejected."""
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({
            "association": {"prob_gating": 0.99, "gate_level": 9.21},
            "lifecycle": {"birth_threshold": 0.9, "death_threshold": 0.1},
        }))

        result = CliRunner().invoke(main, ["-c", str(path), "-i", str(measurements_path)])

        assert result.exit_code != 0
        assert "association.prob_detection" in result.output

    def test_missing_columns(self, config_path, tmp_path):
        """Test a CSV without measurement columns is rejected."""
        path = tmp_path / "bad.csv"
        pd.DataFrame({"timestamp": [0.0], "x": [1.0]}).to_csv(path, index=False)

        result = CliRunner().invoke(main, [
            "-c", str(config_path),
            "-i", str(path),
            "-o", str(tmp_path / "run.json"),
        ])

        assert result.exit_code != 0
        assert "z0" in result.output
