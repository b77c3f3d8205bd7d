"""
Configuration management for the jpdatrack tracking engine.
Loads YAML configs with pydantic validation.

The association and lifecycle parameters that control the detection/false
alarm tradeoff (PD, PG, gate level, birth and death thresholds) have no
defaults: a configuration missing any of them is rejected with
InvalidConfigurationError naming the field. The gate level may instead be
given as a gating probability, resolved through the chi-square quantile.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from jpdatrack.tracking.errors import InvalidConfigurationError
from jpdatrack.utils.linalg import chi2_gate


class FilterConfig(BaseModel):
    """Configuration for the state estimator."""

    model_config = ConfigDict(validate_assignment=True)

    filter_type: str = Field("ukf", pattern="^(kf|ekf|ukf)$", description="Estimator variant")

    # UKF scaling parameters; None selects the default and logs it
    alpha: Optional[float] = Field(None, gt=0, description="Sigma point spread")
    kappa: Optional[float] = Field(None, description="Secondary scaling parameter")
    beta: Optional[float] = Field(None, ge=0, description="Prior knowledge of the distribution")


class AssociationConfig(BaseModel):
    """Configuration for JPDA data association."""

    model_config = ConfigDict(validate_assignment=True)

    prob_detection: float = Field(..., gt=0, le=1, description="Probability of detection PD")
    prob_gating: float = Field(..., gt=0, le=1, description="Probability of gating PG")
    gate_level: float = Field(..., gt=0, description="Squared Mahalanobis gate threshold")
    joint_association: bool = Field(True, description="Resolve shared measurements jointly (False: PDAF)")
    clutter_density: Optional[float] = Field(
        None, gt=0, description="Fixed clutter density (default: estimated every cycle)"
    )
    gate_probability: Optional[float] = Field(
        None, gt=0, lt=1,
        description="Gating probability; sets gate_level from the chi-square quantile when it is omitted",
    )


class LifecycleConfig(BaseModel):
    """Configuration for track existence and the search hypothesis."""

    model_config = ConfigDict(validate_assignment=True)

    birth_threshold: float = Field(..., gt=0, lt=1, description="Existence needed to promote the search track")
    death_threshold: float = Field(..., ge=0, lt=1, description="Existence below which tracks are retired")
    prob_survival: float = Field(0.99, gt=0, le=1, description="Per-cycle survival probability")
    initial_existence: float = Field(0.95, gt=0, le=1, description="Existence of seeded tracks")

    # Search hypothesis; disabled when no region is given
    search_region: Optional[List[Tuple[float, float]]] = Field(
        None, description="[low, high] bounds of every observed position component"
    )
    search_max_speed: float = Field(1.0, gt=0, description="Velocity bound of the search prior")
    search_initial_existence: float = Field(0.5, gt=0, lt=1, description="Existence of a reseeded search track")

    @field_validator("search_region")
    @classmethod
    def check_region(cls, region):
        if region is not None:
            for low, high in region:
                if high <= low:
                    raise ValueError(f"Search region bound [{low}, {high}] is empty")
        return region

    @model_validator(mode="after")
    def check_thresholds(self):
        if self.death_threshold >= self.birth_threshold:
            raise ValueError(
                f"death_threshold ({self.death_threshold}) must be below "
                f"birth_threshold ({self.birth_threshold})"
            )
        return self


class ModelConfig(BaseModel):
    """Configuration for the stock constant velocity / positional models."""

    model_config = ConfigDict(validate_assignment=True)

    dim: int = Field(2, ge=1, le=3, description="Spatial dimensionality")
    process_noise: float = Field(0.01, ge=0, description="Process noise diffusion coefficient")
    measurement_noise_std: float = Field(1.0, gt=0, description="Measurement noise std dev")


class TrackerConfig(BaseModel):
    """Top-level tracker configuration."""

    model_config = ConfigDict(validate_assignment=True)

    filter: FilterConfig = Field(default_factory=FilterConfig)
    association: AssociationConfig
    lifecycle: LifecycleConfig
    model: ModelConfig = Field(default_factory=ModelConfig)

    @model_validator(mode="before")
    @classmethod
    def resolve_gate_level(cls, data):
        # gate_level = chi2.ppf(gate_probability, ny), ny from the stock positional model
        if not isinstance(data, dict):
            return data
        association = data.get("association")
        if not isinstance(association, dict) or association.get("gate_level") is not None:
            return data
        probability = association.get("gate_probability")
        if not isinstance(probability, (int, float)) or not 0 < probability < 1:
            return data

        model = data.get("model") or {}
        dim = model.get("dim", 2) if isinstance(model, dict) else model.dim
        data = dict(data)
        data["association"] = dict(association, gate_level=chi2_gate(probability, dim))
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TrackerConfig":
        """
        Build a validated configuration from a plain dictionary.

        Args:
            data: Nested configuration dictionary

        Returns:
            TrackerConfig

        Raises:
            InvalidConfigurationError: If a required field is missing or invalid
        """
        try:
            return cls(**(data or {}))
        except ValidationError as e:
            raise _translate_validation_error(e) from e


def _translate_validation_error(error: ValidationError) -> InvalidConfigurationError:
    missing = []
    invalid = []
    for item in error.errors():
        name = ".".join(str(part) for part in item["loc"])
        if item["type"] == "missing":
            missing.append(name)
        else:
            invalid.append(f"{name}: {item['msg']}")

    if missing:
        return InvalidConfigurationError.missing(missing)
    return InvalidConfigurationError(
        f"Invalid configuration: {'; '.join(invalid)}",
        fields=[entry.split(":")[0] for entry in invalid],
    )


def load_tracker_config(path: Union[str, Path]) -> TrackerConfig:
    """
    Load and validate a tracker configuration file.

    Args:
        path: YAML file path

    Returns:
        Validated configuration object

    Example:
        >>> config = load_tracker_config("config/tracker.yaml")
        >>> print(f"PD = {config.association.prob_detection}")
    """
    filepath = Path(path)

    if not filepath.exists():
        raise FileNotFoundError(f"Configuration file not found: {filepath}")

    with open(filepath, 'r') as f:
        config_dict = yaml.safe_load(f)

    return TrackerConfig.from_dict(config_dict)


def save_tracker_config(config: TrackerConfig, path: Union[str, Path]):
    """
    Save configuration to YAML file.

    Args:
        config: Configuration object to save
        path: Output file path
    """
    filepath = Path(path)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump()
    region = data["lifecycle"]["search_region"]
    if region is not None:
        data["lifecycle"]["search_region"] = [list(bounds) for bounds in region]

    with open(filepath, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)
