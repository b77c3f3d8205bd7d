"""
Exceptions raised by the tracking engine.

Numerical instability and missing measurements are recovered where they occur
and only logged; the errors below are the ones callers have to handle.
"""

from typing import Iterable


class InvalidConfigurationError(ValueError):
    """A required tracker parameter is missing or invalid."""

    def __init__(self, message: str, fields: Iterable[str] = ()):
        self.fields = list(fields)
        super().__init__(message)

    @classmethod
    def missing(cls, fields: Iterable[str]) -> "InvalidConfigurationError":
        fields = list(fields)
        return cls(
            f"Missing required configuration field(s): {', '.join(fields)}",
            fields=fields,
        )


class AssociationInconsistencyError(RuntimeError):
    """A cluster references a measurement that is not in the current measurement set."""

    def __init__(self, cluster_tracks, measurement_index: int, n_measurements: int):
        self.cluster_tracks = list(cluster_tracks)
        self.measurement_index = measurement_index
        self.n_measurements = n_measurements
        super().__init__(
            f"Cluster with tracks {self.cluster_tracks} references measurement "
            f"{measurement_index}, but only {n_measurements} measurements are present"
        )
