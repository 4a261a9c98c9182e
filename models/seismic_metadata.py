"""
Seismic Metadata Model

Normalized description of a survey, built once per conversion by the
metadata extractor and read-only afterwards.
"""

from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, FrozenSet

from models.formats import SourceFormat


@dataclass(frozen=True)
class Dimensions:
    """
    Survey extent.

    Attributes
    ----------
    samples : int
        Samples per trace (fast axis)
    traces : int
        Traces per line
    lines : int, optional
        Number of lines; None for surveys where it could not be derived
    """

    samples: int
    traces: int
    lines: Optional[int] = None

    @property
    def lines_or_default(self) -> int:
        """Number of lines, 1 for 2-D surveys."""
        return self.lines if self.lines else 1

    @property
    def volume_shape(self):
        """Logical 3-D volume shape (lines, traces, samples)."""
        return (self.lines_or_default, self.traces, self.samples)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "samples": self.samples,
            "traces": self.traces,
            "lines": self.lines,
        }


@dataclass(frozen=True)
class CloudCompatibility:
    """Cloud data-service contract the output is prepared for."""

    version: str
    supported_operations: FrozenSet[str] = field(default_factory=frozenset)
    endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "supportedOperations": sorted(self.supported_operations),
            "endpoint": self.endpoint,
        }


@dataclass(frozen=True)
class SeismicMetadata:
    """
    Normalized survey metadata.

    Attributes
    ----------
    format : SourceFormat
        Format the metadata was decoded from
    dimensions : Dimensions
        Survey extent
    sampling_rate_hz : float
        Samples per second (per depth unit for depth-indexed logs)
    units : str
        Spatial units
    coordinate_system : str, optional
        Coordinate reference system description
    acquisition_parameters : dict
        Free-form acquisition parameters from the source headers
    processing_history : list
        Ordered processing steps applied so far
    cloud_compatibility : CloudCompatibility, optional
        Target cloud contract, when the conversion is cloud-bound
    """

    format: SourceFormat
    dimensions: Dimensions
    sampling_rate_hz: float
    units: str
    coordinate_system: Optional[str] = None
    acquisition_parameters: Dict[str, Any] = field(default_factory=dict)
    processing_history: List[str] = field(default_factory=list)
    cloud_compatibility: Optional[CloudCompatibility] = None

    @property
    def sample_interval_us(self) -> float:
        """Sample interval in microseconds."""
        return 1e6 / self.sampling_rate_hz

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return {
            "format": self.format.label,
            "dimensions": self.dimensions.to_dict(),
            "samplingRateHz": self.sampling_rate_hz,
            "units": self.units,
            "coordinateSystem": self.coordinate_system,
            "acquisitionParameters": dict(self.acquisition_parameters),
            "processingHistory": list(self.processing_history),
            "cloudCompatibility": (
                self.cloud_compatibility.to_dict() if self.cloud_compatibility else None
            ),
        }
