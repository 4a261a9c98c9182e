"""
Compatibility Report Models

Results of the pre-conversion gate and of the post-conversion structural
validation. Both are produced once and never mutated afterwards.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Tuple, Dict, Any


class ValidationStep(Enum):
    """Structural checks run against an encoded buffer."""
    HEADER_STRUCTURE = 'headerStructure'
    VOLUME_INFO = 'volumeInfo'
    GEOMETRY = 'geometry'
    COMPRESSION = 'compression'
    LOD_STRUCTURE = 'lodStructure'
    BRICK_LAYOUT = 'brickLayout'
    OPTIMIZATION = 'optimization'


# Steps whose failure makes a buffer structurally invalid
STRUCTURAL_STEPS = (
    ValidationStep.HEADER_STRUCTURE,
    ValidationStep.VOLUME_INFO,
    ValidationStep.GEOMETRY,
    ValidationStep.COMPRESSION,
    ValidationStep.LOD_STRUCTURE,
)


class PreflightStep(Enum):
    """Checks run by the pre-conversion gate."""
    FORMAT_SUPPORTED = 'formatSupported'
    SIZE_WITHIN_LIMIT = 'sizeWithinLimit'
    HEADER_INTEGRITY = 'headerIntegrity'


def _frozen(mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class PerformanceMetrics:
    """Estimated cloud access characteristics of an encoded buffer."""

    file_size: int
    compression_ratio: float
    estimated_load_time_sec: float
    random_access_score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileSize": self.file_size,
            "compressionRatio": self.compression_ratio,
            "estimatedLoadTimeSec": self.estimated_load_time_sec,
            "randomAccessScore": self.random_access_score,
        }


@dataclass(frozen=True)
class CompatibilityReport:
    """
    Verdict of the structural validator.

    Attributes
    ----------
    is_structurally_valid : bool
        All structural steps passed
    cloud_compatible : bool
        Structurally valid and optimization hints scored above threshold
    step_results : mapping
        Result per ValidationStep
    metrics : PerformanceMetrics
        Size and access estimates
    optimization_score : float
        Fraction of optimization hints present (0-1)
    recommendations : tuple
        Advisory messages
    warnings : tuple
        Problems found, each naming the offending property
    """

    is_structurally_valid: bool
    cloud_compatible: bool
    step_results: Mapping[ValidationStep, bool]
    metrics: PerformanceMetrics
    optimization_score: float = 0.0
    recommendations: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, 'step_results', _frozen(self.step_results))
        object.__setattr__(self, 'recommendations', tuple(self.recommendations))
        object.__setattr__(self, 'warnings', tuple(self.warnings))

    def failed_steps(self) -> Tuple[ValidationStep, ...]:
        return tuple(step for step, ok in self.step_results.items() if not ok)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isStructurallyValid": self.is_structurally_valid,
            "cloudCompatible": self.cloud_compatible,
            "stepResults": {step.value: ok for step, ok in self.step_results.items()},
            "metrics": self.metrics.to_dict(),
            "optimizationScore": self.optimization_score,
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class PreflightReport:
    """Result of the pre-conversion compatibility gate."""

    is_compatible: bool
    step_results: Mapping[PreflightStep, bool]
    recommendations: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    header_error: str = ''

    def __post_init__(self):
        object.__setattr__(self, 'step_results', _frozen(self.step_results))
        object.__setattr__(self, 'recommendations', tuple(self.recommendations))
        object.__setattr__(self, 'warnings', tuple(self.warnings))

    @property
    def format_supported(self) -> bool:
        return self.step_results[PreflightStep.FORMAT_SUPPORTED]

    @property
    def size_within_limit(self) -> bool:
        return self.step_results[PreflightStep.SIZE_WITHIN_LIMIT]

    @property
    def header_integrity(self) -> bool:
        return self.step_results[PreflightStep.HEADER_INTEGRITY]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isCompatible": self.is_compatible,
            "stepResults": {step.value: ok for step, ok in self.step_results.items()},
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
        }
