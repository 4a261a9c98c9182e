"""Models package - data structures and settings."""
from .app_settings import AppSettings, ConversionPolicy, get_settings
from .formats import SourceFormat, TargetFormat
from .seismic_metadata import SeismicMetadata, Dimensions, CloudCompatibility
from .volume_layout import (
    BrickCurve,
    BrickLayout,
    CompressionAlgorithm,
    CompressionInfo,
    CompressionSpec,
    PyramidLevel,
)
from .compatibility_report import (
    CompatibilityReport,
    PerformanceMetrics,
    PreflightReport,
    PreflightStep,
    ValidationStep,
)
from .conversion import ConversionConfig, ConversionResult, ConversionStage

__all__ = [
    'AppSettings',
    'ConversionPolicy',
    'get_settings',
    'SourceFormat',
    'TargetFormat',
    'SeismicMetadata',
    'Dimensions',
    'CloudCompatibility',
    'BrickCurve',
    'BrickLayout',
    'CompressionAlgorithm',
    'CompressionInfo',
    'CompressionSpec',
    'PyramidLevel',
    'CompatibilityReport',
    'PerformanceMetrics',
    'PreflightReport',
    'PreflightStep',
    'ValidationStep',
    'ConversionConfig',
    'ConversionResult',
    'ConversionStage',
]
