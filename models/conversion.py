"""
Conversion Models

Input configuration and terminal result of one conversion request.
"""

from dataclasses import dataclass, field
from functools import cached_property
from enum import Enum
from typing import Optional, List, Iterator, Tuple, Dict, Any

from models.formats import SourceFormat, TargetFormat
from models.seismic_metadata import SeismicMetadata
from models.compatibility_report import CompatibilityReport, PreflightReport
from models.volume_layout import BrickCurve
from utils.storage_manager import iter_chunks


class ConversionStage(Enum):
    """Pipeline stages, in execution order."""
    PREFLIGHT = 'preflight'
    HEADER = 'header'
    METADATA = 'metadata'
    TRACES = 'traces'
    ENCODING = 'encoding'
    VALIDATION = 'validation'
    STORAGE = 'storage'


@dataclass(frozen=True)
class ConversionConfig:
    """
    Immutable input to one conversion.

    Attributes
    ----------
    source_format : SourceFormat
        Format of the input bytes
    target_format : TargetFormat
        Format to produce
    file_name : str
        Original file name, used for output naming and provenance
    compression_level : int, optional
        Entropy coder level (0-9)
    chunk_size : int, optional
        Bytes per chunk for bounded-memory reading and incremental persistence
    preserve_metadata : bool
        Embed acquisition parameters and processing history in the output
    cloud_compatible : bool
        Emit cloud optimization hints and certify against the cloud contract
    tolerance : float
        Lossy compression tolerance as a fraction of dynamic range (0 = lossless)
    brick_size : tuple, optional
        Brick extent; defaults to the policy's default brick size
    lod_levels : int, optional
        Requested number of pyramid levels
    brick_curve : BrickCurve, optional
        Brick traversal order
    """

    source_format: SourceFormat
    target_format: TargetFormat
    file_name: str
    compression_level: Optional[int] = None
    chunk_size: Optional[int] = None
    preserve_metadata: bool = True
    cloud_compatible: bool = True
    tolerance: float = 0.0
    brick_size: Optional[Tuple[int, int, int]] = None
    lod_levels: Optional[int] = None
    brick_curve: Optional[BrickCurve] = None

    def __post_init__(self):
        if isinstance(self.source_format, str):
            object.__setattr__(self, 'source_format', SourceFormat.from_label(self.source_format))
        if isinstance(self.target_format, str):
            object.__setattr__(self, 'target_format', TargetFormat.from_label(self.target_format))
        if self.brick_size is not None:
            object.__setattr__(self, 'brick_size', tuple(int(b) for b in self.brick_size))
        if self.compression_level is not None and not 0 <= self.compression_level <= 9:
            raise ValueError(f"compression_level must be within [0, 9], got {self.compression_level}")
        if self.chunk_size is not None and self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0.0 <= self.tolerance <= 1.0:
            raise ValueError(f"tolerance must be within [0, 1], got {self.tolerance}")
        if self.lod_levels is not None and self.lod_levels < 1:
            raise ValueError(f"lod_levels must be at least 1, got {self.lod_levels}")

    @property
    def output_name(self) -> str:
        """File name for the converted output."""
        stem = self.file_name.rsplit('.', 1)[0] if '.' in self.file_name else self.file_name
        return stem + self.target_format.file_extension


@dataclass(frozen=True)
class ConversionResult:
    """
    Terminal value of one conversion.

    success=False implies there is no output. Warnings never flip success.
    The output is held as the encoder's segments; output_bytes joins them
    on first access, iter_chunks streams them without joining.
    """

    success: bool
    output_segments: Optional[Tuple[bytes, ...]] = None
    metadata: Optional[SeismicMetadata] = None
    error: Optional[str] = None
    failed_stage: Optional[ConversionStage] = None
    cancelled: bool = False
    warnings: List[str] = field(default_factory=list)
    compatibility_report: Optional[CompatibilityReport] = None
    preflight_report: Optional[PreflightReport] = None
    storage_result: Optional[Any] = None

    def __post_init__(self):
        if self.output_segments is not None:
            object.__setattr__(self, 'output_segments', tuple(self.output_segments))
        if self.success and self.output_segments is None:
            raise ValueError("A successful ConversionResult must carry output")
        if not self.success and self.output_segments is not None:
            raise ValueError("A failed ConversionResult must not carry output")

    @classmethod
    def failure(
        cls,
        stage: ConversionStage,
        message: str,
        warnings: Optional[List[str]] = None,
        cancelled: bool = False,
        preflight_report: Optional[PreflightReport] = None,
    ) -> 'ConversionResult':
        """Build a failed result naming the originating stage."""
        return cls(
            success=False,
            error=f"[{stage.value}] {message}",
            failed_stage=stage,
            cancelled=cancelled,
            warnings=list(warnings or []),
            preflight_report=preflight_report,
        )

    @cached_property
    def output_bytes(self) -> Optional[bytes]:
        if self.output_segments is None:
            return None
        if len(self.output_segments) == 1:
            return bytes(self.output_segments[0])
        return b''.join(self.output_segments)

    @property
    def output_size(self) -> int:
        if self.output_segments is None:
            return 0
        return sum(len(segment) for segment in self.output_segments)

    def iter_chunks(self, chunk_size: int) -> Iterator:
        """Yield the output in chunks of at most chunk_size bytes."""
        if self.output_segments is None:
            return iter(())
        return iter_chunks(self.output_segments, chunk_size)

    def to_dict(self) -> Dict[str, Any]:
        """Summary without the payload."""
        return {
            "success": self.success,
            "outputSize": self.output_size,
            "metadata": self.metadata.to_dict() if self.metadata else None,
            "error": self.error,
            "failedStage": self.failed_stage.value if self.failed_stage else None,
            "cancelled": self.cancelled,
            "warnings": list(self.warnings),
            "compatibilityReport": (
                self.compatibility_report.to_dict() if self.compatibility_report else None
            ),
        }
