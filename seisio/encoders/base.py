"""
Format encoder base class.

Every target encoder runs the same linear state machine:

    INIT -> HEADER_WRITTEN -> PYRAMID_BUILT -> BRICKED -> COMPRESSED -> ASSEMBLED -> DONE

Each transition is driven by one processing stage. A failure in any
transition raises EncodingError naming it; an encoder never returns a
partial buffer.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Callable, Tuple, List, Dict, Any

import numpy as np

from models.app_settings import ConversionPolicy
from models.conversion import ConversionConfig
from models.formats import SourceFormat, TargetFormat
from models.seismic_metadata import SeismicMetadata
from models.volume_layout import BrickCurve, CompressionSpec, CompressionInfo
from processors.brick_organizer import BrickOrganizer, BrickedPyramid
from processors.compression_stage import CompressionStage, CompressedPyramid
from processors.pyramid_builder import PyramidBuilder, Pyramid
from seisio.errors import EncodingError
from seisio.header_codec import TraceBlock
from utils.cancellation import CancellationToken, CancellationError, check_cancelled

logger = logging.getLogger(__name__)

CREATED_BY = 'seisconvert'


class EncoderState(Enum):
    """Encoder lifecycle; transitions are strictly linear."""
    INIT = 'init'
    HEADER_WRITTEN = 'header_written'
    PYRAMID_BUILT = 'pyramid_built'
    BRICKED = 'bricked'
    COMPRESSED = 'compressed'
    ASSEMBLED = 'assembled'
    DONE = 'done'


_ORDER = list(EncoderState)


@dataclass(frozen=True)
class EncoderOptions:
    """
    Resolved encoding parameters.

    Attributes:
        source_format: Format the volume was decoded from
        lod_levels: Requested pyramid levels
        brick_size: Brick extent (lines, traces, samples)
        curve: Brick emission order
        compression: Tolerance and entropy coder
        cloud_compatible: Emit cloud optimization hints
        preserve_metadata: Embed acquisition parameters and history
        max_workers: Compression threads
    """
    source_format: SourceFormat = SourceFormat.SEGY
    lod_levels: int = 4
    brick_size: Tuple[int, int, int] = (64, 64, 64)
    curve: BrickCurve = BrickCurve.MORTON
    compression: CompressionSpec = field(default_factory=CompressionSpec)
    cloud_compatible: bool = True
    preserve_metadata: bool = True
    max_workers: int = 1

    @classmethod
    def from_config(cls, config: ConversionConfig,
                    policy: Optional[ConversionPolicy] = None) -> 'EncoderOptions':
        """Fill unset configuration fields from the policy defaults."""
        policy = policy or ConversionPolicy()
        clevel = config.compression_level
        return cls(
            source_format=config.source_format,
            lod_levels=config.lod_levels or policy.default_lod_levels,
            brick_size=tuple(config.brick_size or policy.default_brick_size),
            curve=config.brick_curve or policy.default_brick_curve,
            compression=CompressionSpec(
                tolerance=config.tolerance,
                brick_codec=policy.default_brick_codec,
                clevel=policy.default_compression_level if clevel is None else clevel,
            ),
            cloud_compatible=config.cloud_compatible,
            preserve_metadata=config.preserve_metadata,
            max_workers=policy.compression_workers,
        )


@dataclass(frozen=True)
class SurveyGeometry:
    """
    Index ranges and the grid-to-world transform of a volume.

    ijk_to_world is a row-major 4x4 matrix mapping (line, trace, sample, 1)
    to (x, y, time/depth, 1).
    """
    first_inline: int = 1
    first_crossline: int = 1
    sample_start: float = 0.0
    sample_interval_ms: float = 1.0
    ijk_to_world: Tuple[float, ...] = (
        1.0, 0.0, 0.0, 0.0,
        0.0, 1.0, 0.0, 0.0,
        0.0, 0.0, 1.0, 0.0,
        0.0, 0.0, 0.0, 1.0,
    )
    coordinate_system: str = 'unknown'

    @classmethod
    def from_traces(cls, traces: Optional[TraceBlock], lines: int, traces_per_line: int,
                    sample_interval_us: float, coordinate_system: str = 'unknown') -> 'SurveyGeometry':
        """
        Derive geometry from trace headers when they carry line numbers and coordinates.

        Falls back to unit spacing anchored at line and trace 1.
        """
        dt_ms = sample_interval_us / 1000.0
        first_inline, first_crossline = 1, 1
        i_vec, j_vec, origin = (1.0, 0.0), (0.0, 1.0), (0.0, 0.0)

        if traces is not None and traces.samples.ndim == 2:
            n = lines * traces_per_line
            if traces.inlines is not None and len(traces.inlines) >= n and n > 0:
                first_inline = int(traces.inlines[0]) or 1
            if traces.crosslines is not None and len(traces.crosslines) >= n and n > 0:
                first_crossline = int(traces.crosslines[0]) or 1
            if traces.cdp_x is not None and traces.cdp_y is not None and n > 0:
                x = np.asarray(traces.cdp_x[:n], dtype=np.float64).reshape(lines, traces_per_line)
                y = np.asarray(traces.cdp_y[:n], dtype=np.float64).reshape(lines, traces_per_line)
                origin = (x[0, 0], y[0, 0])
                if lines > 1:
                    i_vec = (x[1, 0] - x[0, 0], y[1, 0] - y[0, 0])
                if traces_per_line > 1:
                    j_vec = (x[0, 1] - x[0, 0], y[0, 1] - y[0, 0])

        matrix = (
            float(i_vec[0]), float(j_vec[0]), 0.0, float(origin[0]),
            float(i_vec[1]), float(j_vec[1]), 0.0, float(origin[1]),
            0.0, 0.0, float(dt_ms), 0.0,
            0.0, 0.0, 0.0, 1.0,
        )
        return cls(first_inline=first_inline, first_crossline=first_crossline,
                   sample_interval_ms=dt_ms, ijk_to_world=matrix,
                   coordinate_system=coordinate_system or 'unknown')

    def ranges(self, shape: Tuple[int, int, int]) -> Dict[str, List[float]]:
        """End-exclusive index ranges; always strictly increasing."""
        lines, traces, samples = shape
        return {
            'inlineRange': [self.first_inline, self.first_inline + lines],
            'crosslineRange': [self.first_crossline, self.first_crossline + traces],
            'sampleRange': [self.sample_start, self.sample_start + samples * self.sample_interval_ms],
        }

    def to_dict(self, shape: Tuple[int, int, int]) -> Dict[str, Any]:
        geometry = self.ranges(shape)
        geometry['ijkToWorld'] = list(self.ijk_to_world)
        geometry['coordinateSystem'] = self.coordinate_system
        return geometry


@dataclass
class EncodedOutput:
    """
    Result of a completed encoder run.

    The output is kept as the segments the encoder laid out (header,
    tables, brick blobs) so it can be streamed without a contiguous copy.
    Reading .data joins them once and keeps only the joined buffer.
    """
    segments: List[bytes]
    target_format: TargetFormat
    compression: CompressionInfo
    lod_levels: int
    warnings: List[str] = field(default_factory=list)

    @property
    def size(self) -> int:
        return sum(len(segment) for segment in self.segments)

    @property
    def data(self) -> bytes:
        if len(self.segments) != 1 or not isinstance(self.segments[0], bytes):
            self.segments = [b''.join(self.segments)]
        return self.segments[0]


TransitionCallback = Callable[[EncoderState], None]


class FormatEncoder(ABC):
    """
    Abstract target-format encoder.

    Subclasses implement _write_header and _assemble, and may override the
    middle transitions. Instances are single-use.
    """

    target_format: TargetFormat = None

    def __init__(
        self,
        options: Optional[EncoderOptions] = None,
        policy: Optional[ConversionPolicy] = None,
        token: Optional[CancellationToken] = None,
        on_transition: Optional[TransitionCallback] = None,
    ):
        self.options = options or EncoderOptions()
        self.policy = policy or ConversionPolicy()
        self.token = token
        self.on_transition = on_transition
        self._state = EncoderState.INIT
        self.warnings: List[str] = []

        self.volume: Optional[np.ndarray] = None
        self.metadata: Optional[SeismicMetadata] = None
        self.geometry: Optional[SurveyGeometry] = None
        self.header: Dict[str, Any] = {}
        self.pyramid: Optional[Pyramid] = None
        self.bricked: Optional[BrickedPyramid] = None
        self.compressed: Optional[CompressedPyramid] = None
        self.compression_info: Optional[CompressionInfo] = None

    @property
    def state(self) -> EncoderState:
        return self._state

    def encode(self, volume: np.ndarray, metadata: SeismicMetadata,
               geometry: Optional[SurveyGeometry] = None) -> EncodedOutput:
        """
        Run every transition and return the encoded output.

        Args:
            volume: float32 array (lines, traces, samples)
            metadata: Survey metadata
            geometry: Index ranges and transform; unit geometry when omitted

        Raises:
            EncodingError: A transition failed; .stage names it
            CancellationError: The token was cancelled between transitions
        """
        if self._state is not EncoderState.INIT:
            raise EncodingError(f"{self.__class__.__name__} instances are single-use",
                                stage=self._state.value)
        volume = np.asarray(volume, dtype=np.float32)
        if volume.ndim != 3 or min(volume.shape) == 0:
            raise EncodingError(f"Volume must be non-empty 3-D, got shape {volume.shape}",
                                stage=EncoderState.HEADER_WRITTEN.value)

        self.volume = volume
        self.metadata = metadata
        self.geometry = geometry or SurveyGeometry(
            sample_interval_ms=metadata.sample_interval_us / 1000.0,
            coordinate_system=metadata.coordinate_system or 'unknown',
        )

        self._transition(EncoderState.HEADER_WRITTEN, self._write_header)
        self._transition(EncoderState.PYRAMID_BUILT, self._build_pyramid)
        self._transition(EncoderState.BRICKED, self._organize_bricks)
        self._transition(EncoderState.COMPRESSED, self._compress)
        segments = self._transition(EncoderState.ASSEMBLED, self._assemble)
        output = EncodedOutput(
            segments=list(segments),
            target_format=self.target_format,
            compression=self.compression_info,
            lod_levels=self.pyramid.level_count,
            warnings=list(self.warnings),
        )
        if not output.size:
            raise EncodingError("Assembly produced an empty buffer", stage=EncoderState.ASSEMBLED.value)
        self._transition(EncoderState.DONE, lambda: None)

        logger.info(f"{self.target_format.label} encoding done: {output.size} bytes, "
                    f"{self.pyramid.level_count} LOD levels")
        return output

    def _transition(self, target: EncoderState, action: Callable[[], Any]):
        expected = _ORDER[_ORDER.index(target) - 1]
        if self._state is not expected:
            raise EncodingError(f"Cannot enter {target.name} from {self._state.name}", stage=target.value)
        check_cancelled(self.token, f"encoding:{target.value}")
        try:
            result = action()
        except (EncodingError, CancellationError):
            raise
        except Exception as e:
            logger.error(f"{self.target_format.label} encoder failed entering {target.name}: {e}")
            raise EncodingError(f"{target.name} failed: {e}", stage=target.value) from e
        self._state = target
        logger.debug(f"{self.target_format.label} encoder -> {target.name}")
        if self.on_transition is not None:
            self.on_transition(target)
        return result

    # =========================================================================
    # Transitions
    # =========================================================================

    @abstractmethod
    def _write_header(self) -> None:
        """Prepare the header fields known before any volume processing."""

    def _build_pyramid(self) -> None:
        builder = PyramidBuilder(levels=self.options.lod_levels).set_cancellation_token(self.token)
        self.pyramid = builder.build(self.volume)
        self.warnings.extend(self.pyramid.warnings)

    def _organize_bricks(self) -> None:
        organizer = BrickOrganizer(
            brick_size=self.options.brick_size,
            curve=self.options.curve,
            policy=self.policy,
        ).set_cancellation_token(self.token)
        self.bricked = organizer.organize(self.pyramid)
        self.warnings.extend(self.bricked.warnings)

    def _compress(self) -> None:
        spec = self.options.compression
        stage = CompressionStage(
            tolerance=spec.tolerance,
            brick_codec=spec.brick_codec,
            clevel=spec.clevel,
            max_workers=self.options.max_workers,
        ).set_cancellation_token(self.token)
        self.compressed = stage.compress(self.bricked)
        self.compression_info = self.compressed.info
        self.warnings.extend(self.compressed.warnings)

    @abstractmethod
    def _assemble(self) -> List[bytes]:
        """Lay out the output as byte segments in file order."""

    # =========================================================================
    # Helpers
    # =========================================================================

    def _creation_fields(self) -> Dict[str, Any]:
        return {
            'createdBy': CREATED_BY,
            'creationTime': datetime.now(timezone.utc).isoformat(timespec='seconds'),
            'sourceFormat': self.options.source_format.label,
        }

    def _metadata_block(self) -> Optional[Dict[str, Any]]:
        if not self.options.preserve_metadata or self.metadata is None:
            return None
        return self.metadata.to_dict()
