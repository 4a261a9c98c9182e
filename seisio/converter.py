"""
Conversion pipeline.

    bytes -> pre-flight -> header -> metadata -> traces -> encoder -> validation -> storage

Stages raise; only SeismicConverter.convert catches, and every failure
comes back as ConversionResult.failure naming the stage it started in.
Progress is reported at fixed percentages and never decreases.
"""
import dataclasses
import logging
from typing import Optional, Callable, List

import numpy as np

from models.app_settings import ConversionPolicy
from models.conversion import ConversionConfig, ConversionResult, ConversionStage
from models.formats import SourceFormat, TargetFormat
from models.seismic_metadata import SeismicMetadata, Dimensions
from seisio.compatibility_validator import CompatibilityValidator
from seisio.encoders import EncoderOptions, EncoderState, SurveyGeometry, EncodedOutput
from seisio.errors import (
    ConversionError,
    MalformedHeaderError,
    UnsupportedFormatError,
    SizeLimitExceededError,
)
from seisio.format_registry import FormatRegistry, get_format_registry
from seisio.header_codec import TraceBlock
from seisio.metadata_extractor import MetadataExtractor, grid_shape
from seisio.structural_validator import StructuralValidator
from utils.cancellation import CancellationToken, CancellationError, check_cancelled
from utils.storage_manager import StorageManager, Destination

logger = logging.getLogger(__name__)

# Type alias for progress callbacks: (percent, message) -> None
ConversionProgress = Callable[[int, str], None]

PROGRESS_PREFLIGHT = 10
PROGRESS_HEADER = 20
PROGRESS_METADATA = 30
PROGRESS_TRACES = 45
PROGRESS_VALIDATION = 95
PROGRESS_DONE = 100

ENCODER_PROGRESS = {
    EncoderState.PYRAMID_BUILT: (55, "LOD pyramid built"),
    EncoderState.BRICKED: (65, "Bricks organized"),
    EncoderState.COMPRESSED: (80, "Bricks compressed"),
    EncoderState.ASSEMBLED: (90, "Output assembled"),
}

_STAGES_BY_NAME = {stage.value: stage for stage in ConversionStage}

ASCII_SOURCES = frozenset({
    SourceFormat.ASCII_TEXT, SourceFormat.ASCII_DATA, SourceFormat.ASCII_GRID,
    SourceFormat.CSV, SourceFormat.TSV,
})


def format_pair_warnings(source: SourceFormat, target: TargetFormat) -> List[str]:
    """Known limitations of a source/target combination."""
    warnings = []
    if source in ASCII_SOURCES:
        if target is TargetFormat.HDF5:
            warnings.append("ASCII to HDF5 conversion may require manual trace geometry definition")
        else:
            warnings.append(f"ASCII sources carry no survey coordinates; {target.label} output "
                            f"uses a unit grid transform")
    if source is SourceFormat.SEGD:
        if target is TargetFormat.HDF5:
            warnings.append("Some SEG-D auxiliary channels may not be preserved in HDF5 format")
        else:
            warnings.append(f"SEG-D auxiliary channels are not carried into {target.label} bricks")
    return warnings


def volume_from_traces(traces: TraceBlock) -> np.ndarray:
    """Arrange decoded traces as a (lines, traces, samples) float32 volume."""
    samples = np.asarray(traces.samples, dtype=np.float32)
    if samples.ndim == 3:
        return samples
    if samples.ndim != 2:
        raise ValueError(f"Trace samples must be 2-D or 3-D, got shape {samples.shape}")
    lines, per_line = grid_shape(traces)
    return samples.reshape(lines, per_line, samples.shape[-1])


class _Progress:
    """Clamp reported percentages so they never go backwards."""

    def __init__(self, callback: Optional[ConversionProgress]):
        self.callback = callback
        self.percent = -1

    def __call__(self, percent: int, message: str):
        percent = max(self.percent, min(PROGRESS_DONE, int(percent)))
        self.percent = percent
        logger.debug(f"[{percent:3d}%] {message}")
        if self.callback is not None:
            self.callback(percent, message)


class SeismicConverter:
    """
    Convert legacy seismic files to cloud formats.

    Usage
    -----
    >>> converter = SeismicConverter()
    >>> config = ConversionConfig(SourceFormat.SEGY, TargetFormat.OVDS, 'survey.sgy')
    >>> result = converter.convert(data, config, progress_callback=print)
    >>> result.compatibility_report.cloud_compatible
    True

    Instances hold no per-conversion state; independent conversions may run
    concurrently on one converter.
    """

    def __init__(
        self,
        policy: Optional[ConversionPolicy] = None,
        registry: Optional[FormatRegistry] = None,
    ):
        self.policy = policy or ConversionPolicy()
        self.registry = registry or get_format_registry()
        self.gate = CompatibilityValidator(self.registry, self.policy)
        self.extractor = MetadataExtractor()
        self.validator = StructuralValidator(self.policy)

    def convert(
        self,
        data: bytes,
        config: ConversionConfig,
        progress_callback: Optional[ConversionProgress] = None,
        cancellation_token: Optional[CancellationToken] = None,
        destination: Optional[Destination] = None,
        storage: Optional[StorageManager] = None,
    ) -> ConversionResult:
        """
        Run one conversion.

        Args:
            data: Complete source file bytes
            config: Formats and encoding options
            progress_callback: Called with (percent, message) after each stage
            cancellation_token: Checked at every stage boundary and inside chunked loops
            destination: Where to persist the output; nothing is stored when None
            storage: Storage collaborator; a default StorageManager when None

        Returns:
            ConversionResult; never raises for conversion failures
        """
        progress = _Progress(progress_callback)
        token = cancellation_token
        warnings: List[str] = []
        stage = ConversionStage.PREFLIGHT
        preflight = None

        logger.info(f"Converting {config.file_name} ({len(data)} bytes): "
                    f"{config.source_format.label} -> {config.target_format.label}")
        try:
            progress(0, "Starting conversion")
            check_cancelled(token, stage.value)
            preflight = self._preflight(data, config, warnings)
            progress(PROGRESS_PREFLIGHT, "Pre-flight checks passed")

            stage = ConversionStage.HEADER
            check_cancelled(token, stage.value)
            codec = self.registry.codec_for(config.source_format)
            header = codec.decode(data)
            warnings.extend(header.notes)
            progress(PROGRESS_HEADER, f"{config.source_format.label} headers decoded")

            stage = ConversionStage.METADATA
            check_cancelled(token, stage.value)
            metadata = self.extractor.extract(header, config.source_format,
                                              cloud_compatible=config.cloud_compatible)
            progress(PROGRESS_METADATA, "Metadata extracted")

            stage = ConversionStage.TRACES
            check_cancelled(token, stage.value)
            chunk_bytes = config.chunk_size or self.policy.default_chunk_size
            traces = codec.read_traces(data, header, chunk_bytes, token)
            warnings.extend(traces.warnings)
            volume = volume_from_traces(traces)
            metadata = self._with_volume_dimensions(metadata, volume)
            progress(PROGRESS_TRACES, f"{traces.n_traces} traces decoded")

            stage = ConversionStage.ENCODING
            check_cancelled(token, stage.value)
            warnings.extend(format_pair_warnings(config.source_format, config.target_format))
            output = self._encode(volume, traces, metadata, config, token, progress)
            warnings.extend(output.warnings)

            stage = ConversionStage.VALIDATION
            check_cancelled(token, stage.value)
            report = None
            if config.target_format is TargetFormat.OVDS:
                report = self.validator.validate(output.data, original_size=len(data))
                if not report.is_structurally_valid:
                    failed = ', '.join(step.value for step in report.failed_steps())
                    warnings.append(f"Output is not cloud compatible: structural checks failed ({failed})")
                elif config.cloud_compatible and not report.cloud_compatible:
                    warnings.append("Output is structurally valid but not cloud compatible")
            progress(PROGRESS_VALIDATION, "Structural validation done")

            metadata = self._final_metadata(metadata, output, report, config)
            result = ConversionResult(
                success=True,
                output_segments=output.segments,
                metadata=metadata,
                warnings=warnings,
                compatibility_report=report,
                preflight_report=preflight,
            )

            if destination is not None:
                stage = ConversionStage.STORAGE
                check_cancelled(token, stage.value)
                result = self._persist(result, destination, storage, chunk_bytes)

            progress(PROGRESS_DONE, "Conversion complete")
            logger.info(f"Converted {config.file_name}: {len(data)} -> {result.output_size} bytes, "
                        f"{len(result.warnings)} warning(s)")
            return result

        except CancellationError as e:
            logger.info(f"Conversion of {config.file_name} cancelled during {stage.value}")
            return ConversionResult.failure(stage, str(e), warnings, cancelled=True,
                                            preflight_report=preflight)
        except ConversionError as e:
            failed = _STAGES_BY_NAME.get(e.stage, stage)
            logger.error(f"Conversion of {config.file_name} failed during {failed.value}: {e}")
            message = f"{type(e).__name__}: {e.message}"
            if e.stage != failed.value:
                message += f" (during {e.stage})"
            return ConversionResult.failure(failed, message, warnings, preflight_report=preflight)
        except Exception as e:
            logger.error(f"Conversion of {config.file_name} failed during {stage.value}: {e}",
                         exc_info=True)
            return ConversionResult.failure(stage, f"{type(e).__name__}: {e}", warnings,
                                            preflight_report=preflight)

    # =========================================================================
    # Stages
    # =========================================================================

    def _preflight(self, data: bytes, config: ConversionConfig, warnings: List[str]):
        report = self.gate.check(data, config.source_format)
        warnings.extend(report.warnings)
        if not report.format_supported:
            raise UnsupportedFormatError(f"{config.source_format.label} cannot be decoded")
        if not report.size_within_limit and self.policy.size_limit_fatal:
            raise SizeLimitExceededError(
                f"Source is {len(data)} bytes, limit is {self.policy.max_source_bytes}")
        if not report.header_integrity:
            raise MalformedHeaderError(report.header_error or "header failed integrity checks")
        return report

    def _encode(self, volume: np.ndarray, traces: TraceBlock, metadata: SeismicMetadata,
                config: ConversionConfig, token, progress: _Progress) -> EncodedOutput:
        def on_transition(state: EncoderState):
            if state in ENCODER_PROGRESS:
                progress(*ENCODER_PROGRESS[state])

        encoder_class = self.registry.encoder_for(config.target_format)
        encoder = encoder_class(
            options=EncoderOptions.from_config(config, self.policy),
            policy=self.policy,
            token=token,
            on_transition=on_transition,
        )
        lines, per_line, _ = volume.shape
        geometry = SurveyGeometry.from_traces(
            traces, lines, per_line, metadata.sample_interval_us,
            coordinate_system=metadata.coordinate_system or 'unknown',
        )
        return encoder.encode(volume, metadata, geometry)

    def _persist(self, result: ConversionResult, destination: Destination,
                 storage: Optional[StorageManager], chunk_size: int) -> ConversionResult:
        storage = storage or StorageManager()
        stored = storage.persist(result.output_segments, destination, chunk_size)
        warnings = list(result.warnings)
        if not stored.success:
            warnings.append(f"Storage failed, output is still available: {stored.error}")
        return dataclasses.replace(result, warnings=warnings, storage_result=stored)

    # =========================================================================
    # Metadata
    # =========================================================================

    @staticmethod
    def _with_volume_dimensions(metadata: SeismicMetadata, volume: np.ndarray) -> SeismicMetadata:
        lines, per_line, samples = volume.shape
        dimensions = Dimensions(samples=int(samples), traces=int(per_line), lines=int(lines))
        if dimensions == metadata.dimensions:
            return metadata
        logger.debug(f"Header dimensions {metadata.dimensions.volume_shape} replaced by "
                     f"decoded volume {volume.shape}")
        return dataclasses.replace(metadata, dimensions=dimensions)

    @staticmethod
    def _final_metadata(metadata: SeismicMetadata, output: EncodedOutput, report,
                        config: ConversionConfig) -> SeismicMetadata:
        history = list(metadata.processing_history)
        history.append(f"Read {metadata.dimensions.lines_or_default * metadata.dimensions.traces} "
                       f"traces of {metadata.dimensions.samples} samples")
        history.append(f"Built {output.lod_levels}-level LOD pyramid")
        info = output.compression
        history.append(f"Compressed {info.original_size} -> {info.compressed_size} bytes "
                       f"({info.algorithm.value}, tolerance {info.tolerance:g})")
        history.append(f"Encoded as {output.target_format.label} ({output.size} bytes)")
        if report is not None:
            verdict = 'cloud compatible' if report.cloud_compatible else (
                'structurally valid' if report.is_structurally_valid else 'structurally invalid')
            history.append(f"Validated: {verdict}")
        return dataclasses.replace(metadata, processing_history=history)
