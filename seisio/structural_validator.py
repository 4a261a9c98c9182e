"""
Structural validator for encoded OVDS buffers.

Re-parses a buffer from its bytes alone and scores it against the cloud
ingestion contract. Nothing here imports the encoder: offsets, table
layouts and hint names are read back and checked independently.

Seven steps run in order; the first five are structural and decide
is_structurally_valid. Brick layout and optimization hints only lower the
score. validate() never raises; every problem becomes a warning naming the
offending property.
"""
import json
import logging
import math
import struct
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Tuple

from models.app_settings import ConversionPolicy
from models.compatibility_report import (
    CompatibilityReport,
    PerformanceMetrics,
    ValidationStep,
    STRUCTURAL_STEPS,
)

logger = logging.getLogger(__name__)

# Wire layout as documented for OVDS readers
LOD_TABLE_ENTRY = struct.Struct('<QQ')
BRICK_DIRECTORY_ENTRY = struct.Struct('<IIIQI')
FORMAT_ID = 'OVDS'
MIN_VERSION = 1.0

RECOGNISED_CODECS = ('zstd', 'lz4', 'lz4hc', 'blosclz', 'zlib')
KNOWN_ALGORITHMS = ('lossless', 'quantized')
OPTIMIZATION_KEYS = ('chunkingStrategy', 'accessPattern', 'storageClass', 'redundancy', 'cloudOptimized')
SPATIAL_CURVES = ('morton', 'z-order')
LARGE_VOLUME_SAMPLES = 1e9

# Load time model
BASE_TRANSFER_MBPS = 100.0
COMPRESSION_BONUS = 1.5
LOD_BONUS = 1.3
LOD_BONUS_THRESHOLD = 4
RECOMMENDED_LOD_LEVELS = 4

SUCCESS_LINE = "Output is optimized for cloud data-service ingestion"


@dataclass
class _Run:
    """Mutable state of one validate() call."""
    data: bytes
    header: Dict[str, Any] = field(default_factory=dict)
    payload_start: int = 0
    steps: Dict[ValidationStep, bool] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    lod_table: List[Tuple[int, int]] = field(default_factory=list)
    lod_levels: int = 0
    optimization_score: float = 0.0

    def section(self, name: str) -> Dict[str, Any]:
        value = self.header.get(name)
        return value if isinstance(value, dict) else {}


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class StructuralValidator:
    """
    Black-box acceptance check of OVDS output.

    Parameters
    ----------
    policy : ConversionPolicy, optional
        Allowed brick sizes, tolerance ceiling, optimization threshold and
        brick sample bounds
    """

    def __init__(self, policy: Optional[ConversionPolicy] = None):
        self.policy = policy or ConversionPolicy()

    def validate(self, data: bytes, original_size: Optional[int] = None) -> CompatibilityReport:
        """
        Validate an encoded buffer.

        Args:
            data: Complete encoded buffer
            original_size: Size of the source the buffer was produced from

        Returns:
            CompatibilityReport; identical for identical inputs
        """
        data = bytes(data)
        run = _Run(data=data)

        if self._parse_header(run):
            self._check_header(run)
            self._check_volume_info(run)
            self._check_geometry(run)
            self._check_compression(run)
            self._check_lod_structure(run)
            self._check_brick_layout(run)
            self._check_optimization(run)
        else:
            for step in ValidationStep:
                run.steps[step] = False

        valid = all(run.steps[step] for step in STRUCTURAL_STEPS)
        cloud = valid and run.optimization_score > self.policy.optimization_threshold

        metrics = self._metrics(run, original_size)
        self._performance_recommendations(run, metrics, valid, cloud)

        logger.info(f"Structural validation: valid={valid}, cloud_compatible={cloud}, "
                    f"score={run.optimization_score:.2f}, {len(run.warnings)} warning(s)")
        return CompatibilityReport(
            is_structurally_valid=valid,
            cloud_compatible=cloud,
            step_results={step: run.steps[step] for step in ValidationStep},
            metrics=metrics,
            optimization_score=run.optimization_score,
            recommendations=run.recommendations,
            warnings=run.warnings,
        )

    # =========================================================================
    # Header parsing
    # =========================================================================

    def _parse_header(self, run: _Run) -> bool:
        end = run.data.find(b'\n')
        if end < 0:
            run.warnings.append("Invalid OVDS header structure - no header delimiter found")
            return False
        try:
            header = json.loads(run.data[:end].decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            run.warnings.append(f"Invalid OVDS header structure - header is not valid JSON: {e}")
            return False
        if not isinstance(header, dict):
            run.warnings.append("Invalid OVDS header structure - header must be a JSON object")
            return False
        run.header = header
        run.payload_start = end + 1
        return True

    # =========================================================================
    # Steps
    # =========================================================================

    def _check_header(self, run: _Run):
        ok = True
        header = run.header
        if header.get('format') != FORMAT_ID:
            run.warnings.append(f'Header format field should be "{FORMAT_ID}", got {header.get("format")!r}')
            ok = False

        try:
            version = float(header.get('version'))
        except (TypeError, ValueError):
            run.warnings.append(f"Header version is missing or not numeric: {header.get('version')!r}")
            ok = False
        else:
            if version < MIN_VERSION:
                run.warnings.append(f"OVDS version should be {MIN_VERSION} or higher, got {version}")

        if not header.get('creationTime') or not header.get('createdBy'):
            run.warnings.append("Missing creation metadata - recommended for data lineage tracking")
        run.steps[ValidationStep.HEADER_STRUCTURE] = ok

    def _check_volume_info(self, run: _Run):
        info = run.header.get('volume_info')
        if not isinstance(info, dict):
            run.warnings.append("volume_info block is missing")
            run.steps[ValidationStep.VOLUME_INFO] = False
            return

        ok = True
        if info.get('dimensionality') != 3:
            run.warnings.append(f"volume_info.dimensionality must be 3, got {info.get('dimensionality')!r}")
            ok = False

        brick = info.get('brickSize')
        allowed = sorted(self.policy.allowed_brick_sizes)
        if not (isinstance(brick, list) and len(brick) == 3 and all(_is_int(b) for b in brick)):
            run.warnings.append(f"volume_info.brickSize must be three integers, got {brick!r}")
            brick = None
            ok = False
        elif not self.policy.is_allowed_brick_size(brick):
            run.warnings.append(f"volume_info.brickSize {brick} not in the allowed set {allowed}")
            ok = False

        lods = info.get('lodLevels')
        if not _is_int(lods) or lods < 1:
            run.warnings.append(f"volume_info.lodLevels must be at least 1, got {lods!r}")
            ok = False
        else:
            run.lod_levels = lods
            if lods < RECOMMENDED_LOD_LEVELS:
                run.recommendations.append(
                    f"Consider using {RECOMMENDED_LOD_LEVELS}+ LOD levels for better streaming performance"
                )
            levels = info.get('levels')
            if levels is not None and (not isinstance(levels, list) or len(levels) != lods):
                run.warnings.append(f"volume_info.levels does not describe {lods} LOD levels")
                ok = False

        if brick is not None and not self._margins_consistent(run, info, brick):
            ok = False

        if info.get('format') != 'float32':
            run.recommendations.append(
                f"float32 samples recommended for best compatibility, got {info.get('format')!r}"
            )
        run.steps[ValidationStep.VOLUME_INFO] = ok

    def _margins_consistent(self, run: _Run, info: Dict[str, Any], brick: List[int]) -> bool:
        margins = info.get('margins')
        if not (isinstance(margins, list) and len(margins) == 3 and all(_is_int(m) for m in margins)):
            run.warnings.append(f"volume_info.margins must be three integers, got {margins!r}")
            return False
        if any(m < 0 or m >= b for m, b in zip(margins, brick)):
            run.warnings.append(f"volume_info.margins {margins} must lie within [0, brickSize)")
            return False
        dims = info.get('dimensions')
        if isinstance(dims, list) and len(dims) == 3 and all(_is_int(d) for d in dims):
            if any((d + m) % b for d, m, b in zip(dims, margins, brick)):
                run.warnings.append(
                    f"volume_info.margins {margins} inconsistent with dimensions {dims} "
                    f"and brickSize {brick}"
                )
                return False
        return True

    def _check_geometry(self, run: _Run):
        geometry = run.header.get('geometry')
        if not isinstance(geometry, dict):
            run.warnings.append("geometry block is missing")
            run.steps[ValidationStep.GEOMETRY] = False
            return

        ok = True
        extents = []
        for name in ('inlineRange', 'crosslineRange', 'sampleRange'):
            values = geometry.get(name)
            if not (isinstance(values, list) and len(values) == 2 and all(_is_number(v) for v in values)):
                run.warnings.append(f"geometry.{name} must hold two numbers, got {values!r}")
                ok = False
            elif values[1] <= values[0]:
                run.warnings.append(f"geometry.{name} must be strictly increasing, got {values}")
                ok = False
            else:
                extents.append(values[1] - values[0])

        matrix = geometry.get('ijkToWorld')
        if not (isinstance(matrix, list) and len(matrix) == 16 and all(_is_number(v) for v in matrix)):
            size = len(matrix) if isinstance(matrix, list) else 'no'
            run.warnings.append(f"geometry.ijkToWorld must be a 4x4 matrix (16 numbers), got {size} entries")
            ok = False

        dims = run.section('volume_info').get('dimensions')
        if isinstance(dims, list) and all(_is_number(d) for d in dims):
            total = math.prod(dims)
        else:
            total = math.prod(extents) if len(extents) == 3 else 0
        if total > LARGE_VOLUME_SAMPLES:
            run.recommendations.append("Large volumes benefit from higher compression and more LOD levels")
        run.steps[ValidationStep.GEOMETRY] = ok

    def _check_compression(self, run: _Run):
        compression = run.header.get('compression')
        if not isinstance(compression, dict):
            run.warnings.append("No compression block found - output may be inefficient for cloud storage")
            run.steps[ValidationStep.COMPRESSION] = False
            return

        ok = True
        algorithm = compression.get('algorithm')
        if algorithm not in KNOWN_ALGORITHMS:
            run.warnings.append(f"compression.algorithm {algorithm!r} is not one of {list(KNOWN_ALGORITHMS)}")
            ok = False

        tolerance = compression.get('tolerance')
        if not _is_number(tolerance) or not 0.0 <= tolerance <= 1.0:
            run.warnings.append(f"compression.tolerance must be a number within [0, 1], got {tolerance!r}")
            ok = False
        else:
            if tolerance > self.policy.tolerance_ceiling:
                run.warnings.append(
                    f"compression.tolerance {tolerance:g} exceeds the {self.policy.tolerance_ceiling:g} "
                    f"ceiling and may affect data quality for seismic analysis"
                )
            if algorithm == 'lossless' and tolerance > 0:
                run.warnings.append(f"compression.algorithm 'lossless' contradicts tolerance {tolerance:g}")
                ok = False

        if compression.get('brickCodec') not in RECOGNISED_CODECS:
            run.recommendations.append(
                f"Consider one of {', '.join(RECOGNISED_CODECS)} as brick codec, "
                f"got {compression.get('brickCodec')!r}"
            )
        run.steps[ValidationStep.COMPRESSION] = ok

    def _check_lod_structure(self, run: _Run):
        n = run.lod_levels
        if n < 1:
            run.warnings.append("Cannot validate LOD structure - lodLevels is not usable")
            run.steps[ValidationStep.LOD_STRUCTURE] = False
            return

        table_end = run.payload_start + LOD_TABLE_ENTRY.size * n
        if table_end > len(run.data):
            run.warnings.append(f"LOD table truncated: {n} entries need {table_end} bytes, "
                                f"buffer has {len(run.data)}")
            run.steps[ValidationStep.LOD_STRUCTURE] = False
            return

        table = [LOD_TABLE_ENTRY.unpack_from(run.data, run.payload_start + i * LOD_TABLE_ENTRY.size)
                 for i in range(n)]
        ok = True
        offsets = [offset for offset, _ in table]
        if any(b <= a for a, b in zip(offsets, offsets[1:])):
            run.warnings.append(f"Invalid LOD structure - LOD offsets must be strictly increasing, got {offsets}")
            ok = False
        if offsets[0] != table_end:
            run.warnings.append(f"LOD level 0 offset {offsets[0]} does not start right after the "
                                f"LOD table (payload data starts at {table_end})")
            ok = False
        for level, (offset, size) in enumerate(table):
            if size == 0:
                run.warnings.append(f"LOD level {level} has zero size")
                ok = False
            elif offset + size > len(run.data):
                run.warnings.append(f"LOD level {level} extends past the end of the buffer "
                                    f"({offset} + {size} > {len(run.data)})")
                ok = False
        for level, ((offset, size), (next_offset, _)) in enumerate(zip(table, table[1:])):
            if offset + size != next_offset:
                run.warnings.append(f"LOD level {level} block [{offset}, {offset + size}) is not "
                                    f"contiguous with level {level + 1} at {next_offset}")
                ok = False
        last_offset, last_size = table[-1]
        if ok and last_offset + last_size != len(run.data):
            run.warnings.append(f"LOD blocks end at {last_offset + last_size} but the buffer has "
                                f"{len(run.data)} bytes")
            ok = False

        if ok:
            run.lod_table = table
            run.recommendations.append("LOD structure validated - supports efficient multi-resolution streaming")
        run.steps[ValidationStep.LOD_STRUCTURE] = ok

    def _check_brick_layout(self, run: _Run):
        info = run.section('volume_info')
        brick = info.get('brickSize')
        if not (isinstance(brick, list) and len(brick) == 3 and all(_is_int(b) for b in brick)):
            run.steps[ValidationStep.BRICK_LAYOUT] = False
            return

        ok = True
        samples = math.prod(brick)
        if samples > self.policy.max_brick_samples:
            run.warnings.append(f"Brick size {brick} ({samples} samples) may impact random access performance")
            ok = False
        if samples < self.policy.min_brick_samples:
            run.warnings.append(f"Brick size {brick} ({samples} samples) may cause overhead in cloud storage")
            ok = False

        if info.get('curve') in SPATIAL_CURVES:
            run.recommendations.append("Spatial ordering detected - optimizes cache locality")
        else:
            run.recommendations.append("Consider using Morton/Z-order curve for better spatial locality")

        levels = info.get('levels')
        if run.lod_table and isinstance(levels, list):
            for level, ((offset, size), entry) in enumerate(zip(run.lod_table, levels)):
                count = entry.get('brickCount') if isinstance(entry, dict) else None
                if not _is_int(count) or not self._directory_consistent(run, level, offset, size, count):
                    ok = False
        run.steps[ValidationStep.BRICK_LAYOUT] = ok

    def _directory_consistent(self, run: _Run, level: int, start: int, size: int, count: int) -> bool:
        directory_size = BRICK_DIRECTORY_ENTRY.size * count
        if count < 1 or directory_size > size:
            run.warnings.append(f"LOD level {level} brick directory of {count} entries does not fit "
                                f"its {size}-byte block")
            return False
        for n in range(count):
            _, _, _, offset, length = BRICK_DIRECTORY_ENTRY.unpack_from(
                run.data, start + n * BRICK_DIRECTORY_ENTRY.size)
            if offset < directory_size or offset + length > size or length == 0:
                run.warnings.append(f"LOD level {level} brick {n} lies outside its level block")
                return False
        return True

    def _check_optimization(self, run: _Run):
        hints = run.section('optimization')
        present = sum(1 for key in OPTIMIZATION_KEYS if hints.get(key) not in (None, '', False))
        run.optimization_score = present / len(OPTIMIZATION_KEYS)
        if run.optimization_score < 0.6:
            missing = [key for key in OPTIMIZATION_KEYS if hints.get(key) in (None, '', False)]
            run.recommendations.append(f"Consider adding cloud optimization hints: {', '.join(missing)}")
        run.steps[ValidationStep.OPTIMIZATION] = run.optimization_score > self.policy.optimization_threshold

    # =========================================================================
    # Metrics and summary
    # =========================================================================

    def _metrics(self, run: _Run, original_size: Optional[int]) -> PerformanceMetrics:
        steps = run.steps
        size = len(run.data)
        rate = BASE_TRANSFER_MBPS
        if steps[ValidationStep.COMPRESSION]:
            rate *= COMPRESSION_BONUS
        if run.lod_levels > LOD_BONUS_THRESHOLD:
            rate *= LOD_BONUS

        score = 0.5
        if steps[ValidationStep.BRICK_LAYOUT]:
            score += 0.15
        if steps[ValidationStep.LOD_STRUCTURE]:
            score += 0.15
        if steps[ValidationStep.COMPRESSION]:
            score += 0.1
        if steps[ValidationStep.OPTIMIZATION]:
            score += 0.1

        return PerformanceMetrics(
            file_size=size,
            compression_ratio=size / original_size if original_size else 1.0,
            estimated_load_time_sec=(size / 1024 / 1024) / rate,
            random_access_score=min(1.0, round(score, 6)),
        )

    @staticmethod
    def _performance_recommendations(run: _Run, metrics: PerformanceMetrics, valid: bool, cloud: bool):
        if metrics.estimated_load_time_sec > 10:
            run.recommendations.append("Output may benefit from higher compression or chunking optimization")
        if metrics.random_access_score < 0.7:
            run.recommendations.append("Optimize brick layout and LOD structure for better random access")
        if metrics.compression_ratio > 0.8:
            run.recommendations.append("Low compression ratio - consider a non-zero tolerance for seismic data")
        if not cloud:
            run.recommendations.append("Enable cloud optimization hints for best cloud performance")
        if valid and cloud:
            run.recommendations.insert(0, SUCCESS_LINE)


def validate_ovds(data: bytes, original_size: Optional[int] = None,
                  policy: Optional[ConversionPolicy] = None) -> CompatibilityReport:
    """Validate an OVDS buffer with a one-off validator."""
    return StructuralValidator(policy).validate(data, original_size)
