"""
Brick compression.

Each brick becomes a self-describing blob:

    mode 0 (lossless):  b'\\x00' + Blosc-compressed float32 samples
    mode 1 (quantized): b'\\x01' + <ddB3H> (minimum, step, bits, data extent) + bit-packed codes

Quantization uses a uniform step of 2 x tolerance x dynamic range, so the
reconstruction error never exceeds tolerance x dynamic range. Only the
data-bearing extent of a brick is quantized; its margin decodes as zeros.
Every brick keeps the smaller of its lossless and quantized blobs, which
makes the compressed size non-increasing in tolerance.
"""
import logging
import struct
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from itertools import islice
from typing import List, Tuple, Optional

import numpy as np
from numcodecs import Blosc, blosc

from models.volume_layout import CompressionSpec, CompressionInfo, BrickLayout
from processors.base_stage import BaseStage
from processors.brick_organizer import BrickedPyramid, BrickedLevel, BrickIndex

logger = logging.getLogger(__name__)

MODE_LOSSLESS = 0
MODE_QUANTIZED = 1
QUANT_HEADER = struct.Struct('<ddB3H')
MAX_CODE_BITS = 32


def quantization_step(tolerance: float, dynamic_range: float) -> float:
    """Uniform quantizer step bounding the error at tolerance x dynamic_range."""
    return 2.0 * tolerance * dynamic_range


def finite_bounds(volume: np.ndarray) -> Tuple[float, float]:
    """Minimum and maximum of the finite samples; (0, 0) when there are none."""
    finite = volume[np.isfinite(volume)]
    if not finite.size:
        return 0.0, 0.0
    return float(finite.min()), float(finite.max())


def finite_range(volume: np.ndarray) -> float:
    """Peak-to-peak of the finite samples; 0 when there are none."""
    low, high = finite_bounds(volume)
    return high - low


def _blosc(spec: CompressionSpec) -> Blosc:
    return Blosc(cname=spec.brick_codec, clevel=spec.clevel, shuffle=Blosc.SHUFFLE)


def _pack_codes(codes: np.ndarray, bits: int) -> bytes:
    as_bytes = codes.astype('>u8').view(np.uint8).reshape(-1, 8)
    bit_matrix = np.unpackbits(as_bytes, axis=1)[:, 64 - bits:]
    return np.packbits(bit_matrix.ravel()).tobytes()


def _unpack_codes(packed: bytes, bits: int, count: int) -> np.ndarray:
    bit_stream = np.unpackbits(np.frombuffer(packed, dtype=np.uint8))[:count * bits]
    bit_matrix = np.zeros((count, 64), dtype=np.uint8)
    bit_matrix[:, 64 - bits:] = bit_stream.reshape(count, bits)
    return np.packbits(bit_matrix, axis=1).view('>u8').ravel().astype(np.uint64)


def quantize_array(brick: np.ndarray, step: float,
                   extent: Optional[Tuple[int, int, int]] = None) -> Optional[bytes]:
    """
    Quantized blob for one brick, or None when quantizing is not possible.

    Args:
        brick: float32 brick, margin included
        step: Quantizer step
        extent: Data-bearing part of the brick; the whole brick when None

    Only brick[:extent] is coded. Bricks holding NaN or Inf, or needing
    more than 32 bits per code, are left to the lossless path. A constant
    region needs zero bits per sample.
    """
    extent = tuple(int(e) for e in (extent or brick.shape))
    region = brick[:extent[0], :extent[1], :extent[2]]
    data = region.astype(np.float64).ravel()
    if not data.size or not np.isfinite(data).all():
        return None
    vmin = float(data.min())
    max_code = int(round((float(data.max()) - vmin) / step))
    bits = max_code.bit_length()
    if bits > MAX_CODE_BITS:
        return None
    header = bytes([MODE_QUANTIZED]) + QUANT_HEADER.pack(vmin, step, bits, *extent)
    if bits == 0:
        return header
    codes = np.rint((data - vmin) / step).astype(np.uint64)
    np.minimum(codes, max_code, out=codes)
    return header + _pack_codes(codes, bits)


def compress_array(brick: np.ndarray, spec: CompressionSpec, step: float = 0.0,
                   extent: Optional[Tuple[int, int, int]] = None) -> bytes:
    """
    Compress one brick.

    Args:
        brick: float32 brick
        spec: Codec, level and tolerance
        step: Quantizer step; 0 disables the quantized candidate
        extent: Data-bearing part of the brick, for the quantized candidate

    Returns:
        Blob of whichever mode is smaller
    """
    brick = np.ascontiguousarray(brick, dtype=np.float32)
    lossless = bytes([MODE_LOSSLESS]) + bytes(_blosc(spec).encode(brick))
    if spec.is_lossless or step <= 0:
        return lossless
    quantized = quantize_array(brick, step, extent)
    if quantized is not None and len(quantized) < len(lossless):
        return quantized
    return lossless


def decompress_brick(blob: bytes, brick_shape: Tuple[int, int, int]) -> np.ndarray:
    """
    Restore a brick from its blob.

    Raises:
        ValueError: Unknown mode byte, truncated blob or extent larger than the brick
    """
    if not blob:
        raise ValueError("Empty brick blob")
    mode = blob[0]
    if mode == MODE_LOSSLESS:
        count = int(np.prod(brick_shape))
        raw = Blosc().decode(blob[1:])
        return np.frombuffer(raw, dtype=np.float32, count=count).reshape(brick_shape).copy()
    if mode == MODE_QUANTIZED:
        if len(blob) < 1 + QUANT_HEADER.size:
            raise ValueError("Truncated quantized brick header")
        vmin, step, bits, ei, ej, ek = QUANT_HEADER.unpack_from(blob, 1)
        if any(e > b for e, b in zip((ei, ej, ek), brick_shape)):
            raise ValueError(f"Quantized extent {(ei, ej, ek)} exceeds brick {tuple(brick_shape)}")
        brick = np.zeros(brick_shape, dtype=np.float32)
        if bits == 0:
            brick[:ei, :ej, :ek] = vmin
            return brick
        codes = _unpack_codes(blob[1 + QUANT_HEADER.size:], bits, ei * ej * ek)
        values = (vmin + codes.astype(np.float64) * step).astype(np.float32)
        brick[:ei, :ej, :ek] = values.reshape(ei, ej, ek)
        return brick
    raise ValueError(f"Unknown brick blob mode {mode}")


@dataclass
class CompressedLevel:
    """Compressed bricks of one level, in layout order."""
    level: int
    layout: BrickLayout
    bricks: List[Tuple[BrickIndex, bytes]]

    @property
    def compressed_size(self) -> int:
        return sum(len(blob) for _, blob in self.bricks)


@dataclass
class CompressedPyramid:
    """All compressed levels plus the provenance record."""
    levels: List[CompressedLevel]
    spec: CompressionSpec
    info: CompressionInfo
    dynamic_range: float
    warnings: List[str] = field(default_factory=list)


def compress_level(level: BrickedLevel, spec: CompressionSpec, step: float,
                   max_workers: int = 1, check=None) -> CompressedLevel:
    """
    Compress every brick of a level.

    Bricks are cut lazily; with max_workers > 1 they are compressed on a
    thread pool in bounded batches, preserving layout order.
    """
    bricks: List[Tuple[BrickIndex, bytes]] = []
    source = level.iter_bricks()

    if max_workers <= 1:
        for index, brick in source:
            if check is not None:
                check()
            bricks.append((index, compress_array(brick, spec, step, level.extent(index))))
        return CompressedLevel(level=level.level, layout=level.layout, bricks=bricks)

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        while True:
            if check is not None:
                check()
            batch = list(islice(source, max_workers * 4))
            if not batch:
                break
            blobs = executor.map(
                lambda item: compress_array(item[1], spec, step, level.extent(item[0])), batch)
            bricks.extend((index, blob) for (index, _), blob in zip(batch, blobs))
    return CompressedLevel(level=level.level, layout=level.layout, bricks=bricks)


class CompressionStage(BaseStage):
    """
    Tolerance-driven brick compression.

    Parameters
    ----------
    tolerance : float
        Maximum error as a fraction of the level-0 dynamic range (0 = lossless)
    brick_codec : str
        Blosc compressor name
    clevel : int
        Blosc compression level
    max_workers : int
        Threads used across bricks
    """

    stage_name = 'compression'

    def _validate_params(self):
        self.spec = CompressionSpec(
            tolerance=float(self.params.get('tolerance', 0.0)),
            brick_codec=self.params.get('brick_codec', 'zstd'),
            clevel=int(self.params.get('clevel', 5)),
        )
        if self.spec.brick_codec not in blosc.list_compressors():
            raise ValueError(f"Unknown Blosc compressor '{self.spec.brick_codec}'")
        self.max_workers = int(self.params.get('max_workers', 1))
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")

    def get_description(self) -> str:
        mode = 'lossless' if self.spec.is_lossless else f"tolerance {self.spec.tolerance:g}"
        return f"Brick compression: {self.spec.brick_codec} level {self.spec.clevel}, {mode}"

    def compress(self, bricked: BrickedPyramid) -> CompressedPyramid:
        """
        Compress all bricks of all levels.

        Returns:
            CompressedPyramid with a CompressionInfo record
        """
        warnings = []
        level0 = bricked.levels[0].volume
        dynamic_range = finite_range(level0)
        if not self.spec.is_lossless and not np.isfinite(level0).all():
            warnings.append("Volume holds NaN or Inf samples; bricks containing them are stored losslessly")
            logger.warning(warnings[-1])
        step = quantization_step(self.spec.tolerance, dynamic_range)
        if not self.spec.is_lossless and step == 0:
            warnings.append("Volume is constant; lossy compression has nothing to quantize")
            logger.warning(warnings[-1])

        levels = []
        for n, level in enumerate(bricked.levels):
            self._check_cancelled()
            compressed = compress_level(level, self.spec, step, self.max_workers, self._check_cancelled)
            levels.append(compressed)
            self._report_progress(n + 1, len(bricked.levels),
                                  f"Level {level.level}: {compressed.compressed_size} bytes")
            logger.debug(f"Level {level.level}: {level.layout.brick_count} bricks -> "
                         f"{compressed.compressed_size} bytes")

        original = sum(level.volume.size * 4 for level in bricked.levels)
        info = CompressionInfo(
            algorithm=self.spec.algorithm,
            tolerance=self.spec.tolerance,
            original_size=int(original),
            compressed_size=int(sum(level.compressed_size for level in levels)),
        )
        logger.info(f"Compressed {original} bytes to {info.compressed_size} "
                    f"({info.ratio:.3f}, {self.spec.algorithm.value})")
        return CompressedPyramid(levels=levels, spec=self.spec, info=info,
                                 dynamic_range=dynamic_range, warnings=warnings)

    def process(self, data: BrickedPyramid) -> CompressedPyramid:
        return self.compress(data)
