"""
Volume Layout Models

Level-of-detail, brick and compression descriptors shared by the
processing stages and the format encoders.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Tuple, Dict, Any


class BrickCurve(Enum):
    """Traversal order of bricks within a level."""
    MORTON = 'morton'        # Z-order, keeps spatial neighbours close on disk
    ROW_MAJOR = 'row-major'


class CompressionAlgorithm(Enum):
    """Brick reduction family."""
    LOSSLESS = 'lossless'    # Entropy coding only
    QUANTIZED = 'quantized'  # Bounded-error quantization, entropy coded when smaller

    @classmethod
    def for_tolerance(cls, tolerance: float) -> 'CompressionAlgorithm':
        return cls.LOSSLESS if tolerance == 0 else cls.QUANTIZED


@dataclass(frozen=True)
class PyramidLevel:
    """
    Placement of one level of detail inside an encoded buffer.

    Offsets strictly increase with level; level 0 holds full resolution.
    """

    level: int
    offset: int
    byte_size: int

    def to_dict(self) -> Dict[str, int]:
        return {"level": self.level, "offset": self.offset, "byteSize": self.byte_size}


@dataclass(frozen=True)
class BrickLayout:
    """
    Partitioning of one level's volume into fixed-size bricks.

    Attributes
    ----------
    brick_size : tuple
        Brick extent (bx, by, bz)
    brick_count : int
        Total number of bricks
    curve : BrickCurve
        Emission order
    margin : tuple
        Zero padding added at the high boundary of each axis; never data-bearing
    dimensions : tuple
        Unpadded volume extent (ni, nj, nk)
    grid : tuple
        Bricks along each axis
    """

    brick_size: Tuple[int, int, int]
    brick_count: int
    curve: BrickCurve
    margin: Tuple[int, int, int]
    dimensions: Tuple[int, int, int]
    grid: Tuple[int, int, int]

    @property
    def samples_per_brick(self) -> int:
        bx, by, bz = self.brick_size
        return bx * by * bz

    @property
    def padded_dimensions(self) -> Tuple[int, int, int]:
        return tuple(d + m for d, m in zip(self.dimensions, self.margin))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "brickSize": list(self.brick_size),
            "brickCount": self.brick_count,
            "curve": self.curve.value,
            "margins": list(self.margin),
            "dimensions": list(self.dimensions),
            "brickGrid": list(self.grid),
        }


@dataclass(frozen=True)
class CompressionSpec:
    """
    Requested brick compression.

    Attributes
    ----------
    tolerance : float
        Maximum per-sample error as a fraction of the dynamic range;
        0 means lossless
    brick_codec : str
        Blosc compressor name used for entropy coding ('zstd', 'lz4', ...)
    clevel : int
        Blosc compression level
    """

    tolerance: float = 0.0
    brick_codec: str = 'zstd'
    clevel: int = 5

    def __post_init__(self):
        if not 0.0 <= self.tolerance <= 1.0:
            raise ValueError(f"Compression tolerance must be within [0, 1], got {self.tolerance}")
        if not 0 <= self.clevel <= 9:
            raise ValueError(f"Compression level must be within [0, 9], got {self.clevel}")

    @property
    def algorithm(self) -> CompressionAlgorithm:
        return CompressionAlgorithm.for_tolerance(self.tolerance)

    @property
    def is_lossless(self) -> bool:
        return self.algorithm is CompressionAlgorithm.LOSSLESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm.value,
            "tolerance": self.tolerance,
            "brickCodec": self.brick_codec,
        }


@dataclass(frozen=True)
class CompressionInfo:
    """Provenance recorded next to compressed data."""

    algorithm: CompressionAlgorithm
    tolerance: float
    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        """Compressed size over original size."""
        if self.original_size == 0:
            return 1.0
        return self.compressed_size / self.original_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            "algorithm": self.algorithm.value,
            "tolerance": self.tolerance,
            "originalSize": self.original_size,
            "compressedSize": self.compressed_size,
        }
