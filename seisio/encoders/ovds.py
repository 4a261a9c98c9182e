"""
OVDS encoder and reader.

Byte layout:

    <single-line UTF-8 JSON header>\\n
    <LOD table: lodLevels x (u64 offset, u64 size)>
    level 0: <brick directory: brickCount x (u32 i, u32 j, u32 k, u64 offset, u32 size)><brick blobs>
    level 1: ...

LOD offsets are absolute. Brick offsets are relative to the start of their
level block. All integers are little-endian. The payload starts right after
the first newline, so a reader needs nothing but the header to find it.
"""
import json
import logging
import struct
from typing import Dict, Any, List, Tuple

import numpy as np

from models.formats import TargetFormat
from processors.compression_stage import CompressedLevel, decompress_brick
from seisio.encoders.base import FormatEncoder

logger = logging.getLogger(__name__)

OVDS_FORMAT_ID = 'OVDS'
OVDS_VERSION = '1.0'
HEADER_DELIMITER = b'\n'
LOD_ENTRY = struct.Struct('<QQ')
BRICK_ENTRY = struct.Struct('<IIIQI')

# Hints emitted for every output, then the cloud-only ones
BASE_HINTS = (
    ('chunkingStrategy', 'spatial_locality'),
    ('accessPattern', 'random_access'),
)
CLOUD_HINTS = (
    ('storageClass', 'hot'),
    ('redundancy', 'zone_redundant'),
    ('cloudOptimized', True),
)


def optimization_hints(cloud_compatible: bool) -> Dict[str, Any]:
    hints = dict(BASE_HINTS)
    if cloud_compatible:
        hints.update(CLOUD_HINTS)
    return hints


def pack_directory(level: CompressedLevel) -> bytes:
    """Brick directory of one level; brick offsets count from the start of the level block."""
    directory = bytearray()
    offset = BRICK_ENTRY.size * len(level.bricks)
    for (i, j, k), blob in level.bricks:
        directory += BRICK_ENTRY.pack(i, j, k, offset, len(blob))
        offset += len(blob)
    return bytes(directory)


class OvdsEncoder(FormatEncoder):
    """
    Encode a volume as a self-describing OVDS buffer.

    Parameters
    ----------
    options : EncoderOptions
        LOD, brick and compression parameters
    policy : ConversionPolicy
        Allowed brick sizes
    token : CancellationToken, optional
        Checked before every transition
    on_transition : callable, optional
        Called with each EncoderState reached
    """

    target_format = TargetFormat.OVDS

    def _write_header(self):
        shape = self.volume.shape
        self.header = {
            'format': OVDS_FORMAT_ID,
            'version': OVDS_VERSION,
            **self._creation_fields(),
            'volume_info': {
                'dimensionality': 3,
                'format': 'float32',
                'components': 1,
                'brickSize': list(self.options.brick_size),
                'dimensions': list(shape),
                'curve': self.options.curve.value,
            },
            'geometry': self.geometry.to_dict(shape),
            'optimization': optimization_hints(self.options.cloud_compatible),
        }

    def _complete_header(self) -> Dict[str, Any]:
        levels = self.compressed.levels
        volume_info = dict(self.header['volume_info'])
        volume_info['lodLevels'] = len(levels)
        volume_info['margins'] = list(levels[0].layout.margin)
        volume_info['levels'] = [
            {
                'level': level.level,
                'dimensions': list(level.layout.dimensions),
                'margins': list(level.layout.margin),
                'brickGrid': list(level.layout.grid),
                'brickCount': level.layout.brick_count,
            }
            for level in levels
        ]

        header = dict(self.header)
        header['volume_info'] = volume_info
        header['compression'] = {
            **self.compressed.spec.to_dict(),
            'originalSize': self.compression_info.original_size,
            'compressedSize': self.compression_info.compressed_size,
        }
        metadata = self._metadata_block()
        if metadata is not None:
            header['metadata'] = metadata
        return header

    def _assemble(self) -> List[bytes]:
        header = self._complete_header()
        header_bytes = json.dumps(header, separators=(',', ':'), default=str).encode('utf-8')
        header_bytes += HEADER_DELIMITER

        levels = self.compressed.levels
        directories = [pack_directory(level) for level in levels]
        offset = len(header_bytes) + LOD_ENTRY.size * len(levels)
        table = bytearray()
        for level, directory in zip(levels, directories):
            size = len(directory) + level.compressed_size
            table += LOD_ENTRY.pack(offset, size)
            offset += size

        segments = [header_bytes + bytes(table)]
        for level, directory in zip(levels, directories):
            segments.append(directory)
            segments.extend(blob for _, blob in level.bricks)
        logger.debug(f"OVDS header {len(header_bytes)} bytes, {len(levels)} LOD blocks, "
                     f"{len(segments)} segments")
        return segments


class OvdsReader:
    """
    Decode an OVDS buffer back into LOD volumes.

    Raises:
        ValueError: When the header cannot be located or parsed
    """

    def __init__(self, data: bytes):
        self.data = data
        end = data.find(HEADER_DELIMITER)
        if end < 0:
            raise ValueError("OVDS header delimiter not found")
        self.header: Dict[str, Any] = json.loads(data[:end].decode('utf-8'))
        if self.header.get('format') != OVDS_FORMAT_ID:
            raise ValueError(f"Not an OVDS buffer: format={self.header.get('format')!r}")
        self.payload_start = end + 1

    @property
    def lod_levels(self) -> int:
        return int(self.header['volume_info']['lodLevels'])

    @property
    def brick_size(self) -> Tuple[int, int, int]:
        return tuple(self.header['volume_info']['brickSize'])

    def lod_table(self) -> List[Tuple[int, int]]:
        """(absolute offset, size) of each level block."""
        return [
            LOD_ENTRY.unpack_from(self.data, self.payload_start + n * LOD_ENTRY.size)
            for n in range(self.lod_levels)
        ]

    def brick_directory(self, level: int) -> List[Tuple[int, int, int, int, int]]:
        """(i, j, k, relative offset, size) of every brick in a level, in file order."""
        offset, _ = self.lod_table()[level]
        count = self.header['volume_info']['levels'][level]['brickCount']
        return [BRICK_ENTRY.unpack_from(self.data, offset + n * BRICK_ENTRY.size) for n in range(count)]

    def read_level(self, level: int) -> np.ndarray:
        """Reassemble one level, with the margin removed."""
        info = self.header['volume_info']['levels'][level]
        bx, by, bz = self.brick_size
        grid = info['brickGrid']
        padded = np.zeros((grid[0] * bx, grid[1] * by, grid[2] * bz), dtype=np.float32)
        start, _ = self.lod_table()[level]
        for i, j, k, offset, size in self.brick_directory(level):
            blob = self.data[start + offset:start + offset + size]
            padded[i * bx:(i + 1) * bx, j * by:(j + 1) * by, k * bz:(k + 1) * bz] = \
                decompress_brick(blob, (bx, by, bz))
        ni, nj, nk = info['dimensions']
        return padded[:ni, :nj, :nk]
