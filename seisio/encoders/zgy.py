"""
ZGY-style brick container.

Layout, all little-endian:

    FileHeader      magic 'VCS\\0' + u32 version
    InfoHeader      fixed fields packed from _formats()
    Lookup table    u64 offset per brick, row-major within each LOD, LOD 0 first
    Bricks          compressed brick blobs in lookup-table order
    String block    UTF-8 JSON with provenance and per-level layout

A brick's size is the distance to the next brick offset; the last brick
ends where the string block starts.
"""
import dataclasses
import json
import logging
import struct
from typing import List, Dict, Any

import numpy as np

from models.formats import TargetFormat
from models.volume_layout import BrickCurve
from processors.compression_stage import decompress_brick, finite_bounds
from seisio.encoders.base import FormatEncoder

logger = logging.getLogger(__name__)

ZGY_MAGIC = b'VCS\x00'
ZGY_VERSION = 1
DATATYPE_FLOAT32 = 0


class HeaderBase:
    """
    A header that maps 1:1 to a packed block of the file.

    Subclasses list their fields in _formats() as
    (attribute, struct code, C type, description).
    """

    @classmethod
    def _formats(cls):
        return []

    @classmethod
    def _format(cls):
        return ("<" + " ".join([e[1] for e in cls._formats()])).strip()

    @classmethod
    def headersize(cls):
        return struct.calcsize(cls._format())

    def pack(self) -> bytes:
        buf = bytearray(self.headersize())
        offset = 0
        for name, code, _, _ in self._formats():
            value = getattr(self, name)
            if not isinstance(value, tuple):
                value = (value,)
            struct.pack_into("<" + code, buf, offset, *value)
            offset += struct.calcsize("<" + code)
        return bytes(buf)

    def unpack(self, buf, offset: int = 0):
        for name, code, _, _ in self._formats():
            data = struct.unpack_from("<" + code, buf, offset=offset)
            offset += struct.calcsize("<" + code)
            if code.endswith('s') or len(data) == 1:
                data = data[0]
            setattr(self, name, data)
        return self

    def __repr__(self):
        fields = ", ".join(f"{e[0].lstrip('_')}={getattr(self, e[0], None)!r}" for e in self._formats())
        return f"{self.__class__.__name__}({fields})"


class FileHeader(HeaderBase):
    def __init__(self, buf=None):
        self._magic = ZGY_MAGIC
        self._version = ZGY_VERSION
        if buf is not None:
            self.unpack(buf)
            if self._magic != ZGY_MAGIC:
                raise ValueError(f"Not a ZGY container: magic {self._magic!r}")

    @staticmethod
    def _formats():
        return [
            ('_magic',   '4s', 'uint8[4]', 'Always VCS\\0.'),
            ('_version', 'I',  'uint32',   'Container layout version.'),
        ]


class InfoHeader(HeaderBase):
    def __init__(self, buf=None, offset: int = 0):
        self._bricksize = (64, 64, 64)
        self._datatype = DATATYPE_FLOAT32
        self._nlods = 1
        self._size = (0, 0, 0)
        self._orig = (0.0, 0.0, 0.0)
        self._inc = (1.0, 1.0, 1.0)
        self._gpx = (0.0, 0.0, 0.0, 0.0)
        self._gpy = (0.0, 0.0, 0.0, 0.0)
        self._file_min = 0.0
        self._file_max = 0.0
        self._tolerance = 0.0
        self._original_size = 0
        self._compressed_size = 0
        self._lupoff = 0
        self._lupsize = 0
        self._stroff = 0
        self._strsize = 0
        if buf is not None:
            self.unpack(buf, offset)

    @staticmethod
    def _formats():
        return [
            ('_bricksize',       '3i', 'int32[3]',   'Brick size in lines, traces, samples.'),
            ('_datatype',        'B',  'uint8',      'Sample type; 0 = float32.'),
            ('_nlods',           'i',  'int32',      'Number of levels of detail.'),
            ('_size',            '3i', 'int32[3]',   'Full resolution size in lines, traces, samples.'),
            ('_orig',            '3f', 'float32[3]', 'First inline, crossline and sample time.'),
            ('_inc',             '3f', 'float32[3]', 'Inline, crossline and sample increments.'),
            ('_gpx',             '4d', 'float64[4]', 'World X of the four corners.'),
            ('_gpy',             '4d', 'float64[4]', 'World Y of the four corners.'),
            ('_file_min',        'f',  'float32',    'Smallest full resolution sample.'),
            ('_file_max',        'f',  'float32',    'Largest full resolution sample.'),
            ('_tolerance',       'd',  'float64',    'Compression tolerance; 0 = lossless.'),
            ('_original_size',   'Q',  'uint64',     'Uncompressed pyramid size in bytes.'),
            ('_compressed_size', 'Q',  'uint64',     'Sum of brick sizes in bytes.'),
            ('_lupoff',          'Q',  'uint64',     'Offset of the brick lookup table.'),
            ('_lupsize',         'Q',  'uint64',     'Size of the brick lookup table in bytes.'),
            ('_stroff',          'Q',  'uint64',     'Offset of the string block.'),
            ('_strsize',         'I',  'uint32',     'Size of the string block in bytes.'),
        ]


def corner_points(ijk_to_world, lines: int, traces: int):
    """World X and Y of the four survey corners, ZGY corner order."""
    m = np.asarray(ijk_to_world, dtype=np.float64).reshape(4, 4)
    corners = [(0, 0), (lines - 1, 0), (0, traces - 1), (lines - 1, traces - 1)]
    xs = tuple(float(m[0, 0] * i + m[0, 1] * j + m[0, 3]) for i, j in corners)
    ys = tuple(float(m[1, 0] * i + m[1, 1] * j + m[1, 3]) for i, j in corners)
    return xs, ys


class ZgyEncoder(FormatEncoder):
    """
    Encode a volume as a ZGY-style brick container.

    Bricks are always stored row-major; a Morton request is overridden
    with a warning.
    """

    target_format = TargetFormat.ZGY

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        if self.options.curve is not BrickCurve.ROW_MAJOR:
            self.warnings.append(
                f"ZGY stores bricks row-major; requested {self.options.curve.value} order ignored"
            )
            logger.info(self.warnings[-1])
            self.options = dataclasses.replace(self.options, curve=BrickCurve.ROW_MAJOR)

    def _write_header(self):
        lines, traces, samples = self.volume.shape
        geometry = self.geometry
        info = InfoHeader()
        info._bricksize = tuple(self.options.brick_size)
        info._size = (lines, traces, samples)
        info._orig = (float(geometry.first_inline), float(geometry.first_crossline),
                      float(geometry.sample_start))
        info._inc = (1.0, 1.0, float(geometry.sample_interval_ms))
        info._gpx, info._gpy = corner_points(geometry.ijk_to_world, lines, traces)
        info._file_min, info._file_max = finite_bounds(self.volume)
        info._tolerance = float(self.options.compression.tolerance)
        self.info = info
        self.header = {
            **self._creation_fields(),
            'coordinateSystem': geometry.coordinate_system,
            'curve': self.options.curve.value,
        }

    def _assemble(self) -> List[bytes]:
        info = self.info
        levels = self.compressed.levels
        blobs = [blob for level in levels for _, blob in level.bricks]

        info._nlods = len(levels)
        info._original_size = self.compression_info.original_size
        info._compressed_size = self.compression_info.compressed_size
        info._lupoff = FileHeader.headersize() + InfoHeader.headersize()
        info._lupsize = 8 * len(blobs)

        offsets = []
        offset = info._lupoff + info._lupsize
        for blob in blobs:
            offsets.append(offset)
            offset += len(blob)
        info._stroff = offset

        strings = dict(self.header)
        strings['compression'] = self.compressed.spec.to_dict()
        strings['levels'] = [
            {
                'level': level.level,
                'dimensions': list(level.layout.dimensions),
                'brickGrid': list(level.layout.grid),
                'brickCount': level.layout.brick_count,
            }
            for level in levels
        ]
        metadata = self._metadata_block()
        if metadata is not None:
            strings['metadata'] = metadata
        string_block = json.dumps(strings, default=str).encode('utf-8')
        info._strsize = len(string_block)

        lookup = struct.pack(f"<{len(offsets)}Q", *offsets)
        return [FileHeader().pack() + info.pack() + lookup, *blobs, string_block]


class ZgyReader:
    """Decode a ZGY-style container produced by ZgyEncoder."""

    def __init__(self, data: bytes):
        self.data = data
        self.file_header = FileHeader(data)
        self.info = InfoHeader(data, FileHeader.headersize())
        if self.info._datatype != DATATYPE_FLOAT32:
            raise ValueError(f"Unsupported ZGY sample type {self.info._datatype}")
        start, size = self.info._stroff, self.info._strsize
        self.strings: Dict[str, Any] = json.loads(data[start:start + size].decode('utf-8'))

    def lookup_table(self) -> List[int]:
        count = self.info._lupsize // 8
        return list(struct.unpack_from(f"<{count}Q", self.data, self.info._lupoff))

    def read_level(self, level: int) -> np.ndarray:
        """Reassemble one level at its unpadded size."""
        levels = self.strings['levels']
        first = sum(entry['brickCount'] for entry in levels[:level])
        entry = levels[level]
        lookup = self.lookup_table()
        ends = lookup[1:] + [self.info._stroff]

        bx, by, bz = self.info._bricksize
        gi, gj, gk = entry['brickGrid']
        padded = np.zeros((gi * bx, gj * by, gk * bz), dtype=np.float32)
        for n, (i, j, k) in enumerate(np.ndindex(gi, gj, gk)):
            start, end = lookup[first + n], ends[first + n]
            padded[i * bx:(i + 1) * bx, j * by:(j + 1) * by, k * bz:(k + 1) * bz] = \
                decompress_brick(self.data[start:end], (bx, by, bz))
        ni, nj, nk = entry['dimensions']
        return padded[:ni, :nj, :nk]
