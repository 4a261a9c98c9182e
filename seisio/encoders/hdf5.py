"""
HDF5 encoder.

Writes an in-memory HDF5 file with h5py:

    /lod/<k>                chunked float32 dataset per pyramid level
    /metadata               group with survey attributes and a JSON copy
    /processing_history     variable-length string dataset

Chunks follow the brick layout, clipped to the dataset shape. Compression
is delegated to the HDF5 filter pipeline: gzip with shuffle when lossless,
the scale-offset filter with enough decimal digits to honour the tolerance
otherwise.
"""
import dataclasses
import io
import json
import logging
import math
from typing import Dict, Any, List, Optional

import h5py
import numpy as np

from models.formats import TargetFormat
from models.volume_layout import CompressionInfo, CompressionSpec
from processors.brick_organizer import plan_layout
from processors.compression_stage import finite_range
from seisio.encoders.base import FormatEncoder, CREATED_BY
from utils.cancellation import check_cancelled

logger = logging.getLogger(__name__)

HDF5_LAYOUT_VERSION = '1.0'
MAX_GZIP_LEVEL = 9


def scaleoffset_digits(tolerance: float, dynamic_range: float) -> int:
    """
    Decimal digits kept by the scale-offset filter.

    Rounding to D digits errs by at most 0.5 x 10**-D, so D is the smallest
    value with 0.5 x 10**-D <= tolerance x dynamic_range.
    """
    bound = tolerance * dynamic_range
    if bound <= 0:
        raise ValueError("Scale-offset needs a positive error bound")
    return max(0, math.ceil(-math.log10(2.0 * bound)))


def filter_kwargs(spec: CompressionSpec, dynamic_range: float) -> Dict[str, Any]:
    """h5py create_dataset keyword arguments for the requested compression."""
    gzip_level = min(spec.clevel, MAX_GZIP_LEVEL)
    if spec.is_lossless or dynamic_range <= 0:
        return {'compression': 'gzip', 'compression_opts': gzip_level, 'shuffle': True}
    return {
        'scaleoffset': scaleoffset_digits(spec.tolerance, dynamic_range),
        'compression': 'gzip',
        'compression_opts': gzip_level,
    }


class Hdf5Encoder(FormatEncoder):
    """Encode a volume as an HDF5 file with one dataset per LOD level."""

    target_format = TargetFormat.HDF5

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._buffer: Optional[io.BytesIO] = None
        self._file: Optional[h5py.File] = None
        self.chunk_layouts = []
        self.compression_spec: Optional[CompressionSpec] = None

    def encode(self, volume, metadata, geometry=None):
        try:
            return super().encode(volume, metadata, geometry)
        finally:
            if self._file is not None:
                self._file.close()
                self._file = None

    def _write_header(self):
        self._buffer = io.BytesIO()
        self._file = h5py.File(self._buffer, 'w')
        attrs = self._file.attrs
        attrs['format'] = self.target_format.label
        attrs['version'] = HDF5_LAYOUT_VERSION
        for key, value in self._creation_fields().items():
            attrs[key] = value

        geometry = self.geometry.to_dict(self.volume.shape)
        attrs['inlineRange'] = np.asarray(geometry['inlineRange'], dtype=np.float64)
        attrs['crosslineRange'] = np.asarray(geometry['crosslineRange'], dtype=np.float64)
        attrs['sampleRange'] = np.asarray(geometry['sampleRange'], dtype=np.float64)
        attrs['ijkToWorld'] = np.asarray(geometry['ijkToWorld'], dtype=np.float64).reshape(4, 4)
        attrs['coordinateSystem'] = geometry['coordinateSystem']

    def _organize_bricks(self):
        self.chunk_layouts = [
            plan_layout(level.shape, self.options.brick_size, self.options.curve)
            for level in self.pyramid.levels
        ]

    def _compress(self):
        spec = self.options.compression
        level0 = self.pyramid.levels[0]
        if not spec.is_lossless and not np.isfinite(level0).all():
            self.warnings.append("Volume holds NaN or Inf samples; HDF5 datasets are stored losslessly")
            logger.warning(self.warnings[-1])
            spec = dataclasses.replace(spec, tolerance=0.0)
        self.compression_spec = spec
        dynamic_range = finite_range(level0)
        kwargs = filter_kwargs(spec, dynamic_range)
        logger.debug(f"HDF5 filters: {kwargs}")

        group = self._file.create_group('lod')
        stored = 0
        for k, (level, layout) in enumerate(zip(self.pyramid.levels, self.chunk_layouts)):
            check_cancelled(self.token, f"compression:level {k}")
            chunks = tuple(min(b, d) for b, d in zip(layout.brick_size, level.shape))
            ds = group.create_dataset(str(k), data=level, dtype='float32', chunks=chunks, **kwargs)
            ds.attrs['margins'] = np.asarray(layout.margin, dtype=np.int64)
            ds.attrs['brickGrid'] = np.asarray(layout.grid, dtype=np.int64)
            self._file.flush()
            stored += int(ds.id.get_storage_size())

        self.compression_info = CompressionInfo(
            algorithm=spec.algorithm,
            tolerance=spec.tolerance,
            original_size=int(self.pyramid.nbytes),
            compressed_size=stored,
        )

    def _assemble(self) -> List[bytes]:
        attrs = self._file.attrs
        attrs['lodLevels'] = self.pyramid.level_count
        attrs['brickSize'] = np.asarray(self.options.brick_size, dtype=np.int64)
        attrs['curve'] = self.options.curve.value
        for key, value in self.compression_spec.to_dict().items():
            attrs[f"compression_{key}"] = value
        attrs['compression_originalSize'] = self.compression_info.original_size
        attrs['compression_compressedSize'] = self.compression_info.compressed_size

        metadata = self._metadata_block()
        if metadata is not None:
            group = self._file.create_group('metadata')
            group.attrs['format'] = metadata['format']
            group.attrs['samplingRateHz'] = metadata['samplingRateHz']
            group.attrs['units'] = metadata['units']
            group.attrs['samples'] = metadata['dimensions']['samples']
            group.attrs['traces'] = metadata['dimensions']['traces']
            group.attrs['lines'] = metadata['dimensions']['lines'] or 1
            group.attrs['json'] = json.dumps(metadata, default=str)
            history = metadata['processingHistory'] or [f"Encoded by {CREATED_BY}"]
            self._file.create_dataset(
                'processing_history',
                data=np.array(history, dtype=object),
                dtype=h5py.string_dtype(encoding='utf-8'),
            )

        self._file.close()
        self._file = None
        return [self._buffer.getvalue()]
