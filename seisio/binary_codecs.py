"""
Binary source codecs other than SEG-Y.

- Seismic Unix: SEG-Y style 240-byte trace headers, no file header, native byte order
- SEG-D: BCD general header block 1, demultiplexed IEEE or integer traces
- Binary / Raw Binary: headerless little-endian float32 stream
- NetCDF classic (scipy.io) and NetCDF4 (h5py)
"""
import io
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple, List

import h5py
import numpy as np
from scipy.io import netcdf_file

from models.formats import SourceFormat
from seisio.errors import MalformedHeaderError
from seisio.header_codec import HeaderCodec, SourceHeader, TraceBlock, chunk_rows
from seisio.segy_codec import TRACE_HEADER_SIZE
from utils.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_INTERVAL_US = 1000.0


# =============================================================================
# Seismic Unix
# =============================================================================

SU_SAMPLES_OFFSET = 114
SU_INTERVAL_OFFSET = 116


@dataclass(frozen=True)
class SuHeader(SourceHeader):
    """First trace header of a Seismic Unix file; SU has no file header."""
    trace_header: bytes
    byte_order: str
    samples: int
    sample_interval: int

    source_format = SourceFormat.SEISMIC_UNIX

    @property
    def samples_per_trace(self) -> int:
        return self.samples

    @property
    def sample_interval_us(self) -> float:
        return float(self.sample_interval)

    @property
    def trace_size(self) -> int:
        return TRACE_HEADER_SIZE + 4 * self.samples

    def acquisition_parameters(self) -> Dict[str, Any]:
        return {'byte_order': 'little' if self.byte_order == '<' else 'big'}


class SeismicUnixCodec(HeaderCodec):
    """Seismic Unix (.su) codec; byte order is detected from the sample count."""

    def __init__(self):
        super().__init__(SourceFormat.SEISMIC_UNIX)

    def _detect_byte_order(self, data: bytes) -> str:
        candidates = []
        for order in ('<', '>'):
            ns = struct.unpack_from(order + 'H', data, SU_SAMPLES_OFFSET)[0]
            if ns == 0:
                continue
            exact = len(data) % (TRACE_HEADER_SIZE + 4 * ns) == 0
            candidates.append((not exact, ns, order))
        if not candidates:
            raise MalformedHeaderError("Seismic Unix trace header declares zero samples per trace")
        # Prefer an exact file-length fit, then the smaller sample count
        return sorted(candidates)[0][2]

    def decode(self, data: bytes) -> SuHeader:
        if len(data) < TRACE_HEADER_SIZE:
            raise MalformedHeaderError(
                f"Seismic Unix buffer is {len(data)} bytes, shorter than one trace header"
            )
        order = self._detect_byte_order(data)
        samples = struct.unpack_from(order + 'H', data, SU_SAMPLES_OFFSET)[0]
        interval = struct.unpack_from(order + 'H', data, SU_INTERVAL_OFFSET)[0]
        if interval == 0:
            raise MalformedHeaderError("Seismic Unix trace header declares a zero sample interval")
        return SuHeader(
            trace_header=bytes(data[:TRACE_HEADER_SIZE]),
            byte_order=order,
            samples=samples,
            sample_interval=interval,
        )

    def encode(self, header: SuHeader) -> bytes:
        buffer = bytearray(header.trace_header)
        struct.pack_into(header.byte_order + 'H', buffer, SU_SAMPLES_OFFSET, header.samples)
        struct.pack_into(header.byte_order + 'H', buffer, SU_INTERVAL_OFFSET, header.sample_interval)
        return bytes(buffer)

    def read_traces(
        self,
        data: bytes,
        header: SuHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        order = header.byte_order
        n_traces, trailing = divmod(len(data), header.trace_size)
        warnings = []
        if trailing:
            warnings.append(f"Ignored {trailing} trailing bytes (partial trace)")
            logger.warning(warnings[-1])

        trace_dtype = np.dtype({
            'names': ['inline', 'crossline', 'data'],
            'formats': [order + 'i4', order + 'i4', (np.dtype(order + 'f4'), (header.samples,))],
            'offsets': [188, 192, TRACE_HEADER_SIZE],
            'itemsize': header.trace_size,
        })
        traces = np.frombuffer(data, dtype=trace_dtype, count=n_traces)

        samples = np.empty((n_traces, header.samples), dtype=np.float32)
        for start, stop in chunk_rows(n_traces, header.trace_size, chunk_bytes):
            check_cancelled(token, 'traces')
            samples[start:stop] = traces['data'][start:stop]

        return TraceBlock(
            samples=samples,
            inlines=traces['inline'].astype(np.int64),
            crosslines=traces['crossline'].astype(np.int64),
            warnings=tuple(warnings),
        )


# =============================================================================
# SEG-D
# =============================================================================

SEGD_BLOCK_SIZE = 32
SEGD_TRACE_HEADER_SIZE = 20

# SEG-D format code -> numpy dtype of demultiplexed samples
SEGD_SAMPLE_FORMATS = {
    8058: '>f4',  # 32-bit IEEE demultiplexed
    8038: '>i4',  # 32-bit integer demultiplexed
}


def read_bcd(buffer: bytes, offset: int, digits: int, high_first: bool = True) -> int:
    """
    Read a packed BCD number.

    Args:
        buffer: Source bytes
        offset: Byte holding the first digit
        digits: Number of decimal digits
        high_first: First digit sits in the high nibble of buffer[offset]
    """
    value = 0
    nibble = 0 if high_first else 1
    for _ in range(digits):
        byte = buffer[offset + nibble // 2]
        digit = (byte >> 4) if nibble % 2 == 0 else (byte & 0x0F)
        value = value * 10 + digit
        nibble += 1
    return value


def write_bcd(buffer: bytearray, offset: int, digits: int, value: int, high_first: bool = True) -> None:
    """Write value as packed BCD; inverse of read_bcd."""
    if value < 0 or value >= 10 ** digits:
        raise MalformedHeaderError(f"Value {value} does not fit in {digits} BCD digits")
    text = str(value).zfill(digits)
    nibble = 0 if high_first else 1
    for ch in text:
        index = offset + nibble // 2
        if nibble % 2 == 0:
            buffer[index] = (buffer[index] & 0x0F) | (int(ch) << 4)
        else:
            buffer[index] = (buffer[index] & 0xF0) | int(ch)
        nibble += 1


@dataclass(frozen=True)
class ChannelSet:
    """Channel set descriptor summary."""
    start_time_ms: int
    end_time_ms: int
    channels: int


@dataclass(frozen=True)
class SegdHeader(SourceHeader):
    """
    SEG-D record header.

    header_bytes holds every header block up to the first trace; the named
    fields are General Header Block 1 values.
    """
    header_bytes: bytes
    file_number: int
    format_code: int
    additional_blocks: int
    base_scan_interval: int
    record_length: int
    scan_types: int
    channel_sets_per_scan: int
    skew_blocks: int
    extended_blocks: int
    external_blocks: int
    channel_sets: Tuple[ChannelSet, ...] = field(default_factory=tuple)

    source_format = SourceFormat.SEGD

    @property
    def sample_interval_us(self) -> float:
        # Base scan interval is stored in units of 1/16 ms
        return self.base_scan_interval * 62.5

    @property
    def record_length_ms(self) -> float:
        return self.record_length * 512.0

    @property
    def samples_per_trace(self) -> int:
        if self.channel_sets:
            cs = self.channel_sets[0]
            span_ms = cs.end_time_ms - cs.start_time_ms
            if span_ms > 0:
                return int(round(span_ms * 1000.0 / self.sample_interval_us))
        return int(round(self.record_length_ms * 1000.0 / self.sample_interval_us))

    @property
    def trace_count(self) -> Optional[int]:
        total = sum(cs.channels for cs in self.channel_sets)
        return total or None

    @property
    def header_length(self) -> int:
        return len(self.header_bytes)

    def acquisition_parameters(self) -> Dict[str, Any]:
        return {
            'file_number': self.file_number,
            'format_code': self.format_code,
            'record_length_ms': self.record_length_ms,
            'scan_types': self.scan_types,
            'channel_sets': len(self.channel_sets),
        }


class SegdCodec(HeaderCodec):
    """SEG-D rev 1 codec for demultiplexed records."""

    def __init__(self):
        super().__init__(SourceFormat.SEGD)

    def decode(self, data: bytes) -> SegdHeader:
        if len(data) < SEGD_BLOCK_SIZE:
            raise MalformedHeaderError(
                f"SEG-D buffer is {len(data)} bytes, shorter than General Header Block 1"
            )
        try:
            values = {
                'file_number': read_bcd(data, 0, 4),
                'format_code': read_bcd(data, 2, 4),
                'additional_blocks': data[11] >> 4,
                'base_scan_interval': data[22],
                'record_length': read_bcd(data, 25, 3, high_first=False),
                'scan_types': read_bcd(data, 27, 2),
                'channel_sets_per_scan': read_bcd(data, 28, 2),
                'skew_blocks': read_bcd(data, 29, 2),
                'extended_blocks': read_bcd(data, 30, 2),
                'external_blocks': read_bcd(data, 31, 2),
            }
        except IndexError as e:
            raise MalformedHeaderError(f"Truncated SEG-D general header: {e}")

        if values['base_scan_interval'] == 0:
            raise MalformedHeaderError("SEG-D general header declares a zero base scan interval")

        general_blocks = 1 + values['additional_blocks']
        cs_start = general_blocks * SEGD_BLOCK_SIZE
        n_descriptors = max(1, values['scan_types']) * values['channel_sets_per_scan']
        header_length = (cs_start + n_descriptors * SEGD_BLOCK_SIZE
                         + SEGD_BLOCK_SIZE * (values['skew_blocks'] + values['extended_blocks']
                                              + values['external_blocks']))
        if len(data) < header_length:
            raise MalformedHeaderError(
                f"SEG-D header blocks need {header_length} bytes, buffer has {len(data)}"
            )

        channel_sets = []
        for i in range(n_descriptors):
            base = cs_start + i * SEGD_BLOCK_SIZE
            start, end = struct.unpack_from('>HH', data, base + 2)
            channel_sets.append(ChannelSet(
                start_time_ms=2 * start,
                end_time_ms=2 * end,
                channels=read_bcd(data, base + 8, 4),
            ))

        header = SegdHeader(
            header_bytes=bytes(data[:header_length]),
            channel_sets=tuple(channel_sets),
            **values,
        )
        if header.samples_per_trace == 0:
            raise MalformedHeaderError("SEG-D header yields zero samples per trace")
        logger.debug(f"Decoded SEG-D header: format {header.format_code}, "
                     f"{header.sample_interval_us} us, {len(channel_sets)} channel sets")
        return header

    def encode(self, header: SegdHeader) -> bytes:
        buffer = bytearray(header.header_bytes)
        write_bcd(buffer, 0, 4, header.file_number)
        write_bcd(buffer, 2, 4, header.format_code)
        buffer[11] = (buffer[11] & 0x0F) | ((header.additional_blocks & 0x0F) << 4)
        buffer[22] = header.base_scan_interval & 0xFF
        write_bcd(buffer, 25, 3, header.record_length, high_first=False)
        write_bcd(buffer, 27, 2, header.scan_types)
        write_bcd(buffer, 28, 2, header.channel_sets_per_scan)
        write_bcd(buffer, 29, 2, header.skew_blocks)
        write_bcd(buffer, 30, 2, header.extended_blocks)
        write_bcd(buffer, 31, 2, header.external_blocks)
        return bytes(buffer)

    def read_traces(
        self,
        data: bytes,
        header: SegdHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        if header.format_code not in SEGD_SAMPLE_FORMATS:
            raise MalformedHeaderError(
                f"SEG-D format code {header.format_code} is not a supported demultiplexed format"
            )
        sample_dtype = np.dtype(SEGD_SAMPLE_FORMATS[header.format_code])
        ns = header.samples_per_trace
        data_bytes = ns * sample_dtype.itemsize

        traces: List[np.ndarray] = []
        channels: List[int] = []
        warnings = []
        pos = header.header_length
        budget = chunk_bytes or (4 * 1024 * 1024)
        since_check = budget
        while pos + SEGD_TRACE_HEADER_SIZE <= len(data):
            if since_check >= budget:
                check_cancelled(token, 'traces')
                since_check = 0
            extensions = data[pos + 9]
            start = pos + SEGD_TRACE_HEADER_SIZE + extensions * SEGD_BLOCK_SIZE
            if start + data_bytes > len(data):
                warnings.append(f"Ignored {len(data) - pos} trailing bytes (partial trace)")
                logger.warning(warnings[-1])
                break
            traces.append(np.frombuffer(data, dtype=sample_dtype, count=ns, offset=start))
            channels.append(read_bcd(data, pos + 4, 4))
            since_check += start + data_bytes - pos
            pos = start + data_bytes

        if not traces:
            raise MalformedHeaderError("SEG-D record contains no complete traces")

        # Auxiliary channel sets share the record; treat channel number as crossline
        return TraceBlock(
            samples=np.vstack(traces).astype(np.float32),
            crosslines=np.asarray(channels, dtype=np.int64),
            warnings=tuple(warnings),
        )


# =============================================================================
# Headerless binary
# =============================================================================

@dataclass(frozen=True)
class RawBinaryHeader(SourceHeader):
    """Headerless float32 stream; the whole buffer is one trace."""
    source_format: SourceFormat
    byte_length: int
    interval_us: float = DEFAULT_SAMPLE_INTERVAL_US

    @property
    def samples_per_trace(self) -> int:
        return self.byte_length // 4

    @property
    def sample_interval_us(self) -> float:
        return self.interval_us

    @property
    def trace_count(self) -> Optional[int]:
        return 1

    @property
    def notes(self) -> Tuple[str, ...]:
        notes = [f"Headerless binary: assuming {self.interval_us:g} us sample interval"]
        if self.byte_length % 4:
            notes.append(f"{self.byte_length % 4} trailing bytes do not form a float32 sample")
        return tuple(notes)


class RawBinaryCodec(HeaderCodec):
    """Little-endian float32 stream without any header."""

    def __init__(self, source_format: SourceFormat = SourceFormat.BINARY,
                 sample_interval_us: float = DEFAULT_SAMPLE_INTERVAL_US):
        super().__init__(source_format)
        self.sample_interval_us = sample_interval_us

    def decode(self, data: bytes) -> RawBinaryHeader:
        if len(data) < 4:
            raise MalformedHeaderError(f"Binary buffer of {len(data)} bytes holds no samples")
        return RawBinaryHeader(
            source_format=self.source_format,
            byte_length=len(data),
            interval_us=self.sample_interval_us,
        )

    def encode(self, header: RawBinaryHeader) -> bytes:
        # No header bytes exist to reproduce
        return b''

    def read_traces(
        self,
        data: bytes,
        header: RawBinaryHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        n = header.samples_per_trace
        values = np.frombuffer(data, dtype='<f4', count=n)
        samples = np.empty((1, n), dtype=np.float32)
        for start, stop in chunk_rows(n, 4, chunk_bytes):
            check_cancelled(token, 'traces')
            samples[0, start:stop] = values[start:stop]
        return TraceBlock(samples=samples, warnings=header.notes[1:])


# =============================================================================
# NetCDF
# =============================================================================

NETCDF_CLASSIC_MAGIC = (b'CDF\x01', b'CDF\x02')
HDF5_SIGNATURE = b'\x89HDF\r\n\x1a\n'

# Attribute name -> factor to microseconds
INTERVAL_ATTRIBUTES = (
    ('sample_interval_us', 1.0),
    ('sample_interval', 1000.0),     # milliseconds
    ('sampling_interval', 1000.0),   # milliseconds
)


def _interval_from_attributes(*attribute_maps) -> Optional[float]:
    for attrs in attribute_maps:
        for name, factor in INTERVAL_ATTRIBUTES:
            value = attrs.get(name)
            if value is None:
                continue
            try:
                value = float(np.asarray(value).ravel()[0])
            except (TypeError, ValueError, IndexError):
                continue
            if value > 0:
                return value * factor
    return None


def _text_attribute(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


@dataclass(frozen=True)
class NetcdfHeader(SourceHeader):
    """
    Self-describing container summary.

    preamble is the fixed leading signature the codec owns; everything else
    is described by the container itself.
    """
    source_format: SourceFormat
    preamble: bytes
    variable: str
    shape: Tuple[int, ...]
    interval_us: float
    attributes: Dict[str, Any] = field(default_factory=dict)
    interval_declared: bool = True

    @property
    def samples_per_trace(self) -> int:
        return int(self.shape[-1])

    @property
    def sample_interval_us(self) -> float:
        return self.interval_us

    @property
    def trace_count(self) -> Optional[int]:
        return int(self.shape[-2]) if len(self.shape) >= 2 else 1

    @property
    def line_count(self) -> Optional[int]:
        return int(np.prod(self.shape[:-2])) if len(self.shape) >= 3 else None

    @property
    def units(self) -> Optional[str]:
        return _text_attribute(self.attributes.get('units'))

    @property
    def coordinate_system(self) -> Optional[str]:
        return _text_attribute(self.attributes.get('crs') or self.attributes.get('coordinate_system'))

    @property
    def notes(self) -> Tuple[str, ...]:
        if self.interval_declared:
            return ()
        return (f"No sample interval attribute on '{self.variable}'; "
                f"assuming {self.interval_us:g} us",)

    def acquisition_parameters(self) -> Dict[str, Any]:
        params = {'variable': self.variable, 'shape': list(self.shape)}
        for key, value in self.attributes.items():
            if key in ('units', 'crs', 'coordinate_system'):
                continue
            if isinstance(value, (bytes, str)):
                params[key] = _text_attribute(value)
            elif np.ndim(value) == 0:
                params[key] = np.asarray(value).item()
        return params


def _volume_array(array: np.ndarray) -> np.ndarray:
    """Shape a variable as (traces, samples) or (lines, traces, samples)."""
    array = np.asarray(array, dtype=np.float32)
    if array.ndim == 1:
        return array.reshape(1, -1)
    if array.ndim == 2 or array.ndim == 3:
        return array
    return array.reshape(-1, array.shape[-2], array.shape[-1])


class NetcdfCodec(HeaderCodec):
    """NetCDF classic (CDF1/CDF2) codec through scipy.io.netcdf_file."""

    def __init__(self, sample_interval_us: float = DEFAULT_SAMPLE_INTERVAL_US):
        super().__init__(SourceFormat.NETCDF)
        self.sample_interval_us = sample_interval_us

    def _open(self, data: bytes):
        if bytes(data[:4]) not in NETCDF_CLASSIC_MAGIC:
            raise MalformedHeaderError("Buffer does not start with a NetCDF classic signature")
        try:
            return netcdf_file(io.BytesIO(bytes(data)), mode='r', mmap=False)
        except Exception as e:
            raise MalformedHeaderError(f"Unreadable NetCDF header: {e}")

    @staticmethod
    def _largest_variable(nc) -> str:
        best, best_size = None, 0
        for name, var in nc.variables.items():
            if var.data.dtype.kind not in 'fiu' or var.data.ndim == 0:
                continue
            if var.data.size > best_size:
                best, best_size = name, var.data.size
        if best is None:
            raise MalformedHeaderError("NetCDF file has no numeric variable")
        return best

    def decode(self, data: bytes) -> NetcdfHeader:
        nc = self._open(data)
        try:
            name = self._largest_variable(nc)
            var = nc.variables[name]
            attributes = dict(getattr(nc, '_attributes', {}))
            attributes.update(getattr(var, '_attributes', {}))
            shape = tuple(int(s) for s in var.data.shape)
        finally:
            nc.close()

        if shape[-1] == 0:
            raise MalformedHeaderError(f"NetCDF variable '{name}' has zero samples")
        interval = _interval_from_attributes(attributes)
        return NetcdfHeader(
            source_format=self.source_format,
            preamble=bytes(data[:8]),
            variable=name,
            shape=shape,
            interval_us=interval or self.sample_interval_us,
            attributes=attributes,
            interval_declared=interval is not None,
        )

    def encode(self, header: NetcdfHeader) -> bytes:
        return header.preamble

    def read_traces(
        self,
        data: bytes,
        header: NetcdfHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        nc = self._open(data)
        try:
            var = nc.variables[header.variable]
            source = var.data
            out = np.empty(source.shape, dtype=np.float32)
            flat_src = source.reshape(-1, source.shape[-1])
            flat_out = out.reshape(-1, source.shape[-1])
            for start, stop in chunk_rows(flat_src.shape[0], 4 * source.shape[-1], chunk_bytes):
                check_cancelled(token, 'traces')
                flat_out[start:stop] = flat_src[start:stop]
        finally:
            nc.close()
        return TraceBlock(samples=_volume_array(out))


class Netcdf4Codec(HeaderCodec):
    """NetCDF4 (HDF5 container) codec through h5py."""

    def __init__(self, sample_interval_us: float = DEFAULT_SAMPLE_INTERVAL_US):
        super().__init__(SourceFormat.NETCDF4)
        self.sample_interval_us = sample_interval_us

    def _open(self, data: bytes) -> h5py.File:
        if bytes(data[:8]) != HDF5_SIGNATURE:
            raise MalformedHeaderError("Buffer does not start with an HDF5 signature")
        try:
            return h5py.File(io.BytesIO(bytes(data)), 'r')
        except OSError as e:
            raise MalformedHeaderError(f"Unreadable NetCDF4 container: {e}")

    @staticmethod
    def _largest_dataset(f: h5py.File) -> str:
        found = {}

        def visit(name, obj):
            if isinstance(obj, h5py.Dataset) and obj.dtype.kind in 'fiu' and obj.ndim > 0:
                found[name] = obj.size

        f.visititems(visit)
        if not found:
            raise MalformedHeaderError("NetCDF4 file has no numeric dataset")
        return max(found, key=found.get)

    def decode(self, data: bytes) -> NetcdfHeader:
        with self._open(data) as f:
            name = self._largest_dataset(f)
            ds = f[name]
            attributes = {k: v for k, v in f.attrs.items() if not k.startswith('_')}
            attributes.update({k: v for k, v in ds.attrs.items()
                               if not k.startswith('_') and k not in ('DIMENSION_LIST', 'REFERENCE_LIST')})
            shape = tuple(int(s) for s in ds.shape)

        if shape[-1] == 0:
            raise MalformedHeaderError(f"NetCDF4 dataset '{name}' has zero samples")
        interval = _interval_from_attributes(attributes)
        return NetcdfHeader(
            source_format=self.source_format,
            preamble=bytes(data[:8]),
            variable=name,
            shape=shape,
            interval_us=interval or self.sample_interval_us,
            attributes=attributes,
            interval_declared=interval is not None,
        )

    def encode(self, header: NetcdfHeader) -> bytes:
        return header.preamble

    def read_traces(
        self,
        data: bytes,
        header: NetcdfHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        with self._open(data) as f:
            ds = f[header.variable]
            out = np.empty(ds.shape, dtype=np.float32)
            rows = int(np.prod(ds.shape[:-1])) if ds.ndim > 1 else 1
            flat_out = out.reshape(rows, ds.shape[-1])
            leading = ds.shape[:-1]
            for start, stop in chunk_rows(rows, 4 * ds.shape[-1], chunk_bytes):
                check_cancelled(token, 'traces')
                if ds.ndim == 1:
                    flat_out[0] = ds[()]
                elif ds.ndim == 2:
                    flat_out[start:stop] = ds[start:stop]
                else:
                    # Read whole leading-axis slabs covering the chunk
                    slab = int(np.prod(leading[1:]))
                    first, last = start // slab, (stop - 1) // slab + 1
                    block = ds[first:last].reshape(-1, ds.shape[-1])
                    offset = first * slab
                    flat_out[start:stop] = block[start - offset:stop - offset]
        return TraceBlock(samples=_volume_array(out))
