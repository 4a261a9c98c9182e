"""
SEG-Y header codec and trace reader.

The 3200-byte textual header and the 400-byte binary header are decoded
into a SegyHeader. The raw bytes are kept, so encoding overlays only the
fields this codec owns and everything else is passed through unchanged.

Traces are read straight from the buffer through a numpy structured dtype,
one bounded chunk at a time.
"""
import logging
import struct
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple, List

import numpy as np
import segyio

from models.formats import SourceFormat
from seisio.errors import MalformedHeaderError
from seisio.header_codec import HeaderCodec, SourceHeader, TraceBlock, chunk_rows
from utils.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

TEXT_HEADER_SIZE = 3200
BINARY_HEADER_SIZE = 400
FILE_HEADER_SIZE = TEXT_HEADER_SIZE + BINARY_HEADER_SIZE
TRACE_HEADER_SIZE = 240


@dataclass(frozen=True)
class BinaryHeaderField:
    """
    Definition of a binary header field.

    Attributes:
        name: Attribute name on SegyHeader
        byte_position: Starting byte position in the file (1-based, SEG-Y convention)
        format: Struct format ('i'=int32, 'h'=int16, 'H'=uint16)
        description: Human-readable description
    """
    name: str
    byte_position: int
    format: str
    description: str = ""

    @property
    def offset(self) -> int:
        """Offset within the 400-byte binary header."""
        return self.byte_position - TEXT_HEADER_SIZE - 1

    def read_value(self, binary_header: bytes) -> int:
        return struct.unpack_from('>' + self.format, binary_header, self.offset)[0]

    def write_value(self, buffer: bytearray, value: int) -> None:
        struct.pack_into('>' + self.format, buffer, self.offset, value)


# Fields owned by the codec; all other binary header bytes are passed through
BINARY_FIELDS: Tuple[BinaryHeaderField, ...] = (
    BinaryHeaderField('job_id', int(segyio.BinField.JobID), 'i', 'Job identification number'),
    BinaryHeaderField('line_number', int(segyio.BinField.LineNumber), 'i', 'Line number'),
    BinaryHeaderField('reel_number', int(segyio.BinField.ReelNumber), 'i', 'Reel number'),
    BinaryHeaderField('traces_per_ensemble', int(segyio.BinField.Traces), 'h', 'Data traces per ensemble'),
    BinaryHeaderField('aux_traces_per_ensemble', int(segyio.BinField.AuxTraces), 'h', 'Auxiliary traces per ensemble'),
    BinaryHeaderField('sample_interval', int(segyio.BinField.Interval), 'H', 'Sample interval (us)'),
    BinaryHeaderField('samples', int(segyio.BinField.Samples), 'H', 'Samples per data trace'),
    BinaryHeaderField('format_code', int(segyio.BinField.Format), 'h', 'Data sample format code'),
    BinaryHeaderField('sorting_code', int(segyio.BinField.SortingCode), 'h', 'Trace sorting code'),
    BinaryHeaderField('measurement_system', int(segyio.BinField.MeasurementSystem), 'h', '1 = meters, 2 = feet'),
    BinaryHeaderField('revision', int(segyio.BinField.SEGYRevision), 'H', 'SEG-Y format revision number'),
    BinaryHeaderField('extended_headers', int(segyio.BinField.ExtendedHeaders), 'h', 'Extended textual headers'),
)

# format code -> (numpy dtype, description)
SAMPLE_FORMATS: Dict[int, Tuple[str, str]] = {
    1: ('>u4', '4-byte IBM floating point'),
    2: ('>i4', '4-byte signed integer'),
    3: ('>i2', '2-byte signed integer'),
    5: ('>f4', '4-byte IEEE floating point'),
    6: ('>f8', '8-byte IEEE floating point'),
    8: ('i1', '1-byte signed integer'),
    10: ('>u4', '4-byte unsigned integer'),
    11: ('>u2', '2-byte unsigned integer'),
    16: ('u1', '1-byte unsigned integer'),
}

MEASUREMENT_UNITS = {1: 'm', 2: 'ft'}


@dataclass(frozen=True)
class SegyHeader(SourceHeader):
    """
    Decoded SEG-Y file header.

    text_header and binary_header hold the original bytes; the named fields
    are the decoded values of BINARY_FIELDS and win over the raw bytes on
    encode.
    """
    text_header: bytes
    binary_header: bytes
    job_id: int
    line_number: int
    reel_number: int
    traces_per_ensemble: int
    aux_traces_per_ensemble: int
    sample_interval: int
    samples: int
    format_code: int
    sorting_code: int
    measurement_system: int
    revision: int
    extended_headers: int
    text_encoding: str = 'ebcdic'
    decode_notes: Tuple[str, ...] = field(default_factory=tuple)

    source_format = SourceFormat.SEGY

    @property
    def samples_per_trace(self) -> int:
        return self.samples

    @property
    def sample_interval_us(self) -> float:
        return float(self.sample_interval)

    @property
    def units(self) -> Optional[str]:
        return MEASUREMENT_UNITS.get(self.measurement_system)

    @property
    def notes(self) -> Tuple[str, ...]:
        return self.decode_notes

    @property
    def sample_dtype(self) -> np.dtype:
        if self.format_code not in SAMPLE_FORMATS:
            raise MalformedHeaderError(f"Unsupported SEG-Y sample format code {self.format_code}")
        return np.dtype(SAMPLE_FORMATS[self.format_code][0])

    @property
    def data_offset(self) -> int:
        """Byte offset of the first trace."""
        return FILE_HEADER_SIZE + TEXT_HEADER_SIZE * max(0, self.extended_headers)

    @property
    def trace_size(self) -> int:
        return TRACE_HEADER_SIZE + self.samples * self.sample_dtype.itemsize

    def text_lines(self) -> List[str]:
        """Textual header as 40 card images of 80 characters."""
        codec = 'cp500' if self.text_encoding == 'ebcdic' else 'ascii'
        text = self.text_header.decode(codec, errors='replace')
        return [text[i:i + 80].rstrip() for i in range(0, TEXT_HEADER_SIZE, 80)]

    def acquisition_parameters(self) -> Dict[str, Any]:
        params = {
            'job_id': self.job_id,
            'line_number': self.line_number,
            'reel_number': self.reel_number,
            'traces_per_ensemble': self.traces_per_ensemble,
            'sorting_code': self.sorting_code,
            'sample_format': SAMPLE_FORMATS.get(self.format_code, ('', 'unknown'))[1],
            'segy_revision': self.revision,
            'text_encoding': self.text_encoding,
        }
        if self.text_encoding != 'blank':
            first_card = self.text_lines()[0]
            if first_card:
                params['text_header_first_line'] = first_card
        return params

    @classmethod
    def create(
        cls,
        samples: int,
        sample_interval: int,
        format_code: int = 5,
        text_lines: Optional[Dict[int, str]] = None,
        measurement_system: int = 1,
    ) -> 'SegyHeader':
        """
        Build a fresh header.

        Args:
            samples: Samples per trace
            sample_interval: Sample interval in microseconds
            format_code: Sample format code
            text_lines: Card number (1-40) to text, as accepted by segyio
            measurement_system: 1 = meters, 2 = feet
        """
        text = segyio.tools.create_text_header(text_lines or {1: 'SEISCONVERT'})
        if isinstance(text, bytes):
            text = text.decode('ascii')
        return cls(
            text_header=text.encode('cp500'),
            binary_header=bytes(BINARY_HEADER_SIZE),
            job_id=0, line_number=0, reel_number=0,
            traces_per_ensemble=0, aux_traces_per_ensemble=0,
            sample_interval=sample_interval, samples=samples,
            format_code=format_code, sorting_code=0,
            measurement_system=measurement_system,
            revision=0x0100, extended_headers=0,
        )


def detect_text_encoding(text_header: bytes) -> str:
    """Return 'blank', 'ascii' or 'ebcdic' for a textual header."""
    if not any(text_header):
        return 'blank'
    # EBCDIC spaces (0x40) are printable ASCII, so compare letters and digits instead
    ascii_alnum = sum(1 for c in text_header.decode('latin-1') if c.isascii() and c.isalnum())
    ebcdic_alnum = sum(1 for c in text_header.decode('cp500') if c.isascii() and c.isalnum())
    return 'ascii' if ascii_alnum > ebcdic_alnum else 'ebcdic'


def ibm_to_ieee(words: np.ndarray) -> np.ndarray:
    """
    Convert IBM System/360 floats (as uint32 words) to float32.

    value = sign * (mantissa / 2**24) * 16**(exponent - 64)
    """
    words = np.asarray(words, dtype=np.uint32)
    sign = np.where(words >> 31, -1.0, 1.0)
    exponent = ((words >> 24) & 0x7F).astype(np.int32) - 64
    mantissa = (words & 0x00FFFFFF).astype(np.float64) / float(1 << 24)
    return (sign * mantissa * np.power(16.0, exponent)).astype(np.float32)


class SegyHeaderCodec(HeaderCodec):
    """SEG-Y rev 0/1/2 file header codec."""

    def __init__(self):
        super().__init__(SourceFormat.SEGY)

    def decode(self, data: bytes) -> SegyHeader:
        if len(data) < FILE_HEADER_SIZE:
            raise MalformedHeaderError(
                f"SEG-Y buffer is {len(data)} bytes, shorter than the "
                f"{FILE_HEADER_SIZE}-byte file header"
            )

        text_header = bytes(data[:TEXT_HEADER_SIZE])
        binary_header = bytes(data[TEXT_HEADER_SIZE:FILE_HEADER_SIZE])
        values = {f.name: f.read_value(binary_header) for f in BINARY_FIELDS}

        if values['sample_interval'] == 0:
            raise MalformedHeaderError("SEG-Y binary header declares a zero sample interval")
        if values['samples'] == 0:
            raise MalformedHeaderError("SEG-Y binary header declares zero samples per trace")

        notes = []
        encoding = detect_text_encoding(text_header)
        if encoding == 'blank':
            notes.append("SEG-Y textual header is blank (all zero bytes)")
            logger.warning(notes[-1])
        if values['format_code'] not in SAMPLE_FORMATS:
            notes.append(f"Unknown SEG-Y sample format code {values['format_code']}")
            logger.warning(notes[-1])

        header = SegyHeader(
            text_header=text_header,
            binary_header=binary_header,
            text_encoding=encoding,
            decode_notes=tuple(notes),
            **values,
        )
        logger.debug(f"Decoded SEG-Y header: {header.samples} samples, "
                     f"{header.sample_interval} us, format {header.format_code}")
        return header

    def encode(self, header: SegyHeader) -> bytes:
        binary = bytearray(header.binary_header)
        for f in BINARY_FIELDS:
            try:
                f.write_value(binary, getattr(header, f.name))
            except struct.error as e:
                raise MalformedHeaderError(f"Cannot encode {f.name}={getattr(header, f.name)}: {e}")
        return bytes(header.text_header) + bytes(binary)

    def trace_count(self, data: bytes, header: SegyHeader) -> Tuple[int, int]:
        """Return (complete traces, trailing bytes)."""
        payload = max(0, len(data) - header.data_offset)
        return payload // header.trace_size, payload % header.trace_size

    def read_traces(
        self,
        data: bytes,
        header: SegyHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        sample_dtype = header.sample_dtype
        n_traces, trailing = self.trace_count(data, header)
        warnings = []
        if trailing:
            warnings.append(f"Ignored {trailing} trailing bytes (partial trace)")
            logger.warning(warnings[-1])
        if n_traces == 0:
            raise MalformedHeaderError("SEG-Y file contains no complete traces")

        trace_dtype = np.dtype({
            'names': ['scalar', 'cdp_x', 'cdp_y', 'inline', 'crossline', 'data'],
            'formats': ['>i2', '>i4', '>i4', '>i4', '>i4', (sample_dtype, (header.samples,))],
            'offsets': [
                int(segyio.TraceField.SourceGroupScalar) - 1,
                int(segyio.TraceField.CDP_X) - 1,
                int(segyio.TraceField.CDP_Y) - 1,
                int(segyio.TraceField.INLINE_3D) - 1,
                int(segyio.TraceField.CROSSLINE_3D) - 1,
                TRACE_HEADER_SIZE,
            ],
            'itemsize': header.trace_size,
        })
        traces = np.frombuffer(data, dtype=trace_dtype, count=n_traces, offset=header.data_offset)

        samples = np.empty((n_traces, header.samples), dtype=np.float32)
        for start, stop in chunk_rows(n_traces, header.trace_size, chunk_bytes):
            check_cancelled(token, 'traces')
            raw = traces['data'][start:stop]
            if header.format_code == 1:
                samples[start:stop] = ibm_to_ieee(raw)
            else:
                samples[start:stop] = raw.astype(np.float32)
            logger.debug(f"Read traces {start}-{stop} of {n_traces}")

        # Coordinate scalar: negative divides, positive multiplies, zero is unity
        scalar = traces['scalar'].astype(np.float64)
        factor = np.ones_like(scalar)
        factor[scalar > 0] = scalar[scalar > 0]
        factor[scalar < 0] = 1.0 / -scalar[scalar < 0]

        return TraceBlock(
            samples=samples,
            inlines=traces['inline'].astype(np.int64),
            crosslines=traces['crossline'].astype(np.int64),
            cdp_x=traces['cdp_x'] * factor,
            cdp_y=traces['cdp_y'] * factor,
            warnings=tuple(warnings),
        )
