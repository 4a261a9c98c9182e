"""
Text source codecs.

- LAS well logs (lasio): depth index is the sample axis, each curve is a trace
- Delimited text (CSV, TSV, ASCII Text, ASCII Data; pandas): one column per trace
- ESRI ASCII Grid: rows become traces

Header values are substituted back into the original header lines on
encode; a line whose value did not change is left byte-for-byte as read.
"""
import io
import logging
import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple, List

import lasio
import numpy as np
import pandas as pd

from models.formats import SourceFormat
from seisio.binary_codecs import DEFAULT_SAMPLE_INTERVAL_US
from seisio.errors import MalformedHeaderError
from seisio.header_codec import HeaderCodec, SourceHeader, TraceBlock, DEFAULT_CHUNK_BYTES
from utils.cancellation import CancellationToken, check_cancelled

logger = logging.getLogger(__name__)

UNIT_NAMES = {'m': 'm', 'meter': 'm', 'meters': 'm', 'metres': 'm',
              'ft': 'ft', 'f': 'ft', 'feet': 'ft'}


def _decode_text(data: bytes) -> str:
    try:
        return bytes(data).decode('utf-8')
    except UnicodeDecodeError:
        return bytes(data).decode('latin-1')


def _normalize_unit(unit: Optional[str]) -> Optional[str]:
    if not unit:
        return None
    return UNIT_NAMES.get(unit.strip().lower(), unit.strip())


def _substitute_value(text: str, pattern: str, value: float) -> str:
    """
    Replace the value captured by group 'value' in the first match of pattern.

    The line is untouched when the captured text already parses to value.
    """
    match = re.search(pattern, text, flags=re.MULTILINE | re.IGNORECASE)
    if match is None:
        raise MalformedHeaderError(f"Header line matching {pattern!r} not found")
    current = match.group('value')
    try:
        if float(current) == float(value):
            return text
    except ValueError:
        pass
    replacement = f"{value:.4f}" if isinstance(value, float) else str(value)
    return text[:match.start('value')] + replacement + text[match.end('value'):]


# =============================================================================
# LAS
# =============================================================================

LAS_DATA_MARKER = re.compile(r'^~A', re.MULTILINE | re.IGNORECASE)
LAS_OWNED = ('STRT', 'STOP', 'STEP', 'NULL')


def _las_pattern(mnemonic: str) -> str:
    # MNEM.UNIT  VALUE : DESCRIPTION
    return rf'^\s*{mnemonic}\s*\.\S*\s+(?P<value>[^\s:]+)'


@dataclass(frozen=True)
class LasHeader(SourceHeader):
    """LAS header sections (everything before ~A) and owned well values."""
    header_text: str
    start: float
    stop: float
    step: float
    null: float
    index_step: float = 0.0
    index_unit: Optional[str] = None
    curves: Tuple[str, ...] = ()
    well: Dict[str, Any] = field(default_factory=dict)
    n_rows: int = 0
    decode_notes: Tuple[str, ...] = ()

    source_format = SourceFormat.LAS

    @property
    def samples_per_trace(self) -> int:
        return self.n_rows

    @property
    def sample_interval_us(self) -> float:
        # Depth step expressed per million so that the rate is samples per depth unit
        return abs(self.index_step or self.step) * 1e6

    @property
    def trace_count(self) -> Optional[int]:
        return len(self.curves)

    @property
    def units(self) -> Optional[str]:
        return _normalize_unit(self.index_unit)

    @property
    def notes(self) -> Tuple[str, ...]:
        return self.decode_notes

    def acquisition_parameters(self) -> Dict[str, Any]:
        params = dict(self.well)
        params.update({'start_depth': self.start, 'stop_depth': self.stop,
                       'depth_step': self.step, 'curves': list(self.curves)})
        return params


class LasCodec(HeaderCodec):
    """Log ASCII Standard (LAS 1.2/2.0) codec."""

    def __init__(self):
        super().__init__(SourceFormat.LAS)

    def _read(self, data: bytes) -> lasio.LASFile:
        try:
            return lasio.read(io.StringIO(_decode_text(data)))
        except Exception as e:
            raise MalformedHeaderError(f"Unparseable LAS file: {e}")

    def decode(self, data: bytes) -> LasHeader:
        text = _decode_text(data)
        marker = LAS_DATA_MARKER.search(text)
        if marker is None:
            raise MalformedHeaderError("LAS file has no ~A data section")

        las = self._read(data)
        values = {}
        for mnemonic in LAS_OWNED:
            try:
                values[mnemonic] = float(las.well[mnemonic].value)
            except (KeyError, TypeError, ValueError):
                raise MalformedHeaderError(f"LAS well section lacks a numeric {mnemonic}")

        notes = []
        step = values['STEP']
        n_rows = len(las.index)
        if step == 0 and n_rows > 1:
            step = float(las.index[1] - las.index[0])
            notes.append(f"LAS STEP is 0 (irregular sampling); using first depth increment {step:g}")
            logger.warning(notes[-1])
        if n_rows == 0:
            raise MalformedHeaderError("LAS file contains no data rows")
        if step == 0:
            raise MalformedHeaderError("LAS file declares a zero depth step")

        well = {}
        for item in las.well:
            if item.mnemonic in LAS_OWNED or item.value in ('', None):
                continue
            well[item.mnemonic.lower()] = item.value

        return LasHeader(
            header_text=text[:marker.start()],
            start=values['STRT'],
            stop=values['STOP'],
            step=values['STEP'],
            index_step=step,
            null=values['NULL'],
            index_unit=las.index_unit or las.curves[0].unit,
            curves=tuple(c.mnemonic for c in las.curves[1:]),
            well=well,
            n_rows=n_rows,
            decode_notes=tuple(notes),
        )

    def encode(self, header: LasHeader) -> bytes:
        text = header.header_text
        for mnemonic, value in zip(LAS_OWNED, (header.start, header.stop, header.step, header.null)):
            text = _substitute_value(text, _las_pattern(mnemonic), value)
        return text.encode('utf-8')

    def read_traces(
        self,
        data: bytes,
        header: LasHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        check_cancelled(token, 'traces')
        las = self._read(data)
        curves = las.curves[1:]
        if not curves:
            raise MalformedHeaderError("LAS file has no curves besides the depth index")
        samples = np.zeros((len(curves), header.n_rows), dtype=np.float32)
        for i, curve in enumerate(curves):
            check_cancelled(token, 'traces')
            values = np.asarray(curve.data, dtype=np.float64)
            samples[i] = np.nan_to_num(values, nan=0.0)
        return TraceBlock(samples=samples)


# =============================================================================
# Delimited text
# =============================================================================

DELIMITERS = {
    SourceFormat.CSV: ',',
    SourceFormat.TSV: '\t',
    SourceFormat.ASCII_TEXT: r'\s+',
    SourceFormat.ASCII_DATA: r'\s+',
}

# Index column name -> factor to microseconds per index step
INDEX_COLUMNS = (
    (re.compile(r'^(time|twt|t)[_ ]?(\(?ms\)?)?$', re.IGNORECASE), 1000.0),
    (re.compile(r'^(time|twt|t)[_ ]?\(?us\)?$', re.IGNORECASE), 1.0),
    (re.compile(r'^(time|twt|t)[_ ]?\(?s\)?$', re.IGNORECASE), 1e6),
    (re.compile(r'^(depth|md|tvd|tvdss|z)([_ ]?\(?\w+\)?)?$', re.IGNORECASE), 1e6),
)


def _index_factor(name: str) -> Optional[float]:
    for pattern, factor in INDEX_COLUMNS:
        if pattern.match(str(name).strip()):
            return factor
    return None


def _is_numeric_row(line: str, sep: str) -> bool:
    tokens = re.split(sep, line.strip()) if sep == r'\s+' else line.strip().split(sep)
    try:
        [float(t) for t in tokens if t != '']
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class DelimitedHeader(SourceHeader):
    """Column layout of a delimited text table."""
    source_format: SourceFormat
    header_line: str
    columns: Tuple[str, ...]
    index_column: Optional[str]
    n_rows: int
    interval_us: float
    interval_declared: bool = False

    @property
    def samples_per_trace(self) -> int:
        return self.n_rows

    @property
    def sample_interval_us(self) -> float:
        return self.interval_us

    @property
    def trace_columns(self) -> Tuple[str, ...]:
        return tuple(c for c in self.columns if c != self.index_column)

    @property
    def trace_count(self) -> Optional[int]:
        return len(self.trace_columns)

    @property
    def notes(self) -> Tuple[str, ...]:
        if self.interval_declared:
            return ()
        return (f"No time/depth column; assuming {self.interval_us:g} us sample interval",)

    def acquisition_parameters(self) -> Dict[str, Any]:
        return {'columns': list(self.trace_columns), 'index_column': self.index_column}


class DelimitedTextCodec(HeaderCodec):
    """CSV, TSV and whitespace-separated tables, one column per trace."""

    def __init__(self, source_format: SourceFormat,
                 sample_interval_us: float = DEFAULT_SAMPLE_INTERVAL_US):
        if source_format not in DELIMITERS:
            raise ValueError(f"{source_format.label} is not a delimited text format")
        super().__init__(source_format)
        self.sep = DELIMITERS[source_format]
        self.sample_interval_us = sample_interval_us

    def _read_kwargs(self, has_header: bool) -> Dict[str, Any]:
        kwargs = {'sep': self.sep, 'comment': '#', 'header': 0 if has_header else None}
        if self.sep == r'\s+':
            kwargs['engine'] = 'python'
        return kwargs

    def _first_line(self, text: str) -> str:
        for line in text.splitlines():
            if line.strip() and not line.lstrip().startswith('#'):
                return line
        raise MalformedHeaderError(f"{self.source_format.label} file is empty")

    def decode(self, data: bytes) -> DelimitedHeader:
        text = _decode_text(data)
        first = self._first_line(text)
        has_header = not _is_numeric_row(first, self.sep)
        try:
            frame = pd.read_csv(io.StringIO(text), **self._read_kwargs(has_header))
        except (ValueError, pd.errors.ParserError) as e:
            raise MalformedHeaderError(f"Unparseable {self.source_format.label} table: {e}")
        if frame.empty:
            raise MalformedHeaderError(f"{self.source_format.label} table has no data rows")

        columns = tuple(str(c) for c in frame.columns)
        frame.columns = columns
        index_column, interval, declared = None, self.sample_interval_us, False
        factor = _index_factor(columns[0]) if has_header else None
        if factor is not None and len(columns) > 1:
            index_column = columns[0]
            index = pd.to_numeric(frame[index_column], errors='coerce').to_numpy()
            if len(index) > 1 and np.isfinite(index[:2]).all() and index[1] != index[0]:
                interval, declared = abs(float(index[1] - index[0])) * factor, True

        return DelimitedHeader(
            source_format=self.source_format,
            header_line=first if has_header else '',
            columns=columns,
            index_column=index_column,
            n_rows=len(frame),
            interval_us=interval,
            interval_declared=declared,
        )

    def encode(self, header: DelimitedHeader) -> bytes:
        return header.header_line.encode('utf-8')

    def read_traces(
        self,
        data: bytes,
        header: DelimitedHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        trace_columns = header.trace_columns
        if not trace_columns:
            raise MalformedHeaderError(f"{self.source_format.label} table has no trace columns")
        rows_per_chunk = max(1, (chunk_bytes or DEFAULT_CHUNK_BYTES) // (8 * len(header.columns)))
        samples = np.zeros((len(trace_columns), header.n_rows), dtype=np.float32)

        reader = pd.read_csv(
            io.StringIO(_decode_text(data)),
            chunksize=rows_per_chunk,
            **self._read_kwargs(bool(header.header_line)),
        )
        row = 0
        for chunk in reader:
            check_cancelled(token, 'traces')
            chunk.columns = header.columns
            values = chunk[list(trace_columns)].apply(pd.to_numeric, errors='coerce')
            n = len(values)
            samples[:, row:row + n] = np.nan_to_num(values.to_numpy(dtype=np.float64), nan=0.0).T
            row += n
        return TraceBlock(samples=samples)


# =============================================================================
# ESRI ASCII Grid
# =============================================================================

GRID_KEYS = ('ncols', 'nrows', 'xllcorner', 'yllcorner', 'xllcenter', 'yllcenter',
             'cellsize', 'nodata_value')


def _grid_pattern(key: str) -> str:
    return rf'^\s*{key}\s+(?P<value>\S+)'


@dataclass(frozen=True)
class GridHeader(SourceHeader):
    """ESRI ASCII Grid header block."""
    header_text: str
    ncols: int
    nrows: int
    xll: float
    yll: float
    cellsize: float
    nodata: Optional[float] = None
    center_registered: bool = False

    source_format = SourceFormat.ASCII_GRID

    @property
    def samples_per_trace(self) -> int:
        return self.ncols

    @property
    def sample_interval_us(self) -> float:
        # Cell size per million so that the rate is cells per spatial unit
        return self.cellsize * 1e6

    @property
    def trace_count(self) -> Optional[int]:
        return self.nrows

    @property
    def units(self) -> Optional[str]:
        return 'm'

    def acquisition_parameters(self) -> Dict[str, Any]:
        return {'x_origin': self.xll, 'y_origin': self.yll, 'cellsize': self.cellsize,
                'nodata_value': self.nodata, 'registration': 'center' if self.center_registered else 'corner'}


class AsciiGridCodec(HeaderCodec):
    """ESRI ASCII raster grid codec."""

    def __init__(self):
        super().__init__(SourceFormat.ASCII_GRID)

    def _split(self, text: str) -> Tuple[str, Dict[str, str]]:
        fields: Dict[str, str] = {}
        end = 0
        for line in text.splitlines(keepends=True):
            parts = line.split()
            if len(parts) == 2 and parts[0].lower() in GRID_KEYS:
                fields[parts[0].lower()] = parts[1]
                end += len(line)
            else:
                break
        return text[:end], fields

    def decode(self, data: bytes) -> GridHeader:
        header_text, fields = self._split(_decode_text(data))
        try:
            ncols, nrows = int(fields['ncols']), int(fields['nrows'])
            cellsize = float(fields['cellsize'])
            center = 'xllcenter' in fields
            xll = float(fields['xllcenter' if center else 'xllcorner'])
            yll = float(fields['yllcenter' if center else 'yllcorner'])
            nodata = float(fields['nodata_value']) if 'nodata_value' in fields else None
        except (KeyError, ValueError) as e:
            raise MalformedHeaderError(f"Incomplete ASCII Grid header: {e}")
        if ncols <= 0 or nrows <= 0:
            raise MalformedHeaderError(f"ASCII Grid declares {ncols} x {nrows} cells")
        if cellsize <= 0:
            raise MalformedHeaderError("ASCII Grid declares a non-positive cell size")
        return GridHeader(header_text=header_text, ncols=ncols, nrows=nrows, xll=xll, yll=yll,
                          cellsize=cellsize, nodata=nodata, center_registered=center)

    def encode(self, header: GridHeader) -> bytes:
        text = header.header_text
        x_key, y_key = ('xllcenter', 'yllcenter') if header.center_registered else ('xllcorner', 'yllcorner')
        owned: List[Tuple[str, Any]] = [('ncols', header.ncols), ('nrows', header.nrows),
                                        (x_key, header.xll), (y_key, header.yll),
                                        ('cellsize', header.cellsize)]
        if header.nodata is not None:
            owned.append(('nodata_value', header.nodata))
        for key, value in owned:
            text = _substitute_value(text, _grid_pattern(key), value)
        return text.encode('utf-8')

    def read_traces(
        self,
        data: bytes,
        header: GridHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        text = _decode_text(data)
        body = text[len(header.header_text):]
        rows_per_chunk = max(1, (chunk_bytes or DEFAULT_CHUNK_BYTES) // (8 * header.ncols))
        samples = np.zeros((header.nrows, header.ncols), dtype=np.float32)
        reader = pd.read_csv(io.StringIO(body), sep=r'\s+', header=None, engine='python',
                             chunksize=rows_per_chunk)
        row = 0
        warnings = []
        for chunk in reader:
            check_cancelled(token, 'traces')
            values = chunk.to_numpy(dtype=np.float64)[:, :header.ncols]
            n = min(len(values), header.nrows - row)
            samples[row:row + n, :values.shape[1]] = values[:n]
            row += n
            if row >= header.nrows:
                break
        if row < header.nrows:
            warnings.append(f"ASCII Grid has {row} of {header.nrows} declared rows")
            logger.warning(warnings[-1])
        if header.nodata is not None:
            samples[samples == np.float32(header.nodata)] = 0.0
        return TraceBlock(samples=samples, warnings=tuple(warnings))
