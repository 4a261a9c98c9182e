"""
Header codec interface shared by all source formats.

A codec decodes the fixed-layout header of one source format into a typed
header object, encodes that object back to the exact original bytes, and
reads trace samples in bounded chunks.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Any, Optional, Tuple

import numpy as np

from models.formats import SourceFormat
from utils.cancellation import CancellationToken

DEFAULT_CHUNK_BYTES = 4 * 1024 * 1024


class SourceHeader(ABC):
    """Decoded source header; concrete formats are frozen dataclasses."""

    source_format: SourceFormat

    @property
    @abstractmethod
    def samples_per_trace(self) -> int:
        """Samples per trace as declared by the header."""

    @property
    @abstractmethod
    def sample_interval_us(self) -> float:
        """Sample interval in microseconds (per depth unit for depth logs)."""

    @property
    def trace_count(self) -> Optional[int]:
        """Trace count when the header declares it."""
        return None

    @property
    def line_count(self) -> Optional[int]:
        """Line count when the header declares it."""
        return None

    @property
    def units(self) -> Optional[str]:
        return None

    @property
    def coordinate_system(self) -> Optional[str]:
        return None

    @property
    def notes(self) -> Tuple[str, ...]:
        """Non-fatal observations made while decoding."""
        return ()

    def acquisition_parameters(self) -> Dict[str, Any]:
        return {}


@dataclass(frozen=True)
class TraceBlock:
    """
    Decoded trace samples.

    Attributes:
        samples: float32 array of shape (n_traces, n_samples), or
            (n_lines, n_traces, n_samples) for sources that are already gridded
        inlines: Inline number per trace, when the source carries one
        crosslines: Crossline number per trace, when the source carries one
        cdp_x: Scaled X coordinate per trace
        cdp_y: Scaled Y coordinate per trace
        warnings: Non-fatal problems met while reading
    """
    samples: np.ndarray
    inlines: Optional[np.ndarray] = None
    crosslines: Optional[np.ndarray] = None
    cdp_x: Optional[np.ndarray] = None
    cdp_y: Optional[np.ndarray] = None
    warnings: Tuple[str, ...] = ()

    @property
    def n_traces(self) -> int:
        return int(np.prod(self.samples.shape[:-1]))

    @property
    def n_samples(self) -> int:
        return int(self.samples.shape[-1])


class HeaderCodec(ABC):
    """Decode/encode one source format's header and read its traces."""

    def __init__(self, source_format: SourceFormat):
        self.source_format = source_format

    @abstractmethod
    def decode(self, data: bytes) -> SourceHeader:
        """
        Decode the header.

        Raises:
            MalformedHeaderError: Header is truncated, unparseable or declares
                zero samples or a zero sample interval
        """

    @abstractmethod
    def encode(self, header: SourceHeader) -> bytes:
        """Encode a header back to bytes; exact inverse of decode over owned fields."""

    @abstractmethod
    def read_traces(
        self,
        data: bytes,
        header: SourceHeader,
        chunk_bytes: Optional[int] = None,
        token: Optional[CancellationToken] = None,
    ) -> TraceBlock:
        """Read all trace samples, chunk by chunk, checking the token between chunks."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.source_format.label})"


def chunk_rows(n_rows: int, row_bytes: int, chunk_bytes: Optional[int]):
    """Yield (start, stop) row ranges holding about chunk_bytes each."""
    chunk_bytes = chunk_bytes or DEFAULT_CHUNK_BYTES
    rows_per_chunk = max(1, chunk_bytes // max(1, row_bytes))
    for start in range(0, n_rows, rows_per_chunk):
        yield start, min(start + rows_per_chunk, n_rows)
