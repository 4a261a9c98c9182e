"""
Format Variants

Closed sets of source and target formats understood by the converter.
Dispatch on these enums goes through the read-only format registry
(seisio.format_registry), never through string-keyed lookups.
"""

from enum import Enum
from typing import Dict


class SourceFormat(Enum):
    """Legacy exploration-geophysics formats recognised on input."""
    SEGY = 'SEG-Y'
    SEGD = 'SEG-D'
    SEISMIC_UNIX = 'Seismic Unix'
    UKOOA_P190 = 'UKOOA P1/90'
    UKOOA_P194 = 'UKOOA P1/94'
    LAS = 'LAS'
    DLIS = 'DLIS'
    NETCDF = 'NetCDF'
    NETCDF4 = 'NetCDF4'
    OPENVDS = 'OpenVDS'
    PETREL_ZGY = 'Petrel ZGY'
    ASCII_TEXT = 'ASCII Text'
    ASCII_DATA = 'ASCII Data'
    ASCII_GRID = 'ASCII Grid'
    CSV = 'CSV'
    TSV = 'TSV'
    BINARY = 'Binary'
    RAW_BINARY = 'Raw Binary'
    PARADIGM_GEODEPTH = 'Paradigm GeoDepth'
    PARADIGM_HSR = 'Paradigm HSR'
    GEOFRAME_IESX = 'Geoframe IESX'

    @property
    def label(self) -> str:
        """Human-readable label, as shown by format-detection tools."""
        return self.value

    @classmethod
    def from_label(cls, label: str) -> 'SourceFormat':
        """
        Resolve a label (case and punctuation insensitive) to a format.

        Raises:
            ValueError: If the label is not one of the recognised formats
        """
        key = _normalize_label(label)
        for member in cls:
            if _normalize_label(member.value) == key or _normalize_label(member.name) == key:
                return member
        raise ValueError(f"Unrecognised source format: {label!r}")


class TargetFormat(Enum):
    """Cloud-oriented output formats."""
    OVDS = 'OVDS'
    HDF5 = 'HDF5'
    ZGY = 'ZGY'

    @property
    def label(self) -> str:
        return self.value

    @property
    def file_extension(self) -> str:
        """Conventional file extension for the format."""
        return _TARGET_EXTENSIONS[self]

    @classmethod
    def from_label(cls, label: str) -> 'TargetFormat':
        key = _normalize_label(label)
        for member in cls:
            if _normalize_label(member.value) == key:
                return member
        raise ValueError(f"Unrecognised target format: {label!r}")


_TARGET_EXTENSIONS: Dict[TargetFormat, str] = {
    TargetFormat.OVDS: '.ovds',
    TargetFormat.HDF5: '.h5',
    TargetFormat.ZGY: '.zgy',
}


def _normalize_label(label: str) -> str:
    return ''.join(c for c in label.lower() if c.isalnum())
