"""
Target format encoders.

All encoders share the FormatEncoder state machine and differ only in how
the header is drafted and how the final buffer is laid out.
"""

from seisio.encoders.base import (
    FormatEncoder,
    EncoderState,
    EncoderOptions,
    SurveyGeometry,
    EncodedOutput,
)
from seisio.encoders.ovds import OvdsEncoder, OvdsReader
from seisio.encoders.hdf5 import Hdf5Encoder
from seisio.encoders.zgy import ZgyEncoder, ZgyReader

__all__ = [
    'FormatEncoder',
    'EncoderState',
    'EncoderOptions',
    'SurveyGeometry',
    'EncodedOutput',
    'OvdsEncoder',
    'OvdsReader',
    'Hdf5Encoder',
    'ZgyEncoder',
    'ZgyReader',
]
