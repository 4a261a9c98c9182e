"""
Read-only format registry.

One handler per SourceFormat and TargetFormat member, built once on first
use. Construction fails if any enum member lacks an entry, so adding a
format without a handler is caught immediately.
"""
import logging
from types import MappingProxyType
from typing import Mapping, Optional, Type

from models.formats import SourceFormat, TargetFormat
from seisio.binary_codecs import SeismicUnixCodec, SegdCodec, RawBinaryCodec, NetcdfCodec, Netcdf4Codec
from seisio.encoders import FormatEncoder, OvdsEncoder, Hdf5Encoder, ZgyEncoder
from seisio.header_codec import HeaderCodec
from seisio.segy_codec import SegyHeaderCodec
from seisio.text_codecs import LasCodec, DelimitedTextCodec, AsciiGridCodec

logger = logging.getLogger(__name__)


class FormatRegistry:
    """
    Dispatch table from format variants to handlers.

    Source entries are a HeaderCodec, or None for formats that are recognised
    but cannot be decoded. Target entries are FormatEncoder classes.
    """

    def __init__(self, codecs: Mapping[SourceFormat, Optional[HeaderCodec]],
                 encoders: Mapping[TargetFormat, Type[FormatEncoder]]):
        missing = [f.label for f in SourceFormat if f not in codecs]
        missing += [f.label for f in TargetFormat if f not in encoders]
        if missing:
            raise ValueError(f"Format registry has no entry for: {', '.join(missing)}")
        self._codecs = MappingProxyType(dict(codecs))
        self._encoders = MappingProxyType(dict(encoders))

    @property
    def codecs(self) -> Mapping[SourceFormat, Optional[HeaderCodec]]:
        return self._codecs

    @property
    def encoders(self) -> Mapping[TargetFormat, Type[FormatEncoder]]:
        return self._encoders

    def codec_for(self, source_format: SourceFormat) -> Optional[HeaderCodec]:
        return self._codecs[source_format]

    def encoder_for(self, target_format: TargetFormat) -> Type[FormatEncoder]:
        return self._encoders[target_format]

    def is_supported(self, source_format: SourceFormat) -> bool:
        return self._codecs[source_format] is not None

    def supported_sources(self):
        return [f for f in SourceFormat if self._codecs[f] is not None]


def _build_default_registry() -> FormatRegistry:
    codecs = {
        SourceFormat.SEGY: SegyHeaderCodec(),
        SourceFormat.SEGD: SegdCodec(),
        SourceFormat.SEISMIC_UNIX: SeismicUnixCodec(),
        SourceFormat.LAS: LasCodec(),
        SourceFormat.NETCDF: NetcdfCodec(),
        SourceFormat.NETCDF4: Netcdf4Codec(),
        SourceFormat.ASCII_TEXT: DelimitedTextCodec(SourceFormat.ASCII_TEXT),
        SourceFormat.ASCII_DATA: DelimitedTextCodec(SourceFormat.ASCII_DATA),
        SourceFormat.CSV: DelimitedTextCodec(SourceFormat.CSV),
        SourceFormat.TSV: DelimitedTextCodec(SourceFormat.TSV),
        SourceFormat.ASCII_GRID: AsciiGridCodec(),
        SourceFormat.BINARY: RawBinaryCodec(SourceFormat.BINARY),
        SourceFormat.RAW_BINARY: RawBinaryCodec(SourceFormat.RAW_BINARY),
        # Recognised, not decodable
        SourceFormat.UKOOA_P190: None,
        SourceFormat.UKOOA_P194: None,
        SourceFormat.DLIS: None,
        SourceFormat.OPENVDS: None,
        SourceFormat.PETREL_ZGY: None,
        SourceFormat.PARADIGM_GEODEPTH: None,
        SourceFormat.PARADIGM_HSR: None,
        SourceFormat.GEOFRAME_IESX: None,
    }
    encoders = {
        TargetFormat.OVDS: OvdsEncoder,
        TargetFormat.HDF5: Hdf5Encoder,
        TargetFormat.ZGY: ZgyEncoder,
    }
    return FormatRegistry(codecs, encoders)


_registry: Optional[FormatRegistry] = None


def get_format_registry() -> FormatRegistry:
    """Get the process-wide registry, building it on first call."""
    global _registry
    if _registry is None:
        _registry = _build_default_registry()
        logger.debug(f"Format registry built: {len(_registry.supported_sources())} "
                     f"decodable of {len(SourceFormat)} source formats")
    return _registry
