"""
Metadata extraction from decoded source headers.

Maps any SourceHeader (and optionally the decoded traces) onto a normalized
SeismicMetadata record. Never fails: missing or zero fields are replaced
by documented defaults.
"""
import logging
from typing import Optional, Tuple, Dict, Any

import numpy as np

from models.formats import SourceFormat
from models.seismic_metadata import SeismicMetadata, Dimensions, CloudCompatibility
from seisio.header_codec import SourceHeader, TraceBlock

logger = logging.getLogger(__name__)

# Defaults for fields a source does not declare
DEFAULT_SAMPLES = 1
DEFAULT_TRACES = 1
DEFAULT_LINES = 1
DEFAULT_SAMPLE_INTERVAL_US = 1000.0
DEFAULT_UNITS = 'm'
DEFAULT_COORDINATE_SYSTEM = 'unknown'

CLOUD_CONTRACT_VERSION = '1.0'
CLOUD_OPERATIONS = frozenset({'random_access', 'lod_streaming', 'brick_fetch'})


def grid_shape(traces: TraceBlock) -> Tuple[int, int]:
    """
    Return (lines, traces_per_line) for a trace block.

    Traces form a grid when they are sorted by inline number and every
    inline holds the same number of traces. Anything else is a single line.
    """
    if traces.samples.ndim == 3:
        return int(traces.samples.shape[0]), int(traces.samples.shape[1])

    n = traces.n_traces
    inlines = traces.inlines
    if inlines is None or len(inlines) != n or n == 0:
        return 1, n
    if np.any(np.diff(inlines) < 0):
        return 1, n
    values, counts = np.unique(inlines, return_counts=True)
    if len(values) > 1 and np.all(counts == counts[0]):
        return len(values), int(counts[0])
    return 1, n


def _json_safe(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    if isinstance(value, dict):
        return {str(k): _json_safe(v) for k, v in value.items()}
    return value


class MetadataExtractor:
    """Build SeismicMetadata from decoded headers."""

    def extract(
        self,
        header: SourceHeader,
        source_format: SourceFormat,
        traces: Optional[TraceBlock] = None,
        cloud_compatible: bool = False,
    ) -> SeismicMetadata:
        """
        Map a decoded header onto SeismicMetadata.

        Parameters
        ----------
        header : SourceHeader
            Output of the format's HeaderCodec.decode
        source_format : SourceFormat
            Format the header was decoded from
        traces : TraceBlock, optional
            Decoded traces; when given, line and trace counts come from the
            actual trace geometry instead of header declarations
        cloud_compatible : bool
            Attach the cloud data-service contract description

        Returns
        -------
        SeismicMetadata
            Fully populated record; every dimension and the sampling rate
            are positive
        """
        samples = header.samples_per_trace or 0
        if samples <= 0 and traces is not None:
            samples = traces.n_samples
        if samples <= 0:
            logger.debug(f"No sample count in {source_format.label} header, using {DEFAULT_SAMPLES}")
            samples = DEFAULT_SAMPLES

        if traces is not None:
            lines, n_traces = grid_shape(traces)
        else:
            lines, n_traces = header.line_count, header.trace_count
        n_traces = n_traces if n_traces and n_traces > 0 else DEFAULT_TRACES
        lines = lines if lines and lines > 0 else DEFAULT_LINES

        interval = header.sample_interval_us
        if not interval or interval <= 0:
            logger.debug(f"No sample interval in {source_format.label} header, "
                         f"using {DEFAULT_SAMPLE_INTERVAL_US} us")
            interval = DEFAULT_SAMPLE_INTERVAL_US

        cloud = None
        if cloud_compatible:
            cloud = CloudCompatibility(version=CLOUD_CONTRACT_VERSION,
                                       supported_operations=CLOUD_OPERATIONS)

        metadata = SeismicMetadata(
            format=source_format,
            dimensions=Dimensions(samples=int(samples), traces=int(n_traces), lines=int(lines)),
            sampling_rate_hz=1e6 / float(interval),
            units=header.units or DEFAULT_UNITS,
            coordinate_system=header.coordinate_system or DEFAULT_COORDINATE_SYSTEM,
            acquisition_parameters=self._acquisition_parameters(header),
            processing_history=[f"Decoded {source_format.label} headers"],
            cloud_compatibility=cloud,
        )
        logger.info(f"Extracted metadata: {metadata.dimensions.volume_shape} "
                    f"(lines, traces, samples) at {metadata.sampling_rate_hz:g} Hz")
        return metadata

    @staticmethod
    def _acquisition_parameters(header: SourceHeader) -> Dict[str, Any]:
        return {str(k): _json_safe(v) for k, v in header.acquisition_parameters().items()}
