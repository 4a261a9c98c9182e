"""
Pre-conversion compatibility gate.

Three checks: the source format has a decoder, the source is within the
size limit, and its header decodes with non-zero sample fields. The gate
is a pure predicate; it never raises for bad input.
"""
import logging
from typing import Optional, Tuple

import psutil

from models.app_settings import ConversionPolicy
from models.compatibility_report import PreflightReport, PreflightStep
from models.formats import SourceFormat
from seisio.errors import ConversionError
from seisio.format_registry import FormatRegistry, get_format_registry
from seisio.header_codec import SourceHeader

logger = logging.getLogger(__name__)

# Working copies held at peak: traces, pyramid, padded bricks, compressed output
MEMORY_COPIES_ESTIMATE = 4


class CompatibilityValidator:
    """
    Pre-flight gate run before any conversion work.

    Usage
    -----
    >>> gate = CompatibilityValidator()
    >>> report = gate.check(data, SourceFormat.SEGY)
    >>> if not report.is_compatible:
    ...     print(report.recommendations)
    """

    def __init__(self, registry: Optional[FormatRegistry] = None,
                 policy: Optional[ConversionPolicy] = None):
        self.registry = registry or get_format_registry()
        self.policy = policy or ConversionPolicy()

    def check(self, data: bytes, source_format: SourceFormat) -> PreflightReport:
        """
        Run the three pre-flight checks.

        Args:
            data: Raw source bytes
            source_format: Declared source format

        Returns:
            PreflightReport; is_compatible is the AND of all three steps
        """
        recommendations = []
        warnings = []

        format_supported = self.registry.is_supported(source_format)
        if not format_supported:
            recommendations.append(
                f"{source_format.label} is recognised but cannot be decoded; export it to "
                f"SEG-Y or another supported format first"
            )

        size = len(data)
        size_within_limit = size <= self.policy.max_source_bytes
        if not size_within_limit:
            warnings.append(
                f"Source is {size / 1024 ** 3:.2f} GiB, above the "
                f"{self.policy.max_source_bytes / 1024 ** 3:.2f} GiB limit"
            )
            recommendations.append("Split the survey into smaller files or raise the size limit")
        self._check_memory_headroom(size, warnings)

        header_integrity, header_error = False, ''
        if format_supported:
            header_integrity, header_error = self._check_header(data, source_format)
            if not header_integrity:
                recommendations.append(
                    f"Verify the file is a valid {source_format.label} file: {header_error}"
                )

        for message in warnings:
            logger.warning(message)

        is_compatible = format_supported and size_within_limit and header_integrity
        logger.info(f"Pre-flight {source_format.label} ({size} bytes): "
                    f"format={format_supported}, size={size_within_limit}, "
                    f"header={header_integrity} -> compatible={is_compatible}")

        return PreflightReport(
            is_compatible=is_compatible,
            step_results={
                PreflightStep.FORMAT_SUPPORTED: format_supported,
                PreflightStep.SIZE_WITHIN_LIMIT: size_within_limit,
                PreflightStep.HEADER_INTEGRITY: header_integrity,
            },
            recommendations=recommendations,
            warnings=warnings,
            header_error=header_error,
        )

    def _check_header(self, data: bytes, source_format: SourceFormat) -> Tuple[bool, str]:
        codec = self.registry.codec_for(source_format)
        try:
            header: SourceHeader = codec.decode(data)
        except ConversionError as e:
            return False, e.message
        if header.samples_per_trace <= 0:
            return False, "header declares zero samples per trace"
        if header.sample_interval_us <= 0:
            return False, "header declares a zero sample interval"
        return True, ''

    @staticmethod
    def _check_memory_headroom(size: int, warnings) -> None:
        available = psutil.virtual_memory().available
        needed = size * MEMORY_COPIES_ESTIMATE
        if needed > available:
            warnings.append(
                f"Conversion may need about {needed / 1024 ** 2:.0f} MB of memory, "
                f"{available / 1024 ** 2:.0f} MB available"
            )
