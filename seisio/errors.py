"""
Conversion error taxonomy.

Every error names the pipeline stage it originated in. Stages raise these;
only the converter catches them and turns them into a failed result.
"""
from typing import Optional


class ConversionError(Exception):
    """Base class for stage-local conversion failures."""

    default_stage = 'conversion'

    def __init__(self, message: str, stage: Optional[str] = None):
        self.stage = stage or self.default_stage
        self.message = message
        super().__init__(f"{self.stage}: {message}")


class MalformedHeaderError(ConversionError):
    """Source header is unparseable, truncated or has zero sample fields."""
    default_stage = 'header'


class UnsupportedFormatError(ConversionError):
    """Source or target format has no handler."""
    default_stage = 'preflight'


class SizeLimitExceededError(ConversionError):
    """Source is larger than the configured limit and the policy makes that fatal."""
    default_stage = 'preflight'


class EncodingError(ConversionError):
    """A format encoder transition failed; stage names the failed transition."""
    default_stage = 'encoding'


class StorageError(ConversionError):
    """Persistence of produced bytes failed."""
    default_stage = 'storage'
