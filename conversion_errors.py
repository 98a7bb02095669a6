"""
Error taxonomy for the converter.

Every failure a conversion job can hit derives from ``ConversionError`` so the
pipeline can deliver it through exactly one listener error event.
"""

from __future__ import annotations


class ConversionError(Exception):
    """Base class for every error surfaced by a conversion job."""


class ConfigurationError(ConversionError):
    """Settings are missing, contradictory, or point at unusable paths.

    Raised before any archive I/O happens; the caller can fix the settings
    and try again.
    """


class ArchiveFormatError(ConversionError):
    """A resource archive or data table is malformed or truncated."""


class SchemaVersionError(ConversionError):
    """A data table uses a version this build does not understand."""


class ConversionIOError(ConversionError, OSError):
    """A filesystem operation failed while extracting, repacking or deploying."""


class ExternalProcessHandoffError(ConversionError):
    """The external patch installer launch request could not be built."""
